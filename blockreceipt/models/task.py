import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class TaskType(str, Enum):
    NFT_PURCHASE = "nft_purchase"
    FALLBACK_MINT = "fallback_mint"
    METADATA_ENCRYPTION = "metadata_encryption"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

# 状态只能单向前进: pending -> processing -> completed | failed
ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex}"


class CamelModel(BaseModel):
    """对外 JSON 使用 camelCase (walletAddress / receiptId ...)，内部使用 snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EncryptedMetadata(CamelModel):
    policy_id: str
    capsule_id: str
    ciphertext: str


class ReceiptPayload(CamelModel):
    """nft_purchase / fallback_mint 的任务数据"""
    receipt_data: Dict[str, Any] = Field(default_factory=dict)
    encrypted_metadata: Optional[EncryptedMetadata] = None


class EncryptionPayload(CamelModel):
    """metadata_encryption 的任务数据"""
    encrypted_metadata: EncryptedMetadata
    token_id: Optional[str] = None


class NFTGrantResult(CamelModel):
    """市场购买 / 兜底铸造的统一返回结构"""
    success: bool
    tx_hash: Optional[str] = None
    token_id: Optional[str] = None
    contract_address: Optional[str] = None
    name: Optional[str] = None
    image_url: Optional[str] = None
    marketplace: Optional[str] = None
    price: Optional[float] = None
    creator: Optional[str] = None
    creator_name: Optional[str] = None
    tier: Optional[str] = None
    error: Optional[str] = None


class AssociationResult(CamelModel):
    token_id: Optional[str] = None
    encryption_status: str = "associated"
    policy_id: Optional[str] = None
    capsule_id: Optional[str] = None
    message: str = "Encrypted metadata successfully associated with NFT"


TaskPayload = Union[ReceiptPayload, EncryptionPayload]
TaskResult = Union[NFTGrantResult, AssociationResult]

PAYLOAD_TYPES = {
    TaskType.NFT_PURCHASE: ReceiptPayload,
    TaskType.FALLBACK_MINT: ReceiptPayload,
    TaskType.METADATA_ENCRYPTION: EncryptionPayload,
}

RESULT_TYPES = {
    TaskType.NFT_PURCHASE: NFTGrantResult,
    TaskType.FALLBACK_MINT: NFTGrantResult,
    TaskType.METADATA_ENCRYPTION: AssociationResult,
}


class Task(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_task_id)
    type: TaskType
    status: TaskStatus = TaskStatus.PENDING
    data: TaskPayload
    result: Optional[TaskResult] = None
    error: Optional[str] = None
    wallet_address: str
    receipt_id: str
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _coerce_by_type(cls, values: Any) -> Any:
        # data / result 的具体类型由 type 决定，避免 Union 猜错
        if not isinstance(values, dict):
            return values
        raw_type = values.get("type")
        if raw_type is None:
            return values
        task_type = TaskType(raw_type)
        values = dict(values)
        data = values.get("data")
        if isinstance(data, dict):
            values["data"] = PAYLOAD_TYPES[task_type].model_validate(data)
        result = values.get("result")
        if isinstance(result, dict):
            values["result"] = RESULT_TYPES[task_type].model_validate(result)
        return values

    @model_validator(mode="after")
    def _check_invariants(self) -> "Task":
        if not isinstance(self.data, PAYLOAD_TYPES[self.type]):
            raise ValueError(f"{self.type.value} task requires {PAYLOAD_TYPES[self.type].__name__} data")
        if self.status == TaskStatus.FAILED and not self.error:
            raise ValueError("failed task must carry an error")
        if self.status != TaskStatus.FAILED and self.error:
            raise ValueError("only failed tasks may carry an error")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def evolve(self, **changes) -> "Task":
        """生成带修改的新版本 (重新走校验)，原对象不变"""
        return type(self).model_validate({**dict(self), **changes})

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
