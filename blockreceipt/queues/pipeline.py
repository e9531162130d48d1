"""
收据 -> NFT 的异步任务流水线

nft_purchase --成功--> metadata_encryption (携带加密元数据时)
             --失败--> fallback_mint --成功--> metadata_encryption
                                     --失败--> 终止

create_task 只负责落库并把 task id 投递到工作队列，立即返回；
PipelineWorker 从队列取出 id 调用 process()。链式任务同样是一次投递，
而不是递归调用。
"""
import asyncio
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from pydantic import ValidationError

from blockreceipt.core.config import config
from blockreceipt.core.errors import InvalidTransitionError, UnknownTaskTypeError
from blockreceipt.core.log_utils import get_logger
from blockreceipt.core.metrics import (
    TASK_CHAINED_TOTAL,
    TASK_CREATED_TOTAL,
    TASK_FAILED_TOTAL,
    TASK_FINISHED_TOTAL,
    TASK_PROCESSING_SECONDS,
    TASK_QUEUE_SIZE,
)
from blockreceipt.models.task import (
    ALLOWED_TRANSITIONS,
    AssociationResult,
    EncryptedMetadata,
    EncryptionPayload,
    NFTGrantResult,
    ReceiptPayload,
    Task,
    TaskPayload,
    TaskStatus,
    TaskType,
)
from blockreceipt.infra.webhook import notify_task
from blockreceipt.queues.task_store import create_store
from blockreceipt.services.nft_bot import nft_bot

logger = get_logger("pipeline")

PURCHASE_FAILED = "NFT marketplace purchase failed"
FALLBACK_FAILED = "Fallback NFT minting failed"
CANCELLED = "Task cancelled during shutdown"


class Marketplace(Protocol):
    async def purchase_and_transfer(self, wallet_address: str, receipt_id: str,
                                    receipt_data: Dict[str, Any]) -> NFTGrantResult: ...


class FallbackMinter(Protocol):
    async def mint_fallback(self, wallet_address: str, receipt_id: str,
                            receipt_data: Dict[str, Any]) -> NFTGrantResult: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class TaskPipeline:
    def __init__(self, store, marketplace: Marketplace, minter: FallbackMinter,
                 clock: Optional[Callable[[], datetime]] = None,
                 collaborator_timeout: Optional[float] = None,
                 notifier: Optional[Callable[[Task], None]] = None):
        self.store = store
        self.marketplace = marketplace
        self.minter = minter
        self.clock = clock or utcnow
        if collaborator_timeout is None:
            collaborator_timeout = config.get_float("COLLABORATOR_TIMEOUT", 30)
        self.collaborator_timeout = collaborator_timeout
        self.notifier = notifier

        self._clock_lock = threading.Lock()
        self._last_ts: Optional[datetime] = None
        # worker 启动前创建的任务先暂存，启动时再投递
        self._backlog = deque()
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handlers = {
            TaskType.NFT_PURCHASE: self._handle_purchase,
            TaskType.FALLBACK_MINT: self._handle_fallback,
            TaskType.METADATA_ENCRYPTION: self._handle_encryption,
        }

    # ---- 时间 ----

    def _now(self) -> datetime:
        # 时间戳严格递增，保证 createdAt 排序无并列
        with self._clock_lock:
            ts = self.clock()
            if self._last_ts is not None and ts <= self._last_ts:
                ts = self._last_ts + timedelta(microseconds=1)
            self._last_ts = ts
            return ts

    # ---- 工作队列 ----

    def open_queue(self) -> asyncio.Queue:
        """由 worker 在事件循环内调用"""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        while self._backlog:
            self._queue.put_nowait(self._backlog.popleft())
        return self._queue

    def close_queue(self):
        if self._queue is not None:
            while not self._queue.empty():
                self._backlog.append(self._queue.get_nowait())
        self._queue = None
        self._loop = None

    def _enqueue(self, task_id: str):
        TASK_QUEUE_SIZE.inc()
        if self._queue is None:
            self._backlog.append(task_id)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(task_id)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, task_id)

    async def join(self):
        """等待队列 (含链式产生的后续任务) 全部处理完"""
        if self._queue is not None:
            await self._queue.join()

    # ---- 创建 ----

    def create_task(self, task_type: Union[TaskType, str], data: Union[TaskPayload, Dict[str, Any]],
                    wallet_address: str, receipt_id: str) -> Task:
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise UnknownTaskTypeError(task_type) from None

        now = self._now()
        task = Task(
            type=task_type,
            data=data,
            wallet_address=wallet_address,
            receipt_id=receipt_id,
            created_at=now,
            updated_at=now,
        )
        self.store.put(task)
        TASK_CREATED_TOTAL.labels(task_type=task_type.value).inc()
        logger.info("Task created: %s of type %s for wallet %s", task.id, task_type.value, wallet_address)
        self._enqueue(task.id)
        return task

    def create_nft_purchase_task(self, wallet_address: str, receipt_id: str, receipt_data: Dict[str, Any],
                                 encrypted_metadata: Union[EncryptedMetadata, Dict[str, Any], None] = None) -> Task:
        payload = ReceiptPayload(receipt_data=receipt_data or {}, encrypted_metadata=encrypted_metadata)
        return self.create_task(TaskType.NFT_PURCHASE, payload, wallet_address, receipt_id)

    # ---- 查询 ----

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        return self.store.get_by_id(task_id)

    def get_tasks_by_wallet(self, wallet_address: str) -> List[Task]:
        return self.store.get_by_wallet(wallet_address)

    def get_nft_purchase_status(self, receipt_id: str) -> Optional[Task]:
        return self.store.get_latest_by_receipt(receipt_id)

    # ---- 状态迁移 ----

    def _transition(self, task: Task, status: TaskStatus, **changes) -> Task:
        current = self.store.get_by_id(task.id) or task
        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(current.id, current.status.value, status.value)

        updated = current.evolve(status=status, updated_at=self._now(), **changes)
        self.store.put(updated)
        logger.info("Task %s updated to status: %s", updated.id, status.value)

        if updated.is_terminal:
            TASK_FINISHED_TOTAL.labels(task_type=updated.type.value, status=status.value).inc()
            self._notify(updated)
        return updated

    def _complete(self, task: Task, result) -> Task:
        return self._transition(task, TaskStatus.COMPLETED, result=result)

    def _fail(self, task: Task, error: str, error_type: str = "reported") -> Task:
        TASK_FAILED_TOTAL.labels(task_type=task.type.value, error_type=error_type).inc()
        return self._transition(task, TaskStatus.FAILED, error=error)

    def _chain(self, predecessor: Task, task_type: TaskType, data: TaskPayload) -> Task:
        TASK_CHAINED_TOTAL.labels(from_type=predecessor.type.value, to_type=task_type.value).inc()
        successor = self.create_task(task_type, data, predecessor.wallet_address, predecessor.receipt_id)
        logger.info("Task %s chained %s task %s", predecessor.id, task_type.value, successor.id)
        return successor

    def _chain_encryption(self, task: Task, outcome: NFTGrantResult):
        meta = task.data.encrypted_metadata
        if meta is None:
            return None
        return self._chain(task, TaskType.METADATA_ENCRYPTION,
                           EncryptionPayload(encrypted_metadata=meta, token_id=outcome.token_id))

    def _notify(self, task: Task):
        if self.notifier is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.notifier(task)
            return
        loop.run_in_executor(None, self.notifier, task)

    # ---- 处理 ----

    async def process(self, task_id: str) -> Optional[Task]:
        task = self.store.get_by_id(task_id)
        if task is None:
            logger.warning("Attempted to process non-existent task: %s", task_id)
            return None
        if task.status != TaskStatus.PENDING:
            # 每个任务只处理一次
            logger.warning("Task %s is already %s, skipping", task_id, task.status.value)
            return task

        task = self._transition(task, TaskStatus.PROCESSING)
        started = time.perf_counter()
        try:
            task = await self._handlers[task.type](task)
        except asyncio.CancelledError:
            # worker 停止时正在处理的任务直接终结，process 不会重跑非 pending 任务
            current = self.store.get_by_id(task.id) or task
            if not current.is_terminal:
                logger.warning("Task %s cancelled while %s", task.id, current.status.value)
                task = self._fail(current, CANCELLED, error_type="cancelled")
            raise
        except Exception as e:
            logger.exception("Error processing task %s of type %s", task.id, task.type.value)
            current = self.store.get_by_id(task.id) or task
            if not current.is_terminal:
                task = self._fail(current, error_message(e), error_type=type(e).__name__)
        finally:
            TASK_PROCESSING_SECONDS.labels(task_type=task.type.value).observe(time.perf_counter() - started)
        return task

    async def _invoke(self, step: str, func: Callable[..., Awaitable[Any]], task: Task) -> NFTGrantResult:
        """
        调用外部协作方；异常与超时统一折算成失败结果，
        这样购买阶段抛异常时依然会走兜底铸造
        """
        try:
            call = func(task.wallet_address, task.receipt_id, task.data.receipt_data)
            if self.collaborator_timeout and self.collaborator_timeout > 0:
                result = await asyncio.wait_for(call, timeout=self.collaborator_timeout)
            else:
                result = await call
        except asyncio.TimeoutError:
            msg = f"{step} timed out after {self.collaborator_timeout:g}s"
            logger.error("Task %s: %s", task.id, msg)
            return NFTGrantResult(success=False, error=msg)
        except Exception as e:
            logger.error("Task %s: %s raised %s: %s", task.id, step, type(e).__name__, e)
            return NFTGrantResult(success=False, error=error_message(e))

        if isinstance(result, dict):
            try:
                result = NFTGrantResult.model_validate(result)
            except ValidationError as e:
                logger.error("Task %s: %s returned a malformed result: %s", task.id, step, e)
                return NFTGrantResult(success=False, error=f"{step} returned an invalid result")
        if not isinstance(result, NFTGrantResult):
            logger.error("Task %s: %s returned %r", task.id, step, result)
            return NFTGrantResult(success=False, error=f"{step} returned an invalid result")
        return result

    async def _handle_purchase(self, task: Task) -> Task:
        logger.info("Processing NFT purchase task %s for wallet %s", task.id, task.wallet_address)
        outcome = await self._invoke("Marketplace purchase", self.marketplace.purchase_and_transfer, task)
        if outcome.success:
            task = self._complete(task, outcome)
            self._chain_encryption(task, outcome)
            return task

        # 市场购买失败不是终点，总是转入兜底铸造
        logger.info("NFT purchase failed for %s, trying fallback mint", task.wallet_address)
        task = self._fail(task, outcome.error or PURCHASE_FAILED)
        self._chain(task, TaskType.FALLBACK_MINT, task.data)
        return task

    async def _handle_fallback(self, task: Task) -> Task:
        logger.info("Processing fallback mint task %s for wallet %s", task.id, task.wallet_address)
        outcome = await self._invoke("Fallback mint", self.minter.mint_fallback, task)
        if outcome.success:
            task = self._complete(task, outcome)
            self._chain_encryption(task, outcome)
            return task
        return self._fail(task, outcome.error or FALLBACK_FAILED)

    async def _handle_encryption(self, task: Task) -> Task:
        # 目前只记录 tokenId 与加密元数据的关联，不存在失败路径
        payload = task.data
        meta = payload.encrypted_metadata
        logger.info("Associated encrypted metadata for receipt %s with tokenId %s", task.receipt_id, payload.token_id)
        logger.debug("Encryption details: policy %s, capsule %s", meta.policy_id, meta.capsule_id)
        return self._complete(task, AssociationResult(
            token_id=payload.token_id,
            policy_id=meta.policy_id,
            capsule_id=meta.capsule_id,
        ))


def build_pipeline() -> TaskPipeline:
    # 同一个机器人同时充当市场购买方与兜底铸造方
    return TaskPipeline(create_store(), nft_bot, nft_bot, notifier=notify_task)


pipeline = build_pipeline()


def get_pipeline() -> TaskPipeline:
    """FastAPI 依赖，测试中可通过 dependency_overrides 替换"""
    return pipeline
