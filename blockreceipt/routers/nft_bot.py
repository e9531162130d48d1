import re
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger
from blockreceipt.core.security import check_role, token_dependency
from blockreceipt.infra.rate_limiter import rate_limiter
from blockreceipt.queues.pipeline import TaskPipeline, get_pipeline
from blockreceipt.services.metadata_encryption import encrypt_line_items
from blockreceipt.services.nft_bot import nft_bot

logger = get_logger("api")

router = APIRouter(prefix="/nft-bot", tags=["NFT Bot"])

WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
BOT_WALLET = "0x1234567890123456789012345678901234567890"
ZERO_ADDRESS = "0x" + "0" * 40


class PurchaseRequest(BaseModel):
    walletAddress: str
    receiptId: str
    receiptData: dict
    encrypt: Optional[bool] = False


def _check_wallet(wallet_address: str):
    if not WALLET_RE.match(wallet_address or ""):
        raise HTTPException(status_code=400, detail="Invalid wallet address")


@router.get("/eligible/{wallet_address}")
async def eligible(wallet_address: str):
    _check_wallet(wallet_address)
    is_eligible = nft_bot.is_user_eligible(wallet_address)
    return {
        "success": True,
        "isEligible": is_eligible,
        "message": "User is eligible for an NFT gift" if is_eligible
        else "User has already claimed an NFT in the last 24 hours",
    }


@router.get("/transaction/{tx_hash}")
async def transaction(tx_hash: str, walletAddress: Optional[str] = None):
    """
    模拟的链上交易详情，真实实现应查询区块链
    """
    return {
        "success": True,
        "transaction": {
            "hash": tx_hash,
            "blockNumber": 12345678,
            "timestamp": int(time.time() * 1000),
            "from": config.get("NFT_BOT_WALLET_ADDRESS", BOT_WALLET),
            "to": walletAddress or ZERO_ADDRESS,
            "status": "confirmed",
            "gasUsed": "100000",
            "effectiveGasPrice": "5000000000",
        },
    }


@router.post("/purchase", status_code=202)
async def purchase(req: PurchaseRequest, response: Response,
                   ident=Depends(token_dependency),
                   pipeline: TaskPipeline = Depends(get_pipeline)):
    # 可选的角色白名单 (PURCHASE_ROLES)
    check_role(ident, "PURCHASE_ROLES")
    _check_wallet(req.walletAddress)
    if not req.receiptId.strip():
        raise HTTPException(status_code=400, detail="Receipt ID is required")

    try:
        total = float(req.receiptData.get("total") or 0)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid receipt total")

    # 速率限制 (按钱包)
    max_req = config.get_int("RATE_LIMIT_MAX", 30)
    win = config.get_int("RATE_LIMIT_WINDOW", 60)
    if not rate_limiter.allow(f"purchase:{req.walletAddress}", max_req, win):
        raise HTTPException(status_code=429, detail="Too Many Requests")

    min_total = config.get_float("MIN_RECEIPT_TOTAL", 5.0)
    if total < min_total:
        response.status_code = 200
        return {
            "accepted": False,
            "message": f"Receipt total does not meet minimum threshold of ${min_total:.2f} for NFT gift",
        }

    encrypted = None
    if req.encrypt and req.receiptData.get("items"):
        try:
            encrypted = encrypt_line_items(req.walletAddress, req.receiptData)
        except ValueError as e:
            # 加密失败不影响 NFT 发放
            logger.warning("Line item encryption failed for receipt %s: %s", req.receiptId, e)

    task = pipeline.create_nft_purchase_task(req.walletAddress, req.receiptId, req.receiptData, encrypted)
    logger.info("Enqueued NFT purchase task %s for receipt %s", task.id, req.receiptId)
    return {"accepted": True, "task": task.to_public()}
