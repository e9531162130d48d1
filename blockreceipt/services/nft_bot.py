import asyncio
import random
import threading
import time
import uuid
from typing import Any, Dict, Optional

from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger
from blockreceipt.models.task import NFTGrantResult
from blockreceipt.services import marketplace

logger = get_logger("nft_bot")

CLAIM_WINDOW_SECONDS = 24 * 60 * 60
NO_AFFORDABLE_NFTS = "No affordable NFTs found under budget"

# 兜底铸造用的自有合集
HOUSE_COLLECTION = [
    {"id": "nft-001", "name": "Receipt Warrior", "image": "/nft-images/receipt-warrior.svg"},
    {"id": "nft-002", "name": "Crypto Receipt", "image": "/nft-images/crypto-receipt.svg"},
    {"id": "nft-003", "name": "Fashion Receipt", "image": "/nft-images/fashion-receipt.svg"},
    {"id": "nft-004", "name": "Electronics Receipt", "image": "/nft-images/electronics-receipt.svg"},
    {"id": "nft-005", "name": "Food Receipt", "image": "/nft-images/food-receipt.svg"},
]


class NFTPurchaseBot:
    """
    收据上传后的 NFT 赠送机器人:
    - purchase_and_transfer: 按收据金额/分类从市场购买并转给用户
    - mint_fallback: 市场不可用时从自有合集直接铸造
    同一钱包 24 小时内只记一次领取
    """

    def __init__(self, clock=time.time):
        self.clock = clock
        self._claims: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    @property
    def contract_address(self) -> str:
        return config.get("RECEIPT_NFT_CONTRACT_ADDRESS", "0x1111111111111111111111111111111111111111")

    def is_user_eligible(self, wallet_address: str) -> bool:
        with self._lock:
            record = self._claims.get(wallet_address)
        if record is None:
            return True
        if self.clock() - record["last_claim_time"] > CLAIM_WINDOW_SECONDS:
            return True
        return record["claims_in_window"] < 1

    def get_claim_status(self, wallet_address: str) -> Optional[Dict[str, float]]:
        with self._lock:
            record = self._claims.get(wallet_address)
            return dict(record) if record else None

    def _record_claim(self, wallet_address: str):
        now = self.clock()
        with self._lock:
            record = self._claims.get(wallet_address)
            if record and now - record["last_claim_time"] <= CLAIM_WINDOW_SECONDS:
                count = record["claims_in_window"] + 1
            else:
                count = 1
            self._claims[wallet_address] = {"last_claim_time": now, "claims_in_window": count}
        logger.info("Recorded NFT claim for wallet %s", wallet_address)

    async def purchase_and_transfer(self, wallet_address: str, receipt_id: str,
                                    receipt_data: Dict[str, Any]) -> NFTGrantResult:
        logger.info("Attempting to purchase NFT for wallet %s based on receipt %s", wallet_address, receipt_id)
        try:
            total = float(receipt_data.get("total") or 0)
        except (TypeError, ValueError):
            total = 0.0
        category = marketplace.categorize_receipt(receipt_data)
        budget = marketplace.determine_nft_budget(total)
        logger.info("Receipt %s: category=%s tier=%s budget=$%s",
                    receipt_id, category, budget["tier"], budget["budget"])

        options = await marketplace.fetch_marketplace_nfts(max_price=budget["budget"], category=category)
        if not options:
            return NFTGrantResult(success=False, error=NO_AFFORDABLE_NFTS)

        selected = random.choice(options)
        logger.info("Selected NFT %s by %s", selected.name, selected.creator_name or "unknown")
        purchase = await marketplace.purchase_marketplace_nft(selected, wallet_address)
        if not purchase.success:
            return NFTGrantResult(success=False, error=purchase.error or "Failed to purchase NFT")

        self._record_claim(wallet_address)
        return purchase.model_copy(update={"tier": budget["tier"]})

    async def mint_fallback(self, wallet_address: str, receipt_id: str,
                            receipt_data: Dict[str, Any]) -> NFTGrantResult:
        logger.info("Minting fallback NFT for wallet %s (receipt %s)", wallet_address, receipt_id)
        selected = HOUSE_COLLECTION[0]
        merchant = (receipt_data or {}).get("merchantName")

        delay = marketplace.simulated_delay()
        if delay > 0:
            await asyncio.sleep(delay)

        self._record_claim(wallet_address)
        return NFTGrantResult(
            success=True,
            token_id=f"{int(self.clock() * 1000)}-{uuid.uuid4().hex[:6]}",
            contract_address=self.contract_address,
            name=f"{merchant or selected['name']} (Custom)",
            image_url=selected["image"],
            marketplace="BlockReceipt",
            price=0,
            tx_hash=marketplace.random_tx_hash(),
            creator="BlockReceipt",
            creator_name="BlockReceipt Artist",
            tier="basic",
        )


nft_bot = NFTPurchaseBot()
