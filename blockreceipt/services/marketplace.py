import asyncio
import random
import secrets
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger
from blockreceipt.models.task import NFTGrantResult

logger = get_logger("marketplace")


class MarketplaceNFT(BaseModel):
    id: str
    token_id: str
    contract_address: str
    name: str
    description: str = ""
    image_url: str
    price: float  # ETH
    price_usd: float = 0.0
    marketplace: str = "simulation"
    creator: Optional[str] = None
    creator_name: Optional[str] = None
    collection_name: Optional[str] = None
    url: Optional[str] = None


# 新兴艺术家的低价作品 (模拟数据，可用根目录 json 的 marketplace.listings 覆盖)
SIMULATED_LISTINGS = [
    MarketplaceNFT(
        id="sim-nft-001", token_id="1001",
        contract_address="0x7d256d82b32d8003d1ca1a1526ed211e6e0da7da",
        name="Pixel Receipt #1001", description="A pixel art receipt from an emerging artist",
        image_url="/nft-images/external/pixel-receipt-001.svg",
        price=0.00003, price_usd=0.05,
        creator="0x3a539dfa6b0b30af5e0029fb01973475269107e2", creator_name="PixelArtist42",
        collection_name="Pixel Receipts",
    ),
    MarketplaceNFT(
        id="sim-nft-002", token_id="358",
        contract_address="0x8c3fb1e38bae8f1b7af21ff7d9efcda89fa14d39",
        name="Modern Receipt #358", description="A modern interpretation of receipts as art",
        image_url="/nft-images/external/modern-receipt-358.svg",
        price=0.000025, price_usd=0.04,
        creator="0xe781a6C3d4E656A132E458931036E703E1098C9c", creator_name="ModernArtist99",
        collection_name="Modern Receipts",
    ),
    MarketplaceNFT(
        id="sim-nft-003", token_id="42",
        contract_address="0x9e5e4E7dBc77527ee4A6Cd7Fc4A8E7c1F15F3268",
        name="Receipt Doodle #42", description="A hand-drawn doodle on a receipt",
        image_url="/nft-images/external/receipt-doodle-42.svg",
        price=0.00005, price_usd=0.08,
        creator="0x1a2B3c4D5e6F7a8B9c0D1e2F3a4B5c6D7e8F9a0B", creator_name="DoodleArtist123",
        collection_name="Receipt Doodles",
    ),
    MarketplaceNFT(
        id="sim-nft-004", token_id="789",
        contract_address="0xA1B2c3D4e5F6a7B8c9D0e1F2a3B4c5D6e7F8a9B0",
        name="Crypto Receipt #789", description="A receipt showing crypto transactions as art",
        image_url="/nft-images/external/crypto-receipt-789.svg",
        price=0.000055, price_usd=0.09,
        creator="0x2b3C4d5E6f7A8b9C0d1E2f3A4b5C6d7E8f9A0b1C", creator_name="CryptoArtist456",
        collection_name="Crypto Receipts",
    ),
    MarketplaceNFT(
        id="sim-nft-005", token_id="123",
        contract_address="0xB1c2D3e4F5a6B7c8D9e0F1a2B3c4D5e6F7a8B9c0",
        name="Fashion Receipt #123", description="A stylish fashion receipt artwork",
        image_url="/nft-images/external/fashion-receipt-123.svg",
        price=0.00004, price_usd=0.065,
        creator="0x3C4d5E6f7A8b9C0d1E2f3A4b5C6d7E8f9A0b1C2d", creator_name="FashionArtist789",
        collection_name="Fashion Receipts",
    ),
]

CATEGORY_LISTINGS = {
    "food": {"sim-nft-001", "sim-nft-003"},
    "fashion": {"sim-nft-005"},
    "tech": {"sim-nft-002", "sim-nft-004"},
    "crypto": {"sim-nft-004"},
}

# (最低消费, 档位, 预算 USD)，从高到低匹配
BUDGET_TIERS = [
    (100, "luxury", 0.10),
    (50, "premium", 0.08),
    (25, "standard", 0.05),
    (0, "basic", 0.03),
]


def random_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


def simulated_delay() -> float:
    return config.get_float("SIMULATED_CHAIN_DELAY", 2.0)


def categorize_receipt(receipt_data: Dict[str, Any]) -> str:
    merchant = str(receipt_data.get("merchantName") or "").lower()
    item_names = [str(item.get("name") or "").lower() for item in receipt_data.get("items") or []]

    def merchant_or_items(merchant_words, item_words):
        return any(w in merchant for w in merchant_words) or \
            any(w in name for name in item_names for w in item_words)

    if merchant_or_items(("tech", "electronics"), ("electronics", "computer")):
        return "tech"
    if merchant_or_items(("fashion", "clothing"), ("shirt", "pants")):
        return "fashion"
    if merchant_or_items(("food", "restaurant"), ("food",)):
        return "food"
    if merchant_or_items(("crypto",), ("crypto", "token")):
        return "crypto"
    return "default"


def determine_nft_budget(total: float) -> Dict[str, Any]:
    for threshold, tier, budget in BUDGET_TIERS:
        if total >= threshold:
            return {"tier": tier, "budget": budget}
    return {"tier": "basic", "budget": 0.03}


def load_listings() -> List[MarketplaceNFT]:
    override = config.get_json("marketplace", "listings")
    if isinstance(override, list):
        return [MarketplaceNFT.model_validate(item) for item in override]
    return list(SIMULATED_LISTINGS)


async def fetch_marketplace_nfts(max_price: float, category: Optional[str] = None,
                                 sort: str = "recent", limit: int = 10) -> List[MarketplaceNFT]:
    """按预算 (USD) 与分类筛选在售作品"""
    results = [nft for nft in load_listings() if nft.price_usd <= max_price]

    wanted = CATEGORY_LISTINGS.get((category or "").lower())
    if wanted:
        results = [nft for nft in results if nft.id in wanted]

    if sort == "recent":
        # 模拟数据没有上架时间，随机打散
        random.shuffle(results)
    elif sort == "price_asc":
        results.sort(key=lambda n: n.price)
    elif sort == "price_desc":
        results.sort(key=lambda n: n.price, reverse=True)

    if limit and limit > 0:
        results = results[:limit]

    delay = simulated_delay()
    if delay > 0:
        await asyncio.sleep(delay / 4)
    return results


async def purchase_marketplace_nft(nft: MarketplaceNFT, recipient: str) -> NFTGrantResult:
    logger.info("Simulating purchase of NFT %s for recipient %s", nft.id, recipient)
    delay = simulated_delay()
    if delay > 0:
        await asyncio.sleep(delay)
    return NFTGrantResult(
        success=True,
        token_id=nft.token_id,
        contract_address=nft.contract_address,
        name=nft.name,
        image_url=nft.image_url,
        marketplace=nft.marketplace,
        price=nft.price,
        tx_hash=random_tx_hash(),
        creator=nft.creator,
        creator_name=nft.creator_name,
    )
