"""
收据明细的模拟门限加密

真实环境应由 TACo 代理重加密完成；这里用 base64 的 JSON 代替密文，
policy / capsule 仅作为不透明标识随任务流转
"""
import base64
import json
import secrets
import time
from typing import Any, Dict, List

from blockreceipt.core.log_utils import get_logger
from blockreceipt.models.task import EncryptedMetadata

logger = get_logger("metadata_encryption")

# (分类, 关键词)，按顺序匹配
CATEGORY_KEYWORDS = [
    ("Electronics", ("phone", "laptop", "tv", "computer", "gadget", "charger", "headphone", "electronics")),
    ("Food", ("food", "meal", "lunch", "dinner", "breakfast", "snack", "drink", "beverage")),
    ("Clothing", ("shirt", "pant", "shoe", "jacket", "dress", "clothing", "apparel", "hat")),
    ("Healthcare", ("medicine", "vitamin", "health", "pharmacy", "prescription", "doctor")),
    ("Entertainment", ("movie", "game", "toy", "ticket", "show", "entertainment")),
    ("Travel", ("flight", "hotel", "travel", "booking", "vacation", "trip")),
    ("Groceries", ("grocery", "vegetable", "fruit", "meat", "dairy", "bread")),
    ("Household", ("cleaning", "furniture", "kitchen", "home", "household", "appliance")),
    ("Automotive", ("car", "auto", "gas", "oil", "repair", "tire")),
    ("Personal Care", ("soap", "shampoo", "cosmetic", "beauty", "personal care", "hygiene")),
    ("Office Supplies", ("pen", "paper", "office", "stationery", "printer", "ink")),
]


def determine_item_category(item_name: str) -> str:
    name = (item_name or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in name for k in keywords):
            return category
    return "Other"


def categorize_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {**item, "category": item.get("category") or determine_item_category(item.get("name", ""))}
        for item in items
    ]


def encrypt_line_items(wallet_address: str, receipt_data: Dict[str, Any]) -> EncryptedMetadata:
    items = (receipt_data or {}).get("items")
    if not isinstance(items, list):
        raise ValueError("Invalid receipt data: items array is required")

    logger.info("Encrypting %d line items for wallet %s", len(items), wallet_address)
    plaintext = json.dumps(categorize_items(items), ensure_ascii=False, sort_keys=True)
    stamp = int(time.time() * 1000)
    return EncryptedMetadata(
        policy_id=f"policy-{stamp}-{secrets.token_hex(8)}",
        capsule_id=f"capsule-{stamp}-{secrets.token_hex(8)}",
        ciphertext=base64.b64encode(plaintext.encode("utf-8")).decode("ascii"),
    )


def decrypt_line_items(metadata: EncryptedMetadata) -> List[Dict[str, Any]]:
    return json.loads(base64.b64decode(metadata.ciphertext).decode("utf-8"))
