import requests
from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger

logger = get_logger("webhook")


def notify_task(task):
    """
    任务进入终态时回调 RECEIPT_WEBHOOK_URL (未配置则跳过)
    """
    webhook = config.get("RECEIPT_WEBHOOK_URL")
    if not webhook:
        return

    data = {
        "task_id": task.id,
        "task": task.type.value,
        "status": task.status.value,
        "receipt_id": task.receipt_id,
        "wallet_address": task.wallet_address,
        "result": task.result.model_dump(by_alias=True, mode="json") if task.result else None,
        "error": task.error,
    }

    try:
        requests.post(webhook, json=data, timeout=config.get_float("WEBHOOK_TIMEOUT", 5))
    except requests.RequestException as e:
        logger.error(f"Webhook notify failed for task {task.id}: {e}")
