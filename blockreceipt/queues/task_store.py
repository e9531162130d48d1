import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger
from blockreceipt.models.task import Task

logger = get_logger("task_store")


class MemoryTaskStore:
    """
    进程内任务表，以 task id 为键
    进程重启即丢失，仅作为流水线的运行态存储
    """

    def __init__(self, retention_seconds: int = 0):
        # dict 保持插入顺序，相同 createdAt 时后插入的视为更新
        self.tasks: Dict[str, Task] = {}
        self.lock = threading.Lock()
        self.retention_seconds = retention_seconds

    def put(self, task: Task) -> None:
        with self.lock:
            self.tasks[task.id] = task
            if self.retention_seconds > 0:
                self._prune(task.updated_at)

    def _prune(self, now: datetime):
        # 只清理已终结且超过保留窗口的任务
        cutoff = now - timedelta(seconds=self.retention_seconds)
        expired = [
            tid for tid, t in self.tasks.items()
            if t.is_terminal and t.updated_at < cutoff
        ]
        for tid in expired:
            del self.tasks[tid]
        if expired:
            logger.debug("Pruned %d expired tasks", len(expired))

    def get_by_id(self, task_id: str) -> Optional[Task]:
        with self.lock:
            return self.tasks.get(task_id)

    def _newest_first(self, predicate) -> List[Task]:
        with self.lock:
            matched = [t for t in reversed(list(self.tasks.values())) if predicate(t)]
        # sort 是稳定的，同一时间戳保持“后插入在前”
        return sorted(matched, key=lambda t: t.created_at, reverse=True)

    def get_by_wallet(self, wallet_address: str) -> List[Task]:
        return self._newest_first(lambda t: t.wallet_address == wallet_address)

    def get_latest_by_receipt(self, receipt_id: str) -> Optional[Task]:
        tasks = self._newest_first(lambda t: t.receipt_id == receipt_id)
        return tasks[0] if tasks else None

    def __len__(self):
        with self.lock:
            return len(self.tasks)


def create_store():
    backend_type = config.get("TASK_STORE_BACKEND", "memory").lower()
    if backend_type == "redis":
        try:
            from blockreceipt.queues.backends.redis_store import RedisTaskStore
            store = RedisTaskStore(ttl_seconds=config.get_int("TASK_TTL_SECONDS", 604800))
            logger.info("Using RedisTaskStore")
            return store
        except Exception as e:
            logger.error(f"Failed to init Redis task store: {e}, falling back to Memory")
    store = MemoryTaskStore(retention_seconds=config.get_int("TASK_RETENTION_SECONDS", 0))
    logger.info("Using MemoryTaskStore")
    return store
