import json
from typing import List, Optional

from blockreceipt.core.redis import redis_client
from blockreceipt.core.log_utils import get_logger
from blockreceipt.models.task import Task

logger = get_logger("redis_store")

KEY_PREFIX = "blockreceipt"


class RedisTaskStore:
    """
    Redis 任务表:
    - blockreceipt:task:<id>          任务 JSON (带 TTL)
    - blockreceipt:wallet:<address>   ZSET, score = createdAt
    - blockreceipt:receipt:<id>       ZSET, score = createdAt
    过期后索引中残留的 id 在读取时跳过并顺手清理
    """

    def __init__(self, client=None, ttl_seconds: int = 604800):
        self.client = client or redis_client.get_client()
        self.ttl_seconds = ttl_seconds
        # 启动即探活，失败时由 create_store 回退到内存
        self.client.ping()

    def _task_key(self, task_id: str) -> str:
        return f"{KEY_PREFIX}:task:{task_id}"

    def _wallet_key(self, wallet_address: str) -> str:
        return f"{KEY_PREFIX}:wallet:{wallet_address}"

    def _receipt_key(self, receipt_id: str) -> str:
        return f"{KEY_PREFIX}:receipt:{receipt_id}"

    def put(self, task: Task) -> None:
        score = task.created_at.timestamp()
        pipeline = self.client.pipeline()
        pipeline.set(self._task_key(task.id), json.dumps(task.to_public()), ex=self.ttl_seconds)
        pipeline.zadd(self._wallet_key(task.wallet_address), {task.id: score})
        pipeline.zadd(self._receipt_key(task.receipt_id), {task.id: score})
        pipeline.expire(self._wallet_key(task.wallet_address), self.ttl_seconds)
        pipeline.expire(self._receipt_key(task.receipt_id), self.ttl_seconds)
        pipeline.execute()

    def get_by_id(self, task_id: str) -> Optional[Task]:
        raw = self.client.get(self._task_key(task_id))
        if raw is None:
            return None
        return Task.model_validate(json.loads(raw))

    def _load_index(self, index_key: str) -> List[Task]:
        ids = self.client.zrevrange(index_key, 0, -1)
        if not ids:
            return []
        raws = self.client.mget([self._task_key(tid) for tid in ids])
        tasks = []
        stale = []
        for tid, raw in zip(ids, raws):
            if raw is None:
                stale.append(tid)
                continue
            tasks.append(Task.model_validate(json.loads(raw)))
        if stale:
            logger.debug("Dropping %d expired ids from %s", len(stale), index_key)
            self.client.zrem(index_key, *stale)
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks

    def get_by_wallet(self, wallet_address: str) -> List[Task]:
        return self._load_index(self._wallet_key(wallet_address))

    def get_latest_by_receipt(self, receipt_id: str) -> Optional[Task]:
        tasks = self._load_index(self._receipt_key(receipt_id))
        return tasks[0] if tasks else None
