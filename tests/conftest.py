import os

# 必须在导入 blockreceipt 之前设置，日志/延迟在导入期读取
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("SIMULATED_CHAIN_DELAY", "0")
os.environ.setdefault("CONFIG_HOT_RELOAD", "0")

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from blockreceipt.infra.rate_limiter import rate_limiter
from blockreceipt.models.task import NFTGrantResult
from blockreceipt.queues.pipeline import TaskPipeline
from blockreceipt.queues.task_store import MemoryTaskStore
from blockreceipt.worker import PipelineWorker


class RecordingStore(MemoryTaskStore):
    """记录每次写入的 (task_id, status)，用于校验状态序列"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.history = []

    def put(self, task):
        self.history.append((task.id, task.status))
        super().put(task)

    def statuses(self, task_id):
        return [status for tid, status in self.history if tid == task_id]


class StubCollaborator:
    """同时实现市场购买与兜底铸造两个接口"""

    def __init__(self, result=None, exc=None, delay=0.0):
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def _respond(self, wallet_address, receipt_id, receipt_data):
        self.calls.append((wallet_address, receipt_id, receipt_data))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result

    async def purchase_and_transfer(self, wallet_address, receipt_id, receipt_data):
        return await self._respond(wallet_address, receipt_id, receipt_data)

    async def mint_fallback(self, wallet_address, receipt_id, receipt_data):
        return await self._respond(wallet_address, receipt_id, receipt_data)


class SteppingClock:
    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        self.now = self.now + self.step
        return self.now


def ok(token_id, **extra):
    return NFTGrantResult(success=True, token_id=token_id, tx_hash="0x" + "ab" * 32, **extra)


def failed(error=None):
    return NFTGrantResult(success=False, error=error)


@pytest.fixture
def make_pipeline():
    def _make(marketplace=None, minter=None, store=None, clock=None, collaborator_timeout=5, notifier=None):
        return TaskPipeline(
            store if store is not None else RecordingStore(),
            marketplace or StubCollaborator(result=ok("tok-default")),
            minter or StubCollaborator(result=ok("tok-fallback")),
            clock=clock or SteppingClock(),
            collaborator_timeout=collaborator_timeout,
            notifier=notifier,
        )
    return _make


@pytest.fixture
def run_pipeline():
    """启动 worker，退出时等待队列 (含链式任务) 处理完再停止"""
    @asynccontextmanager
    async def _run(pipeline, concurrency=1):
        worker = PipelineWorker(pipeline, concurrency=concurrency)
        worker.start()
        try:
            yield worker
            await asyncio.wait_for(pipeline.join(), timeout=5)
        finally:
            await worker.stop()
    return _run


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    rate_limiter.reset()
    yield
    rate_limiter.reset()
