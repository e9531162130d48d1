import asyncio
from typing import List, Optional

from blockreceipt.core.config import config
from blockreceipt.core.log_utils import get_logger
from blockreceipt.core.metrics import TASK_QUEUE_SIZE
from blockreceipt.queues.pipeline import pipeline as default_pipeline


class PipelineWorker:
    def __init__(self, pipeline, concurrency: Optional[int] = None):
        self.logger = get_logger("worker")
        self.pipeline = pipeline
        self.concurrency = max(1, concurrency or config.get_int("PIPELINE_WORKERS", 1))
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._running:
            return
        self._running = True
        queue = self.pipeline.open_queue()
        loop = asyncio.get_running_loop()
        for slot in range(self.concurrency):
            self._tasks.append(loop.create_task(self._run(queue, slot)))
        self.logger.info("Pipeline workers started (%d)", self.concurrency)

    async def stop(self):
        self._running = False
        if not self._tasks:
            return

        self.logger.info("Stopping pipeline workers...")
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self.pipeline.close_queue()
        self.logger.info("Pipeline workers stopped")

    async def _run(self, queue: asyncio.Queue, slot: int):
        while self._running:
            try:
                task_id = await queue.get()
            except asyncio.CancelledError:
                break

            TASK_QUEUE_SIZE.dec()
            try:
                await self.pipeline.process(task_id)
            except asyncio.CancelledError:
                queue.task_done()
                break
            except Exception as e:
                # process 自身已兜底，这里只会是存储层等意外错误
                self.logger.error("Worker %d failed on task %s: %s", slot, task_id, e)
            queue.task_done()


worker = PipelineWorker(default_pipeline)
