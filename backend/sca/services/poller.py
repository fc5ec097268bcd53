# backend/sca/services/poller.py
import asyncio
import logging
from typing import Optional

from .pipeline import TaskPipeline
from .task_manager import TaskManager

logger = logging.getLogger(__name__)


class TaskPoller:
    """Repeatedly picks up requested tasks and runs them one at a time.

    Only one task is ever in flight, which keeps the load on remote hosts
    bounded at the cost of throughput. Tasks left "running" by a process that
    died are not reclaimed.
    """

    def __init__(self, task_manager: TaskManager, pipeline: TaskPipeline, interval: float = 5.0):
        self.task_manager = task_manager
        self.pipeline = pipeline
        self.interval = interval
        self._runner: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def run_once(self) -> int:
        """Process the current batch of requested tasks; returns how many ran"""
        tasks = await self.task_manager.list_requested()
        logger.info(f"loaded {len(tasks)} requested tasks")

        processed = 0
        for task in tasks:
            if not await self.task_manager.claim(task):
                logger.info(f"Task {task.id} is no longer requested, skipping")
                continue
            await self.pipeline.process(task)
            processed += 1
        return processed

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Task poll cycle failed: {str(e)}", exc_info=True)
            logger.info(f"all done.. pausing for {self.interval} seconds")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._runner
        logger.info(f"Starting task poller (interval {self.interval}s)")
        self._runner = asyncio.create_task(self._loop())
        return self._runner

    async def stop(self):
        if self._runner is None:
            return
        self._runner.cancel()
        try:
            await self._runner
        except asyncio.CancelledError:
            pass
        self._runner = None
        logger.info("Task poller stopped")
