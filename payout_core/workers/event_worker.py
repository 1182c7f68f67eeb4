"""
Partitioned worker pool for inbound events.

Each worker owns one queue. An event goes to the queue chosen by a stable
hash of its routing key, so all events for one transaction (or dispute, or
settlement batch) are handled in arrival order by the same worker while
unrelated events run in parallel.
"""
import asyncio
import hashlib
from typing import Any, Dict, List, Optional, Tuple

import structlog

from payout_core.domain.models import InboundEvent
from payout_core.integrations.webhook_handler import EventDispatcher

logger = structlog.get_logger(__name__)

QueueItem = Tuple[InboundEvent, "asyncio.Future[Dict[str, Any]]"]


def partition_for(routing_key: str, partitions: int) -> int:
    """Stable partition index for a routing key (independent of PYTHONHASHSEED)."""
    digest = hashlib.sha256(routing_key.encode()).digest()
    return int.from_bytes(digest[:8], "big") % partitions


class EventWorkerPool:
    def __init__(self, dispatcher: EventDispatcher, workers: int = 8):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.dispatcher = dispatcher
        self.workers = workers
        self._queues: List["asyncio.Queue[Optional[QueueItem]]"] = []
        self._tasks: List["asyncio.Task[None]"] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._queues = [asyncio.Queue() for _ in range(self.workers)]
        self._tasks = [
            asyncio.create_task(self._run(index, queue), name=f"event-worker-{index}")
            for index, queue in enumerate(self._queues)
        ]
        logger.info("event_worker_pool_started", workers=self.workers)

    async def stop(self) -> None:
        """Drain queued events and stop the workers."""
        if not self.running:
            return
        for queue in self._queues:
            await queue.put(None)
        await asyncio.gather(*self._tasks)
        self._tasks = []
        self._queues = []
        logger.info("event_worker_pool_stopped")

    async def submit(self, event: InboundEvent) -> "asyncio.Future[Dict[str, Any]]":
        """
        Queue an event for its partition.

        Returns:
            Future resolved with the dispatch result, or with the handler's exception
        """
        if not self.running:
            raise RuntimeError("Event worker pool is not running")
        future: "asyncio.Future[Dict[str, Any]]" = asyncio.get_running_loop().create_future()
        partition = partition_for(event.routing_key, self.workers)
        await self._queues[partition].put((event, future))
        logger.debug(
            "event_queued",
            event_id=event.event_id,
            routing_key=event.routing_key,
            partition=partition,
        )
        return future

    async def process(self, event: InboundEvent) -> Dict[str, Any]:
        """Submit an event and wait for its result."""
        return await (await self.submit(event))

    async def _run(self, index: int, queue: "asyncio.Queue[Optional[QueueItem]]") -> None:
        while True:
            item = await queue.get()
            if item is None:
                queue.task_done()
                break
            event, future = item
            try:
                result = await self.dispatcher.dispatch(event)
            except Exception as e:
                logger.error(
                    "event_worker_dispatch_failed",
                    worker=index,
                    event_id=event.event_id,
                    error=str(e),
                )
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()
