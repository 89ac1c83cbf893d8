"""
Progress channel for analysis runs.

Runs publish ProgressEvent values; observers receive them as async callbacks
and subscribers read them from bounded asyncio queues. A slow subscriber
loses its oldest events rather than stalling the run.
"""

import asyncio
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from core.config import settings
import logging

logger = logging.getLogger(__name__)


class ProgressEventType:
    STARTED = "started"
    BATCH_COMPLETED = "batch_completed"
    CHUNK_COMPLETED = "chunk_completed"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass
class ProgressEvent:
    job_id: str
    event: str
    processed: int = 0
    total: int = 0
    completed_shipments: int = 0
    orphaned_shipments: int = 0
    total_savings: float = 0.0
    eta_seconds: Optional[float] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def percentage(self) -> float:
        return (self.processed / self.total * 100) if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["percentage"] = self.percentage
        data["timestamp"] = self.timestamp.isoformat()
        return data


class ProgressObserver(Protocol):
    async def on_progress(self, event: ProgressEvent) -> None:
        ...


class ProgressChannel:
    """
    Fan out progress events to observers and queue subscribers.

    Exceptions from an observer are logged and never reach the run.
    """

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.PROGRESS_QUEUE_SIZE
        self._observers: List[ProgressObserver] = []
        self._subscribers: Dict[Optional[str], List[asyncio.Queue]] = {}

    def add_observer(self, observer: ProgressObserver):
        self._observers.append(observer)

    def remove_observer(self, observer: ProgressObserver):
        self._observers.remove(observer)

    def subscribe(self, job_id: Optional[str] = None) -> asyncio.Queue:
        """Queue of events for one job, or for every job when job_id is None"""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        for queues in self._subscribers.values():
            if queue in queues:
                queues.remove(queue)

    def _offer(self, queue: asyncio.Queue, event: ProgressEvent):
        if queue.full():
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        queue.put_nowait(event)

    async def publish(self, event: ProgressEvent):
        for queue in self._subscribers.get(event.job_id, []) + self._subscribers.get(None, []):
            self._offer(queue, event)

        for observer in list(self._observers):
            try:
                await observer.on_progress(event)
            except Exception as e:
                logger.error(f"Observer {type(observer).__name__} failed on {event.event}: {e}")
