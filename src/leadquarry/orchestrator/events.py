"""
Run progress as an async event stream.

The orchestrator emits into a bounded queue and never waits on the consumer;
when the queue is full the oldest event is dropped. Consumers iterate with
``async for`` and may stop at any time.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class EventType(Enum):
    RUN_STARTED = "run_started"
    TIER_STARTED = "tier_started"
    SOURCE_SKIPPED = "source_skipped"
    SOURCE_STARTED = "source_started"
    SOURCE_COMPLETED = "source_completed"
    SOURCE_FAILED = "source_failed"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True)
class RunEvent:
    type: EventType
    run_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "run_id": self.run_id, "timestamp": self.timestamp, **self.data}


_CLOSED = object()


class RunEvents:
    """Drop-oldest event channel for one run."""

    def __init__(self, maxsize: int = 256):
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: Any) -> None:
        while self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def emit(self, type: EventType, run_id: str, **data: Any) -> None:
        if self._closed:
            return
        self._put(RunEvent(type, run_id, data))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)

    def __aiter__(self) -> "RunEvents":
        return self

    async def __anext__(self) -> RunEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item
