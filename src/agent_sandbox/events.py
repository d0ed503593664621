# events.py
# Run progress as an async iterator.
#
# The orchestrator publishes into unbounded queues with put_nowait, so a slow
# or absent subscriber can never stall a run. Late subscribers get the full
# history replayed before live events.

import asyncio
from typing import AsyncIterator

from agent_sandbox.models import RunEvent


class EventStream:
    def __init__(self) -> None:
        self._history: list[RunEvent] = []
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[RunEvent]:
        return list(self._history)

    def publish(self, event: RunEvent) -> None:
        if self._closed:
            return
        self._history.append(event)
        for queue in self._queues:
            queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(None)

    async def subscribe(self) -> AsyncIterator[RunEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._history:
            queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._queues.remove(queue)
