"""
EventStream - ordered event channel for one agent run.

One EventStream per run. The agent loop is the only producer; one consumer
(UI, print-mode writer, RPC transport) reads events in the exact order they
were written.

Design:
- Bounded queue: a producer writing to a full stream suspends, nothing is dropped
- finish() writes the terminal event (DONE or ERROR) exactly once
- Writing after the terminal event raises StreamClosedError
- A second reader raises StreamClosedError

Usage:
    stream = EventStream(maxsize=64)
    task = asyncio.create_task(loop.run(session, signal, stream))

    async for event in stream:
        render(event)
"""

import asyncio
from typing import AsyncIterator, Iterable

from skein.domain import Event, EventType
from skein.errors import StreamClosedError


class EventStream:
    """
    Single-producer, single-consumer event channel.

    The stream ends with exactly one terminal event; the reader's iteration
    stops right after yielding it.
    """

    def __init__(self, maxsize: int = 64):
        """
        Initialize EventStream.

        Args:
            maxsize: Events buffered before the producer suspends
        """
        if maxsize < 1:
            raise ValueError("EventStream requires a bounded buffer (maxsize >= 1)")
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._terminal: Event | None = None
        self._terminal_delivered = False
        self._has_reader = False

    async def write(self, event: Event) -> None:
        """
        Write a non-terminal event, suspending while the buffer is full.

        Raises:
            StreamClosedError: If the terminal event was already written
            ValueError: If event is terminal (use finish())
        """
        if self._terminal is not None:
            raise StreamClosedError(
                f"Cannot write {event.type.value} after terminal {self._terminal.type.value}"
            )
        if event.is_terminal:
            raise ValueError("Terminal events must be written with finish()")
        await self._queue.put(event)

    async def finish(self, event: Event) -> None:
        """
        Write the terminal event. Exactly once per stream.

        Raises:
            StreamClosedError: If the stream was already finished
            ValueError: If event is not terminal
        """
        if not event.is_terminal:
            raise ValueError(f"{event.type.value} is not a terminal event")
        if self._terminal is not None:
            raise StreamClosedError("Stream already finished")
        self._terminal = event
        await self._queue.put(event)

    def read(self) -> AsyncIterator[Event]:
        """
        Claim the stream and iterate its events up to and including the
        terminal event.

        Raises:
            StreamClosedError: If the stream already has a reader
        """
        if self._has_reader:
            raise StreamClosedError("EventStream already has a reader")
        self._has_reader = True
        return self._iterate()

    def __aiter__(self) -> AsyncIterator[Event]:
        return self.read()

    async def _iterate(self) -> AsyncIterator[Event]:
        while not self._terminal_delivered:
            event = await self._queue.get()
            if event.is_terminal:
                self._terminal_delivered = True
            yield event

    async def drain(self) -> Event:
        """
        Discard buffered events until the terminal event arrives.

        Used when the consumer detached early so the producer never blocks
        on a full buffer.

        Returns:
            Event: The terminal event
        """
        while not self._terminal_delivered:
            event = await self._queue.get()
            if event.is_terminal:
                self._terminal_delivered = True
        if self._terminal is None:
            raise StreamClosedError("Stream delivered a terminal event that was never finished")
        return self._terminal

    @property
    def finished(self) -> bool:
        """Whether the terminal event has been written."""
        return self._terminal is not None

    @property
    def terminal_event(self) -> Event | None:
        return self._terminal

    def __repr__(self) -> str:
        return f"EventStream(finished={self.finished}, qsize={self._queue.qsize()})"


def coalesce_text_deltas(events: Iterable[Event]) -> list[Event]:
    """
    Merge adjacent text_delta events of the same block.

    Consumer-side only: the producer never coalesces. Deltas merge when they
    are adjacent and share run, turn and block index.

    Args:
        events: Events in stream order

    Returns:
        list: Events with runs of text deltas merged
    """
    result: list[Event] = []
    for event in events:
        if result and event.type == EventType.TEXT_DELTA:
            prev = result[-1]
            if (
                prev.type == EventType.TEXT_DELTA
                and prev.run_id == event.run_id
                and prev.turn == event.turn
                and prev.index == event.index
            ):
                result[-1] = prev.model_copy(
                    update={"delta": (prev.delta or "") + (event.delta or "")}
                )
                continue
        result.append(event)
    return result


__all__ = ["EventStream", "coalesce_text_deltas"]
