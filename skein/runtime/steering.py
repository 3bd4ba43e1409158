"""
MessageQueue - user messages waiting to enter a run.

Two queues feed the agent loop:
- steering: delivered once the running tools settle; tool calls that have
  not started yet are skipped
- follow-up: delivered only when the agent would otherwise finish

Delivered messages are appended to the session as user nodes.
"""

from collections import deque

from skein.config import QueueMode
from skein.domain import Message

SKIPPED_FOR_STEERING = "Skipped due to queued user message."


class MessageQueue:
    """
    FIFO of pending user messages.

    In ONE_AT_A_TIME mode pop() hands out a single message per delivery
    point; in ALL mode it empties the queue.
    """

    def __init__(self, mode: QueueMode = QueueMode.ONE_AT_A_TIME):
        self.mode = mode
        self._messages: deque[Message] = deque()

    def push(self, message: Message) -> None:
        self._messages.append(message)

    def pop(self) -> list[Message]:
        """Messages to deliver now; empty when nothing is queued."""
        if not self._messages:
            return []
        if self.mode == QueueMode.ALL:
            messages = list(self._messages)
            self._messages.clear()
            return messages
        return [self._messages.popleft()]

    def clear(self) -> int:
        """Drop every queued message. Returns how many were dropped."""
        count = len(self._messages)
        self._messages.clear()
        return count

    def __len__(self) -> int:
        return len(self._messages)

    def __repr__(self) -> str:
        return f"MessageQueue(mode={self.mode.value}, pending={len(self._messages)})"


__all__ = ["MessageQueue", "SKIPPED_FOR_STEERING"]
