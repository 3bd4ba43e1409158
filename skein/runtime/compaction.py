"""
Context compaction.

Responsibilities:
- Estimate token usage of a message path
- Replace the oldest part of an oversized path with one summary message
- Keep tool_call / tool_result pairs together in the preserved suffix

Does NOT handle:
- Rewriting the session tree (compaction only changes what is sent to the model)
- Deciding when to compact (the agent loop checks the budget)
"""

import json
import math
from abc import ABC, abstractmethod
from typing import Callable

from skein.domain import (
    Message,
    MessageRole,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from skein.utils.logging import get_logger

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4

SUMMARY_PREFIX = (
    "The conversation history before this point was compacted into the following summary:\n\n"
    "<summary>\n"
)
SUMMARY_SUFFIX = "\n</summary>"

# Summary lines are clipped to this many characters
_LINE_LIMIT = 200

Summarizer = Callable[[list[Message], "str | None"], str]


# ============================================================================
# Token estimation
# ============================================================================


def estimate_tokens(text: str) -> int:
    """Estimate tokens in a string (~4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for a single message."""
    chars = 0
    for block in message.content:
        if isinstance(block, (TextBlock, ReasoningBlock)):
            chars += len(block.text)
        elif isinstance(block, ToolCallBlock):
            arguments = block.raw_arguments
            if arguments is None:
                arguments = json.dumps(block.arguments, ensure_ascii=False)
            chars += len(block.name) + len(arguments)
        elif isinstance(block, ToolResultBlock):
            chars += len(block.output)
        else:
            chars += len(json.dumps(block.model_dump(mode="json"), ensure_ascii=False))
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_messages_tokens(messages: list[Message]) -> int:
    """Estimate total tokens for a list of messages."""
    return sum(estimate_message_tokens(m) for m in messages)


# ============================================================================
# Cut point detection
# ============================================================================


def find_cut_point(messages: list[Message], keep_recent_tokens: int) -> int:
    """
    Find the index of the first message to keep verbatim.

    Walks backwards accumulating tokens until keep_recent_tokens is reached,
    then moves forward to the nearest message that is not a tool_result so a
    kept result never loses its tool_call.

    Returns:
        int: Cut index; 0 means nothing can be dropped
    """
    accumulated = 0
    for i in range(len(messages) - 1, -1, -1):
        accumulated += estimate_message_tokens(messages[i])
        if accumulated >= keep_recent_tokens:
            for j in range(i, len(messages)):
                if not messages[j].is_tool_result():
                    return j
            return 0
    return 0


# ============================================================================
# Summary messages
# ============================================================================


def make_summary_message(summary: str) -> Message:
    """Wrap a summary into the synthetic user message that replaces a prefix."""
    return Message.user(f"{SUMMARY_PREFIX}{summary}{SUMMARY_SUFFIX}")


def is_summary_message(message: Message) -> bool:
    if message.role != MessageRole.USER:
        return False
    text = message.text
    return text.startswith(SUMMARY_PREFIX) and text.endswith(SUMMARY_SUFFIX)


def extract_summary(message: Message) -> str:
    text = message.text
    return text[len(SUMMARY_PREFIX) : len(text) - len(SUMMARY_SUFFIX)]


def _clip(text: str, limit: int = _LINE_LIMIT) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def extractive_summary(
    messages: list[Message],
    previous_summary: str | None = None,
    max_chars: int = 8000,
) -> str:
    """
    Deterministic digest of a message prefix.

    One line per message: user requests, assistant text and the tools it
    called, and tool outcomes. A previous summary is folded in at the top.
    When the digest exceeds max_chars the oldest lines are dropped first.
    """
    lines: list[str] = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            continue
        if message.role == MessageRole.USER:
            lines.append(f"- User: {_clip(message.text)}")
        elif message.role == MessageRole.ASSISTANT:
            parts = []
            if message.text:
                parts.append(_clip(message.text))
            for call in message.tool_calls:
                args = ", ".join(f"{k}={json.dumps(v, ensure_ascii=False)}" for k, v in call.arguments.items())
                parts.append(f"called {call.name}({_clip(args, 80)})")
            lines.append(f"- Assistant: {'; '.join(parts) or '(no text)'}")
        elif message.role == MessageRole.TOOL_RESULT:
            for result in message.tool_results:
                status = "error" if result.is_error else "ok"
                lines.append(f"- Tool {result.tool_name or result.call_id} ({status}): {_clip(result.output, 120)}")

    header = ""
    if previous_summary:
        header = f"Earlier context:\n{previous_summary.strip()}\n\n"
    body = "Conversation so far:\n" + "\n".join(lines)

    summary = header + body
    if len(summary) <= max_chars:
        return summary

    # The previous summary gets at most half the space
    if len(header) > max_chars // 2:
        previous = _clip(previous_summary or "", max(10, max_chars // 2 - 20))
        header = f"Earlier context:\n{previous}\n\n"

    # Keep the most recent lines that fit
    omitted = "Conversation so far:\n(earlier lines omitted)\n"
    kept: list[str] = []
    size = len(header) + len(omitted)
    for line in reversed(lines):
        if size + len(line) + 1 > max_chars:
            break
        kept.append(line)
        size += len(line) + 1
    return header + omitted + "\n".join(reversed(kept))


# ============================================================================
# Compactors
# ============================================================================


class Compactor(ABC):
    """Turns an oversized message path into a shorter one."""

    @abstractmethod
    def compact(self, path: list[Message], budget: int) -> list[Message]:
        """
        Compact a path to fit a token budget.

        Must be deterministic and must return the input unchanged when it
        already fits the budget.
        """


class SummaryCompactor(Compactor):
    """
    Replaces the oldest messages with one summary message.

    Layout of the result:
        [system?] [summary user message] [recent messages, verbatim]

    A summary message already at the head of the path is folded into the new
    summary instead of being nested inside it.
    """

    def __init__(
        self,
        keep_recent_tokens: int = 20_000,
        summarizer: Summarizer | None = None,
        max_summary_tokens: int = 2_000,
    ):
        self.keep_recent_tokens = keep_recent_tokens
        self.summarizer = summarizer
        self.max_summary_tokens = max_summary_tokens

    def compact(self, path: list[Message], budget: int) -> list[Message]:
        tokens_before = estimate_messages_tokens(path)
        if tokens_before <= budget:
            return list(path)

        head: list[Message] = []
        body = list(path)
        if body and body[0].role == MessageRole.SYSTEM:
            head.append(body.pop(0))

        previous_summary = None
        if body and is_summary_message(body[0]):
            previous_summary = extract_summary(body.pop(0))

        keep_recent = max(1, min(self.keep_recent_tokens, budget))
        cut = find_cut_point(body, keep_recent)
        if cut == 0:
            logger.warning(
                "compaction_no_cut_point",
                tokens_before=tokens_before,
                budget_tokens=budget,
                messages=len(path),
            )
            return list(path)

        to_summarize, kept = body[:cut], body[cut:]
        summary = self._summarize(to_summarize, previous_summary, budget)
        result = head + [make_summary_message(summary)] + kept

        logger.info(
            "context_compacted",
            tokens_before=tokens_before,
            tokens_after=estimate_messages_tokens(result),
            messages_summarized=len(to_summarize),
            messages_kept=len(kept),
        )
        return result

    def _summarize(self, messages: list[Message], previous_summary: str | None, budget: int) -> str:
        if self.summarizer is not None:
            return self.summarizer(messages, previous_summary)
        max_tokens = max(1, min(self.max_summary_tokens, budget // 4))
        return extractive_summary(
            messages, previous_summary, max_chars=max_tokens * CHARS_PER_TOKEN
        )


__all__ = [
    "CHARS_PER_TOKEN",
    "SUMMARY_PREFIX",
    "SUMMARY_SUFFIX",
    "Compactor",
    "SummaryCompactor",
    "Summarizer",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    "find_cut_point",
    "make_summary_message",
    "is_summary_message",
    "extract_summary",
    "extractive_summary",
]
