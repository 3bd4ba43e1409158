"""
Context builder.

Turns a session's active path into the message list sent to the model.
"""

from typing import TYPE_CHECKING

from skein.domain import Message, MessageRole, ToolCallBlock, ToolErrorKind
from skein.runtime.compaction import estimate_messages_tokens
from skein.utils.logging import get_logger

if TYPE_CHECKING:
    from skein.config import CompactionConfig
    from skein.runtime.compaction import Compactor
    from skein.session import Session

logger = get_logger(__name__)

ORPHANED_RESULT_TEXT = "No result provided"


def build_context(
    path: list[Message],
    compaction: "CompactionConfig | None" = None,
    compactor: "Compactor | None" = None,
    system_prompt: str | None = None,
) -> list[Message]:
    """
    Build LLM context from an active path.

    Args:
        path: Messages root to active leaf
        compaction: Budget settings; no compaction when None or disabled
        compactor: Compactor consulted when the context exceeds the budget
        system_prompt: Prepended when the path has no system root

    Returns:
        list[Message]: Context to send to the model
    """
    messages = repair_orphaned_tool_calls(path)

    if system_prompt and (not messages or messages[0].role != MessageRole.SYSTEM):
        messages.insert(0, Message.system(system_prompt))

    if compaction is None or not compaction.enabled or compactor is None:
        return messages

    estimated = estimate_messages_tokens(messages)
    if estimated <= compaction.budget:
        return messages

    logger.debug(
        "context_over_budget",
        estimated_tokens=estimated,
        budget_tokens=compaction.budget,
        message_count=len(messages),
    )
    return compactor.compact(messages, compaction.budget)


def pending_tool_calls(path: list[Message]) -> list[ToolCallBlock]:
    """Tool calls of the last assistant message on path that have no tool_result yet."""
    answered: set[str] = set()
    for message in reversed(path):
        if message.is_tool_result():
            answered.update(r.call_id for r in message.tool_results)
            continue
        if message.has_tool_calls():
            return [c for c in message.tool_calls if c.id not in answered]
        break
    return []


def awaits_user_turn(path: list[Message]) -> bool:
    """Whether the model has nothing to answer until a user message is added."""
    if not path:
        return True
    last = path[-1]
    if last.role == MessageRole.SYSTEM:
        return True
    return last.role == MessageRole.ASSISTANT and not last.has_tool_calls()


def orphaned_result(call: ToolCallBlock, output: str = ORPHANED_RESULT_TEXT) -> Message:
    """Error tool_result standing in for a call that never produced one."""
    return Message.tool_result(
        call.id, call.name, output, is_error=True, error_kind=ToolErrorKind.CANCELLED
    )


def repair_orphaned_tool_calls(messages: list[Message]) -> list[Message]:
    """
    Give every tool_call a tool_result before the conversation moves on.

    A result is inserted for each unanswered call right before the next
    user or assistant message (or at the end). The input list is not
    modified.

    Returns:
        list[Message]: Messages with synthetic error results where needed
    """
    repaired: list[Message] = []
    pending: list[ToolCallBlock] = []
    answered: set[str] = set()

    def flush() -> None:
        orphans = [c for c in pending if c.id not in answered]
        if orphans:
            logger.debug("orphaned_tool_calls_repaired", call_ids=[c.id for c in orphans])
        repaired.extend(orphaned_result(c) for c in orphans)
        pending.clear()
        answered.clear()

    for message in messages:
        if message.is_tool_result():
            answered.update(r.call_id for r in message.tool_results)
        elif message.role in (MessageRole.USER, MessageRole.ASSISTANT):
            flush()
            if message.has_tool_calls():
                pending.extend(message.tool_calls)
        repaired.append(message)

    flush()
    return repaired


def validate_context(messages: list[Message]) -> bool:
    """
    Check that every tool_result answers an earlier tool_call and every
    tool_call is answered before the next assistant turn.

    Problems are logged as warnings.

    Returns:
        bool: True if all calls and results pair up
    """
    valid = True
    pending: dict[str, str] = {}

    for i, message in enumerate(messages):
        if message.role == MessageRole.ASSISTANT:
            if pending:
                logger.warning("tool_calls_unanswered", message_index=i, call_ids=sorted(pending))
                valid = False
                pending.clear()
            for call in message.tool_calls:
                pending[call.id] = call.name
        elif message.role == MessageRole.TOOL_RESULT:
            for result in message.tool_results:
                if result.call_id in pending:
                    pending.pop(result.call_id)
                else:
                    logger.warning(
                        "tool_call_id_not_found", message_index=i, tool_call_id=result.call_id
                    )
                    valid = False

    if pending:
        logger.warning("tool_calls_unanswered", message_index=len(messages), call_ids=sorted(pending))
        valid = False
    return valid


def get_context_summary(session: "Session") -> dict:
    """
    Get a summary of the active path without building the context.

    Returns:
        dict: Counts and token estimate
    """
    path = session.active_path()
    return {
        "total_messages": len(path),
        "user_messages": sum(1 for m in path if m.role == MessageRole.USER),
        "assistant_messages": sum(1 for m in path if m.role == MessageRole.ASSISTANT),
        "tool_results": sum(1 for m in path if m.role == MessageRole.TOOL_RESULT),
        "total_tool_calls": sum(len(m.tool_calls) for m in path),
        "estimated_tokens": estimate_messages_tokens(path),
        "nodes": len(session.tree),
        "has_branches": session.tree.has_branches(),
    }


__all__ = [
    "build_context",
    "validate_context",
    "get_context_summary",
    "pending_tool_calls",
    "awaits_user_turn",
    "repair_orphaned_tool_calls",
    "orphaned_result",
    "ORPHANED_RESULT_TEXT",
]
