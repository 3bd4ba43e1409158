"""
Adapters for converting between domain models and external formats.

This module handles all format conversions, keeping domain models pure.
Provider adapters use it to translate a context into their request shape.
"""

import json
from typing import Any

from .models import (
    Message,
    MessageRole,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)


class MessageAdapter:
    """Adapter for converting Message to/from LLM message format"""

    @staticmethod
    def to_openai_messages(message: Message) -> list[dict[str, Any]]:
        """
        Convert one Message to OpenAI-compatible chat messages.

        A tool_result message becomes one "tool" message per result block.

        Args:
            message: Message instance

        Returns:
            list: Messages in OpenAI format
        """
        if message.role == MessageRole.TOOL_RESULT:
            return [
                {
                    "role": "tool",
                    "tool_call_id": block.call_id,
                    "name": block.tool_name,
                    "content": block.output,
                }
                for block in message.content
                if isinstance(block, ToolResultBlock)
            ]

        msg: dict[str, Any] = {"role": message.role.value}
        text = message.text
        msg["content"] = text if text or message.role != MessageRole.ASSISTANT else None

        # Reasoning is replayed for providers that accept it back (DeepSeek style)
        reasoning = message.reasoning
        if reasoning:
            msg["reasoning_content"] = reasoning

        tool_calls = message.tool_calls
        if tool_calls:
            msg["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": (
                            call.raw_arguments
                            if call.raw_arguments is not None
                            else json.dumps(call.arguments, ensure_ascii=False)
                        ),
                    },
                }
                for call in tool_calls
            ]
        return [msg]

    @staticmethod
    def from_openai_message(msg: dict[str, Any]) -> Message:
        """
        Create a Message from an OpenAI-format chat message.

        Args:
            msg: Message in OpenAI format

        Returns:
            Message: Message instance
        """
        role = msg["role"]
        if role == "tool":
            return Message.tool_result(
                call_id=msg.get("tool_call_id", ""),
                tool_name=msg.get("name", ""),
                output=msg.get("content") or "",
            )

        blocks: list[Any] = []
        if msg.get("reasoning_content"):
            blocks.append(ReasoningBlock(text=msg["reasoning_content"]))
        if msg.get("content"):
            blocks.append(TextBlock(text=msg["content"]))
        for call in msg.get("tool_calls") or []:
            function = call.get("function", {})
            raw = function.get("arguments") or "{}"
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError:
                arguments = None
            if isinstance(arguments, dict):
                blocks.append(
                    ToolCallBlock(id=call.get("id", ""), name=function.get("name", ""), arguments=arguments)
                )
            else:
                blocks.append(
                    ToolCallBlock(id=call.get("id", ""), name=function.get("name", ""), raw_arguments=raw)
                )
        return Message(role=MessageRole(role), content=tuple(blocks))

    @staticmethod
    def messages_to_openai(messages: list[Message]) -> list[dict[str, Any]]:
        """
        Convert list of Messages to list of LLM messages.

        Args:
            messages: List of Message instances

        Returns:
            list: List of messages in OpenAI format
        """
        result: list[dict[str, Any]] = []
        for message in messages:
            result.extend(MessageAdapter.to_openai_messages(message))
        return result


__all__ = ["MessageAdapter"]
