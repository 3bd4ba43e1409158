"""
Best-effort parsing of incomplete JSON.

Tool-call arguments arrive as JSON fragments while the model is still
streaming. parse_streaming_json closes whatever is open (strings, objects,
arrays) so consumers can preview the arguments before the call is complete.
"""

import json
from typing import Any


def _close_partial_json(text: str) -> str:
    closers: list[str] = []
    in_string = False
    escape_next = False

    for ch in text:
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]" and closers:
            closers.pop()

    fixed = text
    if in_string:
        if escape_next:
            # Drop a dangling backslash so the closing quote isn't escaped
            fixed = fixed[:-1]
        fixed += '"'
    return fixed + "".join(reversed(closers))


def parse_streaming_json(partial_json: str | None) -> dict[str, Any]:
    """
    Parse possibly incomplete JSON into an object.

    Args:
        partial_json: Accumulated argument fragments

    Returns:
        dict: Parsed object, or {} when nothing usable can be recovered
    """
    if not partial_json or not partial_json.strip():
        return {}
    text = partial_json.strip()

    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        try:
            value = json.loads(_close_partial_json(text))
        except json.JSONDecodeError:
            # A dangling key or separator ("{"a": 1, "b") can't be closed
            # as-is; retry without the incomplete trailing member.
            cut = max(text.rfind(","), text.rfind("{"))
            if cut <= 0:
                return {}
            head = text[:cut] if text[cut] == "," else text[: cut + 1]
            try:
                value = json.loads(_close_partial_json(head))
            except json.JSONDecodeError:
                return {}

    return value if isinstance(value, dict) else {}


__all__ = ["parse_streaming_json"]
