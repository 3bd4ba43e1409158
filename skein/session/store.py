"""
Session persistence.

Responsibilities:
- Append-only record log per session (JSON Lines on disk, or in memory)
- Durable appends: write, flush and fsync before returning
- Reading back: header, node records, active-leaf pointer records
- Tolerating a torn final line and upgrading legacy record types

Does NOT handle:
- Tree invariants (Session replays records into a SessionTree)
- Locating session files (SessionManager)

File layout:
    {"type": "session", "version": 3, "id": ..., "timestamp": ..., "cwd": ..., ...}
    {"type": "node", "sequence": 1, "node_id": ..., "parent_id": null, "timestamp": ..., "message": {...}}
    {"type": "active_leaf", "sequence": 7, "node_id": ..., "timestamp": ...}
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from skein.domain import (
    Message,
    MessageRole,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
    UnknownBlock,
    Usage,
)
from skein.errors import CorruptLogError, SessionExistsError, SessionNotFoundError
from skein.session.tree import SessionNode
from skein.utils.logging import get_logger

logger = get_logger(__name__)

CURRENT_SESSION_VERSION = 3


# ============================================================================
# Records
# ============================================================================


class SessionHeader(BaseModel):
    """First line of a session file."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Literal["session"] = "session"
    version: int = CURRENT_SESSION_VERSION
    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    cwd: str = ""
    parent_session: str | None = Field(default=None, alias="parentSession")
    title: str | None = None


class NodeRecord(BaseModel):
    """One appended message node."""

    model_config = ConfigDict(frozen=True)

    type: Literal["node"] = "node"
    sequence: int
    node_id: str
    parent_id: str | None = None
    timestamp: datetime
    message: Message

    @classmethod
    def from_node(cls, node: SessionNode) -> "NodeRecord":
        return cls(
            sequence=node.sequence,
            node_id=node.id,
            parent_id=node.parent_id,
            timestamp=node.timestamp,
            message=node.message,
        )

    def to_node(self) -> SessionNode:
        return SessionNode(
            id=self.node_id,
            parent_id=self.parent_id,
            timestamp=self.timestamp,
            sequence=self.sequence,
            message=self.message,
        )


class ActiveLeafRecord(BaseModel):
    """Explicit active-leaf pointer (branch switch)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["active_leaf"] = "active_leaf"
    sequence: int
    node_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


SessionRecord = Annotated[Union[NodeRecord, ActiveLeafRecord], Field(discriminator="type")]

_record_adapter: TypeAdapter[NodeRecord | ActiveLeafRecord] = TypeAdapter(SessionRecord)


@dataclass
class SessionLog:
    """Everything read back from a store."""

    header: SessionHeader | None = None
    records: list[NodeRecord | ActiveLeafRecord] = field(default_factory=list)
    # Number of unreadable trailing lines that were skipped (0 or 1)
    skipped_tail: int = 0


# ============================================================================
# Legacy upgrade
# ============================================================================

# Record types from older session files that carry a message
_LEGACY_MESSAGE_TYPES = frozenset(
    {"message", "user", "assistant", "toolResult", "system", "summary", "compaction", "branch_summary"}
)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


def _legacy_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(b.get("text", "") for b in content if isinstance(b, dict))
    return ""


def _legacy_usage(raw: Any) -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=raw.get("input", raw.get("input_tokens", 0)) or 0,
        output_tokens=raw.get("output", raw.get("output_tokens", 0)) or 0,
        cache_read_tokens=raw.get("cacheRead", raw.get("cache_read_tokens", 0)) or 0,
        cache_write_tokens=raw.get("cacheWrite", raw.get("cache_write_tokens", 0)) or 0,
    )


def _legacy_blocks(content: Any) -> list[Any]:
    if isinstance(content, str):
        return [TextBlock(text=content)]
    blocks: list[Any] = []
    for raw in content or []:
        if not isinstance(raw, dict):
            continue
        kind = raw.get("type")
        if kind == "text":
            blocks.append(TextBlock(text=raw.get("text", "")))
        elif kind == "thinking":
            blocks.append(
                ReasoningBlock(
                    text=raw.get("thinking", ""), signature=raw.get("thinkingSignature")
                )
            )
        elif kind == "toolCall":
            arguments = raw.get("arguments")
            blocks.append(
                ToolCallBlock(
                    id=raw.get("id", ""),
                    name=raw.get("name", ""),
                    arguments=arguments if isinstance(arguments, dict) else {},
                )
            )
        else:
            blocks.append(UnknownBlock(**raw))
    return blocks


def _legacy_message(raw: dict[str, Any]) -> Message:
    role = raw.get("role")
    if role == "user":
        return Message(role=MessageRole.USER, content=tuple(_legacy_blocks(raw.get("content"))))
    if role == "assistant":
        return Message.assistant(
            _legacy_blocks(raw.get("content")),
            usage=_legacy_usage(raw.get("usage")),
            stop_reason=raw.get("stopReason"),
        )
    if role == "toolResult":
        return Message.tool_result(
            call_id=raw.get("toolCallId", ""),
            tool_name=raw.get("toolName", ""),
            output=_legacy_text(raw.get("content")),
            is_error=bool(raw.get("isError", False)),
            details=raw.get("details") if isinstance(raw.get("details"), dict) else None,
        )
    raise ValueError(f"Unsupported legacy message role: {role!r}")


def upgrade_legacy_record(raw: dict[str, Any], sequence: int) -> NodeRecord | None:
    """
    Convert an older-format record into a NodeRecord.

    Returns None for legacy records that carry no message (model switches,
    labels, ...); their children are re-parented by the caller.

    Raises:
        ValueError: If the record is a message type that cannot be upgraded
    """
    kind = raw.get("type")
    if kind not in _LEGACY_MESSAGE_TYPES:
        return None

    if kind == "message":
        message = _legacy_message(raw.get("message") or {})
    elif kind == "user":
        message = Message.user(_legacy_text(raw.get("content")))
    elif kind == "system":
        message = Message.system(_legacy_text(raw.get("message")))
    elif kind == "assistant":
        payload = raw.get("message") or {}
        message = Message.assistant(
            _legacy_blocks(payload.get("content")),
            usage=_legacy_usage(payload.get("usage")),
            stop_reason=payload.get("stopReason"),
        )
    elif kind == "toolResult":
        message = Message.tool_result(
            call_id=raw.get("toolCallId", ""),
            tool_name=raw.get("toolName", ""),
            output=_legacy_text(raw.get("content")),
            is_error=bool(raw.get("isError", False)),
        )
    else:
        from skein.runtime.compaction import make_summary_message

        message = make_summary_message(raw.get("summary", ""))

    return NodeRecord(
        sequence=sequence,
        node_id=raw["id"],
        parent_id=raw.get("parentId"),
        timestamp=_parse_timestamp(raw.get("timestamp")),
        message=message,
    )


def _is_legacy(raw: dict[str, Any]) -> bool:
    return "sequence" not in raw and "id" in raw


def parse_records(lines: list[str], source: str = "<memory>") -> SessionLog:
    """
    Parse session file lines into a SessionLog.

    A final line that cannot be parsed is skipped with a warning (torn
    write). An unreadable line anywhere else raises CorruptLogError.
    """
    log = SessionLog()
    # Legacy non-message ids mapped to their nearest message ancestor
    aliases: dict[str, str | None] = {}
    legacy_sequence = 0

    numbered = [(i + 1, line) for i, line in enumerate(lines) if line.strip()]
    for position, (line_number, line) in enumerate(numbered):
        is_last = position == len(numbered) - 1
        try:
            raw = json.loads(line)
            if not isinstance(raw, dict):
                raise ValueError("record is not a JSON object")

            if raw.get("type") == "session":
                if log.header is not None or log.records:
                    raise ValueError("session header must be the first record")
                log.header = SessionHeader.model_validate(raw)
                continue

            if _is_legacy(raw):
                legacy_sequence += 1
                record = upgrade_legacy_record(raw, legacy_sequence)
                parent_id = raw.get("parentId")
                while parent_id in aliases:
                    parent_id = aliases[parent_id]
                if record is None:
                    aliases[raw["id"]] = parent_id
                    continue
                if record.parent_id != parent_id:
                    record = record.model_copy(update={"parent_id": parent_id})
            else:
                record = _record_adapter.validate_python(raw)
        except (ValueError, KeyError, ValidationError) as e:
            if is_last:
                logger.warning(
                    "session_log_torn_tail",
                    source=source,
                    line_number=line_number,
                    error=str(e),
                )
                log.skipped_tail = 1
                break
            raise CorruptLogError(f"Unreadable record in {source}: {e}", line_number) from e

        log.records.append(record)

    log.records.sort(key=lambda r: r.sequence)
    return log


def dump_record(record: BaseModel) -> str:
    """Serialize a record to one JSON line (without newline)."""
    return json.dumps(record.model_dump(mode="json", by_alias=True), ensure_ascii=False)


# ============================================================================
# Stores
# ============================================================================


class SessionStore(ABC):
    """
    Session store interface.
    Responsible for durable, append-only persistence of one session's records.
    """

    @abstractmethod
    async def create(self, header: SessionHeader) -> None:
        """
        Create the session log with its header.

        Raises:
            SessionExistsError: If the log already exists
        """

    @abstractmethod
    async def load(self) -> SessionLog:
        """
        Read the header and all records, sorted by sequence.

        Raises:
            SessionNotFoundError: If the log does not exist
            CorruptLogError: If a non-final record is unreadable
        """

    @abstractmethod
    async def append(self, record: NodeRecord | ActiveLeafRecord) -> None:
        """Durably append one record. Returns only once it is on stable storage."""


class InMemorySessionStore(SessionStore):
    """
    In-memory implementation of SessionStore.
    Used for testing and ephemeral sessions. Records are kept serialized so
    reloads go through the same parsing path as files.
    """

    def __init__(self) -> None:
        self.lines: list[str] | None = None
        self._lock = asyncio.Lock()

    async def create(self, header: SessionHeader) -> None:
        async with self._lock:
            if self.lines is not None:
                raise SessionExistsError(f"Session {header.id} already exists")
            self.lines = [dump_record(header)]

    async def load(self) -> SessionLog:
        if self.lines is None:
            raise SessionNotFoundError("In-memory session has not been created")
        return parse_records(list(self.lines))

    async def append(self, record: NodeRecord | ActiveLeafRecord) -> None:
        async with self._lock:
            if self.lines is None:
                self.lines = []
            self.lines.append(dump_record(record))


class JsonlSessionStore(SessionStore):
    """
    JSON Lines session file.

    Appends are written, flushed and fsynced in a worker thread. A torn final
    line found on load is truncated away before the next append so new
    records start on a clean line.
    """

    FILE_MODE = 0o600

    def __init__(self, path: str | Path):
        self.path = Path(path)
        # Byte offset where the torn tail starts, if one was found
        self._truncate_at: int | None = None
        self._needs_newline = False
        self._scanned = False

    async def create(self, header: SessionHeader) -> None:
        await asyncio.to_thread(self._create_sync, header)

    def _create_sync(self, header: SessionHeader) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, self.FILE_MODE)
        except FileExistsError:
            raise SessionExistsError(f"Session file already exists: {self.path}") from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(dump_record(header) + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._scanned = True
        logger.debug("session_file_created", path=str(self.path))

    async def load(self) -> SessionLog:
        return await asyncio.to_thread(self._load_sync)

    def _load_sync(self) -> SessionLog:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            raise SessionNotFoundError(f"Session file not found: {self.path}") from None

        text = data.decode("utf-8", errors="replace")
        lines = text.split("\n")
        log = parse_records(lines, source=str(self.path))

        self._truncate_at = None
        self._needs_newline = False
        if log.skipped_tail:
            # The torn record is the last non-empty line
            stripped = data.rstrip(b"\n")
            self._truncate_at = stripped.rfind(b"\n") + 1
        elif data and not data.endswith(b"\n"):
            self._needs_newline = True
        self._scanned = True
        return log

    async def append(self, record: NodeRecord | ActiveLeafRecord) -> None:
        line = dump_record(record) + "\n"
        await asyncio.to_thread(self._append_sync, line)

    def _append_sync(self, line: str) -> None:
        if not self._scanned and self.path.exists():
            self._load_sync()

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, self.FILE_MODE)
        with os.fdopen(fd, "r+b", buffering=0) as f:
            if self._truncate_at is not None:
                logger.info(
                    "session_log_tail_truncated", path=str(self.path), offset=self._truncate_at
                )
                f.truncate(self._truncate_at)
                self._truncate_at = None
            start = f.seek(0, os.SEEK_END)
            try:
                if self._needs_newline:
                    f.write(b"\n")
                f.write(line.encode("utf-8"))
                f.flush()
                os.fsync(f.fileno())
            except OSError:
                # Never leave a partial record for the next append to land behind
                f.truncate(start)
                raise
            self._needs_newline = False
        self._scanned = True

    async def read_header(self) -> SessionHeader | None:
        """Read only the header line (cheap listing)."""
        return await asyncio.to_thread(self.read_header_sync)

    def read_header_sync(self) -> SessionHeader | None:
        try:
            with open(self.path, encoding="utf-8") as f:
                first = f.readline()
        except FileNotFoundError:
            raise SessionNotFoundError(f"Session file not found: {self.path}") from None
        try:
            raw = json.loads(first)
        except json.JSONDecodeError:
            return None
        if not isinstance(raw, dict) or raw.get("type") != "session":
            return None
        try:
            return SessionHeader.model_validate(raw)
        except ValidationError:
            return None


__all__ = [
    "CURRENT_SESSION_VERSION",
    "SessionHeader",
    "NodeRecord",
    "ActiveLeafRecord",
    "SessionRecord",
    "SessionLog",
    "SessionStore",
    "InMemorySessionStore",
    "JsonlSessionStore",
    "parse_records",
    "upgrade_legacy_record",
    "dump_record",
]
