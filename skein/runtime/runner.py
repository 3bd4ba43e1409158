"""
AgentRunner - front door for running an agent on a session

Responsibilities:
- Own the CancellationSignal and EventStream of each run
- Hold the session's writer lease for the whole run
- Prepare the active leaf for prompt / continue / edit / regenerate
- Queue steering and follow-up messages for the loop
- Cancel and drain the run when the consumer detaches early

Note: The loop itself (turns, tools, termination) is AgentLoop.
"""

import asyncio
from typing import TYPE_CHECKING, AsyncIterator
from uuid import uuid4

from skein.config import ExecutionConfig
from skein.domain import Event, Message, MessageRole
from skein.errors import SessionBusyError, UnknownNodeError
from skein.runtime.compaction import Compactor
from skein.runtime.context import awaits_user_turn, orphaned_result, pending_tool_calls
from skein.runtime.control import CancellationSignal
from skein.runtime.executor import AgentLoop
from skein.runtime.protocol import RunOutcome
from skein.runtime.steering import MessageQueue
from skein.runtime.wire import EventStream
from skein.utils.logging import get_logger

if TYPE_CHECKING:
    from skein.providers.llm import Model
    from skein.providers.tools import BaseTool, ToolRegistry
    from skein.session import Session

logger = get_logger(__name__)


class AgentRunner:
    """
    Runs an AgentLoop against one session.

    Examples:
        runner = AgentRunner(model, session, tools=[ReadTool(), GrepTool()])

        async for event in runner.run_stream("Fix the failing test"):
            render(event)

        # From another task
        runner.steer("Use the v2 API instead")
        runner.cancel("User pressed Ctrl-C")
    """

    def __init__(
        self,
        model: "Model",
        session: "Session",
        tools: "ToolRegistry | list[BaseTool] | None" = None,
        config: ExecutionConfig | None = None,
        compactor: Compactor | None = None,
    ):
        self.session = session
        self.config = config or ExecutionConfig()
        self.loop = AgentLoop(model, tools=tools, config=self.config, compactor=compactor)
        self._signal: CancellationSignal | None = None
        self.steering = MessageQueue(self.config.steering_mode)
        self.follow_ups = MessageQueue(self.config.follow_up_mode)

    # --- Run entry points ---

    async def prompt(self, text: str, stream: EventStream | None = None) -> RunOutcome:
        """
        Append a user message under the active leaf and run.

        Args:
            text: User message
            stream: Stream receiving the run's events; drained internally when None
        """
        async with self.session.writer():
            await self._close_pending_tool_calls()
            await self.session.append_to_leaf(Message.user(text))
            return await self._run(stream)

    async def continue_run(self, stream: EventStream | None = None) -> RunOutcome:
        """
        Resume from the active leaf (after a crash, cancellation or turn limit).

        A final answer or system leaf can be continued only while messages
        are queued; the loop delivers them first.

        Raises:
            ValueError: If the session is empty, or the active leaf needs a
                new user message and none is queued
        """
        leaf = self.session.active_leaf
        if leaf is None:
            raise ValueError("Cannot continue an empty session")
        if awaits_user_turn(self.session.active_path()) and not self.has_queued_messages:
            if leaf.message.role == MessageRole.SYSTEM:
                raise ValueError("Cannot continue from a system message; send a prompt")
            raise ValueError("Active leaf is already a final answer; send a new prompt")

        async with self.session.writer():
            return await self._run(stream)

    async def edit(self, node_id: str, text: str, stream: EventStream | None = None) -> RunOutcome:
        """
        Replace an earlier user message by branching from its parent and run.

        The original user node and its subtree stay in the tree.

        Raises:
            UnknownNodeError: If node_id is not in the tree
            ValueError: If node_id is not a user message
        """
        node = self.session.tree.get(node_id)
        if node.message.role != MessageRole.USER:
            raise ValueError(f"Node {node_id} is a {node.message.role.value} message, not user")

        async with self.session.writer():
            await self.session.append(node.parent_id, Message.user(text))
            logger.info("session_branch_edit", session_id=self.session.id, edited_node=node_id)
            return await self._run(stream)

    async def regenerate(
        self, node_id: str | None = None, stream: EventStream | None = None
    ) -> RunOutcome:
        """
        Produce a new answer for a user turn on a fresh branch.

        Args:
            node_id: The user node to answer again, or an assistant node of
                that turn. Defaults to the last user node on the active path.

        Raises:
            UnknownNodeError: If node_id is not in the tree
            ValueError: If no user message precedes the node
        """
        user_node_id = self._find_user_turn(node_id)

        async with self.session.writer():
            if self.session.active_leaf_id != user_node_id:
                await self.session.set_active_leaf(user_node_id)
            logger.info("session_branch_regenerate", session_id=self.session.id, user_node=user_node_id)
            return await self._run(stream)

    async def run_stream(self, text: str | None = None) -> AsyncIterator[Event]:
        """
        Run and yield events as they are produced.

        With text, a user message is appended first; without it the run
        continues from the active leaf. Leaving the iteration early cancels
        the run and drains the remaining events.
        """
        stream = EventStream(maxsize=self.config.event_buffer_size)
        if text is not None:
            task = asyncio.create_task(self.prompt(text, stream))
        else:
            task = asyncio.create_task(self.continue_run(stream))

        try:
            async for event in self._read_until_done(stream, task):
                yield event
        finally:
            drainer = None
            if not task.done():
                self.cancel("Consumer detached")
                drainer = asyncio.create_task(stream.drain())
            try:
                await task
            finally:
                if drainer is not None and not drainer.done():
                    drainer.cancel()

    def cancel(self, reason: str = "Run cancelled by user") -> bool:
        """
        Cancel the current run.

        Returns:
            bool: False if no run is active or it was already cancelled
        """
        if self._signal is None:
            return False
        return self._signal.cancel(reason)

    @property
    def is_running(self) -> bool:
        return self._signal is not None

    # --- Queued messages ---

    def steer(self, text: str) -> None:
        """
        Queue a message that interrupts the current run.

        It is delivered once the running tools finish; tool calls of the
        same batch that have not started are answered as skipped. Queued
        while idle, it is delivered at the start of the next run.
        """
        self.steering.push(Message.user(text))
        logger.debug("steering_queued", session_id=self.session.id, pending=len(self.steering))

    def follow_up(self, text: str) -> None:
        """Queue a message delivered only when the agent would otherwise finish."""
        self.follow_ups.push(Message.user(text))
        logger.debug("follow_up_queued", session_id=self.session.id, pending=len(self.follow_ups))

    def clear_steering_queue(self) -> None:
        self.steering.clear()

    def clear_follow_up_queue(self) -> None:
        self.follow_ups.clear()

    def clear_all_queues(self) -> None:
        self.steering.clear()
        self.follow_ups.clear()

    @property
    def has_queued_messages(self) -> bool:
        return len(self.steering) > 0 or len(self.follow_ups) > 0

    # --- Internals ---

    async def _close_pending_tool_calls(self) -> None:
        """
        Record a result for tool calls left unanswered on the active path.

        A new prompt moves the conversation on, so those calls will never
        run; each gets an error result before the user message is appended.
        """
        pending = pending_tool_calls(self.session.active_path())
        for call in pending:
            await self.session.append_to_leaf(
                orphaned_result(call, "Tool call was interrupted before it produced a result")
            )
        if pending:
            logger.info(
                "pending_tool_calls_closed",
                session_id=self.session.id,
                call_ids=[c.id for c in pending],
            )

    async def _run(self, stream: EventStream | None) -> RunOutcome:
        if self._signal is not None:
            raise SessionBusyError(f"Runner for session {self.session.id} already has an active run")

        signal = CancellationSignal()
        self._signal = signal
        own_stream = stream is None
        stream = stream or EventStream(maxsize=self.config.event_buffer_size)
        run_id = str(uuid4())

        drainer = asyncio.create_task(stream.drain()) if own_stream else None
        try:
            outcome = await self.loop.run(
                self.session,
                signal,
                stream,
                run_id=run_id,
                steering=self.steering,
                follow_ups=self.follow_ups,
            )
            if drainer is not None and stream.finished:
                await drainer
            return outcome
        finally:
            self._signal = None
            if drainer is not None and not drainer.done():
                drainer.cancel()

    async def _read_until_done(
        self, stream: EventStream, task: "asyncio.Task[RunOutcome]"
    ) -> AsyncIterator[Event]:
        """Read the stream; stop early if the run task failed before finishing it."""
        reader = stream.read()
        while True:
            next_event = asyncio.ensure_future(reader.__anext__())
            done, _ = await asyncio.wait({next_event, task}, return_when=asyncio.FIRST_COMPLETED)
            if next_event not in done:
                # The task ended; any terminal event is already buffered
                if stream.finished:
                    try:
                        yield await next_event
                    except StopAsyncIteration:
                        return
                    continue
                next_event.cancel()
                return
            try:
                yield next_event.result()
            except StopAsyncIteration:
                return

    def _find_user_turn(self, node_id: str | None) -> str:
        if node_id is None:
            nodes = self.session.active_nodes()
        else:
            if node_id not in self.session.tree:
                raise UnknownNodeError(node_id)
            nodes = self.session.tree.path_to(node_id)

        for node in reversed(nodes):
            if node.message.role == MessageRole.USER:
                return node.id
        raise ValueError("No user message to regenerate an answer for")


__all__ = ["AgentRunner"]
