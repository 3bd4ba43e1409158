"""
AgentLoop - LLM ↔ Tool loop over a session tree

Responsibilities:
- Build context from the active path (compacted when over budget)
- Stream a completion, republishing chunks as events
- Assemble and append the assistant message
- Execute tool calls and append one tool_result per call, in call order
- Deliver queued steering and follow-up messages as user nodes
- End every run with exactly one terminal event

Does NOT handle:
- Creating the cancellation signal or event stream (AgentRunner)
- Provider request translation (Model adapters)
"""

import json
from typing import TYPE_CHECKING
from uuid import uuid4

from skein.config import ExecutionConfig
from skein.domain import (
    Message,
    ReasoningBlock,
    RunErrorKind,
    TextBlock,
    ToolCallBlock,
    ToolResult,
    Usage,
    create_done_event,
    create_error_event,
    create_message_completed_event,
    create_reasoning_delta_event,
    create_text_delta_event,
    create_tool_call_completed_event,
    create_tool_call_delta_event,
    create_tool_call_started_event,
    create_tool_execution_started_event,
    create_usage_event,
)
from skein.errors import ProviderError, RunCancelledError, SessionError, StreamClosedError
from skein.providers.tools import BaseTool, ToolInvocation, ToolRegistry
from skein.runtime.compaction import Compactor, SummaryCompactor
from skein.runtime.context import awaits_user_turn, build_context, pending_tool_calls
from skein.runtime.control import race_cancellation
from skein.runtime.protocol import LoopState, RunOutcome
from skein.runtime.steering import SKIPPED_FOR_STEERING, MessageQueue
from skein.runtime.tool_executor import ToolExecutor
from skein.utils.json_parse import parse_streaming_json
from skein.utils.logging import get_logger

if TYPE_CHECKING:
    from skein.providers.llm import Model, StreamChunk, ToolCallFragment
    from skein.runtime.control import CancellationSignal
    from skein.runtime.wire import EventStream
    from skein.session import Session

logger = get_logger(__name__)


class MessageAssembler:
    """
    Accumulate streaming chunks into one assistant message.

    Tool call fragments are keyed by index; id and name usually arrive with
    the first fragment, argument JSON in any number of pieces.
    """

    def __init__(self):
        self._text: list[str] = []
        self._reasoning: list[str] = []
        self._reasoning_signature: str | None = None
        self._calls: dict[int, dict] = {}
        self.usage: Usage | None = None
        self.finish_reason: str | None = None

    def add_text(self, text: str) -> None:
        self._text.append(text)

    def add_reasoning(self, text: str, signature: str | None = None) -> None:
        self._reasoning.append(text)
        if signature:
            self._reasoning_signature = signature

    def add_tool_fragment(self, fragment: "ToolCallFragment") -> bool:
        """
        Accumulate one fragment.

        Returns:
            bool: True if this fragment opened a new tool call
        """
        is_new = fragment.index not in self._calls
        if is_new:
            self._calls[fragment.index] = {"id": None, "name": "", "arguments": ""}

        acc = self._calls[fragment.index]
        if fragment.id:
            acc["id"] = fragment.id
        if fragment.name:
            acc["name"] += fragment.name
        if fragment.arguments:
            acc["arguments"] += fragment.arguments
        return is_new

    def call_id(self, index: int) -> str | None:
        return self._calls[index]["id"] if index in self._calls else None

    def arguments(self, index: int) -> str:
        return self._calls[index]["arguments"] if index in self._calls else ""

    @property
    def has_content(self) -> bool:
        return bool(self._text or self._reasoning or self._calls)

    def build(self) -> Message:
        """Get the final assistant message."""
        blocks: list = []
        reasoning = "".join(self._reasoning)
        if reasoning:
            blocks.append(ReasoningBlock(text=reasoning, signature=self._reasoning_signature))
        text = "".join(self._text)
        if text:
            blocks.append(TextBlock(text=text))

        for index in sorted(self._calls):
            acc = self._calls[index]
            call_id = acc["id"] or f"call_{index}_{uuid4().hex[:8]}"
            raw = acc["arguments"].strip()
            try:
                arguments = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                arguments = None
            if isinstance(arguments, dict):
                blocks.append(ToolCallBlock(id=call_id, name=acc["name"], arguments=arguments))
            else:
                blocks.append(ToolCallBlock(id=call_id, name=acc["name"], raw_arguments=acc["arguments"]))

        return Message.assistant(blocks, usage=self.usage, stop_reason=self.finish_reason)


class AgentLoop:
    """
    The agent loop state machine.

    idle → requesting_completion → streaming_response → (executing_tools)*
         → appending → (requesting_completion | done | failed | cancelled)

    Every message is durably appended before the next step begins, so a run
    started on a session always resumes from its last durable node.
    """

    def __init__(
        self,
        model: "Model",
        tools: ToolRegistry | list[BaseTool] | None = None,
        config: ExecutionConfig | None = None,
        compactor: Compactor | None = None,
    ):
        """
        Initialize AgentLoop.

        Args:
            model: Provider capability
            tools: Registry (or list) of tools available to the model
            config: Execution config
            compactor: Compactor for oversized contexts (summary compactor by default)
        """
        self.model = model
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.config = config or ExecutionConfig()
        self.compactor = compactor or SummaryCompactor(
            keep_recent_tokens=self.config.compaction.keep_recent_tokens
        )
        self.tool_executor = ToolExecutor(
            self.registry,
            max_parallel=self.config.max_parallel_tools,
            timeout=self.config.tool_timeout,
            cancel_grace_period=self.config.cancel_grace_period,
        )

    async def run(
        self,
        session: "Session",
        signal: "CancellationSignal",
        stream: "EventStream",
        run_id: str | None = None,
        steering: MessageQueue | None = None,
        follow_ups: MessageQueue | None = None,
    ) -> RunOutcome:
        """
        Run the loop until a final answer, failure, turn limit or cancellation.

        Never raises for provider, session or cancellation outcomes: they end
        the stream with an error event and are reported in the RunOutcome.

        Args:
            session: Session to read context from and append to
            signal: Run cancellation signal
            stream: Event stream receiving every event of this run
            steering: Messages delivered after the current tool batch settles;
                calls not yet started are skipped
            follow_ups: Messages delivered when the agent would otherwise stop

        Returns:
            RunOutcome: Final state, appended nodes and usage
        """
        outcome = RunOutcome(run_id=run_id or str(uuid4()), session_id=session.id)
        logger.info(
            "agent_run_started",
            run_id=outcome.run_id,
            session_id=session.id,
            active_leaf=session.active_leaf_id,
        )

        try:
            await self._run_loop(
                session,
                signal,
                stream,
                outcome,
                steering if steering is not None else MessageQueue(),
                follow_ups if follow_ups is not None else MessageQueue(),
            )
        except RunCancelledError as e:
            self._fail(outcome, LoopState.CANCELLED, RunErrorKind.CANCELLED, e.reason or "Run cancelled")
        except ProviderError as e:
            kind = RunErrorKind.CONTEXT_OVERFLOW if e.is_context_overflow else RunErrorKind.PROVIDER_ERROR
            self._fail(outcome, LoopState.FAILED, kind, str(e))
        except SessionError as e:
            logger.error("agent_run_session_error", run_id=outcome.run_id, error=str(e))
            self._fail(outcome, LoopState.FAILED, RunErrorKind.SESSION_ERROR, str(e))
        except StreamClosedError:
            logger.error("agent_run_stream_closed", run_id=outcome.run_id, exc_info=True)
            if outcome.state not in (LoopState.DONE, LoopState.CANCELLED):
                self._fail(outcome, LoopState.FAILED, RunErrorKind.INTERNAL_ERROR, "Event stream closed")
            return outcome
        except Exception as e:
            logger.error("agent_run_internal_error", run_id=outcome.run_id, error=str(e), exc_info=True)
            self._fail(outcome, LoopState.FAILED, RunErrorKind.INTERNAL_ERROR, str(e))

        await self._finish(stream, outcome)
        logger.info(
            "agent_run_finished",
            run_id=outcome.run_id,
            session_id=session.id,
            state=outcome.state.value,
            turns=outcome.turns,
            appended=len(outcome.appended_node_ids),
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
            total_tokens=outcome.usage.total_tokens,
        )
        return outcome

    # ------------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------------

    async def _run_loop(
        self,
        session: "Session",
        signal: "CancellationSignal",
        stream: "EventStream",
        outcome: RunOutcome,
        steering: MessageQueue,
        follow_ups: MessageQueue,
    ) -> None:
        # A previous run may have stopped between the assistant message and
        # its tool results; answer those calls before asking the model again.
        pending = pending_tool_calls(session.active_path())
        if pending:
            logger.info(
                "agent_resuming_pending_tools", run_id=outcome.run_id, tool_count=len(pending)
            )
            await self._execute_tools(
                session, session.active_leaf_id, pending, signal, stream, outcome, steering
            )

        delivered = await self._deliver_queued(session, steering, signal, stream, outcome)
        if not delivered and awaits_user_turn(session.active_path()):
            await self._deliver_queued(session, follow_ups, signal, stream, outcome)

        tool_definitions = self.registry.definitions() or None

        while True:
            if signal.is_cancelled:
                raise RunCancelledError(signal.reason)
            if outcome.turns >= self.config.max_turns:
                self._fail(
                    outcome,
                    LoopState.FAILED,
                    RunErrorKind.TURN_LIMIT_EXCEEDED,
                    f"Reached max_turns ({self.config.max_turns}) without a final answer",
                )
                return

            outcome.turns += 1
            turn = outcome.turns
            outcome.state = LoopState.REQUESTING_COMPLETION
            logger.debug("agent_turn_started", run_id=outcome.run_id, turn=turn)

            context = build_context(
                session.active_path(),
                compaction=self.config.compaction,
                compactor=self.compactor,
                system_prompt=self.config.system_prompt,
            )

            outcome.state = LoopState.STREAMING_RESPONSE
            assembler = await self._stream_completion(
                context, tool_definitions, signal, stream, outcome.run_id, turn
            )

            outcome.state = LoopState.APPENDING
            message = assembler.build()
            node_id = await session.append(session.active_leaf_id, message)
            outcome.appended_node_ids.append(node_id)
            await stream.write(create_message_completed_event(outcome.run_id, turn, node_id, message))
            if message.usage is not None:
                outcome.usage = outcome.usage + message.usage
                await stream.write(create_usage_event(outcome.run_id, turn, message.usage))

            if message.has_tool_calls():
                await self._execute_tools(
                    session, node_id, message.tool_calls, signal, stream, outcome, steering
                )
                await self._deliver_queued(session, steering, signal, stream, outcome)
                continue

            if await self._deliver_queued(session, steering, signal, stream, outcome):
                continue
            if await self._deliver_queued(session, follow_ups, signal, stream, outcome):
                continue

            outcome.state = LoopState.DONE
            outcome.final_text = message.text
            outcome.final_node_id = node_id
            return

    async def _stream_completion(
        self,
        context: list[Message],
        tool_definitions: list | None,
        signal: "CancellationSignal",
        stream: "EventStream",
        run_id: str,
        turn: int,
    ) -> MessageAssembler:
        """
        Stream one completion into a MessageAssembler.

        Every provider read is raced against the cancellation signal. On
        cancellation or provider failure the provider stream is closed and
        the partial message is discarded.
        """
        assembler = MessageAssembler()
        chunks = self.model.arun_stream(context, tools=tool_definitions)
        try:
            while True:
                try:
                    chunk = await race_cancellation(chunks.__anext__(), signal)
                except StopAsyncIteration:
                    break
                await self._handle_chunk(chunk, assembler, stream, run_id, turn)
        except (RunCancelledError, ProviderError, StreamClosedError):
            raise
        except Exception as e:
            raise ProviderError(f"Provider stream failed: {e}", cause=e) from e
        finally:
            await self._close_provider_stream(chunks)
        return assembler

    async def _handle_chunk(
        self,
        chunk: "StreamChunk",
        assembler: MessageAssembler,
        stream: "EventStream",
        run_id: str,
        turn: int,
    ) -> None:
        if chunk.reasoning_content:
            assembler.add_reasoning(chunk.reasoning_content, chunk.reasoning_signature)
            await stream.write(create_reasoning_delta_event(run_id, turn, chunk.reasoning_content))

        if chunk.content:
            assembler.add_text(chunk.content)
            await stream.write(create_text_delta_event(run_id, turn, chunk.content))

        for fragment in chunk.tool_calls or []:
            if assembler.add_tool_fragment(fragment):
                await stream.write(
                    create_tool_call_started_event(
                        run_id, turn, fragment.index, fragment.id, fragment.name
                    )
                )
            if fragment.arguments:
                await stream.write(
                    create_tool_call_delta_event(
                        run_id,
                        turn,
                        fragment.index,
                        assembler.call_id(fragment.index),
                        fragment.arguments,
                        arguments=parse_streaming_json(assembler.arguments(fragment.index)),
                    )
                )

        if chunk.usage is not None:
            assembler.usage = chunk.usage
        if chunk.finish_reason:
            assembler.finish_reason = chunk.finish_reason

    async def _close_provider_stream(self, chunks) -> None:
        aclose = getattr(chunks, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("provider_stream_close_failed", error=str(e))

    async def _execute_tools(
        self,
        session: "Session",
        parent_id: str | None,
        calls: list[ToolCallBlock],
        signal: "CancellationSignal",
        stream: "EventStream",
        outcome: RunOutcome,
        steering: MessageQueue,
    ) -> None:
        """
        Execute one turn's tool calls and append their results.

        tool_call_completed events follow real completion order; tool_result
        messages are appended in call order, each the child of the previous.
        A cancelled run still appends a result for every call, and so does a
        batch cut short by a steering message.
        """
        outcome.state = LoopState.EXECUTING_TOOLS
        run_id, turn = outcome.run_id, outcome.turns

        async def on_start(invocation: ToolInvocation) -> None:
            await stream.write(
                create_tool_execution_started_event(
                    run_id, turn, invocation.call_id, invocation.name, invocation.arguments
                )
            )

        async def on_result(result: ToolResult) -> None:
            await stream.write(create_tool_call_completed_event(run_id, turn, result))

        logger.debug("agent_executing_tools", run_id=run_id, turn=turn, tool_count=len(calls))
        results = await self.tool_executor.execute_batch(
            calls,
            signal,
            on_start=on_start,
            on_result=on_result,
            skip_reason=lambda: SKIPPED_FOR_STEERING if len(steering) else None,
        )

        outcome.state = LoopState.APPENDING
        parent = parent_id
        for result in results:
            message = result.to_message()
            parent = await session.append(parent, message)
            outcome.appended_node_ids.append(parent)
            await stream.write(create_message_completed_event(run_id, turn, parent, message))

    async def _deliver_queued(
        self,
        session: "Session",
        queue: MessageQueue,
        signal: "CancellationSignal",
        stream: "EventStream",
        outcome: RunOutcome,
    ) -> bool:
        """
        Append queued user messages under the active leaf.

        Nothing is taken from the queue once the run is cancelled.

        Returns:
            bool: True if any message was appended
        """
        if signal.is_cancelled or not len(queue):
            return False
        messages = queue.pop()
        outcome.state = LoopState.APPENDING
        for message in messages:
            node_id = await session.append(session.active_leaf_id, message)
            outcome.appended_node_ids.append(node_id)
            await stream.write(
                create_message_completed_event(outcome.run_id, outcome.turns, node_id, message)
            )
        logger.info(
            "queued_messages_delivered",
            run_id=outcome.run_id,
            count=len(messages),
            remaining=len(queue),
        )
        return True

    # ------------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------------

    def _fail(
        self,
        outcome: RunOutcome,
        state: LoopState,
        kind: RunErrorKind,
        error: str,
    ) -> None:
        if state == LoopState.CANCELLED:
            logger.info("agent_run_cancelled", run_id=outcome.run_id, reason=error)
        else:
            logger.warning(
                "agent_run_failed", run_id=outcome.run_id, error_kind=kind.value, error=error
            )
        outcome.state = state
        outcome.error_kind = kind
        outcome.error = error

    async def _finish(self, stream: "EventStream", outcome: RunOutcome) -> None:
        if outcome.state == LoopState.DONE:
            event = create_done_event(
                outcome.run_id,
                outcome.turns,
                node_id=outcome.final_node_id,
                data={
                    "turns": outcome.turns,
                    "appended": len(outcome.appended_node_ids),
                    "usage": outcome.usage.model_dump(),
                },
            )
        else:
            event = create_error_event(
                outcome.run_id,
                outcome.turns,
                outcome.error_kind or RunErrorKind.INTERNAL_ERROR,
                outcome.error or "Run ended without a result",
            )
        await stream.finish(event)


__all__ = ["AgentLoop", "MessageAssembler"]
