"""
Tests for the agent loop: streaming, tool turns, termination and resume.
"""

import asyncio

import pytest

from skein.config import CompactionConfig, ExecutionConfig, QueueMode
from skein.domain import (
    EventType,
    Message,
    MessageRole,
    RunErrorKind,
    ToolCallBlock,
    ToolErrorKind,
    Usage,
)
from skein.errors import ProviderError, SessionError
from skein.providers.llm import StreamChunk, ToolCallFragment
from skein.runtime import (
    AgentLoop,
    CancellationSignal,
    EventStream,
    LoopState,
    MessageAssembler,
    MessageQueue,
    SKIPPED_FOR_STEERING,
    validate_context,
)
from skein.runtime.compaction import is_summary_message
from skein.session import InMemorySessionStore, Session, SessionHeader

from fakes import CheckpointTool, EchoTool, GatedTool, ScriptedModel, text_turn, tool_turn


async def run_and_collect(loop, session, signal=None, maxsize=4, **kwargs):
    """Run the loop while consuming its stream; return (outcome, events)."""
    stream = EventStream(maxsize=maxsize)
    task = asyncio.create_task(loop.run(session, signal or CancellationSignal(), stream, **kwargs))
    events = [e async for e in stream]
    return await task, events


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def _types(events):
    return [e.type for e in events]


# ============================================================================
# Final answers
# ============================================================================


@pytest.mark.asyncio
async def test_text_only_turn_appends_one_message(model, prompted_session):
    """Test a turn without tool calls ends the run with one appended node"""
    model.turns = [text_turn("hello", usage=Usage(input_tokens=12, output_tokens=3))]
    loop = AgentLoop(model)

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE
    assert outcome.succeeded
    assert outcome.turns == 1
    assert len(outcome.appended_node_ids) == 1
    assert outcome.final_text == "hello"
    assert outcome.final_node_id == prompted_session.active_leaf_id
    assert outcome.usage.total_tokens == 15

    assert _types(events) == [
        EventType.TEXT_DELTA,
        EventType.MESSAGE_COMPLETED,
        EventType.USAGE,
        EventType.DONE,
    ]
    assert events[-1].node_id == outcome.final_node_id
    assert events[-1].data["turns"] == 1

    assert [m.text for m in prompted_session.active_path()] == ["You are helpful.", "hi", "hello"]
    # The model saw the active path
    assert [m.text for m in model.requests[0]] == ["You are helpful.", "hi"]


@pytest.mark.asyncio
async def test_system_prompt_used_without_system_root(model, session):
    await session.append(None, Message.user("hi"))
    model.turns = [text_turn("hello")]
    loop = AgentLoop(model, config=ExecutionConfig(system_prompt="Be brief."))

    outcome, _ = await run_and_collect(loop, session)

    assert outcome.state == LoopState.DONE
    assert model.requests[0][0].role == MessageRole.SYSTEM
    assert model.requests[0][0].text == "Be brief."
    # The system prompt is context only, never a node
    assert session.tree.root.message.text == "hi"


@pytest.mark.asyncio
async def test_arbitrary_chunk_granularity(model, prompted_session):
    """Test reasoning, text and tool-call fragments are reassembled"""
    model.turns = [
        [
            StreamChunk(reasoning_content="th"),
            StreamChunk(reasoning_content="ink", reasoning_signature="sig"),
            StreamChunk(content="Hel"),
            StreamChunk(content="lo"),
            StreamChunk(tool_calls=[ToolCallFragment(index=0, id="c1", name="echo", arguments='{"te')]),
            StreamChunk(tool_calls=[ToolCallFragment(index=0, arguments='xt": "x"}')]),
            StreamChunk(finish_reason="tool_calls", usage=Usage(input_tokens=5)),
        ],
        text_turn("done"),
    ]
    loop = AgentLoop(model, tools=[EchoTool()])

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE
    assistant = prompted_session.tree.get(outcome.appended_node_ids[0]).message
    assert assistant.reasoning == "think"
    assert assistant.content[0].signature == "sig"
    assert assistant.text == "Hello"
    assert assistant.tool_calls == [ToolCallBlock(id="c1", name="echo", arguments={"text": "x"})]
    assert assistant.stop_reason == "tool_calls"

    first_turn = [e for e in events if e.turn == 1]
    assert _types(first_turn)[:7] == [
        EventType.REASONING_DELTA,
        EventType.REASONING_DELTA,
        EventType.TEXT_DELTA,
        EventType.TEXT_DELTA,
        EventType.TOOL_CALL_STARTED,
        EventType.TOOL_CALL_DELTA,
        EventType.TOOL_CALL_DELTA,
    ]
    deltas = [e for e in first_turn if e.type == EventType.TOOL_CALL_DELTA]
    assert deltas[-1].arguments == {"text": "x"}
    assert deltas[-1].call_id == "c1"


@pytest.mark.asyncio
async def test_single_chunk_turn(model, prompted_session):
    """Test one chunk carrying a whole turn is valid"""
    model.turns = [
        [
            StreamChunk(
                content="Checking.",
                tool_calls=[ToolCallFragment(index=0, id="c1", name="echo", arguments='{"text": "a"}')],
                usage=Usage(input_tokens=3, output_tokens=2),
                finish_reason="tool_calls",
            )
        ],
        text_turn("ok"),
    ]
    loop = AgentLoop(model, tools=[EchoTool()])

    outcome, _ = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE
    assert outcome.turns == 2
    roles = [m.role for m in prompted_session.active_path()[2:]]
    assert roles == [MessageRole.ASSISTANT, MessageRole.TOOL_RESULT, MessageRole.ASSISTANT]


# ============================================================================
# Tool turns
# ============================================================================


@pytest.mark.asyncio
async def test_results_appended_in_call_order(model, prompted_session):
    """Test grep finishing before read still appends read's result first"""
    grep_done = asyncio.Event()
    read = GatedTool("read", wait_for=grep_done)
    grep = GatedTool("grep", done=grep_done)
    model.turns = [
        tool_turn(("1", "read", {"path": "a.py"}), ("2", "grep", {"path": "src"})),
        text_turn("done"),
    ]
    loop = AgentLoop(model, tools=[read, grep])

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE

    completed = [e.result.tool_call_id for e in events if e.type == EventType.TOOL_CALL_COMPLETED]
    assert completed == ["2", "1"]

    nodes = prompted_session.active_nodes()
    assistant, result_1, result_2, final = nodes[2:]
    assert result_1.message.tool_results[0].call_id == "1"
    assert result_2.message.tool_results[0].call_id == "2"
    assert result_1.parent_id == assistant.id
    assert result_2.parent_id == result_1.id
    assert final.parent_id == result_2.id
    assert final.message.text == "done"

    # The second request carries both results in call order
    second = model.requests[1]
    assert [r.call_id for m in second for r in m.tool_results] == ["1", "2"]


@pytest.mark.asyncio
async def test_tool_events_per_call(model, prompted_session):
    model.turns = [tool_turn(("c1", "echo", {"text": "a"})), text_turn("done")]
    loop = AgentLoop(model, tools=[EchoTool()])

    _, events = await run_and_collect(loop, prompted_session)

    first_turn = [e for e in events if e.turn == 1]
    assert _types(first_turn) == [
        EventType.TOOL_CALL_STARTED,
        EventType.TOOL_CALL_DELTA,
        EventType.MESSAGE_COMPLETED,
        EventType.TOOL_EXECUTION_STARTED,
        EventType.TOOL_CALL_COMPLETED,
        EventType.MESSAGE_COMPLETED,
    ]
    assert first_turn[3].arguments == {"text": "a"}
    assert first_turn[5].message.is_tool_result()


@pytest.mark.asyncio
async def test_tools_declared_to_model(model, prompted_session):
    model.turns = [text_turn("hi")]
    loop = AgentLoop(model, tools=[EchoTool()])

    await run_and_collect(loop, prompted_session)

    assert [d.name for d in model.declared_tools[0]] == ["echo"]


@pytest.mark.asyncio
async def test_unregistered_tool_reported_to_model(model, prompted_session):
    model.turns = [tool_turn(("c1", "missing", {})), text_turn("sorry")]
    loop = AgentLoop(model, tools=[EchoTool()])

    outcome, _ = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE
    result = prompted_session.active_path()[3].tool_results[0]
    assert result.is_error
    assert result.error_kind == ToolErrorKind.INVALID_ARGUMENTS
    assert "not found" in result.output


@pytest.mark.asyncio
async def test_unparseable_arguments(model, prompted_session):
    model.turns = [
        [
            StreamChunk(
                tool_calls=[ToolCallFragment(index=0, id="c1", name="echo", arguments='{"text": ')]
            )
        ],
        text_turn("retrying later"),
    ]
    loop = AgentLoop(model, tools=[EchoTool()])

    outcome, _ = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.DONE
    path = prompted_session.active_path()
    assert path[2].tool_calls[0].raw_arguments == '{"text": '
    assert path[3].tool_results[0].error_kind == ToolErrorKind.INVALID_ARGUMENTS


# ============================================================================
# Termination
# ============================================================================


@pytest.mark.asyncio
async def test_turn_limit(model, prompted_session):
    model.turns = [
        tool_turn(("c1", "echo", {"text": "a"})),
        tool_turn(("c2", "echo", {"text": "b"})),
    ]
    loop = AgentLoop(model, tools=[EchoTool()], config=ExecutionConfig(max_turns=2))

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.FAILED
    assert outcome.error_kind == RunErrorKind.TURN_LIMIT_EXCEEDED
    assert outcome.turns == 2
    assert len(outcome.appended_node_ids) == 4
    assert events[-1].type == EventType.ERROR
    assert events[-1].error_kind == RunErrorKind.TURN_LIMIT_EXCEEDED
    assert len(model.requests) == 2


@pytest.mark.asyncio
async def test_provider_error_discards_partial_message(model, prompted_session):
    model.turns = [[StreamChunk(content="par"), RuntimeError("connection reset")]]
    loop = AgentLoop(model)

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.FAILED
    assert outcome.error_kind == RunErrorKind.PROVIDER_ERROR
    assert "connection reset" in outcome.error
    assert outcome.appended_node_ids == []
    assert len(prompted_session.tree) == 2
    assert _types(events) == [EventType.TEXT_DELTA, EventType.ERROR]
    assert model.closed == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderError("prompt is too long: 210000 tokens > 200000 maximum"),
        RuntimeError("This model's maximum context length is 8192 tokens"),
    ],
)
async def test_context_overflow_classified(model, prompted_session, error):
    model.turns = [[error]]
    loop = AgentLoop(model)

    outcome, events = await run_and_collect(loop, prompted_session)

    assert outcome.state == LoopState.FAILED
    assert outcome.error_kind == RunErrorKind.CONTEXT_OVERFLOW
    assert events[-1].error_kind == RunErrorKind.CONTEXT_OVERFLOW


@pytest.mark.asyncio
async def test_cancel_before_first_delta(model, prompted_session):
    """Test cancelling while waiting for the provider appends nothing"""
    never = asyncio.Event()
    model.turns = [[never, StreamChunk(content="too late")]]
    loop = AgentLoop(model)
    signal = CancellationSignal()
    stream = EventStream()

    task = asyncio.create_task(loop.run(prompted_session, signal, stream))
    await wait_until(lambda: len(model.requests) == 1)
    signal.cancel("user pressed stop")
    events = [e async for e in stream]
    outcome = await task

    assert outcome.state == LoopState.CANCELLED
    assert outcome.error_kind == RunErrorKind.CANCELLED
    assert outcome.appended_node_ids == []
    assert len(prompted_session.tree) == 2
    assert _types(events) == [EventType.ERROR]
    assert events[0].error == "user pressed stop"
    assert model.closed == 1


@pytest.mark.asyncio
async def test_cancel_before_run(model, prompted_session):
    model.turns = [text_turn("unused")]
    signal = CancellationSignal()
    signal.cancel()

    outcome, events = await run_and_collect(AgentLoop(model), prompted_session, signal)

    assert outcome.state == LoopState.CANCELLED
    assert model.requests == []
    assert _types(events) == [EventType.ERROR]


@pytest.mark.asyncio
async def test_cancel_during_tools_appends_every_result(model, prompted_session):
    """Test in-flight tools still get a persisted tool_result when cancelled"""
    checkpoint = CheckpointTool()
    model.turns = [tool_turn(("c1", "echo", {"text": "a"}), ("c2", "checkpoint", {}))]
    loop = AgentLoop(model, tools=[EchoTool(), checkpoint])
    signal = CancellationSignal()
    stream = EventStream(maxsize=64)

    task = asyncio.create_task(loop.run(prompted_session, signal, stream))
    await asyncio.wait_for(checkpoint.started.wait(), timeout=1)
    signal.cancel()
    events = [e async for e in stream]
    outcome = await task

    assert outcome.state == LoopState.CANCELLED
    assert len(outcome.appended_node_ids) == 3

    results = [m.tool_results[0] for m in prompted_session.active_path() if m.is_tool_result()]
    assert [r.call_id for r in results] == ["c1", "c2"]
    assert results[0].is_error is False
    assert results[1].error_kind == ToolErrorKind.CANCELLED

    assert events[-1].error_kind == RunErrorKind.CANCELLED
    assert len(model.requests) == 1


class _BrokenStore(InMemorySessionStore):
    """Accepts the header and the first `allowed` records, then fails."""

    def __init__(self, allowed: int):
        super().__init__()
        self.allowed = allowed

    async def append(self, record):
        if self.allowed <= 0:
            raise SessionError("store unavailable")
        self.allowed -= 1
        await super().append(record)


@pytest.mark.asyncio
async def test_session_error_fails_run(model):
    session = await Session.create(_BrokenStore(allowed=2), SessionHeader(id="broken"))
    root = await session.append(None, Message.system("sys"))
    await session.append(root, Message.user("hi"))
    model.turns = [text_turn("hello")]

    outcome, events = await run_and_collect(AgentLoop(model), session)

    assert outcome.state == LoopState.FAILED
    assert outcome.error_kind == RunErrorKind.SESSION_ERROR
    assert events[-1].error_kind == RunErrorKind.SESSION_ERROR
    # The failed append never became visible
    assert len(session.tree) == 2


# ============================================================================
# Steering and follow-ups
# ============================================================================


@pytest.mark.asyncio
async def test_steering_skips_calls_not_yet_started(model, prompted_session):
    """Test a steering message cuts the tool batch short and reaches the next turn"""
    release = asyncio.Event()
    model.turns = [
        tool_turn(("c1", "gate", {}), ("c2", "echo", {"text": "b"})),
        text_turn("changed course"),
    ]
    loop = AgentLoop(
        model,
        tools=[GatedTool("gate", wait_for=release), EchoTool()],
        config=ExecutionConfig(max_parallel_tools=1),
    )
    steering = MessageQueue()
    stream = EventStream(maxsize=64)
    events = []

    async def consume():
        async for event in stream:
            events.append(event)

    consumer = asyncio.create_task(consume())
    task = asyncio.create_task(
        loop.run(prompted_session, CancellationSignal(), stream, steering=steering)
    )
    await wait_until(lambda: EventType.TOOL_EXECUTION_STARTED in _types(events))
    steering.push(Message.user("use the other file"))
    release.set()
    outcome = await task
    await consumer

    assert outcome.state == LoopState.DONE
    path = prompted_session.active_path()
    assert [m.role for m in path[2:]] == [
        MessageRole.ASSISTANT,
        MessageRole.TOOL_RESULT,
        MessageRole.TOOL_RESULT,
        MessageRole.USER,
        MessageRole.ASSISTANT,
    ]
    first, second = [m.tool_results[0] for m in path if m.is_tool_result()]
    assert first.is_error is False
    assert second.call_id == "c2"
    assert second.is_error is True
    assert second.error_kind == ToolErrorKind.CANCELLED
    assert SKIPPED_FOR_STEERING in second.output

    assert len(steering) == 0
    assert model.requests[1][-1].text == "use the other file"
    assert validate_context(model.requests[1])
    assert _types(events).count(EventType.TOOL_CALL_COMPLETED) == 2
    assert _types(events).count(EventType.TOOL_EXECUTION_STARTED) == 1


@pytest.mark.asyncio
async def test_steering_queued_before_run_is_sent_first(model, prompted_session):
    steering = MessageQueue()
    steering.push(Message.user("also check the tests"))
    model.turns = [text_turn("will do")]

    outcome, events = await run_and_collect(AgentLoop(model), prompted_session, steering=steering)

    assert outcome.state == LoopState.DONE
    assert [m.text for m in model.requests[0]] == ["You are helpful.", "hi", "also check the tests"]
    completed = [e for e in events if e.type == EventType.MESSAGE_COMPLETED]
    assert completed[0].node_id == outcome.appended_node_ids[0]


@pytest.mark.asyncio
async def test_steering_after_final_answer_continues(model, prompted_session):
    """Test steering that arrives during a text-only turn is answered in the same run"""
    gate = asyncio.Event()
    model.turns = [[gate] + text_turn("first answer"), text_turn("second answer")]
    steering = MessageQueue()
    stream = EventStream(maxsize=64)

    task = asyncio.create_task(
        AgentLoop(model).run(prompted_session, CancellationSignal(), stream, steering=steering)
    )
    await wait_until(lambda: len(model.requests) == 1)
    steering.push(Message.user("actually, shorter"))
    gate.set()
    events = [e async for e in stream]
    outcome = await task

    assert outcome.state == LoopState.DONE
    assert outcome.turns == 2
    assert outcome.final_text == "second answer"
    assert [m.text for m in prompted_session.active_path()[2:]] == [
        "first answer",
        "actually, shorter",
        "second answer",
    ]
    assert events[-1].type == EventType.DONE


@pytest.mark.asyncio
async def test_follow_ups_wait_for_the_final_answer(model, prompted_session):
    follow_ups = MessageQueue()
    follow_ups.push(Message.user("now the docs"))
    model.turns = [
        tool_turn(("c1", "echo", {"text": "a"})),
        text_turn("fixed"),
        text_turn("docs written"),
    ]

    outcome, _ = await run_and_collect(
        AgentLoop(model, tools=[EchoTool()]), prompted_session, follow_ups=follow_ups
    )

    assert outcome.state == LoopState.DONE
    assert outcome.turns == 3
    assert outcome.final_text == "docs written"
    # Not delivered while the model still had work to do
    assert model.requests[1][-1].is_tool_result()
    assert model.requests[2][-1].text == "now the docs"
    assert len(follow_ups) == 0


@pytest.mark.asyncio
async def test_follow_up_modes(model, prompted_session):
    """Test ALL delivers every queued message at once, one-at-a-time one per stop"""
    together = MessageQueue(QueueMode.ALL)
    together.push(Message.user("a"))
    together.push(Message.user("b"))
    model.turns = [text_turn("first"), text_turn("second")]

    outcome, _ = await run_and_collect(AgentLoop(model), prompted_session, follow_ups=together)

    assert outcome.turns == 2
    assert [m.text for m in prompted_session.active_path()[2:]] == ["first", "a", "b", "second"]

    single = MessageQueue()
    single.push(Message.user("c"))
    single.push(Message.user("d"))
    model.turns = [text_turn("third"), text_turn("fourth"), text_turn("fifth")]
    await prompted_session.append_to_leaf(Message.user("again"))

    outcome, _ = await run_and_collect(AgentLoop(model), prompted_session, follow_ups=single)

    assert outcome.turns == 3
    assert [m.text for m in prompted_session.active_path()[-5:]] == [
        "third",
        "c",
        "fourth",
        "d",
        "fifth",
    ]


@pytest.mark.asyncio
async def test_cancelled_run_keeps_queued_messages(model, prompted_session):
    steering = MessageQueue()
    steering.push(Message.user("later"))
    signal = CancellationSignal()
    signal.cancel()

    outcome, _ = await run_and_collect(AgentLoop(model), prompted_session, signal, steering=steering)

    assert outcome.state == LoopState.CANCELLED
    assert len(steering) == 1
    assert len(prompted_session.tree) == 2


# ============================================================================
# Resume and compaction
# ============================================================================


@pytest.mark.asyncio
async def test_resume_answers_pending_tool_calls(model, prompted_session):
    """Test a run interrupted after the assistant message finishes its tools first"""
    await prompted_session.append_to_leaf(
        Message.assistant(
            [
                ToolCallBlock(id="c1", name="echo", arguments={"text": "a"}),
                ToolCallBlock(id="c2", name="echo", arguments={"text": "b"}),
            ]
        )
    )
    await prompted_session.append_to_leaf(Message.tool_result("c1", "echo", "a"))
    model.turns = [text_turn("all done")]

    outcome, _ = await run_and_collect(AgentLoop(model, tools=[EchoTool()]), prompted_session)

    assert outcome.state == LoopState.DONE
    path = prompted_session.active_path()
    assert [r.call_id for m in path for r in m.tool_results] == ["c1", "c2"]
    assert path[-1].text == "all done"
    # c1 was not executed again
    assert len(outcome.appended_node_ids) == 2


@pytest.mark.asyncio
async def test_compaction_changes_context_not_tree(model, prompted_session):
    for i in range(6):
        await prompted_session.append_to_leaf(Message.assistant(f"answer {i} " + "a" * 400))
        await prompted_session.append_to_leaf(Message.user(f"question {i} " + "q" * 400))
    nodes_before = len(prompted_session.tree)
    model.turns = [text_turn("short answer")]
    config = ExecutionConfig(
        compaction=CompactionConfig(context_window=800, reserve_tokens=100, keep_recent_tokens=300)
    )

    outcome, _ = await run_and_collect(AgentLoop(model, config=config), prompted_session)

    assert outcome.state == LoopState.DONE
    context = model.requests[0]
    assert context[0].role == MessageRole.SYSTEM
    assert is_summary_message(context[1])
    assert len(context) < nodes_before
    # Every original node is still on the active path
    assert len(prompted_session.tree) == nodes_before + 1
    assert len(prompted_session.active_path()) == nodes_before + 1


# ============================================================================
# MessageAssembler
# ============================================================================


def test_assembler_fills_gaps():
    assembler = MessageAssembler()
    assert not assembler.has_content
    assert assembler.add_tool_fragment(ToolCallFragment(index=1, name="read"))
    assert not assembler.add_tool_fragment(ToolCallFragment(index=1, arguments=""))
    assembler.add_tool_fragment(ToolCallFragment(index=0, id="c0", name="grep", arguments="[1, 2]"))

    message = assembler.build()

    grep, read = message.tool_calls
    assert grep.id == "c0"
    assert grep.raw_arguments == "[1, 2]"
    assert read.id.startswith("call_1_")
    assert read.arguments == {}
    assert read.raw_arguments is None
