"""
Tests for AgentRunner: prompt, continue, edit, regenerate and streaming.
"""

import asyncio

import pytest

from skein.config import ExecutionConfig, QueueMode
from skein.domain import EventType, Message, MessageRole, RunErrorKind, ToolCallBlock, ToolErrorKind
from skein.errors import SessionBusyError, UnknownNodeError
from skein.runtime import AgentRunner, EventStream, LoopState, validate_context

from fakes import EchoTool, text_turn, tool_turn


@pytest.mark.asyncio
async def test_prompt_appends_user_and_answers(model, session):
    await session.append(None, Message.system("sys"))
    model.turns = [text_turn("hello")]
    runner = AgentRunner(model, session)

    outcome = await runner.prompt("hi")

    assert outcome.state == LoopState.DONE
    assert [m.text for m in session.active_path()] == ["sys", "hi", "hello"]
    assert not runner.is_running
    assert not session.is_busy


@pytest.mark.asyncio
async def test_prompt_with_caller_stream(model, session):
    model.turns = [text_turn("hello")]
    runner = AgentRunner(model, session)
    stream = EventStream()

    task = asyncio.create_task(runner.prompt("hi", stream))
    events = [e async for e in stream]
    outcome = await task

    assert events[-1].type == EventType.DONE
    assert events[-1].run_id == outcome.run_id


@pytest.mark.asyncio
async def test_second_run_rejected_while_busy(model, prompted_session):
    gate = asyncio.Event()
    model.turns = [[gate] + text_turn("slow answer")]
    runner = AgentRunner(model, prompted_session)

    first = asyncio.create_task(runner.continue_run())
    await asyncio.sleep(0.01)
    assert runner.is_running

    other = AgentRunner(model, prompted_session)
    with pytest.raises(SessionBusyError):
        await other.prompt("me too")

    gate.set()
    outcome = await first
    assert outcome.state == LoopState.DONE


@pytest.mark.asyncio
async def test_continue_run_guards(model, session):
    runner = AgentRunner(model, session)
    with pytest.raises(ValueError):
        await runner.continue_run()

    root = await session.append(None, Message.system("sys"))
    with pytest.raises(ValueError):
        await runner.continue_run()

    await session.append(root, Message.user("hi"))
    await session.append_to_leaf(Message.assistant("final"))
    with pytest.raises(ValueError):
        await runner.continue_run()


@pytest.mark.asyncio
async def test_continue_after_interrupted_tools(model, prompted_session):
    await prompted_session.append_to_leaf(
        Message.assistant([ToolCallBlock(id="c1", name="echo", arguments={"text": "x"})])
    )
    model.turns = [text_turn("resumed")]
    runner = AgentRunner(model, prompted_session, tools=[EchoTool()])

    outcome = await runner.continue_run()

    assert outcome.state == LoopState.DONE
    roles = [m.role for m in prompted_session.active_path()[2:]]
    assert roles == [MessageRole.ASSISTANT, MessageRole.TOOL_RESULT, MessageRole.ASSISTANT]


@pytest.mark.asyncio
async def test_edit_branches_from_parent(model, session):
    """Test editing an earlier user message keeps the old branch"""
    root = await session.append(None, Message.system("sys"))
    original = await session.append(root, Message.user("first try"))
    old_answer = await session.append(original, Message.assistant("old answer"))
    model.turns = [text_turn("new answer")]
    runner = AgentRunner(model, session)

    outcome = await runner.edit(original, "second try")

    assert outcome.state == LoopState.DONE
    assert [m.text for m in session.active_path()] == ["sys", "second try", "new answer"]
    assert [n.id for n in session.tree.path_to(old_answer)] == [root, original, old_answer]
    assert len(session.tree.children(root)) == 2

    with pytest.raises(ValueError):
        await runner.edit(old_answer, "not a user node")
    with pytest.raises(UnknownNodeError):
        await runner.edit("missing", "x")


@pytest.mark.asyncio
async def test_regenerate_creates_sibling_answer(model, session):
    root = await session.append(None, Message.system("sys"))
    question = await session.append(root, Message.user("q"))
    first = await session.append(question, Message.assistant("answer one"))
    model.turns = [text_turn("answer two")]
    runner = AgentRunner(model, session)

    outcome = await runner.regenerate(first)

    assert outcome.state == LoopState.DONE
    assert [m.text for m in session.active_path()] == ["sys", "q", "answer two"]
    siblings = [n.message.text for n in session.tree.children(question)]
    assert siblings == ["answer one", "answer two"]

    # The model never saw the replaced answer
    assert [m.text for m in model.requests[0]] == ["sys", "q"]


@pytest.mark.asyncio
async def test_regenerate_defaults_to_last_user_turn(model, prompted_session):
    await prompted_session.append_to_leaf(Message.assistant("first"))
    model.turns = [text_turn("second")]
    runner = AgentRunner(model, prompted_session)

    await runner.regenerate()

    assert prompted_session.active_path()[-1].text == "second"
    assert prompted_session.tree.has_branches()


@pytest.mark.asyncio
async def test_run_stream_yields_all_events(model, prompted_session):
    model.turns = [tool_turn(("c1", "echo", {"text": "x"})), text_turn("done")]
    runner = AgentRunner(model, prompted_session, tools=[EchoTool()])

    events = [e async for e in runner.run_stream("again")]

    assert events[-1].type == EventType.DONE
    assert EventType.TOOL_CALL_COMPLETED in [e.type for e in events]
    assert prompted_session.active_path()[-1].text == "done"


@pytest.mark.asyncio
async def test_run_stream_detach_cancels_run(model, prompted_session):
    """Test leaving the iteration early cancels the run without blocking"""
    never = asyncio.Event()
    model.turns = [[text_turn("partial")[0], never]]
    runner = AgentRunner(model, prompted_session)

    agen = runner.run_stream("go")
    first = await agen.__anext__()
    assert first.type == EventType.TEXT_DELTA

    await asyncio.wait_for(agen.aclose(), timeout=1)

    assert not runner.is_running
    assert not prompted_session.is_busy
    # The user prompt was appended; the partial answer was not
    assert prompted_session.active_path()[-1].text == "go"


@pytest.mark.asyncio
async def test_cancel_from_another_task(model, prompted_session):
    never = asyncio.Event()
    model.turns = [[never]]
    runner = AgentRunner(model, prompted_session)
    assert runner.cancel() is False

    task = asyncio.create_task(runner.continue_run())
    await asyncio.sleep(0.01)
    assert runner.cancel("stop") is True
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.state == LoopState.CANCELLED
    assert outcome.error_kind == RunErrorKind.CANCELLED
    assert outcome.error == "stop"


@pytest.mark.asyncio
async def test_prompt_closes_unanswered_tool_calls(model, prompted_session):
    """Test a new prompt after an interrupted tool turn still sends a valid context"""
    await prompted_session.append_to_leaf(
        Message.assistant([ToolCallBlock(id="c1", name="echo", arguments={"text": "x"})])
    )
    model.turns = [text_turn("ok, dropping that")]
    runner = AgentRunner(model, prompted_session, tools=[EchoTool()])

    outcome = await runner.prompt("never mind")

    assert outcome.state == LoopState.DONE
    assert validate_context(model.requests[0])
    path = prompted_session.active_path()
    assert [m.role for m in path[2:]] == [
        MessageRole.ASSISTANT,
        MessageRole.TOOL_RESULT,
        MessageRole.USER,
        MessageRole.ASSISTANT,
    ]
    result = path[3].tool_results[0]
    assert result.call_id == "c1"
    assert result.is_error is True
    assert result.error_kind == ToolErrorKind.CANCELLED
    assert path[4].text == "never mind"


@pytest.mark.asyncio
async def test_follow_up_through_runner(model, prompted_session):
    model.turns = [text_turn("fixed"), text_turn("docs written")]
    runner = AgentRunner(model, prompted_session)
    runner.follow_up("now update the docs")

    outcome = await runner.continue_run()

    assert outcome.state == LoopState.DONE
    assert [m.text for m in prompted_session.active_path()[2:]] == [
        "fixed",
        "now update the docs",
        "docs written",
    ]
    assert not runner.has_queued_messages


@pytest.mark.asyncio
async def test_continue_run_delivers_queued_steering(model, prompted_session):
    """Test a final-answer leaf can be continued once a message is queued"""
    await prompted_session.append_to_leaf(Message.assistant("done"))
    runner = AgentRunner(model, prompted_session)
    with pytest.raises(ValueError):
        await runner.continue_run()

    runner.steer("one more thing")
    model.turns = [text_turn("sure")]
    outcome = await runner.continue_run()

    assert outcome.state == LoopState.DONE
    assert [m.text for m in prompted_session.active_path()[-2:]] == ["one more thing", "sure"]
    assert model.requests[0][-1].text == "one more thing"


@pytest.mark.asyncio
async def test_steer_during_run(model, prompted_session):
    gate = asyncio.Event()
    model.turns = [[gate] + text_turn("first"), text_turn("second")]
    runner = AgentRunner(model, prompted_session)

    task = asyncio.create_task(runner.continue_run())
    await asyncio.sleep(0.01)
    runner.steer("change of plan")
    gate.set()
    outcome = await task

    assert outcome.turns == 2
    assert [m.text for m in prompted_session.active_path()[2:]] == ["first", "change of plan", "second"]


@pytest.mark.asyncio
async def test_clear_queues(model, session):
    runner = AgentRunner(model, session, config=ExecutionConfig(steering_mode=QueueMode.ALL))
    assert runner.steering.mode == QueueMode.ALL
    assert runner.follow_ups.mode == QueueMode.ONE_AT_A_TIME
    assert not runner.has_queued_messages

    runner.steer("a")
    runner.follow_up("b")
    assert runner.has_queued_messages

    runner.clear_steering_queue()
    assert len(runner.steering) == 0
    assert runner.has_queued_messages

    runner.steer("c")
    runner.clear_follow_up_queue()
    assert len(runner.follow_ups) == 0
    runner.clear_all_queues()
    assert not runner.has_queued_messages
