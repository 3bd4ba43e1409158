"""
Shared fixtures for skein tests.
"""

import pytest
import pytest_asyncio

from fakes import ExclusiveTool, ScriptedModel
from skein.domain import Message
from skein.session import InMemorySessionStore, Session, SessionHeader


@pytest.fixture
def model() -> ScriptedModel:
    return ScriptedModel()


@pytest_asyncio.fixture
async def session() -> Session:
    """Empty in-memory session."""
    return await Session.create(InMemorySessionStore(), SessionHeader(id="test-session"))


@pytest_asyncio.fixture
async def prompted_session(session: Session) -> Session:
    """Session holding [system, user "hi"]."""
    root = await session.append(None, Message.system("You are helpful."))
    await session.append(root, Message.user("hi"))
    return session


@pytest.fixture(autouse=True)
def reset_exclusive_tool():
    ExclusiveTool.active = 0
    ExclusiveTool.peak = 0
    yield


@pytest.fixture(autouse=True)
def restore_logging():
    """Rebind structlog to the live stderr once a test's capsys stream is gone."""
    yield
    from skein.config.settings import settings
    from skein.utils.logging import configure_logging

    configure_logging(settings.log_level, settings.log_json)
