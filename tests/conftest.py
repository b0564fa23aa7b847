"""Pytest configuration and fixtures."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from livecast.api.main import create_app
from livecast.config import Settings
from livecast.services.streamer import Streamer
from tests.factories import ComponentRecorder, FakeClock, SettingsFactory


@pytest.fixture
def settings() -> Settings:
    """Test settings with one destination and quiet timers."""
    return SettingsFactory()


@pytest.fixture
def components() -> ComponentRecorder:
    """Records every fake component the orchestrator creates."""
    return ComponentRecorder()


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock shared by the orchestrator under test."""
    return FakeClock()


@pytest_asyncio.fixture
async def streamer(
    settings: Settings, components: ComponentRecorder, clock: FakeClock
) -> AsyncGenerator[Streamer, None]:
    """Orchestrator wired to fake components; always stopped afterwards."""
    instance = Streamer(
        settings,
        frame_source_factory=components.frame_source,
        encode_sink_factory=components.encode_sink,
        scene_policy_factory=components.scene_policy,
        clock=clock,
    )
    yield instance
    await instance.stop()


@pytest.fixture
def app(settings: Settings, streamer: Streamer):
    """Control API bound to the fake-wired orchestrator."""
    return create_app(settings=settings, streamer=streamer)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client talking to the app in-process."""
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client
