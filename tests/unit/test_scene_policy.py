"""Tests for status-driven scene switching."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, Mock

import aiohttp
import pytest

from livecast.domain.exceptions import SceneError
from livecast.domain.models import Scene
from livecast.services.scene_policy import BrainScenePolicy, determine_scene
from tests.factories import SettingsFactory

WATCH_URL = "https://stream.example/watch"
VJ_URL = "https://stream.example/vj"


def make_page():
    page = MagicMock(name="page")
    page.goto = AsyncMock()
    page.evaluate = AsyncMock()
    return page


def make_policy(**overrides) -> BrainScenePolicy:
    values = dict(
        watch_url=WATCH_URL,
        vj_url=VJ_URL,
        brain_url="http://brain.local:3001/",
        poll_interval=3600,
    )
    values.update(overrides)
    return BrainScenePolicy(**values)


class TestDetermineScene:
    """Test mapping the status document to a scene."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            ({"mode": "building"}, Scene.WATCH),
            ({"mode": "resting", "memes": {"in_progress": True}}, Scene.WATCH),
            ({"mode": "resting"}, Scene.VJ),
            ({"mode": "idle", "memes": {"in_progress": False}}, Scene.VJ),
            ({}, Scene.VJ),
            ({"mode": "something-new"}, Scene.VJ),
            ({"mode": "resting", "memes": "yes"}, Scene.VJ),
            ({"memes": ["in_progress"]}, Scene.VJ),
            (None, Scene.VJ),
            (["building"], Scene.VJ),
            (42, Scene.VJ),
            ("building", Scene.VJ),
        ],
    )
    def test_mapping(self, status, expected):
        assert determine_scene(status) == expected


class TestCheckAndSwitch:
    """Test the polling decision."""

    async def test_switches_once_for_repeated_status(self):
        """Test repeated 'building' polls navigate to WATCH exactly once."""
        policy = make_policy(initial_scene=Scene.VJ)
        page = make_page()
        policy._page = page
        policy.fetch_status = AsyncMock(return_value={"mode": "building"})

        for _ in range(3):
            await policy.check_and_switch()

        page.goto.assert_awaited_once_with(WATCH_URL, wait_until="networkidle", timeout=30000)
        assert policy.get_scene() == Scene.WATCH

    async def test_same_scene_does_not_navigate(self):
        policy = make_policy()
        page = make_page()
        policy._page = page
        policy.fetch_status = AsyncMock(return_value={"mode": "building"})

        await policy.check_and_switch()

        page.goto.assert_not_called()

    async def test_skipped_while_navigating(self):
        """Test a tick during a navigation does not even poll."""
        policy = make_policy()
        policy._page = make_page()
        policy.fetch_status = AsyncMock(return_value={"mode": "resting"})
        policy.is_navigating = True

        await policy.check_and_switch()

        policy.fetch_status.assert_not_called()

    async def test_skipped_without_page(self):
        policy = make_policy()
        policy.fetch_status = AsyncMock(return_value={"mode": "resting"})

        await policy.check_and_switch()

        policy.fetch_status.assert_not_called()

    @pytest.mark.parametrize(
        "error",
        [aiohttp.ClientError("connection refused"), asyncio.TimeoutError(), ValueError("bad json")],
    )
    async def test_status_failure_keeps_scene(self, error):
        """Test an unreachable status service leaves the scene alone."""
        policy = make_policy()
        page = make_page()
        policy._page = page
        policy.fetch_status = AsyncMock(side_effect=error)

        await policy.check_and_switch()

        page.goto.assert_not_called()
        assert policy.get_scene() == Scene.WATCH

    @pytest.mark.parametrize("body", [None, ["x"], 3, "building"])
    async def test_non_object_status_keeps_scene(self, body):
        """Test a JSON body that is not an object is treated like a failed poll."""
        policy = make_policy()
        page = make_page()
        policy._page = page
        policy.fetch_status = AsyncMock(return_value=body)

        await policy.check_and_switch()

        page.goto.assert_not_called()
        assert policy.get_scene() == Scene.WATCH

    async def test_navigation_failure_clears_flag(self):
        """Test a failed navigation keeps the old scene and allows retries."""
        policy = make_policy()
        page = make_page()
        page.goto.side_effect = Exception("Timeout 30000ms exceeded")
        policy._page = page
        policy.fetch_status = AsyncMock(return_value={"mode": "resting"})

        await policy.check_and_switch()

        assert policy.get_scene() == Scene.WATCH
        assert policy.is_navigating is False

    async def test_concurrent_check_during_navigation(self):
        """Test a second tick while a navigation is in flight is dropped."""
        policy = make_policy()
        page = make_page()
        release = asyncio.Event()

        async def slow_goto(*args, **kwargs):
            await release.wait()

        page.goto.side_effect = slow_goto
        policy._page = page
        policy.fetch_status = AsyncMock(return_value={"mode": "resting"})

        first = asyncio.create_task(policy.check_and_switch())
        while not policy.is_navigating:
            await asyncio.sleep(0)
        await policy.check_and_switch()
        release.set()
        await first

        assert page.goto.await_count == 1
        assert policy.fetch_status.await_count == 1
        assert policy.get_scene() == Scene.VJ


class TestForceScene:
    """Test manual scene overrides."""

    async def test_force_scene(self):
        policy = make_policy()
        page = make_page()
        policy._page = page

        assert await policy.force_scene(Scene.VJ) is True

        page.goto.assert_awaited_once_with(VJ_URL, wait_until="networkidle", timeout=30000)
        assert policy.get_scene() == Scene.VJ

    async def test_without_page(self):
        with pytest.raises(SceneError, match="not attached"):
            await make_policy().force_scene(Scene.VJ)

    async def test_while_navigating(self):
        policy = make_policy()
        policy._page = make_page()
        policy.is_navigating = True

        with pytest.raises(SceneError, match="in progress"):
            await policy.force_scene(Scene.VJ)

    async def test_navigation_failure(self):
        policy = make_policy()
        page = make_page()
        page.goto.side_effect = Exception("net::ERR_CONNECTION_REFUSED")
        policy._page = page

        with pytest.raises(SceneError, match="Failed to switch"):
            await policy.force_scene(Scene.VJ)
        assert policy.get_scene() == Scene.WATCH


class TestLifecycle:
    """Test attaching, polling and detaching."""

    async def test_start_checks_immediately(self):
        """Test the first poll happens without waiting a full interval."""
        policy = make_policy()
        page = make_page()
        policy.fetch_status = AsyncMock(return_value={"mode": "resting"})

        await policy.start(page)
        for _ in range(10):
            await asyncio.sleep(0)

        policy.fetch_status.assert_awaited_once()
        assert policy.get_scene() == Scene.VJ
        await policy.stop()

    async def test_polling_survives_malformed_status(self):
        """Test polling keeps running past bad bodies and acts on the next valid one."""
        policy = make_policy(poll_interval=0.01)
        page = make_page()
        policy.fetch_status = AsyncMock(
            side_effect=[None, ["x"]] + [{"mode": "resting"}] * 50
        )

        await policy.start(page)
        for _ in range(100):
            if policy.get_scene() == Scene.VJ:
                break
            await asyncio.sleep(0.01)
        task = policy._poll_task

        assert not task.done()
        assert policy.get_scene() == Scene.VJ
        page.goto.assert_awaited_once_with(VJ_URL, wait_until="networkidle", timeout=30000)
        await policy.stop()

    async def test_polling_survives_unexpected_error(self):
        policy = make_policy(poll_interval=0.01)
        page = make_page()
        policy.fetch_status = AsyncMock(
            side_effect=[RuntimeError("boom")] + [{"mode": "resting"}] * 50
        )

        await policy.start(page)
        for _ in range(100):
            if policy.get_scene() == Scene.VJ:
                break
            await asyncio.sleep(0.01)

        assert not policy._poll_task.done()
        assert policy.get_scene() == Scene.VJ
        await policy.stop()

    async def test_stop_cancels_polling(self):
        policy = make_policy()
        policy.fetch_status = AsyncMock(return_value={"mode": "building"})
        await policy.start(make_page())
        task = policy._poll_task

        await policy.stop()

        assert task.cancelled() or task.done()
        assert policy._poll_task is None
        assert policy._page is None

    async def test_fetch_status(self):
        """Test the status document is read from {brain_url}/status."""
        response = MagicMock()
        response.raise_for_status = Mock()
        response.json = AsyncMock(return_value={"mode": "building"})
        session = MagicMock()
        session.get.return_value.__aenter__.return_value = response
        policy = make_policy(session=session)

        status = await policy.fetch_status()

        assert status == {"mode": "building"}
        assert session.get.call_args.args[0] == "http://brain.local:3001/status"
        response.raise_for_status.assert_called_once()

    async def test_injected_session_is_not_closed(self):
        session = MagicMock()
        session.close = AsyncMock()
        policy = make_policy(session=session)

        await policy.stop()

        session.close.assert_not_called()

    def test_from_settings(self):
        settings = SettingsFactory(
            watch_url=WATCH_URL, vj_url=VJ_URL, brain_url="http://brain.local:3001"
        )

        policy = BrainScenePolicy.from_settings(settings)

        assert policy.scene_urls == {Scene.WATCH: WATCH_URL, Scene.VJ: VJ_URL}
        assert policy.brain_url == "http://brain.local:3001"
