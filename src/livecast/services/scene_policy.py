"""Scene selection driven by the automation service's status document."""

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from ..config import Settings
from ..domain.exceptions import SceneError
from ..domain.models import Scene
from .frame_source import hide_scrollbars

logger = logging.getLogger(__name__)


def determine_scene(status: Any) -> Scene:
    """Map a status document to the scene that should be on air.

    WATCH while the service is building or generating memes, VJ otherwise
    (resting, idle, or any status this mapping does not know about).
    A body that is not a JSON object maps to VJ.
    """
    if not isinstance(status, dict):
        return Scene.VJ

    if status.get("mode") == "building":
        return Scene.WATCH

    memes = status.get("memes") or {}
    if isinstance(memes, dict) and memes.get("in_progress"):
        return Scene.WATCH

    return Scene.VJ


class BrainScenePolicy:
    """Polls ``{brain_url}/status`` and navigates the page between scenes.

    Navigation is single-flight: a poll tick that finds a navigation already
    running is skipped, not queued.
    """

    def __init__(
        self,
        watch_url: str,
        vj_url: str,
        brain_url: str,
        poll_interval: float = 30.0,
        status_timeout: float = 5.0,
        navigation_timeout: float = 30.0,
        initial_scene: Scene = Scene.WATCH,
        session: Optional[ClientSession] = None,
    ):
        self.scene_urls = {Scene.WATCH: watch_url, Scene.VJ: vj_url}
        self.brain_url = brain_url.rstrip("/")
        self.poll_interval = poll_interval
        self.status_timeout = status_timeout
        self.navigation_timeout = navigation_timeout

        self._session = session
        self._session_owned = False
        self._page: Optional[Any] = None
        self._poll_task: Optional[asyncio.Task] = None
        self.current_scene = initial_scene
        self.is_navigating = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrainScenePolicy":
        return cls(
            watch_url=settings.watch_url,
            vj_url=settings.vj_url,
            brain_url=settings.brain_url,
            poll_interval=settings.scene_poll_interval,
            status_timeout=settings.brain_status_timeout,
            navigation_timeout=settings.scene_navigation_timeout,
        )

    @property
    def session(self) -> ClientSession:
        """Get the HTTP session, creating one if necessary."""
        if self._session is None:
            self._session = ClientSession(timeout=ClientTimeout(total=self.status_timeout))
            self._session_owned = True
        return self._session

    async def start(self, page: Any) -> None:
        """Attach to a page and begin polling, starting with an immediate check."""
        self._page = page
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Scene policy started, polling {self.brain_url}/status")

    async def stop(self) -> None:
        """Cancel polling and detach from the page."""
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        self._page = None

        if self._session_owned and self._session:
            await self._session.close()
            self._session = None
            self._session_owned = False

        logger.info("Scene policy stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.check_and_switch()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Scene check failed, keeping {self.current_scene.value}: {e}")
            await asyncio.sleep(self.poll_interval)

    async def fetch_status(self) -> dict:
        """Fetch the status document.

        Raises:
            aiohttp.ClientError: On connection errors or non-2xx responses
            asyncio.TimeoutError: If the service does not answer in time
        """
        async with self.session.get(
            f"{self.brain_url}/status",
            timeout=ClientTimeout(total=self.status_timeout),
        ) as response:
            response.raise_for_status()
            return await response.json()

    async def check_and_switch(self) -> None:
        """Poll once and switch scenes if the mapped scene changed."""
        if self.is_navigating or self._page is None:
            return

        try:
            status = await self.fetch_status()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Failed to check status, keeping {self.current_scene.value}: {e}")
            return

        if not isinstance(status, dict):
            logger.warning(
                f"Status response is not an object, keeping {self.current_scene.value}: {status!r}"
            )
            return

        target = determine_scene(status)
        if target != self.current_scene:
            await self._switch_scene(target)

    async def _switch_scene(self, scene: Scene) -> bool:
        if self._page is None or self.is_navigating:
            return False

        self.is_navigating = True
        previous = self.current_scene
        url = self.scene_urls[scene]
        try:
            logger.info(f"Switching scene: {previous.value} -> {scene.value} ({url})")
            await self._page.goto(
                url, wait_until="networkidle", timeout=self.navigation_timeout * 1000
            )
            await hide_scrollbars(self._page)
            self.current_scene = scene
            logger.info(f"Now showing: {scene.value}")
            return True
        except Exception as e:
            logger.error(f"Failed to switch to {scene.value}: {e}")
            return False
        finally:
            self.is_navigating = False

    async def force_scene(self, scene: Scene) -> bool:
        """Navigate to a scene regardless of the status document.

        Raises:
            SceneError: If no page is attached, a navigation is already running
                or the navigation failed
        """
        if self._page is None:
            raise SceneError("Scene policy is not attached to a page")
        if self.is_navigating:
            raise SceneError("A scene navigation is already in progress")
        if not await self._switch_scene(scene):
            raise SceneError(f"Failed to switch to {scene.value}")
        return True

    def get_scene(self) -> Scene:
        return self.current_scene
