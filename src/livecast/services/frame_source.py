"""Browser frame source using the Chrome DevTools screencast.

Chromium renders the target page and streams JPEG frames over a CDP session.
Each frame must be acknowledged before the browser sends the next one, which
is the only backpressure between the browser and the encoder. A tiny pixel
toggled on every animation frame keeps the renderer producing frames even when
the page itself is static.
"""

import asyncio
import base64
import logging
from typing import Any, Callable, Optional

from playwright.async_api import async_playwright

from ..domain.exceptions import CaptureError, is_transient_page_error
from ..domain.models import CaptureConfig
from ..domain.protocols import FrameSourceEvents

logger = logging.getLogger(__name__)

CRASH_TITLES = (
    "Aw, Snap!",
    "ERR_",
    "This page isn't working",
    "This site can't be reached",
    "No internet",
)
MIN_CONTENT_LENGTH = 100

GPU_ARGS = [
    "--enable-gpu",
    "--enable-webgl",
    "--ignore-gpu-blocklist",
    "--enable-gpu-rasterization",
]
ANTI_THROTTLING_ARGS = [
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

HIDE_SCROLLBARS_JS = """() => {
    document.body.style.overflow = 'hidden';
    document.documentElement.style.overflow = 'hidden';
}"""

REPAINT_TRIGGER_JS = """() => {
    if (document.getElementById('screencast-trigger')) return;
    const trigger = document.createElement('div');
    trigger.id = 'screencast-trigger';
    trigger.style.cssText = 'position:fixed;bottom:0;right:0;width:1px;height:1px;' +
        'pointer-events:none;z-index:999999;';
    document.body.appendChild(trigger);
    let frame = 0;
    function animate() {
        frame++;
        trigger.style.backgroundColor = frame % 2 === 0
            ? 'rgba(0,0,0,0.001)'
            : 'rgba(0,0,0,0.002)';
        requestAnimationFrame(animate);
    }
    animate();
}"""

PAGE_HEALTH_JS = """() => ({
    title: document.title || '',
    contentLength: (document.body && document.body.innerText || '').length,
    url: window.location.href,
})"""


async def hide_scrollbars(page: Any) -> None:
    """Hide page scrollbars so they never show up in the stream."""
    await page.evaluate(HIDE_SCROLLBARS_JS)


class BrowserFrameSource:
    """One Chromium browser, one page, one screencast session."""

    def __init__(
        self,
        config: CaptureConfig,
        events: FrameSourceEvents,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        """Initialize the frame source.

        Args:
            config: Capture configuration, fixed for this instance
            events: Callbacks for frames, errors and browser disconnects
            playwright_factory: Playwright entry point, replaceable in tests
        """
        self.config = config
        self.events = events
        self._playwright_factory = playwright_factory

        self._playwright = None
        self._browser = None
        self._page = None
        self._cdp_session = None

        self._capturing = False
        self._refreshing = False
        self._frame_count = 0
        self._empty_page_count = 0
        self._auto_refresh_task: Optional[asyncio.Task] = None
        self._navigation_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Launch the browser, open the page and start the screencast.

        Raises:
            CaptureError: If the source is already running, the browser does not
                launch in time or the initial navigation fails
        """
        if self._capturing:
            raise CaptureError("Capture already running")

        try:
            await asyncio.wait_for(self._launch(), timeout=self.config.launch_timeout)
        except asyncio.TimeoutError as e:
            await self._close_browser()
            raise CaptureError(
                f"Browser launch timed out after {self.config.launch_timeout}s"
            ) from e
        except Exception as e:
            await self._close_browser()
            raise CaptureError(f"Browser launch failed: {e}") from e

        try:
            logger.info(f"Navigating to {self.config.url}")
            await self._page.goto(
                self.config.url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout * 1000,
            )
            await hide_scrollbars(self._page)

            self._capturing = True
            await self._start_screencast()
        except Exception as e:
            self._capturing = False
            await self._close_browser()
            raise CaptureError(f"Failed to load {self.config.url}: {e}") from e

        self._page.on("load", self._on_page_load)
        if self.config.auto_refresh_interval > 0:
            self._auto_refresh_task = asyncio.create_task(self._auto_refresh_loop())

        logger.info("Browser ready, screencast active")

    async def _launch(self) -> None:
        logger.info("Launching Chromium")
        self._playwright = await self._playwright_factory().start()

        launch_args = [
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            *GPU_ARGS,
            *ANTI_THROTTLING_ARGS,
            "--disable-infobars",
            "--autoplay-policy=no-user-gesture-required",
            f"--window-size={self.config.width},{self.config.height}",
            "--window-position=0,0",
        ]
        if not self.config.headless:
            launch_args.append("--kiosk")

        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            executable_path=self.config.executable_path,
            args=launch_args,
            ignore_default_args=["--enable-automation"],
        )
        self._browser.on("disconnected", self._on_browser_disconnected)

        context = await self._browser.new_context(
            viewport={"width": self.config.width, "height": self.config.height}
        )
        self._page = await context.new_page()

    async def _start_screencast(self) -> None:
        """Open a CDP session, inject the repaint trigger and begin streaming."""
        if not self._page:
            return

        self._cdp_session = await self._page.context.new_cdp_session(self._page)
        self._cdp_session.on("Page.screencastFrame", self._on_screencast_frame)

        await self._page.evaluate(REPAINT_TRIGGER_JS)

        await self._cdp_session.send(
            "Page.startScreencast",
            {
                "format": "jpeg",
                "quality": self.config.quality,
                "maxWidth": self.config.width,
                "maxHeight": self.config.height,
                "everyNthFrame": 1,
            },
        )
        logger.info(
            f"Screencast started ({self.config.width}x{self.config.height}, "
            f"{self.config.quality}% quality)"
        )

    async def _stop_screencast(self) -> None:
        session = self._cdp_session
        self._cdp_session = None
        if not session:
            return

        try:
            await session.send("Page.stopScreencast")
        except Exception as e:
            logger.debug(f"Stop screencast error (ignored): {e}")
        try:
            await session.detach()
        except Exception as e:
            logger.debug(f"CDP detach error (ignored): {e}")

    async def _on_screencast_frame(self, params: dict) -> None:
        """Acknowledge a frame, then forward it.

        Nothing awaits between the acknowledgement completing and the frame
        being forwarded, so frames reach the callback in delivery order.
        """
        session = self._cdp_session
        if not self._capturing or not session:
            return

        try:
            await session.send("Page.screencastFrameAck", {"sessionId": params["sessionId"]})
        except Exception as e:
            if self._capturing:
                logger.warning(f"Frame ack error: {e}")
            return

        frame = base64.b64decode(params["data"])
        self._frame_count += 1
        self.events.on_frame(frame)

    def _on_browser_disconnected(self, *_: Any) -> None:
        if not self._capturing:
            return
        logger.warning("Browser disconnected")
        self._capturing = False
        self.events.on_disconnect()

    def _on_page_load(self, *_: Any) -> None:
        """Restart the screencast after the page loads a new document."""
        if not self._capturing or self._refreshing:
            return

        url = self._page.url if self._page else "unknown"
        logger.info(f"Page navigation detected: {url[:80]}")
        task = asyncio.create_task(self._resume_after_navigation())
        self._navigation_tasks.add(task)
        task.add_done_callback(self._navigation_tasks.discard)

    async def _resume_after_navigation(self) -> None:
        try:
            await self._stop_screencast()
            await self._start_screencast()
            logger.info("Screencast restarted after navigation")
        except Exception as e:
            logger.error(f"Failed to restart screencast after navigation: {e}")
            # A newer navigation schedules its own resume
            if self._capturing and not is_transient_page_error(e):
                self.events.on_error(CaptureError(f"Screencast lost after navigation: {e}"))

    async def _auto_refresh_loop(self) -> None:
        logger.info(f"Auto-refresh enabled every {self.config.auto_refresh_interval}s")
        while True:
            await asyncio.sleep(self.config.auto_refresh_interval)
            try:
                await self.refresh_page()
            except CaptureError as e:
                logger.error(f"Auto-refresh failed: {e}")
                if self._capturing and not self._cdp_session:
                    self.events.on_error(e)

    async def check_page_health(self) -> None:
        """Verify the page is open, not crashed and not persistently empty.

        After ``max_empty_page_checks`` consecutive empty results the page is
        reloaded here instead of reporting a failure.

        Raises:
            CaptureError: If the page is closed or shows a crash page
        """
        if not self._page or not self._capturing:
            return

        if self._page.is_closed():
            raise CaptureError("Page is closed")

        health = await self._page.evaluate(PAGE_HEALTH_JS)
        title = health.get("title", "")

        if any(indicator in title for indicator in CRASH_TITLES):
            raise CaptureError(f'Browser crashed - page shows: "{title}"')

        if health.get("contentLength", 0) > MIN_CONTENT_LENGTH:
            self._empty_page_count = 0
            return

        self._empty_page_count += 1
        logger.warning(
            f"Page appears empty ({self._empty_page_count}/{self.config.max_empty_page_checks})"
        )
        if self._empty_page_count >= self.config.max_empty_page_checks:
            logger.info("Too many empty page checks, forcing refresh")
            self._empty_page_count = 0
            await self.refresh_page()

    async def refresh_page(self) -> None:
        """Reload the page, bypassing the cache, without restarting the browser.

        Raises:
            CaptureError: If the reload failed; the screencast is restarted on
                the current document before raising
        """
        if not self._page or not self._capturing:
            return

        logger.info("Refreshing page")
        self._refreshing = True
        try:
            await self._stop_screencast()
            await self._page.set_extra_http_headers(
                {"Cache-Control": "no-cache", "Pragma": "no-cache"}
            )
            try:
                await self._page.reload(
                    wait_until="networkidle", timeout=self.config.reload_timeout * 1000
                )
            finally:
                await self._page.set_extra_http_headers({})
            await hide_scrollbars(self._page)
            await self._start_screencast()
            logger.info("Page refreshed")
        except Exception as e:
            logger.error(f"Refresh error: {e}")
            if not self._cdp_session and self._capturing:
                try:
                    await self._start_screencast()
                except Exception as restart_error:
                    logger.error(f"Screencast restart after refresh failed: {restart_error}")
            raise CaptureError(f"Page refresh failed: {e}") from e
        finally:
            self._refreshing = False

    async def stop(self) -> None:
        """Stop the screencast, close the page, close the browser."""
        logger.info("Stopping browser")
        self._capturing = False

        if self._auto_refresh_task:
            self._auto_refresh_task.cancel()
            self._auto_refresh_task = None
        for task in list(self._navigation_tasks):
            task.cancel()

        await self._stop_screencast()
        await self._close_browser()
        logger.info("Browser stopped")

    async def _close_browser(self) -> None:
        if self._page:
            try:
                await self._page.close()
            except Exception as e:
                logger.debug(f"Page close error (ignored): {e}")
            self._page = None

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"Browser close error (ignored): {e}")
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Playwright stop error (ignored): {e}")
            self._playwright = None

    def is_running(self) -> bool:
        return self._capturing

    def get_frame_count(self) -> int:
        return self._frame_count

    def get_page(self) -> Optional[Any]:
        return self._page
