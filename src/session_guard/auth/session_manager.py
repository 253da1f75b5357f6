"""Persistent browser login on top of a leased session directory."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path

from ..config import LOGIN_SUCCESS_MARKERS, LOGIN_TIMEOUT_SECONDS, LOGIN_URL
from ..coordinator import SessionCoordinator, SessionLease
from ..errors import ConfigurationError
from ..events import SessionEvent
from ..session.files import remove_path

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    connected = "connected"
    expired = "expired"
    unknown = "unknown"


class BrowserSession:
    """Runs Chromium with its profile in the coordinator's session directory.

    Login outcomes are reported through the coordinator's event bus, so the
    lock is released when the client disconnects.
    """

    def __init__(
        self,
        coordinator: SessionCoordinator,
        *,
        login_url: str = LOGIN_URL,
        success_markers: tuple[str, ...] = LOGIN_SUCCESS_MARKERS,
        timeout_seconds: float = LOGIN_TIMEOUT_SECONDS,
        headless: bool = False,
    ) -> None:
        self.coordinator = coordinator
        self.login_url = login_url
        self.success_markers = success_markers
        self.timeout_seconds = timeout_seconds
        self.headless = headless
        self._status = SessionStatus.unknown
        self._browser_lock = asyncio.Lock()

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def lease(self) -> SessionLease:
        if self.coordinator.lease is None:
            raise ConfigurationError("Session has not been started")
        return self.coordinator.lease

    @property
    def user_data_dir(self) -> str:
        return str(self.lease.session_path)

    async def open(self) -> SessionLease:
        if self.coordinator.lease is not None:
            return self.coordinator.lease
        return await self.coordinator.start()

    async def login(self) -> SessionStatus:
        """Open a visible browser and wait for the user to finish signing in.

        Success is detected when the page URL contains one of the configured
        markers; with no markers, any navigation away from the login URL
        counts.
        """
        if not self.login_url:
            raise ConfigurationError("SG_LOGIN_URL is not set")
        user_data_dir = self.user_data_dir
        events = self.coordinator.events
        await events.emit(SessionEvent.auth_challenge, url=self.login_url)
        logger.info("Opening browser for login at %s", self.login_url)

        def _matches(url: str) -> bool:
            if self.success_markers:
                return any(marker in url for marker in self.success_markers)
            return not url.startswith(self.login_url)

        def _do_login() -> SessionStatus:
            from patchright.sync_api import TimeoutError as PlaywrightTimeoutError
            from patchright.sync_api import sync_playwright

            with sync_playwright() as pw:
                context = pw.chromium.launch_persistent_context(
                    user_data_dir=user_data_dir,
                    channel="chrome",
                    headless=self.headless,
                    viewport={"width": 1280, "height": 900},
                    args=[
                        "--disable-blink-features=AutomationControlled",
                        "--no-first-run",
                        "--no-default-browser-check",
                    ],
                )
                try:
                    page = context.pages[0] if context.pages else context.new_page()
                    page.goto(self.login_url, wait_until="domcontentloaded")
                    try:
                        page.wait_for_url(_matches, timeout=self.timeout_seconds * 1000)
                    except PlaywrightTimeoutError:
                        logger.warning("Login wait timed out at %s", page.url)
                        return SessionStatus.expired
                    logger.info("Login successful, landed on %s", page.url)
                    return SessionStatus.connected
                finally:
                    context.close()

        async with self._browser_lock:
            self._status = await asyncio.to_thread(_do_login)

        if self._status is SessionStatus.connected:
            await events.emit(SessionEvent.authenticated, session_path=user_data_dir)
            await events.emit(SessionEvent.ready, session_path=user_data_dir)
        else:
            await events.emit(SessionEvent.auth_failure, reason="timeout")
        return self._status

    async def logout(self) -> SessionStatus:
        """Delete the persisted profile for this identity."""
        session_dir = Path(self.user_data_dir)

        def _do_logout() -> None:
            if session_dir.exists():
                remove_path(session_dir)

        async with self._browser_lock:
            await asyncio.to_thread(_do_logout)
            self._status = SessionStatus.unknown
        return self._status

    async def close(self, reason: str = "closed") -> None:
        await self.coordinator.events.emit(SessionEvent.disconnected, reason=reason)
