from __future__ import annotations

import asyncio
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from dropship_worker.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PooledSession:
    identity: str
    context: BrowserContext
    last_used: float


class SessionPool:
    """
    로그인 계정별 브라우저 컨텍스트 풀.

    - 브라우저 프로세스는 하나를 공유합니다. 종료는 워커가 내려갈 때 shutdown()에서만 합니다.
    - 같은 계정의 컨텍스트는 동시에 한 작업만 사용합니다 (계정별 asyncio.Lock).
    - 유휴 시간이 지난 컨텍스트는 닫고, 다음 acquire 때 디스크의 storage_state로 복원합니다.
    """

    def __init__(
        self,
        headless: bool | None = None,
        idle_seconds: float | None = None,
        session_dir: str | Path | None = None,
        navigation_timeout_ms: int | None = None,
        action_timeout_ms: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.headless = settings.browser_headless if headless is None else headless
        self.idle_seconds = settings.browser_session_idle_seconds if idle_seconds is None else idle_seconds
        self.session_dir = Path(session_dir or settings.browser_session_dir)
        self.navigation_timeout_ms = navigation_timeout_ms or settings.browser_navigation_timeout_ms
        self.action_timeout_ms = action_timeout_ms or settings.browser_action_timeout_ms

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._browser_lock = asyncio.Lock()
        self._sessions: dict[str, PooledSession] = {}
        self._identity_locks: dict[str, asyncio.Lock] = {}
        self._clock = clock or time.monotonic

    async def _get_browser(self) -> Browser:
        async with self._browser_lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
                logger.info("[BROWSER] Playwright started")
            if self._browser is None or not self._browser.is_connected():
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
                logger.info(f"[BROWSER] Browser launched (headless={self.headless})")
            return self._browser

    def _apply_timeouts(self, context: BrowserContext) -> None:
        context.set_default_timeout(self.action_timeout_ms)
        context.set_default_navigation_timeout(self.navigation_timeout_ms)

    def state_path(self, identity: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", identity)
        return self.session_dir / f"{safe}.json"

    async def acquire(self, identity: str) -> BrowserContext:
        """
        계정 컨텍스트를 점유합니다. 반드시 release(identity)로 반납해야 합니다.
        가능하면 lease()를 사용하세요.
        """
        lock = self._identity_locks.setdefault(identity, asyncio.Lock())
        await lock.acquire()
        try:
            return await self._open(identity)
        except BaseException:
            lock.release()
            raise

    def release(self, identity: str) -> None:
        session = self._sessions.get(identity)
        if session:
            session.last_used = self._clock()
        lock = self._identity_locks.get(identity)
        if lock and lock.locked():
            lock.release()

    @asynccontextmanager
    async def lease(self, identity: str) -> AsyncIterator[BrowserContext]:
        context = await self.acquire(identity)
        try:
            yield context
        finally:
            self.release(identity)

    async def _open(self, identity: str) -> BrowserContext:
        now = self._clock()
        existing = self._sessions.get(identity)
        if existing is not None:
            if now - existing.last_used < self.idle_seconds:
                existing.last_used = now
                return existing.context
            logger.info(f"[BROWSER] Session for {self.state_path(identity).stem} idle, reopening")
            self._sessions.pop(identity, None)
            await self._close_context(existing.context)

        browser = await self._get_browser()
        state_file = self.state_path(identity)
        if state_file.exists():
            context = await browser.new_context(storage_state=str(state_file))
            logger.info(f"[BROWSER] Restored session state {state_file.name}")
        else:
            context = await browser.new_context()
        self._apply_timeouts(context)

        self._sessions[identity] = PooledSession(identity=identity, context=context, last_used=now)
        return context

    async def persist(self, identity: str, context: BrowserContext) -> Path:
        path = self.state_path(identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        await context.storage_state(path=str(path))
        logger.debug(f"[BROWSER] Session state saved: {path.name}")
        return path

    async def new_scrape_context(self) -> BrowserContext:
        """풀에 넣지 않는 일회용 컨텍스트 (상품 조회용). 호출자가 닫아야 합니다."""
        browser = await self._get_browser()
        context = await browser.new_context()
        self._apply_timeouts(context)
        return context

    async def evict_idle(self) -> int:
        """사용 중이 아닌 유휴 컨텍스트를 닫습니다."""
        now = self._clock()
        evicted = 0
        for identity, session in list(self._sessions.items()):
            lock = self._identity_locks.get(identity)
            if lock and lock.locked():
                continue
            if now - session.last_used >= self.idle_seconds:
                # close 대기 중 들어온 acquire가 새로 만든 세션을 지우지 않도록 먼저 꺼냄
                self._sessions.pop(identity, None)
                await self._close_context(session.context)
                evicted += 1
        if evicted:
            logger.info(f"[BROWSER] Evicted {evicted} idle session(s)")
        return evicted

    async def _close_context(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            logger.warning(f"[BROWSER] Context close failed: {e}")

    async def shutdown(self) -> None:
        for session in list(self._sessions.values()):
            await self._close_context(session.context)
        self._sessions.clear()

        async with self._browser_lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except PlaywrightError as e:
                    logger.warning(f"[BROWSER] Browser close failed: {e}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
        logger.info("[BROWSER] Session pool shut down")
