"""
pool.py - Reusable browser processes

A browser is handed out while it has served fewer than max_reuse crawls and
hosts fewer than max_contexts concurrent ones. It is closed once it reached
max_reuse and its last crawl released it.

All mutation happens on the event loop thread between awaits. Launches are
serialised so crawls arriving while a browser starts wait for it instead of
starting browsers of their own.
"""

import asyncio
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional

from .browser import BrowserLaunchError, Config, open_browser
from .cdp import CDPError, Connection
from .debug import debug_print
from .targets import TargetRouter

# ─── Constants ───────────────────────────────────────────────
MAX_BROWSER_REUSE = 20  # crawls per browser process before it is recycled
MAX_CONTEXTS_PER_BROWSER = 5  # concurrent crawls sharing one browser


@dataclass
class BrowserHandle:
    browser: Any  # LocalChrome, or a stand-in exposing close()
    connection: Connection
    router: TargetRouter
    used_count: int = 0
    open_context_count: int = 0

    @property
    def alive(self) -> bool:
        return not self.connection.closed

    async def close(self) -> None:
        if self.browser is not None:
            await self.browser.close()
        elif not self.connection.closed:
            await self.connection.close()


Launcher = Callable[[], Awaitable[BrowserHandle]]


async def launch_handle(config: Config) -> BrowserHandle:
    """
    Start a browser and its target router.

    @raises BrowserLaunchError: If the browser cannot be started or set up
    """
    browser = await open_browser(config)
    router = TargetRouter(browser.connection)
    try:
        await router.start()
    except CDPError as exc:
        await browser.close()
        raise BrowserLaunchError(f"Could not enable target discovery: {exc}") from exc
    return BrowserHandle(browser=browser, connection=browser.connection, router=router)


class BrowserPool:
    def __init__(
        self,
        config: Optional[Config] = None,
        max_reuse: int = MAX_BROWSER_REUSE,
        max_contexts: int = MAX_CONTEXTS_PER_BROWSER,
        launcher: Optional[Launcher] = None,
    ):
        """
        @param config: Browser settings used by the default launcher
        @param max_reuse: Crawls served by one browser before it is retired
        @param max_contexts: Concurrent crawls per browser
        @param launcher: Coroutine factory returning a new BrowserHandle
        """
        self.max_reuse = max_reuse
        self.max_contexts = max_contexts
        self._launcher = launcher or partial(launch_handle, config or Config())
        self.handles: List[BrowserHandle] = []
        self._launch_lock: Optional[asyncio.Lock] = None

    def is_reusable(self, handle: BrowserHandle) -> bool:
        return (
            handle.alive
            and handle.used_count < self.max_reuse
            and handle.open_context_count < self.max_contexts
        )

    def _claim(self) -> Optional[BrowserHandle]:
        for handle in self.handles:
            if self.is_reusable(handle):
                handle.open_context_count += 1
                return handle
        return None

    async def acquire(self) -> BrowserHandle:
        handle = self._claim()
        if handle is not None:
            return handle

        if self._launch_lock is None:
            self._launch_lock = asyncio.Lock()
        async with self._launch_lock:
            # a launch finished while we waited
            handle = self._claim()
            if handle is not None:
                return handle
            handle = await self._launcher()
            debug_print(f"[DEBUG] launched browser #{len(self.handles) + 1}")
            self.handles.append(handle)
            handle.open_context_count += 1
            return handle

    async def release(self, handle: BrowserHandle) -> None:
        handle.used_count += 1
        handle.open_context_count -= 1
        if handle.open_context_count > 0:
            return
        if handle.used_count >= self.max_reuse or not handle.alive:
            await self._retire(handle)

    async def _retire(self, handle: BrowserHandle) -> None:
        if handle in self.handles:
            self.handles.remove(handle)
        debug_print(f"[DEBUG] closing browser after {handle.used_count} crawls")
        await handle.close()

    async def close_all(self) -> None:
        """Force-close every browser, busy or not."""
        handles, self.handles = self.handles, []
        for handle in handles:
            try:
                await handle.close()
            except Exception as exc:
                print(f"[WARN] closing browser failed: {type(exc).__name__}: {exc}")
