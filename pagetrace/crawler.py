"""
crawler.py - One page load in an isolated browser context

Usage:
    result = await crawl("https://example.com", handle, [RequestCollector()], Config())
    json.dumps(result.to_dict())

Timeouts:
    - page load (config.max_load_time_ms) is soft: the result is flagged with
      timed_out=True and collection continues with whatever loaded
    - the whole crawl is bounded by 2 * max_load_time_ms plus the collectors'
      extra time; exceeding it raises CrawlTimeoutError
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .browser import Config
from .cdp import CDPError, is_ignorable
from .collectors.base import BaseCollector, CollectorInitOptions, FinalizationOptions
from .debug import Log, make_log
from .targets import TargetCrashedError, TargetManager
from .utils import Timer, is_third_party_request, now_ms


class CrawlTimeoutError(Exception):
    """The crawl exceeded its overall time budget."""


class NavigationTimeoutError(Exception):
    """The main page did not reach network idle within the load timeout."""


@dataclass(frozen=True)
class CrawlResult:
    initial_url: str
    final_url: str
    timed_out: bool
    started_at: int
    finished_at: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initialUrl": self.initial_url,
            "finalUrl": self.final_url,
            "timeout": self.timed_out,
            "testStarted": self.started_at,
            "testFinished": self.finished_at,
            "data": self.data,
        }


def collectors_extra_time_ms(collectors: List[BaseCollector]) -> int:
    return sum(collector.collector_extra_time_ms for collector in collectors)


class Crawler:
    def __init__(self, handle, collectors: List[BaseCollector], config: Config, log: Log):
        """
        @param handle: pool.BrowserHandle with a started TargetRouter
        @param collectors: Fresh collector instances for this crawl
        @param config: Crawl configuration
        @param log: Per-URL debug logger
        """
        self.connection = handle.connection
        self.router = handle.router
        self.collectors = collectors
        self.config = config
        self.log = log
        self.browser_context_id: Optional[str] = None
        self.manager: Optional[TargetManager] = None

    # ─── Collector lifecycle ───

    async def init_collectors(self, url: str) -> None:
        options = CollectorInitOptions(
            connection=self.connection,
            url=url,
            log=self.log,
            collector_flags=self.config.collector_flags,
            browser_context_id=self.browser_context_id,
        )

        async def _init(collector: BaseCollector):
            timer = Timer()
            try:
                await collector.init(options)
                self.log(f"{collector.id} init took {timer.elapsed()}s")
            except Exception as exc:
                self.log(f"{collector.id} init failed: {type(exc).__name__}: {exc}")

        await asyncio.gather(*(_init(c) for c in self.collectors))

    async def post_load_collectors(self) -> None:
        async def _post_load(collector: BaseCollector):
            timer = Timer()
            try:
                await collector.post_load()
                self.log(f"{collector.id} postLoad took {timer.elapsed()}s")
            except Exception as exc:
                self.log(f"{collector.id} postLoad failed: {type(exc).__name__}: {exc}")

        await asyncio.gather(*(_post_load(c) for c in self.collectors))

    async def get_collector_data(self, final_url: str) -> Dict[str, Any]:
        url_filter = None
        if self.config.filter_out_first_party:
            url_filter = lambda request_url: is_third_party_request(final_url, request_url)
        options = FinalizationOptions(final_url=final_url, url_filter=url_filter)

        async def _get_data(collector: BaseCollector):
            timer = Timer()
            try:
                data = await collector.get_data(options)
            except Exception as exc:
                self.log(f"getting {collector.id} data failed: {type(exc).__name__}: {exc}")
                return None
            self.log(f"getting {collector.id} data took {timer.elapsed()}s")
            return data

        values = await asyncio.gather(*(_get_data(c) for c in self.collectors))
        return {collector.id: value for collector, value in zip(self.collectors, values)}

    # ─── Navigation ───

    async def navigate_main_target(self, url: str, timeout_ms: int) -> None:
        """
        Navigate the main page and wait for network idle in its main frame.

        @raises NavigationTimeoutError: Load did not settle in time (soft)
        @raises TargetCrashedError: The main target crashed
        """
        loop = asyncio.get_running_loop()
        idle = loop.create_future()

        async def _navigate():
            target = await self.manager.wait_for_main_target()
            session = target.session
            navigated = False

            def on_lifecycle(event):
                # ignore leftovers from the initial about:blank load
                if not navigated or event.get("name") != "networkIdle":
                    return
                frame = self.manager.main_frame
                if frame and event.get("frameId") == frame.get("id") and not idle.done():
                    self.log(f"network idle in the main frame {frame.get('url')}")
                    session.off("Page.lifecycleEvent", on_lifecycle)
                    idle.set_result(None)

            session.on("Page.lifecycleEvent", on_lifecycle)
            response = await session.send("Page.navigate", {"url": url})
            navigated = True
            if response.get("errorText"):
                self.log(f"navigation error: {response['errorText']}")
            await idle

        navigation = asyncio.ensure_future(_navigate())
        crashed = asyncio.ensure_future(self.manager.main_crashed.wait())
        try:
            done, _ = await asyncio.wait(
                {navigation, crashed},
                timeout=timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (navigation, crashed):
                if not task.done():
                    task.cancel()

        if navigation in done:
            navigation.result()
            return
        if crashed in done:
            raise self.manager.crash_error
        raise NavigationTimeoutError(f"Page navigation timeout after {timeout_ms / 1000:.0f}s")

    async def _stop_loading(self) -> None:
        for target in self.manager.page_targets():
            try:
                await target.session.send("Page.stopLoading")
            except CDPError as exc:
                if not is_ignorable(exc):
                    self.log(f"stopLoading failed for tId {target.info.id}: {exc}")

    # ─── Main flow ───

    async def get_site_data(self, url: str) -> CrawlResult:
        started_at = now_ms()
        timer = Timer()

        context = await self.connection.send("Target.createBrowserContext", {"disposeOnDetach": True})
        self.browser_context_id = context["browserContextId"]
        self.manager = TargetManager(self.connection, self.collectors, self.config, self.log)
        # registered before the page exists so its first attachment is ours
        self.router.register(self.browser_context_id, self.manager)

        await self.init_collectors(url)
        self.log(f"init collectors took {timer.elapsed()}s")

        await self.connection.send("Target.createTarget", {
            "url": "about:blank",
            "browserContextId": self.browser_context_id,
        })

        timed_out = False
        navigation_timer = Timer()
        try:
            await self.navigate_main_target(url, self.config.max_load_time_ms)
            self.log(f"navigate main target took {navigation_timer.elapsed()}s")
        except NavigationTimeoutError as exc:
            self.log(str(exc))
            timed_out = True
            await self._stop_loading()

        post_load_timer = Timer()
        await self.post_load_collectors()
        self.log(f"post load collectors took {post_load_timer.elapsed()}s")

        # let deferred page behaviour happen before harvesting
        grace_ms = self.config.extra_execution_time_ms + collectors_extra_time_ms(self.collectors)
        await asyncio.sleep(grace_ms / 1000)

        frame = self.manager.main_frame or {}
        final_url = frame.get("url") or url
        data_timer = Timer()
        data = await self.get_collector_data(final_url)
        self.log(f"get collector data took {data_timer.elapsed()}s")

        finished_at = now_ms()
        self.log(f"crawl took {(finished_at - started_at) / 1000}s")
        return CrawlResult(
            initial_url=url,
            final_url=final_url,
            timed_out=timed_out,
            started_at=started_at,
            finished_at=finished_at,
            data=data,
        )

    async def close(self) -> None:
        """Detach sessions, unregister from the router, drop the context."""
        if self.manager is not None:
            await self.manager.detach_all()
        if self.browser_context_id is None:
            return
        self.router.unregister(self.browser_context_id)
        try:
            await self.connection.send("Target.disposeBrowserContext", {"browserContextId": self.browser_context_id})
        except CDPError as exc:
            if not is_ignorable(exc):
                self.log(f"disposing browser context failed: {exc}")


async def crawl(url: str, handle, collectors: List[BaseCollector], config: Config, log: Optional[Log] = None) -> CrawlResult:
    """
    Crawl one URL on a pooled browser.

    @param url: Page to load
    @param handle: pool.BrowserHandle to run on
    @param collectors: Fresh collector instances
    @param config: Crawl configuration
    @param log: Per-URL logger (defaults to one prefixed with the hostname)
    @return: CrawlResult with one data entry per collector id
    @raises CrawlTimeoutError: Overall time budget exceeded
    @raises TargetCrashedError: The main page crashed
    """
    log = log or make_log(urlparse(url).hostname or url)
    crawler = Crawler(handle, collectors, config, log)
    max_total_ms = 2 * config.max_load_time_ms + collectors_extra_time_ms(collectors)

    try:
        return await asyncio.wait_for(crawler.get_site_data(url), max_total_ms / 1000)
    except asyncio.TimeoutError:
        raise CrawlTimeoutError(f"{url}: crawl did not finish within {max_total_ms / 1000:.0f}s") from None
    finally:
        await crawler.close()


__all__ = [
    "CrawlResult",
    "CrawlTimeoutError",
    "Crawler",
    "NavigationTimeoutError",
    "TargetCrashedError",
    "crawl",
]
