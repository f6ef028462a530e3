"""
conductor.py - Crawl many URLs with bounded concurrency and retries

Usage:
    conductor = Conductor(config, collectors_from_names(["requests", "apis"]))
    async for url, outcome in conductor.stream(urls):
        if isinstance(outcome, Exception):
            ...  # permanent failure after retries
        else:
            ...  # CrawlResult

    # or with callbacks
    await run_crawls(urls, config, data_callback=on_data, failure_callback=on_failure)

Each URL gets exactly one outcome. Failed attempts are re-queued until the
retry budget runs out. A BrowserLaunchError aborts the whole run.
"""

import asyncio
import inspect
import math
import os
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlparse

from .browser import BrowserLaunchError, Config
from .collectors import CollectorFactory, collectors_from_names
from .crawler import CrawlResult, crawl
from .debug import debug_print, make_log
from .pool import BrowserPool

# ─── Constants ───────────────────────────────────────────────
MAX_NUMBER_OF_CRAWLERS = 38  # bandwidth-bound beyond this point
MAX_NUMBER_OF_RETRIES = 2  # attempts per URL, the first one included
CPU_SHARE = 0.8

Outcome = Union[CrawlResult, Exception]
Callback = Callable[[str, Outcome], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class CrawlTask:
    url: str
    retries_remaining: int = MAX_NUMBER_OF_RETRIES - 1


def default_concurrency(url_count: int, cpu_count: Optional[int] = None) -> int:
    """80% of the cores, capped at MAX_NUMBER_OF_CRAWLERS and the URL count."""
    cpus = cpu_count or os.cpu_count() or 1
    return max(1, min(math.floor(cpus * CPU_SHARE), MAX_NUMBER_OF_CRAWLERS, url_count))


class Conductor:
    def __init__(
        self,
        config: Config,
        collector_factories: List[CollectorFactory],
        concurrency: Optional[int] = None,
        pool: Optional[BrowserPool] = None,
        crawl_fn=crawl,
        max_retries: int = MAX_NUMBER_OF_RETRIES,
    ):
        """
        @param config: Crawl configuration shared by every URL
        @param collector_factories: Called once per attempt for fresh collectors
        @param concurrency: Concurrent crawls (defaults to default_concurrency())
        @param pool: Browser pool (one is created from config if omitted)
        @param crawl_fn: Coroutine function with crawl()'s signature
        @param max_retries: Attempts per URL, the first one included
        """
        self.config = config
        self.collector_factories = collector_factories
        self.concurrency = concurrency
        self.pool = pool or BrowserPool(config)
        self.crawl_fn = crawl_fn
        self.max_retries = max_retries

    async def _crawl_once(self, url: str) -> CrawlResult:
        handle = await self.pool.acquire()
        try:
            collectors = [factory() for factory in self.collector_factories]
            log = make_log(urlparse(url).hostname or url)
            return await self.crawl_fn(url, handle, collectors, self.config, log)
        finally:
            await self.pool.release(handle)

    async def stream(self, urls: Iterable[str]) -> AsyncIterator[Tuple[str, Outcome]]:
        urls = list(urls)
        if not urls:
            return

        concurrency = min(self.concurrency or default_concurrency(len(urls)), len(urls))
        debug_print(f"[DEBUG] crawling {len(urls)} URLs with {concurrency} crawlers")

        tasks: asyncio.Queue = asyncio.Queue()
        outcomes: asyncio.Queue = asyncio.Queue()
        for url in urls:
            tasks.put_nowait(CrawlTask(url, max(self.max_retries - 1, 0)))

        async def worker():
            while True:
                task = await tasks.get()
                try:
                    result = await self._crawl_once(task.url)
                except BrowserLaunchError as exc:
                    outcomes.put_nowait((task.url, exc))
                except Exception as exc:
                    if task.retries_remaining > 0:
                        print(f"[WARN] {task.url} failed ({type(exc).__name__}: {exc}), "
                              f"retrying ({task.retries_remaining} left)")
                        tasks.put_nowait(CrawlTask(task.url, task.retries_remaining - 1))
                    else:
                        outcomes.put_nowait((task.url, exc))
                else:
                    outcomes.put_nowait((task.url, result))
                finally:
                    tasks.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(concurrency)]
        remaining = len(urls)
        try:
            while remaining:
                url, outcome = await outcomes.get()
                if isinstance(outcome, BrowserLaunchError):
                    raise outcome
                remaining -= 1
                yield url, outcome
        finally:
            for w in workers:
                w.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self.pool.close_all()

    async def run(
        self,
        urls: Iterable[str],
        data_callback: Optional[Callback] = None,
        failure_callback: Optional[Callback] = None,
    ) -> None:
        """Crawl every URL, reporting each outcome through a callback."""
        async for url, outcome in self.stream(urls):
            callback = failure_callback if isinstance(outcome, Exception) else data_callback
            if callback is None:
                continue
            ret = callback(url, outcome)
            if inspect.isawaitable(ret):
                await ret


async def run_crawls(
    urls: Iterable[str],
    config: Optional[Config] = None,
    collectors: Optional[List[str]] = None,
    data_callback: Optional[Callback] = None,
    failure_callback: Optional[Callback] = None,
    concurrency: Optional[int] = None,
) -> None:
    """
    Convenience wrapper around Conductor.run().

    @param urls: URLs to crawl
    @param config: Crawl configuration (defaults to Config())
    @param collectors: Collector ids (defaults to config.collectors, then all)
    @raises ValueError: Unknown collector id
    @raises BrowserLaunchError: No browser could be started
    """
    config = config or Config()
    factories = collectors_from_names(collectors or config.collectors)
    conductor = Conductor(config, factories, concurrency=concurrency or config.crawlers)
    await conductor.run(urls, data_callback, failure_callback)
