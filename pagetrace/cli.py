"""
Command-line interface for pagetrace.

Parses arguments, crawls one URL or a file of URLs and writes one JSON
result per page plus a metadata.json summary into the output directory.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import hashlib
import json
import os
import platform
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

import aiofiles

from . import __version__
from .browser import DEFAULT_MAX_LOAD_TIME_MS, DEFAULT_OUTPUT_DIR, BrowserLaunchError, Config
from .collectors import ALL_COLLECTORS, collectors_from_names
from .conductor import Conductor, default_concurrency
from .crawler import CrawlResult, CrawlTimeoutError
from .debug import is_verbose, set_verbose
from .utils import deobfuscate_url, is_valid_url

# ─── Constants ───────────────────────────────────────────────
BAR_LEN = 40  # characters in the progress bar
METADATA_FILE_NAME = "metadata.json"

# ─── helper: filter noisy loop exceptions ───────────────────────

def _loop_exception_filter(loop, context):
    exc = context.get("exception")
    if exc and isinstance(exc, Exception):
        txt = str(exc)
        if "Target closed" in txt or "Session closed" in txt or "connection closed" in txt.lower():
            return
    loop.default_exception_handler(context)

# ─── output helpers ────────────────────────────────────────────

def output_file_name(url: str) -> str:
    """Hostname plus a short hash of the full URL, e.g. example.com_1a2b.json."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:4]
    return f"{urlparse(url).hostname}_{digest}.json"


async def write_json(path: Path, data) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as fh:
        await fh.write(json.dumps(data, indent=2))


class RunStats:
    """Counters and timings reported in metadata.json."""

    def __init__(self, total: int, skipped: int = 0):
        self.total = total
        self.skipped = skipped
        self.successes = 0
        self.failures: Dict[str, str] = {}
        self.crawl_times: List[List[int]] = []
        self.start_ts = time.time()

    @property
    def done(self) -> int:
        return self.successes + len(self.failures)


def build_metadata(config: Config, stats: RunStats, end_ts: float, fatal_error: Optional[BaseException]) -> dict:
    return {
        "startTime": int(stats.start_ts * 1000),
        "endTime": int(end_ts * 1000),
        "result": str(fatal_error) if fatal_error else "success",
        "stats": {
            "urls": stats.total,
            "skipped": stats.skipped,
            "successes": stats.successes,
            "failures": len(stats.failures),
        },
        "failures": stats.failures,
        "crawlTimes": stats.crawl_times,
        "config": {
            "numberOfCrawlers": config.crawlers,
            "dataCollectors": config.collectors or list(ALL_COLLECTORS),
            "filterOutFirstParty": config.filter_out_first_party,
            "emulateMobile": config.emulate_mobile,
            "proxyHost": config.proxy,
            "maxLoadTimeMs": config.max_load_time_ms,
        },
        "environment": {
            "projectVersion": __version__,
            "hostname": platform.node(),
            "cpus": os.cpu_count(),
            "username": getpass.getuser(),
        },
    }

# ─── display helpers ───────────────────────────────────────────

def _draw_progress(stats: RunStats, site: str):
    """Redraw a single progress line in place."""
    pct = stats.done / stats.total if stats.total else 0.0
    filled = int(BAR_LEN * pct)
    bar = "#" * filled + "-" * (BAR_LEN - filled)
    elapsed = time.time() - stats.start_ts
    line = (
        f"[{bar}] {int(pct*100):02d}% | {int(elapsed//60):02d}:{int(elapsed%60):02d} "
        f"({stats.done}/{stats.total}) {site[:60]}"
    )
    sys.stdout.write("\r\033[2K" + line)
    sys.stdout.flush()


def _report_progress(config: Config, stats: RunStats, site: str):
    if config.plain_progress or is_verbose():
        print(f"[PROGRESS] {stats.done}/{stats.total} done ({site})")
    else:
        _draw_progress(stats, site)

# ─── batch runner ──────────────────────────────────────────────

def filter_urls(urls: List[str], out_dir: Path, force_overwrite: bool) -> tuple[List[str], int]:
    """
    Drop invalid URLs and, unless overwriting, those with existing results.

    @return: Tuple of (urls to crawl, number skipped)
    """
    kept = []
    skipped = 0
    for raw in urls:
        url = deobfuscate_url(raw.strip())
        if not is_valid_url(url):
            print(f"[WARN] Invalid URL: {url}")
            skipped += 1
            continue
        if not force_overwrite and (out_dir / output_file_name(url)).exists():
            print(f"[INFO] Skipping {url}: output file already exists")
            skipped += 1
            continue
        kept.append(url)
    return kept, skipped


async def run_batch(urls: List[str], config: Config, force_overwrite: bool = False) -> int:
    """
    Crawl *urls* and write results into config.output_dir.

    @return: Process exit code (0 on success, 1 on a fatal error)
    """
    asyncio.get_running_loop().set_exception_handler(_loop_exception_filter)

    out_dir = Path(config.output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    urls, skipped = filter_urls(urls, out_dir, force_overwrite)
    stats = RunStats(total=len(urls) + skipped, skipped=skipped)

    factories = collectors_from_names(config.collectors)
    if config.crawlers is None:
        config.crawlers = default_concurrency(len(urls)) if urls else 1
    conductor = Conductor(config, factories, concurrency=config.crawlers)

    if not config.plain_progress:
        print(f"[INFO] Crawling {len(urls)} URLs with {config.crawlers} crawlers")
        print(f"[INFO] Output directory: {out_dir}")

    async def on_data(url: str, result: CrawlResult):
        stats.successes += 1
        stats.crawl_times.append([result.started_at, result.finished_at, result.finished_at - result.started_at])
        if result.timed_out:
            print(f"\n[TIMEOUT] {url} did not finish loading in {config.max_load_time_ms / 1000:.0f}s, partial data saved")
        await write_json(out_dir / output_file_name(url), result.to_dict())
        _report_progress(config, stats, url)

    def on_failure(url: str, exc: Exception):
        tag = "[TIMEOUT]" if isinstance(exc, CrawlTimeoutError) else "[ERROR]"
        print(f"\n{tag} {url}: {type(exc).__name__}: {exc}")
        stats.failures[url] = f"{type(exc).__name__}: {exc}"
        _report_progress(config, stats, url)

    fatal_error = None
    try:
        await conductor.run(urls, on_data, on_failure)
        print(f"\n[INFO] Finished: {stats.successes} succeeded, {len(stats.failures)} failed, {skipped} skipped")
    except BrowserLaunchError as e:
        print(f"\n[ERROR] Fatal: {e}")
        fatal_error = e

    await write_json(out_dir / METADATA_FILE_NAME, build_metadata(config, stats, time.time(), fatal_error))
    return 1 if fatal_error else 0

# ─── argument parsing helpers ───────────────────────────────

def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the command line argument parser."""
    parser = argparse.ArgumentParser(prog="pagetrace")
    parser.add_argument(
        "input",
        help="Target URL or a file path containing one URL per line",
    )

    parser.add_argument(
        "--output-dir", "-o",
        default=DEFAULT_OUTPUT_DIR,
        help="Directory for the JSON results; defaults to './data'",
    )

    parser.add_argument(
        "--collectors", "-d",
        help=f"Comma-separated collector ids ({', '.join(ALL_COLLECTORS)}); defaults to all",
    )

    parser.add_argument(
        "--crawlers", "-c",
        type=int,
        help="Number of concurrent crawlers; defaults to 80%% of the CPU cores",
    )

    parser.add_argument(
        "--max-load-time",
        default=str(DEFAULT_MAX_LOAD_TIME_MS / 1000),
        help="Page load timeout in seconds; slow pages are saved with timeout=true",
    )

    parser.add_argument(
        "--mobile",
        action="store_true",
        help="Emulate a mobile device (viewport and user agent)",
    )

    parser.add_argument(
        "--only-3p",
        action="store_true",
        help="Only report third-party requests and API calls",
    )

    parser.add_argument(
        "--proxy",
        help="Upstream proxy URI, format socks5://host:port or http://host:port",
    )

    parser.add_argument(
        "--executable-path",
        help="Chromium binary to use instead of Playwright's managed build",
    )

    parser.add_argument(
        "--headful",
        action="store_true",
        help="Launch a visible browser window instead of headless mode",
    )

    parser.add_argument(
        "--force-overwrite", "-f",
        action="store_true",
        help="Crawl URLs whose result file already exists",
    )

    parser.add_argument(
        "--plain-progress",
        action="store_true",
        help="Disable ANSI progress bar; print simple line output instead",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug output; prints all [DEBUG] statements",
    )

    return parser


def process_input_target(input_arg: str) -> List[str]:
    """
    Turn the input argument into a list of URLs.

    @param input_arg: A URL or a path to a file with one URL per line
    @return: URLs to crawl
    """
    target = deobfuscate_url(input_arg.strip())

    if is_valid_url(target):
        return [target]

    if not os.path.isfile(input_arg.strip()):
        print("[ERROR] Input must be a URL or file path.")
        sys.exit(1)

    with open(input_arg.strip(), encoding="utf-8") as f:
        return [ln.strip() for ln in f if ln.strip() and not ln.lstrip().startswith("#")]


def main():
    """Main entry point for the pagetrace CLI."""
    parser = create_argument_parser()
    args = parser.parse_args()

    urls = process_input_target(args.input)

    try:
        config = Config.from_args(args)
        collectors_from_names(config.collectors)
    except ValueError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)

    set_verbose(config.verbose)
    sys.exit(asyncio.run(run_batch(urls, config, force_overwrite=args.force_overwrite)))
