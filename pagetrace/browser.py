"""
browser.py
==========

Crawler configuration and the local Chromium launcher.

Chromium comes from Playwright's managed browser install unless an explicit
executable is configured. The process is started with a random remote
debugging port; the browser-level websocket is discovered through the
DevTools HTTP endpoint and wrapped in a cdp.Connection.
"""
import asyncio
import os
import re
import shutil
import tempfile
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import httpx
from playwright.async_api import async_playwright

from .cdp import Connection
from .debug import debug_print


# ─── Constants ───────────────────────────────────────────────
DEFAULT_MAX_LOAD_TIME_MS = 30_000  # page-load (soft) timeout
DEFAULT_EXTRA_EXECUTION_TIME_MS = 2_500  # grace period after load
DEFAULT_OUTPUT_DIR = "./data"
ENDPOINT_WAIT_TIMEOUT_SEC = 30  # how long to wait for DevToolsActivePort
BROWSER_CLOSE_TIMEOUT_SEC = 5
MAX_ASYNC_STACK_TRACE_LIMIT = 32

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 10; Pixel 2 XL) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1440, "height": 812, "deviceScaleFactor": 0, "mobile": False}
MOBILE_VIEWPORT = {"width": 412, "height": 691, "deviceScaleFactor": 2, "mobile": True}

# Chromium switches applied to every launch (headless-specific ones added later)
BASE_CHROME_ARGS = [
    "--allow-pre-commit-input",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-extensions-with-background-pages",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-hang-monitor",
    "--disable-infobars",
    "--disable-ipc-flooding-protection",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--disable-search-engine-choice-screen",
    "--disable-sync",
    "--enable-automation",
    "--force-color-profile=srgb",
    "--metrics-recording-only",
    "--no-first-run",
    "--password-store=basic",
    "--use-mock-keychain",
    "--disable-features=Translate,AcceptCHFrame,MediaRouter,OptimizationHints",
    f"--js-flags=--async-stack-traces --stack-trace-limit {MAX_ASYNC_STACK_TRACE_LIMIT}",
]


class BrowserLaunchError(RuntimeError):
    """The browser process could not be started or connected to."""


# ───────────────────────── data structures ──────────────────────────

@dataclass
class Config:
    """Centralized configuration for the crawler.

    Example usage:
        # From command line arguments
        config = Config.from_args(parsed_args)

        # Programmatic usage
        config = Config(max_load_time_ms=45_000, emulate_mobile=True)

    Environment variables:
        PAGETRACE_CHROME: Chromium executable (defaults to Playwright's build)
        PAGETRACE_PROXY: Default proxy server
        PAGETRACE_MAX_LOAD_TIME: Page-load timeout in milliseconds
        PAGETRACE_OUTPUT_DIR: Default output directory
        PAGETRACE_VERBOSE: Enable verbose output (1/true/yes)
    """

    # ─── Browser ───
    executable_path: Optional[str] = field(default_factory=lambda: os.getenv("PAGETRACE_CHROME") or None)
    headless: bool = True
    proxy: Optional[str] = field(default_factory=lambda: os.getenv("PAGETRACE_PROXY") or None)

    # ─── Crawl ───
    max_load_time_ms: int = field(default_factory=lambda: int(os.getenv("PAGETRACE_MAX_LOAD_TIME", DEFAULT_MAX_LOAD_TIME_MS)))
    extra_execution_time_ms: int = DEFAULT_EXTRA_EXECUTION_TIME_MS
    emulate_mobile: bool = False
    emulate_user_agent: bool = True
    filter_out_first_party: bool = False
    run_in_every_frame: Optional[str] = None
    collector_flags: Dict[str, str] = field(default_factory=dict)

    # ─── Run ───
    collectors: Optional[List[str]] = None
    crawlers: Optional[int] = None
    verbose: bool = field(default_factory=lambda: os.getenv("PAGETRACE_VERBOSE", "").lower() in ("1", "true", "yes"))
    output_dir: str = field(default_factory=lambda: os.getenv("PAGETRACE_OUTPUT_DIR", DEFAULT_OUTPUT_DIR))
    plain_progress: bool = False

    @classmethod
    def from_args(cls, args) -> "Config":
        """Create a Config instance from command line arguments.

        @param args: Parsed command line arguments
        @return: Configured Config instance
        @raises ValueError: If arguments are invalid
        """
        config = cls()

        try:
            config.max_load_time_ms = int(float(args.max_load_time) * 1000)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid load time value: {args.max_load_time}")
        if config.max_load_time_ms <= 0:
            raise ValueError("Load time must be positive")

        config.crawlers = args.crawlers
        if config.crawlers is not None and config.crawlers < 1:
            raise ValueError("Number of crawlers must be at least 1")

        if args.proxy:
            if not _is_valid_proxy(args.proxy):
                raise ValueError(f"Invalid proxy format: {args.proxy}")
            config.proxy = args.proxy

        if args.collectors:
            config.collectors = [name.strip() for name in args.collectors.split(",") if name.strip()]

        if args.executable_path:
            config.executable_path = args.executable_path

        config.emulate_mobile = args.mobile
        config.filter_out_first_party = args.only_3p
        config.headless = not args.headful
        config.verbose = args.verbose
        config.output_dir = args.output_dir
        config.plain_progress = args.plain_progress
        return config

    @property
    def user_agent(self) -> str:
        return MOBILE_USER_AGENT if self.emulate_mobile else DEFAULT_USER_AGENT

    @property
    def viewport(self) -> dict:
        return MOBILE_VIEWPORT if self.emulate_mobile else DEFAULT_VIEWPORT

    def chrome_args(self, user_data_dir: str) -> List[str]:
        """Command line switches for one browser process."""
        args = list(BASE_CHROME_ARGS)
        if self.headless:
            args += ["--headless=new", "--hide-scrollbars", "--mute-audio"]
        else:
            args.append("--auto-open-devtools-for-tabs")
        if self.proxy:
            host = re.sub(r"^\w+://", "", self.proxy).rsplit(":", 1)[0]
            args.append(f"--proxy-server={self.proxy}")
            args.append(f"--host-resolver-rules=MAP * ~NOTFOUND, EXCLUDE {host}")
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            args.append("--no-sandbox")
        args += [
            f"--user-data-dir={user_data_dir}",
            "--remote-debugging-port=0",
            "about:blank",
        ]
        return args


# ───────────────────────── launcher ──────────────────────────

_CHROMIUM_PATH: Optional[str] = None


async def find_chromium_executable() -> str:
    """Return the Chromium binary managed by Playwright.

    @raises BrowserLaunchError: If the browser has not been installed
    """
    global _CHROMIUM_PATH
    if _CHROMIUM_PATH is None:
        async with async_playwright() as p:
            _CHROMIUM_PATH = p.chromium.executable_path
    if not Path(_CHROMIUM_PATH).exists():
        raise BrowserLaunchError(
            f"Chromium not found at {_CHROMIUM_PATH}. "
            "Install it with: python -m playwright install chromium"
        )
    return _CHROMIUM_PATH


class LocalChrome:
    """One Chromium process plus its browser-level CDP connection."""

    def __init__(self, config: Config):
        self.config = config
        self.process: Optional[asyncio.subprocess.Process] = None
        self.user_data_dir: Optional[str] = None
        self.connection: Optional[Connection] = None
        self._closing = False

    async def start(self) -> Connection:
        """Launch the process and connect to it.

        @return: Browser-level connection
        @raises BrowserLaunchError: If the process cannot be started or reached
        """
        executable = self.config.executable_path or await find_chromium_executable()
        self.user_data_dir = tempfile.mkdtemp(prefix="pagetrace_chrome_profile-")
        args = self.config.chrome_args(self.user_data_dir)
        debug_print(f"[DEBUG] launching {executable} {' '.join(args)}")

        try:
            self.process = await asyncio.create_subprocess_exec(
                executable, *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            self._remove_profile()
            raise BrowserLaunchError(f"Could not start {executable}: {exc}") from exc

        try:
            ws_url = await self._wait_for_endpoint()
            self.connection = await Connection.connect(ws_url)
        except Exception as exc:
            await self.close()
            if isinstance(exc, BrowserLaunchError):
                raise
            raise BrowserLaunchError(f"Could not connect to browser: {exc}") from exc

        debug_print(f"[DEBUG] browser connected: {ws_url}")
        return self.connection

    async def _wait_for_endpoint(self) -> str:
        """Poll DevToolsActivePort, then resolve the websocket via /json/version."""
        port_file = Path(self.user_data_dir) / "DevToolsActivePort"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ENDPOINT_WAIT_TIMEOUT_SEC

        while True:
            if self.process.returncode is not None:
                raise BrowserLaunchError(f"Browser exited early with code {self.process.returncode}")
            if port_file.exists():
                lines = port_file.read_text(encoding="utf-8").splitlines()
                if lines and lines[0].strip().isdigit():
                    port = int(lines[0].strip())
                    break
            if loop.time() > deadline:
                raise BrowserLaunchError("Timed out waiting for the DevTools endpoint")
            await asyncio.sleep(0.1)

        async with httpx.AsyncClient() as client:
            version_info = await client.get(f"http://127.0.0.1:{port}/json/version", timeout=10)
            version_info.raise_for_status()
            return version_info.json()["webSocketDebuggerUrl"]

    async def close(self) -> None:
        """Close gracefully, falling back to killing the process."""
        if self._closing:
            return
        self._closing = True

        if self.connection is not None and not self.connection.closed:
            with suppress(Exception):
                await self.connection.send("Browser.close", timeout=BROWSER_CLOSE_TIMEOUT_SEC)
            await self.connection.close()

        if self.process is not None and self.process.returncode is None:
            try:
                await asyncio.wait_for(self.process.wait(), BROWSER_CLOSE_TIMEOUT_SEC)
            except asyncio.TimeoutError:
                print("[WARN] browser did not exit in time, killing it")
                with suppress(ProcessLookupError):
                    self.process.kill()
                await self.process.wait()

        self._remove_profile()

    def _remove_profile(self) -> None:
        if self.user_data_dir:
            shutil.rmtree(self.user_data_dir, ignore_errors=True)
            self.user_data_dir = None


async def open_browser(config: Config) -> LocalChrome:
    """Start a browser and return it once its connection is up."""
    browser = LocalChrome(config)
    await browser.start()
    return browser


# ─── Helper functions ───

def _is_valid_proxy(proxy: str) -> bool:
    """Validate proxy format."""
    return re.fullmatch(r"(socks5|http|https)://.+:\d{2,5}", proxy) is not None
