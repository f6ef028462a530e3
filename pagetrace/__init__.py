"""
pagetrace - Record what a web page does while it loads.

Drives headless Chromium over the DevTools protocol, pauses every new target
until it is instrumented and collects network requests, cookies, targets and
calls to fingerprinting-relevant JavaScript APIs attributed to the script that
made them.
"""

__version__ = "1.0.0"

# Main exports for API usage
from .browser import BrowserLaunchError, Config
from .conductor import Conductor, run_crawls
from .crawler import CrawlResult, CrawlTimeoutError, crawl

__all__ = [
    "BrowserLaunchError",
    "Config",
    "Conductor",
    "CrawlResult",
    "CrawlTimeoutError",
    "crawl",
    "run_crawls",
    "__version__",
]
