"""
debug.py - Debug output utilities

Provides a centralized way to control debug output across the crawler.
Operator-facing messages are printed with a tag ([INFO], [WARN], [ERROR]);
per-crawl chatter only shows up in verbose mode.

Usage:
    # Set verbose mode globally
    set_verbose(True)

    # Use in modules
    debug_print("[DEBUG] This only shows in verbose mode")

    # Per-URL logger handed to collectors
    log = make_log("example.com")
    log("target attached", target_id)
"""

import os
import sys
from typing import Any, Callable

# Global debug flag - set by cli.py or other entry points
_VERBOSE = os.getenv("PAGETRACE_VERBOSE", "").lower() in ("1", "true", "yes")

Log = Callable[..., None]


def set_verbose(enabled: bool) -> None:
    """Set the global verbose flag.

    @param enabled: Whether to enable verbose debug output
    """
    global _VERBOSE
    _VERBOSE = enabled


def debug_print(*args: Any, **kwargs: Any) -> None:
    """Print debug message only if verbose mode is enabled.

    @param args: Arguments to pass to print()
    @param kwargs: Keyword arguments to pass to print()
    """
    if _VERBOSE:
        print(*args, **kwargs)


def debug_print_error(*args: Any, **kwargs: Any) -> None:
    """Print debug error message to stderr only if verbose mode is enabled."""
    if _VERBOSE:
        print(*args, file=sys.stderr, **kwargs)


def is_verbose() -> bool:
    """Check if verbose mode is enabled.

    @return: True if verbose mode is enabled
    """
    return _VERBOSE


def make_log(prefix: str) -> Log:
    """Return a verbose-only logger that tags every line with *prefix*.

    @param prefix: Usually the hostname of the URL being crawled
    @return: Callable accepting print()-style positional arguments
    """
    def log(*args: Any) -> None:
        debug_print(f"[DEBUG] {prefix}:", *args)

    return log


def noop_log(*args: Any) -> None:
    pass
