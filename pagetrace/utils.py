"""
utils.py - Shared utilities for script templates, timing and URL checks

Consolidates commonly used functionality across the crawler, the
interception engine and the collectors.
"""

import time
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import tldextract


# ───────────────────────── Template Processing ──────────────────────────

class TemplateLoader:
    """
    Load JavaScript templates shipped in pagetrace/js and render them.

    Placeholders use the __NAME__ convention; variables may be given either
    already wrapped ("__DESCRIPTION__") or bare ("description").
    """

    def __init__(self, js_dir: Path = None):
        """
        @param js_dir: Directory containing JavaScript template files
        """
        self.js_dir = js_dir or Path(__file__).resolve().parent / "js"
        self.js_templates_cache: Dict[str, str] = {}

    def load(self, name: str) -> str:
        """
        Return the raw template text, reading it from disk only once.

        @param name: JS file name (e.g., "breakpoint_condition.js")
        @raises FileNotFoundError: If the template does not exist
        """
        if name not in self.js_templates_cache:
            template_path = self.js_dir / name
            if not template_path.exists():
                raise FileNotFoundError(f"JS template not found: {template_path}")
            self.js_templates_cache[name] = template_path.read_text(encoding="utf-8")
        return self.js_templates_cache[name]

    def render(self, name: str, template_vars: Dict[str, Any]) -> str:
        """
        Load a JS template and substitute every known placeholder.

        @param name: JS file name
        @param template_vars: Dict of variable names to values for replacement
        @return: Rendered JavaScript code
        """
        rendered = self.load(name)
        for var_name, var_value in template_vars.items():
            if var_name.startswith("__") and var_name.endswith("__"):
                placeholder = var_name
            else:
                placeholder = f"__{var_name.upper()}__"
            rendered = rendered.replace(placeholder, str(var_value))
        return rendered


# ───────────────────────── Timing ──────────────────────────

class Timer:
    """Wall-clock stopwatch used for the per-step timing log lines."""

    def __init__(self):
        self._start = time.perf_counter()

    def elapsed(self) -> str:
        return f"{time.perf_counter() - self._start:.3f}"


def now_ms() -> int:
    """Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


# ───────────────────────── URL helpers ──────────────────────────

# bundled public suffix snapshot, no network fetch at crawl time
_extract = tldextract.TLDExtract(suffix_list_urls=())

def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    except Exception:
        return False


def registered_domain(url: str) -> Optional[str]:
    """Return the registrable domain (eTLD+1) of *url*, or None."""
    ext = _extract(url)
    return ext.registered_domain or None


def is_third_party_request(document_url: str, request_url: str) -> bool:
    """True when *request_url* belongs to a different site than *document_url*."""
    return registered_domain(request_url) != registered_domain(document_url)


def normalize_url(url: str) -> str:
    """Canonical form of *url* as the browser reports it (empty path becomes '/')."""
    parsed = urlparse(url)
    if parsed.netloc and not parsed.path:
        parsed = parsed._replace(path="/")
    return parsed.geturl()


def deobfuscate_url(text: str) -> str:
    return (
        text.replace("hxxp://", "http://")
        .replace("hxxps://", "https://")
        .replace("[.]", ".")
        .replace("[:]", ":")
    )
