"""
cookie_popups.py - Consent banner scraper

After the page loads, every frame of every page and iframe target is searched
for visible fixed or sticky boxes (the top document) or a non-empty body
(first-level iframes). The scrape runs in an isolated world, so the page never
sees it and it cannot trip the API breakpoints.

    {"potentialPopups": [{"text": ..., "selector": ..., "buttons": [...],
                          "isTop": true, "origin": "https://x.test"}]}
"""

import asyncio
from typing import Any, Dict, List

from ..cdp import CDPError, is_ignorable
from ..debug import noop_log
from ..utils import TemplateLoader, Timer
from .base import BaseCollector, CollectorInitOptions, FinalizationOptions

SCRAPE_SCRIPT = "scrape_popups.js"
SCRAPE_TIMEOUT_MS = 2000
POPUP_WORLD_NAME = "pagetrace_popups"
FRAME_TARGET_TYPES = ("page", "iframe")


class CookiePopupCollector(BaseCollector):
    id = "cookiepopups"
    collector_extra_time_ms = SCRAPE_TIMEOUT_MS

    def __init__(self):
        self._templates = TemplateLoader()
        self._targets: Dict[str, Any] = {}  # target id -> session
        self._popups: List[Dict[str, Any]] = []
        self._log = noop_log

    async def init(self, options: CollectorInitOptions) -> None:
        self._targets = {}
        self._popups = []
        self._log = options.log

    async def add_target(self, session, target_info) -> None:
        if target_info.type in FRAME_TARGET_TYPES:
            self._targets[target_info.id] = session

    async def _frame_ids(self, session, target_id: str) -> List[str]:
        """The target's main frame and its direct child frames."""
        try:
            tree = (await session.send("Page.getFrameTree")).get("frameTree") or {}
        except CDPError as exc:
            if not is_ignorable(exc):
                self._log(f"could not list frames of tId {target_id}: {exc}")
            return [target_id]
        frame_ids = [(tree.get("frame") or {}).get("id") or target_id]
        for child in tree.get("childFrames") or ():
            child_id = (child.get("frame") or {}).get("id")
            if child_id:
                frame_ids.append(child_id)
        return frame_ids

    async def _scrape_frame(self, session, frame_id: str) -> List[Dict[str, Any]]:
        try:
            world = await session.send("Page.createIsolatedWorld", {
                "frameId": frame_id,
                "worldName": POPUP_WORLD_NAME,
            })
            result = await session.send("Runtime.evaluate", {
                "expression": self._templates.load(SCRAPE_SCRIPT),
                "contextId": world["executionContextId"],
                "returnByValue": True,
                "allowUnsafeEvalBlockedByCSP": True,
            })
        except CDPError as exc:
            if not is_ignorable(exc):
                self._log(f"scraping frame {frame_id} failed: {exc}")
            return []

        if result.get("exceptionDetails"):
            self._log(f"popup scrape script failed in frame {frame_id}: {result['exceptionDetails'].get('text')}")
            return []
        value = (result.get("result") or {}).get("value") or {}
        return value.get("potentialPopups") or []

    async def _scrape_target(self, target_id: str, session) -> List[Dict[str, Any]]:
        frame_ids = await self._frame_ids(session, target_id)
        results = await asyncio.gather(*(self._scrape_frame(session, f) for f in frame_ids))
        return [popup for popups in results for popup in popups]

    async def post_load(self) -> None:
        if not self._targets:
            return
        timer = Timer()
        jobs = [
            asyncio.ensure_future(self._scrape_target(target_id, session))
            for target_id, session in self._targets.items()
            if not session.closed
        ]
        if not jobs:
            return

        done, pending = await asyncio.wait(jobs, timeout=SCRAPE_TIMEOUT_MS / 1000)
        for job in pending:
            job.cancel()
        if pending:
            self._log(f"scraping popups timed out, {len(pending)} of {len(jobs)} targets skipped")

        for job in jobs:
            if job in done:
                self._popups.extend(job.result())
        self._log(f"scraping {len(jobs)} targets took {timer.elapsed()}s")

    async def get_data(self, options: FinalizationOptions) -> Dict[str, List[Dict[str, Any]]]:
        return {"potentialPopups": list(self._popups)}
