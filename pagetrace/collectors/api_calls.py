"""
api_calls.py - Sensitive API usage collector

Installs function-call breakpoints on every execution context of every target
(see pagetrace.interception) and aggregates the hits per calling script:

    {
        "callStats": {"https://x.test/a.js": {"window.devicePixelRatio": 2}},
        "savedCalls": [{"source": ..., "description": ..., "arguments": [...]}]
    }
"""

import asyncio
from typing import Dict, List, Optional, Sequence, Set
from urllib.parse import urlparse

from ..cdp import CDPError, ErrorCategory
from ..debug import noop_log
from ..interception import BINDING_NAME, BreakpointDefinition, BreakpointTracker, CapturedCall
from ..utils import TemplateLoader, normalize_url
from .base import BaseCollector, CollectorInitOptions, FinalizationOptions


class IncompleteDataError(RuntimeError):
    """A paused target could not be resumed, counts may be missing."""


class APICallCollector(BaseCollector):
    id = "apis"

    def __init__(self, definitions: Optional[Sequence[BreakpointDefinition]] = None):
        """
        @param definitions: Breakpoints to install (defaults to the full catalog)
        """
        self._definitions = definitions
        self._templates = TemplateLoader()
        self._stats: Dict[str, Dict[str, int]] = {}
        self._calls: List[CapturedCall] = []
        self._incomplete = False
        self._resumes: Set[asyncio.Task] = set()
        self._main_url = ""
        self._log = noop_log

    async def init(self, options: CollectorInitOptions) -> None:
        self._stats = {}
        self._calls = []
        self._incomplete = False
        self._resumes = set()
        self._main_url = normalize_url(options.url)
        self._log = options.log

    async def add_target(self, session, target_info) -> None:
        tracker = BreakpointTracker(session, self._definitions, self._templates, log=self._log)
        tracker.set_main_url(self._main_url)
        setups: Set[asyncio.Task] = set()

        def on_context_created(params):
            context = params.get("context") or {}
            origin = context.get("origin")
            aux_data = context.get("auxData") or {}
            # isolated worlds created by tooling, not by the page
            if (not origin or origin == "://") and aux_data.get("type") == "isolated":
                return
            task = asyncio.ensure_future(tracker.setup_context_tracking(context.get("id")))
            setups.add(task)
            task.add_done_callback(setups.discard)

        session.on("Runtime.executionContextCreated", on_context_created)
        session.on("Runtime.executionContextDestroyed", lambda p: tracker.drop_context(p.get("executionContextId")))
        session.on("Runtime.executionContextsCleared", lambda p: tracker.drop_all_contexts())
        session.on("Debugger.scriptParsed", tracker.process_script_parsed)
        session.on("Debugger.paused", lambda p: self._on_debugger_paused(tracker, session, p))
        session.on("Runtime.bindingCalled", lambda p: self._on_binding_called(tracker, p))

        await session.send("Runtime.addBinding", {"name": BINDING_NAME})
        try:
            await tracker.init()
        except CDPError:
            self._log("breakpoint tracker init failed")
            raise

        # Runtime.enable replays existing contexts; their breakpoints must be
        # in place before the target is resumed
        if setups:
            await asyncio.gather(*list(setups))
        else:
            await tracker.setup_context_tracking()

    # ─── Event handlers ───

    def _on_binding_called(self, tracker: BreakpointTracker, params) -> None:
        call = tracker.process_binding_called(params)
        if call is not None:
            self._record(call)

    def _on_debugger_paused(self, tracker: BreakpointTracker, session, params) -> None:
        # resume first, the page is frozen until then
        task = asyncio.ensure_future(self._resume(session))
        self._resumes.add(task)
        task.add_done_callback(self._resumes.discard)

        call = tracker.process_debugger_pause(params)
        if call is None:
            self._log(f"unknown breakpoint detected {params.get('hitBreakpoints')}")
            return
        self._record(call)

    async def _resume(self, session) -> None:
        try:
            await session.send("Debugger.resume")
        except CDPError as exc:
            if exc.category is ErrorCategory.SESSION_CLOSED:
                return
            if exc.category is ErrorCategory.TIMEOUT:
                self._log("debugger got stuck")
            else:
                self._log("resuming failed", exc)
            self._incomplete = True

    def _record(self, call: CapturedCall) -> None:
        if not call.source or not call.description:
            return
        per_source = self._stats.setdefault(call.source, {})
        per_source[call.description] = per_source.get(call.description, 0) + 1
        if call.arguments is not None:
            self._calls.append(call)

    # ─── Output ───

    @staticmethod
    def is_acceptable_url(url: str, url_filter=None) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        if not parsed.scheme or parsed.scheme == "data":
            return False
        return url_filter(url) if url_filter else True

    async def get_data(self, options: FinalizationOptions):
        if self._resumes:
            await asyncio.gather(*list(self._resumes))
        if self._incomplete:
            raise IncompleteDataError("Collected data might be incomplete because of a runtime error.")

        call_stats = {
            source: dict(counts)
            for source, counts in self._stats.items()
            if self.is_acceptable_url(source, options.url_filter)
        }
        saved_calls = [
            call.to_dict()
            for call in self._calls
            if self.is_acceptable_url(call.source, options.url_filter)
        ]
        return {"callStats": call_stats, "savedCalls": saved_calls}
