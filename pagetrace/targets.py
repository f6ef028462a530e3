"""
targets.py - Target lifecycle: pause on attach, instrument, resume

Every target is auto-attached with waitForDebuggerOnStart, so it cannot run a
single line of script until Runtime.runIfWaitingForDebugger is sent. Between
attach and resume the TargetManager:

    ANNOUNCED -> PAUSING -> ATTACHING -> RESUMED
                                      `-> DESTROYED (no resume)

- PAUSING:   auto-attach is enabled on the new session too, so the target's
             own children (iframes, workers) are paused the same way
- ATTACHING: page setup, then every collector's add_target, one at a time
- RESUMED:   the target is released

One TargetManager exists per crawl. Pooled browsers run several crawls over
one connection, so a TargetRouter per browser hands root-level target events
to the manager owning the target's browser context.
"""

import asyncio
import enum
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .cdp import CDPError, Connection, CDPSession, is_ignorable
from .debug import Log, debug_print, noop_log
from .utils import Timer

# Same types as chrome://inspect; see DevToolsAgentHostImpl kType* constants
TARGET_FILTER: List[Dict[str, Any]] = [
    # disabled by default in CDP
    {"type": "browser", "exclude": True},
    {"type": "tab", "exclude": True},
    # main targets
    {"type": "page", "exclude": False},
    {"type": "iframe", "exclude": False},
    {"type": "worker", "exclude": False},
    {"type": "shared_worker", "exclude": False},
    {"type": "service_worker", "exclude": False},
    # not instrumented
    {"type": "worklet", "exclude": True},
    {"type": "shared_storage_worklet", "exclude": True},
    {"type": "webview", "exclude": True},
    {"type": "other", "exclude": True},
    {"type": "auction_worklet", "exclude": True},
    {"type": "assistive_technology", "exclude": True},
    # anything unknown
    {},
]

AUTO_ATTACH_PARAMS = {
    "autoAttach": True,
    "waitForDebuggerOnStart": True,
    "flatten": True,
    "filter": TARGET_FILTER,
}


class TargetCrashedError(RuntimeError):
    """The main page target crashed during the crawl."""


class TargetState(enum.Enum):
    ANNOUNCED = "announced"
    PAUSING = "pausing"
    ATTACHING = "attaching"
    RESUMED = "resumed"
    DESTROYED = "destroyed"


@dataclass(frozen=True)
class TargetInfo:
    id: str
    type: str
    url: str
    browser_context_id: Optional[str] = None

    @classmethod
    def from_cdp(cls, info: Dict[str, Any]) -> "TargetInfo":
        return cls(
            id=info.get("targetId", ""),
            type=info.get("type", "other"),
            url=info.get("url", ""),
            browser_context_id=info.get("browserContextId"),
        )


@dataclass
class ExecutionTarget:
    info: TargetInfo
    session: CDPSession
    state: TargetState = TargetState.ANNOUNCED


class TargetManager:
    """Drives the attach/resume dance for every target of one crawl."""

    def __init__(self, connection: Connection, collectors, config, log: Log = noop_log):
        """
        @param connection: Browser-level connection
        @param collectors: Collector instances of this crawl, in attach order
        @param config: browser.Config (emulation and injected script settings)
        @param log: Per-crawl debug logger
        """
        self.connection = connection
        self.collectors = list(collectors)
        self.config = config
        self.log = log

        self.targets: Dict[str, ExecutionTarget] = {}
        self.main_target_id: Optional[str] = None
        self.main_frame: Optional[Dict[str, Any]] = None
        self.crash_error: Optional[TargetCrashedError] = None

        self.main_attached = asyncio.Event()
        self.main_frame_known = asyncio.Event()
        self.main_crashed = asyncio.Event()

    @property
    def main_target(self) -> Optional[ExecutionTarget]:
        if self.main_target_id is None:
            return None
        return self.targets.get(self.main_target_id)

    def page_targets(self) -> List[ExecutionTarget]:
        return [t for t in self.targets.values() if t.info.type == "page"]

    async def wait_for_main_target(self) -> ExecutionTarget:
        await self.main_attached.wait()
        return self.main_target

    def _claim_main(self, info: TargetInfo) -> None:
        if self.main_target_id is None and info.type == "page":
            self.main_target_id = info.id

    # ─── Target.* events ───

    def on_target_created(self, params: Dict[str, Any]) -> None:
        info = TargetInfo.from_cdp(params.get("targetInfo", {}))
        self.log(f"target created: tId {info.id} type {info.type} url {info.url}")
        self._claim_main(info)

    def on_target_info_changed(self, params: Dict[str, Any]) -> None:
        info = TargetInfo.from_cdp(params.get("targetInfo", {}))
        target = self.targets.get(info.id)
        if target is not None:
            self.log(f"tId {info.id} changed. old url: {target.info.url}, new url: {info.url}")
            target.info = replace(target.info, url=info.url)

    def on_detached(self, params: Dict[str, Any]) -> None:
        self._forget(params.get("targetId"), "detached")

    def on_target_destroyed(self, params: Dict[str, Any]) -> None:
        self._forget(params.get("targetId"), "destroyed")

    def on_target_crashed(self, params: Dict[str, Any]) -> None:
        target_id = params.get("targetId")
        if target_id not in self.targets and target_id != self.main_target_id:
            return
        self.log(f"target tId {target_id} crashed: status {params.get('status')}, code {params.get('errorCode')}")
        if target_id == self.main_target_id and self.crash_error is None:
            self.crash_error = TargetCrashedError(f"Main target {target_id} crashed")
            self.main_crashed.set()
        self._forget(target_id, "crashed")

    def _forget(self, target_id: Optional[str], reason: str) -> None:
        target = self.targets.pop(target_id, None) if target_id else None
        if target is None:
            return
        if target.state is not TargetState.RESUMED:
            self.log(f"tId {target_id} {reason} before resume")
        target.state = TargetState.DESTROYED

    async def on_attached(self, params: Dict[str, Any]) -> None:
        """Handle Target.attachedToTarget, from the root or a parent session."""
        info = TargetInfo.from_cdp(params.get("targetInfo", {}))
        session = self.connection.session(params.get("sessionId", ""))
        if session is None:
            self.log(f"no session for tId {info.id}, already detached")
            return

        self.log(f"target attached tId {info.id} type {info.type} url {info.url}")
        previous = self.targets.get(info.id)
        if previous is not None:
            self.log(f"target tId {info.id} already exists: old session {previous.session.id}, new {session.id}")
            previous.state = TargetState.DESTROYED

        target = ExecutionTarget(info, session)
        self.targets[info.id] = target
        self._claim_main(info)

        timer = Timer()
        try:
            await self._attach(target)
        except CDPError as exc:
            self.log(f"could not attach to tId {info.id} type {info.type} url {info.url} after {timer.elapsed()}s: {exc}")
            return
        self.log(f"tId {info.id} url {info.url} target attached in {timer.elapsed()}s")

    async def _attach(self, target: ExecutionTarget) -> None:
        session = target.session
        info = target.info

        target.state = TargetState.PAUSING
        session.on("Target.attachedToTarget", self.on_attached)
        session.on("Target.detachedFromTarget", self.on_detached)
        await session.send("Target.setAutoAttach", AUTO_ATTACH_PARAMS)

        target.state = TargetState.ATTACHING
        if self.config.emulate_user_agent:
            try:
                await session.send("Network.setUserAgentOverride", {"userAgent": self.config.user_agent})
            except CDPError as exc:
                if not is_ignorable(exc):
                    self.log(f"user agent override failed for tId {info.id}: {exc}")

        if info.type == "page":
            await self._setup_page(target)

        await session.send("Runtime.enable")

        for collector in self.collectors:
            try:
                await collector.add_target(session, target.info)
            except Exception as exc:
                self.log(f"{collector.id} failed to attach to \"{info.url}\": {type(exc).__name__}: {exc}")

        if target.state is TargetState.DESTROYED or session.closed:
            self.log(f"tId {info.id} gone before resume, not resuming")
            return

        await session.send("Runtime.runIfWaitingForDebugger")
        target.state = TargetState.RESUMED

        if info.id == self.main_target_id and not self.main_attached.is_set():
            self.log(f"main page target attached: tId {info.id} url {info.url}")
            self.main_attached.set()

    async def _setup_page(self, target: ExecutionTarget) -> None:
        session = target.session

        async def dismiss_dialog(params):
            await session.send("Page.handleJavaScriptDialog", {"accept": False})

        session.on("Page.javascriptDialogOpening", dismiss_dialog)
        session.on("Page.frameNavigated", lambda e: self._on_frame_navigated(target, e))

        await session.send("Page.enable")
        await session.send("Page.setLifecycleEventsEnabled", {"enabled": True})
        await session.send("Emulation.setDeviceMetricsOverride", self.config.viewport)
        if self.config.run_in_every_frame:
            await session.send("Page.addScriptToEvaluateOnNewDocument", {
                "source": f"({self.config.run_in_every_frame})()",
            })

    def _on_frame_navigated(self, target: ExecutionTarget, params: Dict[str, Any]) -> None:
        frame = params.get("frame") or {}
        if frame.get("parentId") or target.info.id != self.main_target_id:
            return
        if self.main_frame is not None and self.main_frame.get("id") != frame.get("id"):
            self.log(f"main frame changed: fId {self.main_frame.get('id')} -> fId {frame.get('id')}")
        self.main_frame = frame
        self.main_frame_known.set()

    async def detach_all(self) -> None:
        for target in list(self.targets.values()):
            try:
                await target.session.detach()
            except CDPError as exc:
                if not is_ignorable(exc):
                    debug_print(f"[DEBUG] detaching tId {target.info.id} failed: {exc}")


class TargetRouter:
    """Routes root-level target events of one browser to per-crawl managers."""

    def __init__(self, connection: Connection):
        self.connection = connection
        self._managers: Dict[str, TargetManager] = {}

    async def start(self) -> None:
        conn = self.connection
        conn.on("Target.attachedToTarget", self._on_attached)
        conn.on("Target.detachedFromTarget", self._broadcast("on_detached"))
        conn.on("Target.targetCreated", self._routed("on_target_created"))
        conn.on("Target.targetInfoChanged", self._routed("on_target_info_changed"))
        conn.on("Target.targetDestroyed", self._broadcast("on_target_destroyed"))
        conn.on("Target.targetCrashed", self._broadcast("on_target_crashed"))

        await conn.send("Target.setAutoAttach", AUTO_ATTACH_PARAMS)
        await conn.send("Target.setDiscoverTargets", {"discover": True, "filter": TARGET_FILTER})

    def register(self, browser_context_id: str, manager: TargetManager) -> None:
        self._managers[browser_context_id] = manager

    def unregister(self, browser_context_id: str) -> None:
        self._managers.pop(browser_context_id, None)

    def manager_for(self, target_info: Dict[str, Any]) -> Optional[TargetManager]:
        return self._managers.get(target_info.get("browserContextId") or "")

    def _routed(self, method: str):
        def handler(params):
            manager = self.manager_for(params.get("targetInfo", {}))
            if manager is not None:
                getattr(manager, method)(params)
        return handler

    def _broadcast(self, method: str):
        def handler(params):
            for manager in list(self._managers.values()):
                getattr(manager, method)(params)
        return handler

    async def _on_attached(self, params: Dict[str, Any]) -> None:
        manager = self.manager_for(params.get("targetInfo", {}))
        if manager is not None:
            await manager.on_attached(params)
            return

        # not ours (initial tab, a context already torn down): just let it run
        session = self.connection.session(params.get("sessionId", ""))
        if session is None:
            return
        try:
            await session.send("Runtime.runIfWaitingForDebugger")
        except CDPError as exc:
            if not is_ignorable(exc):
                debug_print(f"[DEBUG] resuming orphan target failed: {exc}")
