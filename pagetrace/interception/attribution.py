"""
attribution.py - Resolve which script triggered a paused API call

Works on Debugger.paused payloads: synchronous call frames first, then the
async parent chain, finally the main document URL.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Tuple
from urllib.parse import urljoin

from ..debug import Log, noop_log

# ─── Constants ───────────────────────────────────────────────
MAX_ASYNC_CALL_STACK_DEPTH = 32  # async parents followed at most
SOURCE_URL_REGEX = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class CallFrame:
    url: str = ""
    script_id: str = ""


@dataclass(frozen=True)
class StackTrace:
    """Runtime.StackTrace as an immutable, depth-bounded linked list."""
    call_frames: Tuple[CallFrame, ...]
    parent: Optional["StackTrace"] = None

    @classmethod
    def from_cdp(cls, payload: Optional[Dict[str, Any]], max_depth: int = MAX_ASYNC_CALL_STACK_DEPTH) -> Optional["StackTrace"]:
        """
        Build from a protocol StackTrace, dropping parents beyond max_depth.

        @param payload: Runtime.StackTrace dict (may be None)
        @param max_depth: Number of stack levels kept, counting the first
        """
        chain = []
        node = payload
        while node and len(chain) < max_depth:
            chain.append(node)
            node = node.get("parent")

        trace = None
        for level in reversed(chain):
            frames = tuple(
                CallFrame(url=frame.get("url", ""), script_id=frame.get("scriptId", ""))
                for frame in level.get("callFrames", ())
            )
            trace = cls(frames, trace)
        return trace

    def levels(self) -> Iterator["StackTrace"]:
        node: Optional[StackTrace] = self
        while node is not None:
            yield node
            node = node.parent


class ScriptResolver:
    """Tracks scriptId -> URL for one session and attributes paused calls."""

    def __init__(self, main_url: str = "", log: Log = noop_log):
        self.main_url = main_url
        self._script_urls: Dict[str, str] = {}
        self._log = log

    def add_script(self, script_id: str, url: str) -> None:
        if script_id in self._script_urls:
            self._log("duplicate scriptId", script_id)
        self._script_urls[script_id] = url

    def script_url(self, script_id: Optional[str]) -> Optional[str]:
        if not script_id:
            return None
        return self._script_urls.get(script_id)

    def qualifies(self, url: Optional[str]) -> bool:
        return bool(url) and url != self.main_url and SOURCE_URL_REGEX.match(url) is not None

    def _first_qualifying(self, *candidates: Optional[str]) -> Optional[str]:
        for candidate in candidates:
            if self.qualifies(candidate):
                return candidate
        return None

    def from_call_frames(self, call_frames) -> Optional[str]:
        """Scan Debugger.CallFrame dicts top to bottom."""
        for frame in call_frames or ():
            function_location = frame.get("functionLocation") or {}
            location = frame.get("location") or {}
            found = self._first_qualifying(
                frame.get("url"),
                self.script_url(function_location.get("scriptId")),
                self.script_url(location.get("scriptId")),
            )
            if found:
                return found
        return None

    def from_stack_trace(self, trace: Optional[StackTrace]) -> Optional[str]:
        if trace is None:
            return None
        for level in trace.levels():
            for frame in level.call_frames:
                found = self._first_qualifying(frame.url, self.script_url(frame.script_id))
                if found:
                    return found
        return None

    def resolve(self, paused: Dict[str, Any]) -> str:
        """
        Attribute a Debugger.paused event to a script URL.

        @param paused: Debugger.paused params
        @return: Absolute script URL, or the main URL when nothing qualifies
        """
        script = self.from_call_frames(paused.get("callFrames"))
        if not script:
            script = self.from_stack_trace(StackTrace.from_cdp(paused.get("asyncStackTrace")))
        if not script:
            self._log("unknown source, assuming global")
            return self.main_url
        return urljoin(self.main_url, script)
