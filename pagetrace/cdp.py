"""
cdp.py - Minimal Chrome DevTools Protocol client

One websocket per browser process. Every target (page, iframe, worker) is
reached through a flat session (Target.setAutoAttach with flatten=True) that
is multiplexed over the same socket by sessionId.

Usage:
    conn = await Connection.connect(ws_url)
    conn.on("Target.attachedToTarget", handler)
    await conn.send("Target.setDiscoverTargets", {"discover": True})
    session = conn.session(session_id)
    await session.send("Runtime.enable")

Events are dispatched from a single reader task in arrival order. Plain
handlers run inline; coroutine handlers are scheduled as tasks.
"""

import asyncio
import enum
import itertools
import json
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import websockets

from .debug import debug_print, debug_print_error

# ─── Constants ───────────────────────────────────────────────
DEFAULT_PROTOCOL_TIMEOUT_SEC = 30.0  # per-command round trip limit
SERVER_ERROR_CODE = -32000
SESSION_NOT_FOUND_CODE = -32001


# ─── Error taxonomy ──────────────────────────────────────────

class ErrorCategory(enum.Enum):
    SESSION_CLOSED = "session_closed"
    DUPLICATE_BREAKPOINT = "duplicate_breakpoint"
    CONTEXT_NOT_FOUND = "context_not_found"
    MEMBER_UNAVAILABLE = "member_unavailable"
    TIMEOUT = "timeout"
    OTHER = "other"


# Races that are expected while pages churn; callers log them at most.
IGNORABLE_CATEGORIES = frozenset({
    ErrorCategory.SESSION_CLOSED,
    ErrorCategory.DUPLICATE_BREAKPOINT,
    ErrorCategory.CONTEXT_NOT_FOUND,
    ErrorCategory.MEMBER_UNAVAILABLE,
})

# Chromium reports these conditions with the generic server error code, so the
# message is the only distinguishing field. Keep the table here and nowhere else.
_SERVER_ERROR_CATEGORIES: Tuple[Tuple[str, ErrorCategory], ...] = (
    ("Breakpoint at specified location already exists", ErrorCategory.DUPLICATE_BREAKPOINT),
    ("Cannot find context with specified id", ErrorCategory.CONTEXT_NOT_FOUND),
    ("Cannot find default execution context", ErrorCategory.CONTEXT_NOT_FOUND),
    ("Target closed", ErrorCategory.SESSION_CLOSED),
    ("No target with given id found", ErrorCategory.SESSION_CLOSED),
)


def classify_protocol_error(code: Optional[int], message: str) -> ErrorCategory:
    """Map a protocol error response to an ErrorCategory."""
    if code == SESSION_NOT_FOUND_CODE:
        return ErrorCategory.SESSION_CLOSED
    if code == SERVER_ERROR_CODE:
        for fragment, category in _SERVER_ERROR_CATEGORIES:
            if message.startswith(fragment):
                return category
    return ErrorCategory.OTHER


class CDPError(Exception):
    category = ErrorCategory.OTHER


class ProtocolError(CDPError):
    """Error response returned by the browser for a command."""

    def __init__(self, method: str, code: Optional[int], message: str):
        super().__init__(f"Protocol error ({method}): {message}")
        self.method = method
        self.code = code
        self.message = message
        self.category = classify_protocol_error(code, message)


class SessionClosedError(CDPError):
    category = ErrorCategory.SESSION_CLOSED


class ProtocolTimeoutError(CDPError):
    category = ErrorCategory.TIMEOUT


def is_ignorable(exc: BaseException) -> bool:
    """True for protocol races that should never surface as failures."""
    return isinstance(exc, CDPError) and exc.category in IGNORABLE_CATEGORIES


# ─── Event dispatch ──────────────────────────────────────────

Handler = Callable[[Dict[str, Any]], Any]


class EventEmitter:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, params: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(params)
            except Exception as exc:
                print(f"[WARN] {event} handler failed: {type(exc).__name__}: {exc}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not is_ignorable(exc):
            print(f"[WARN] event handler failed: {type(exc).__name__}: {exc}")


# ─── Sessions ────────────────────────────────────────────────

class CDPSession(EventEmitter):
    """A flat session attached to one target."""

    def __init__(self, connection: "Connection", session_id: str, target_type: str = "", target_id: str = ""):
        super().__init__()
        self._connection = connection
        self._session_id = session_id
        self.target_type = target_type
        self.target_id = target_id
        self._closed = False

    @property
    def id(self) -> str:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        if self._closed:
            raise SessionClosedError(f"{method}: Session closed.")
        return await self._connection._send(method, params, self._session_id, timeout)

    async def detach(self) -> None:
        if self._closed:
            return
        await self._connection.send("Target.detachFromTarget", {"sessionId": self._session_id})

    def _mark_closed(self) -> None:
        self._closed = True


class Connection(EventEmitter):
    """Browser-level connection; also acts as the root session."""

    def __init__(self, ws, protocol_timeout: float = DEFAULT_PROTOCOL_TIMEOUT_SEC):
        super().__init__()
        self._ws = ws
        self._protocol_timeout = protocol_timeout
        self._ids = itertools.count(1)
        self._callbacks: Dict[int, Tuple[asyncio.Future, str, Optional[str]]] = {}
        self._sessions: Dict[str, CDPSession] = {}
        self._closed = False
        self._reader: Optional[asyncio.Task] = None

    @classmethod
    async def connect(cls, ws_url: str, protocol_timeout: float = DEFAULT_PROTOCOL_TIMEOUT_SEC) -> "Connection":
        """
        Open the websocket and start the reader task.

        @param ws_url: Browser-level webSocketDebuggerUrl
        @param protocol_timeout: Seconds before a command is abandoned
        """
        ws = await websockets.connect(ws_url, max_size=None, ping_interval=None)
        conn = cls(ws, protocol_timeout)
        conn._reader = asyncio.create_task(conn._read_loop())
        return conn

    @property
    def closed(self) -> bool:
        return self._closed

    def session(self, session_id: str) -> Optional[CDPSession]:
        return self._sessions.get(session_id)

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        return await self._send(method, params, None, timeout)

    async def _send(self, method: str, params: Optional[Dict[str, Any]], session_id: Optional[str], timeout: Optional[float]) -> Dict[str, Any]:
        if self._closed:
            raise SessionClosedError(f"{method}: Connection closed.")

        msg_id = next(self._ids)
        message: Dict[str, Any] = {"id": msg_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id

        future = asyncio.get_running_loop().create_future()
        self._callbacks[msg_id] = (future, method, session_id)
        try:
            try:
                await self._ws.send(json.dumps(message))
            except websockets.exceptions.ConnectionClosed as exc:
                raise SessionClosedError(f"{method}: Connection closed.") from exc
            try:
                return await asyncio.wait_for(future, timeout or self._protocol_timeout)
            except asyncio.TimeoutError:
                raise ProtocolTimeoutError(f"{method}: Operation timed out") from None
        finally:
            self._callbacks.pop(msg_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                self.dispatch(json.loads(raw))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self._on_disconnect()

    def dispatch(self, message: Dict[str, Any]) -> None:
        """Route one decoded protocol message (command response or event)."""
        if "id" in message:
            entry = self._callbacks.get(message["id"])
            if entry is None:
                return
            future, method, _ = entry
            if future.done():
                return
            if "error" in message:
                error = message["error"]
                future.set_exception(ProtocolError(method, error.get("code"), error.get("message", "")))
            else:
                future.set_result(message.get("result", {}))
            return

        method = message.get("method", "")
        params = message.get("params", {})

        # sessions must exist before any of their own messages are routed
        if method == "Target.attachedToTarget":
            info = params.get("targetInfo", {})
            sid = params["sessionId"]
            self._sessions[sid] = CDPSession(self, sid, info.get("type", ""), info.get("targetId", ""))
        elif method == "Target.detachedFromTarget":
            session = self._sessions.pop(params.get("sessionId", ""), None)
            if session is not None:
                self._close_session(session)

        session_id = message.get("sessionId")
        if session_id:
            owner = self._sessions.get(session_id)
            if owner is None:
                debug_print(f"[DEBUG] dropping {method} for unknown session {session_id}")
                return
            owner.emit(method, params)
        else:
            self.emit(method, params)

    def _close_session(self, session: CDPSession) -> None:
        session._mark_closed()
        for future, method, sid in list(self._callbacks.values()):
            if sid == session.id and not future.done():
                future.set_exception(SessionClosedError(f"{method}: Session closed."))

    def _on_disconnect(self) -> None:
        if self._closed:
            return
        self._closed = True
        for session in self._sessions.values():
            session._mark_closed()
        self._sessions.clear()
        for future, method, _ in list(self._callbacks.values()):
            if not future.done():
                future.set_exception(SessionClosedError(f"{method}: Target closed."))
        self.emit("disconnected", {})

    async def close(self) -> None:
        try:
            await self._ws.close()
        except Exception as exc:
            debug_print_error(f"[DEBUG] websocket close failed: {exc}")
        if self._reader is not None:
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._on_disconnect()
