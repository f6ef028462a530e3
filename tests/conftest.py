import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest

from pagetrace.browser import Config
from pagetrace.cdp import Connection
from pagetrace.targets import TargetInfo

NO_REPLY = object()  # handler result: leave the command unanswered


class FakeProtocolError(Exception):
    """Raised by a fake command handler to produce an error response."""

    def __init__(self, message: str, code: int = -32000):
        super().__init__(message)
        self.code = code
        self.message = message


class FakeWebSocket:
    """
    In-memory stand-in for a websocket to the browser.

    Every command is recorded in `sent`. Replies are produced by the handler
    registered for the command's method (default: empty result) and delivered
    through Connection.dispatch on the next loop iteration.
    """

    def __init__(self):
        self.sent = []
        self.handlers = {}
        self.connection = None
        self.closed = False

    def handle(self, method, handler):
        self.handlers[method] = handler

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        handler = self.handlers.get(message["method"])
        reply = {"id": message["id"]}
        try:
            result = handler(message.get("params", {}), message.get("sessionId")) if handler else {}
        except FakeProtocolError as exc:
            reply["error"] = {"code": exc.code, "message": exc.message}
        else:
            if result is NO_REPLY:
                return
            reply["result"] = result
        asyncio.get_running_loop().call_soon(self.connection.dispatch, reply)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


class FakeBrowser:
    """A real Connection wired to a FakeWebSocket, plus event helpers."""

    NO_REPLY = NO_REPLY
    Error = FakeProtocolError

    def __init__(self, protocol_timeout=1.0):
        self.ws = FakeWebSocket()
        self.connection = Connection(self.ws, protocol_timeout=protocol_timeout)
        self.ws.connection = self.connection

    def handle(self, method, handler):
        self.ws.handle(method, handler)

    def event(self, method, params=None, session_id=None):
        message = {"method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id
        self.connection.dispatch(message)

    def attach(self, session_id, target_id, type_="page", url="about:blank", context_id="ctx-1", parent_session=None):
        self.event("Target.attachedToTarget", {
            "sessionId": session_id,
            "targetInfo": {"targetId": target_id, "type": type_, "url": url, "browserContextId": context_id},
            "waitingForDebugger": True,
        }, session_id=parent_session)
        return self.connection.session(session_id)

    def detach(self, session_id, target_id, parent_session=None):
        self.event("Target.detachedFromTarget", {"sessionId": session_id, "targetId": target_id}, session_id=parent_session)

    def commands(self, method=None, session_id=None):
        return [
            m for m in self.ws.sent
            if (method is None or m["method"] == method)
            and (session_id is None or m.get("sessionId") == session_id)
        ]

    def methods(self, session_id=None):
        return [m["method"] for m in self.commands(session_id=session_id)]


async def _settle(rounds=20):
    """Let scheduled replies and handler tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def config():
    """Config with short timings so crawl tests finish quickly."""
    return Config(
        executable_path="/nonexistent/chrome",
        proxy=None,
        max_load_time_ms=200,
        extra_execution_time_ms=0,
        verbose=False,
        output_dir="./data",
    )


@pytest.fixture
def page_info():
    return TargetInfo(id="T1", type="page", url="about:blank", browser_context_id="ctx-1")


@pytest.fixture
def mock_session():
    """Bare session mock for collectors that only register handlers."""
    session = Mock()
    session.handlers = {}
    session.on = Mock(side_effect=lambda event, handler: session.handlers.setdefault(event, []).append(handler))
    session.send = AsyncMock(return_value={})
    session.closed = False
    session.id = "S1"
    return session


@pytest.fixture
def mock_args():
    """Mock CLI arguments with valid values."""
    return SimpleNamespace(
        max_load_time="30",
        crawlers=None,
        proxy=None,
        collectors=None,
        executable_path=None,
        mobile=False,
        only_3p=False,
        headful=False,
        verbose=False,
        output_dir="./data",
        plain_progress=False,
    )
