"""
Test suite for the DevTools protocol client: error classification, message
routing and session lifecycle.
"""
import asyncio

import pytest

from pagetrace.cdp import (
    ErrorCategory,
    EventEmitter,
    ProtocolError,
    ProtocolTimeoutError,
    SessionClosedError,
    classify_protocol_error,
    is_ignorable,
)


class TestErrorClassification:
    @pytest.mark.parametrize("code,message,category", [
        (-32001, "Session with given id not found.", ErrorCategory.SESSION_CLOSED),
        (-32000, "Breakpoint at specified location already exists.", ErrorCategory.DUPLICATE_BREAKPOINT),
        (-32000, "Cannot find context with specified id", ErrorCategory.CONTEXT_NOT_FOUND),
        (-32000, "Cannot find default execution context", ErrorCategory.CONTEXT_NOT_FOUND),
        (-32000, "Target closed", ErrorCategory.SESSION_CLOSED),
        (-32000, "No target with given id found", ErrorCategory.SESSION_CLOSED),
        (-32000, "Something else entirely", ErrorCategory.OTHER),
        (-32601, "'Foo.bar' wasn't found", ErrorCategory.OTHER),
        (None, "Target closed", ErrorCategory.OTHER),
    ])
    def test_classify(self, code, message, category):
        assert classify_protocol_error(code, message) is category

    def test_ignorable(self):
        assert is_ignorable(SessionClosedError("gone"))
        assert is_ignorable(ProtocolError("Debugger.setBreakpointOnFunctionCall", -32000,
                                          "Breakpoint at specified location already exists."))
        assert not is_ignorable(ProtocolTimeoutError("slow"))
        assert not is_ignorable(ProtocolError("Page.navigate", -32000, "Invalid url"))
        assert not is_ignorable(ValueError("not a protocol error"))


class TestEventEmitter:
    def test_sync_handlers_run_in_order(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("e", lambda p: seen.append(("a", p["n"])))
        emitter.on("e", lambda p: seen.append(("b", p["n"])))

        emitter.emit("e", {"n": 1})

        assert seen == [("a", 1), ("b", 1)]

    def test_failing_handler_does_not_stop_others(self, capsys):
        emitter = EventEmitter()
        seen = []

        def broken(params):
            raise KeyError("x")

        emitter.on("e", broken)
        emitter.on("e", lambda p: seen.append(p))
        emitter.emit("e", {})

        assert seen == [{}]
        assert "[WARN]" in capsys.readouterr().out

    def test_off(self):
        emitter = EventEmitter()
        seen = []
        handler = seen.append
        emitter.on("e", handler)
        emitter.off("e", handler)

        emitter.emit("e", {})

        assert seen == []

    @pytest.mark.asyncio
    async def test_coroutine_handlers_are_scheduled(self, settle):
        emitter = EventEmitter()
        seen = []

        async def handler(params):
            seen.append(params)

        emitter.on("e", handler)
        emitter.emit("e", {"x": 1})
        assert seen == []
        await settle()

        assert seen == [{"x": 1}]


class TestConnection:
    @pytest.mark.asyncio
    async def test_command_round_trip(self, fake_browser):
        fake_browser.handle("Browser.getVersion", lambda params, sid: {"product": "Chrome/131"})

        result = await fake_browser.connection.send("Browser.getVersion")

        assert result == {"product": "Chrome/131"}
        assert fake_browser.ws.sent[0]["method"] == "Browser.getVersion"
        assert "sessionId" not in fake_browser.ws.sent[0]

    @pytest.mark.asyncio
    async def test_error_response_is_classified(self, fake_browser):
        def fail(params, sid):
            raise fake_browser.Error("Cannot find context with specified id")

        fake_browser.handle("Runtime.evaluate", fail)

        with pytest.raises(ProtocolError) as info:
            await fake_browser.connection.send("Runtime.evaluate", {"expression": "1"})

        assert info.value.category is ErrorCategory.CONTEXT_NOT_FOUND
        assert info.value.method == "Runtime.evaluate"

    @pytest.mark.asyncio
    async def test_timeout(self, fake_browser):
        fake_browser.handle("Debugger.resume", lambda params, sid: fake_browser.NO_REPLY)

        with pytest.raises(ProtocolTimeoutError):
            await fake_browser.connection.send("Debugger.resume", timeout=0.05)

    @pytest.mark.asyncio
    async def test_session_created_before_its_events(self, fake_browser):
        """A handler for attachedToTarget can already look the session up."""
        found = []
        fake_browser.connection.on(
            "Target.attachedToTarget",
            lambda p: found.append(fake_browser.connection.session(p["sessionId"])),
        )

        session = fake_browser.attach("S1", "T1")

        assert found == [session]
        assert session.target_type == "page"
        assert session.target_id == "T1"

    @pytest.mark.asyncio
    async def test_session_events_are_routed_to_the_session(self, fake_browser):
        session = fake_browser.attach("S1", "T1")
        on_session, on_root = [], []
        session.on("Page.frameNavigated", on_session.append)
        fake_browser.connection.on("Page.frameNavigated", on_root.append)

        fake_browser.event("Page.frameNavigated", {"frame": {"id": "F"}}, session_id="S1")

        assert on_session == [{"frame": {"id": "F"}}]
        assert on_root == []

    @pytest.mark.asyncio
    async def test_session_commands_carry_session_id(self, fake_browser):
        session = fake_browser.attach("S1", "T1")

        await session.send("Runtime.enable")

        assert fake_browser.commands("Runtime.enable")[0]["sessionId"] == "S1"

    @pytest.mark.asyncio
    async def test_detach_fails_in_flight_commands(self, fake_browser):
        fake_browser.handle("Debugger.enable", lambda params, sid: fake_browser.NO_REPLY)
        session = fake_browser.attach("S1", "T1")
        pending = asyncio.ensure_future(session.send("Debugger.enable"))
        await asyncio.sleep(0)

        fake_browser.detach("S1", "T1")

        with pytest.raises(SessionClosedError):
            await pending
        assert session.closed
        with pytest.raises(SessionClosedError):
            await session.send("Runtime.enable")

    @pytest.mark.asyncio
    async def test_disconnect_closes_everything(self, fake_browser):
        fake_browser.handle("Target.getTargets", lambda params, sid: fake_browser.NO_REPLY)
        session = fake_browser.attach("S1", "T1")
        pending = asyncio.ensure_future(fake_browser.connection.send("Target.getTargets"))
        await asyncio.sleep(0)

        await fake_browser.connection.close()

        with pytest.raises(SessionClosedError):
            await pending
        assert fake_browser.connection.closed
        assert session.closed
        assert fake_browser.ws.closed
