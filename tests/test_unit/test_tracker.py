"""
Test suite for breakpoint installation and hit processing.
"""
import json

import pytest

from pagetrace.interception import (
    BINDING_NAME,
    ApiGroup,
    BreakpointTracker,
    CapturedCall,
    Member,
    iter_definitions,
)

MAIN = "https://site.test/"

DEFINITIONS = iter_definitions((
    ApiGroup(global_="window", props=(Member("devicePixelRatio"),)),
    ApiGroup(proto="Document", props=(Member("cookie", description="Document.cookie setter",
                                             save_arguments=True, setter=True),)),
    ApiGroup(proto="Navigator", methods=(Member("getBattery"),)),
))


@pytest.fixture
def browser(fake_browser):
    counter = {"n": 0}

    def evaluate(params, sid):
        return {"result": {"type": "function", "objectId": f"obj:{params['expression']}"}}

    def set_breakpoint(params, sid):
        counter["n"] += 1
        return {"breakpointId": f"bp{counter['n']}"}

    fake_browser.handle("Runtime.evaluate", evaluate)
    fake_browser.handle("Debugger.setBreakpointOnFunctionCall", set_breakpoint)
    return fake_browser


@pytest.fixture
def tracker(browser):
    session = browser.attach("S1", "T1")
    tracker = BreakpointTracker(session, DEFINITIONS)
    tracker.set_main_url(MAIN)
    return tracker


def _binding(description, url=None, args=None, context_id=None):
    payload = {"description": description, "url": url}
    if args is not None:
        payload["args"] = args
    params = {"name": BINDING_NAME, "payload": json.dumps(payload)}
    if context_id is not None:
        params["executionContextId"] = context_id
    return params


class TestDefinitions:
    def test_expressions(self):
        by_description = {d.description: d for d in DEFINITIONS}

        assert by_description["window.devicePixelRatio"].expression == \
            "Reflect.getOwnPropertyDescriptor(window, 'devicePixelRatio').get"
        assert by_description["Document.cookie setter"].expression == \
            "Reflect.getOwnPropertyDescriptor(Document.prototype, 'cookie').set"
        assert by_description["Navigator.prototype.getBattery"].kind == "method"

    def test_getters_cannot_save_arguments(self):
        kinds = {d.description: d.can_save_arguments for d in DEFINITIONS}

        assert kinds == {
            "window.devicePixelRatio": False,
            "Document.cookie setter": True,
            "Navigator.prototype.getBattery": True,
        }


class TestConditionScript:
    def test_wraps_template(self, tracker):
        script = tracker.condition_script(DEFINITIONS[1])

        assert script.startswith("let shouldPause = false;")
        assert script.rstrip().endswith("shouldPause;")
        assert f"globalThis.{BINDING_NAME}(" in script
        assert json.dumps(MAIN) in script
        assert "args: Array.from(arguments)" in script
        assert "__" not in script.replace("__proto__", "")

    def test_getter_has_no_argument_collection(self, tracker):
        assert "Array.from(arguments)" not in tracker.condition_script(DEFINITIONS[0])

    def test_condition_guard(self, tracker):
        defn = iter_definitions((ApiGroup(global_="window", methods=(
            Member("matchMedia", condition="arguments.length > 0"),)),))[0]

        assert "if (!!(arguments.length > 0)) {" in tracker.condition_script(defn)


class TestInstallation:
    @pytest.mark.asyncio
    async def test_init_enables_domains(self, browser, tracker):
        await tracker.init()

        assert browser.methods("S1") == ["Debugger.enable", "Runtime.enable", "Runtime.setAsyncCallStackDepth"]
        assert browser.commands("Runtime.setAsyncCallStackDepth")[0]["params"] == {"maxDepth": 32}

    @pytest.mark.asyncio
    async def test_setup_installs_every_definition(self, browser, tracker):
        specs = await tracker.setup_context_tracking(5)

        assert len(specs) == len(DEFINITIONS)
        evaluates = browser.commands("Runtime.evaluate")
        assert all(cmd["params"]["contextId"] == 5 for cmd in evaluates)
        assert tracker.get_by_description("window.devicePixelRatio", 5).context_id == 5

    @pytest.mark.asyncio
    async def test_duplicate_breakpoint_is_swallowed(self, browser, tracker):
        def duplicate(params, sid):
            raise browser.Error("Breakpoint at specified location already exists.")

        browser.handle("Debugger.setBreakpointOnFunctionCall", duplicate)
        logged = []
        tracker._log = lambda *a: logged.append(a)

        assert await tracker.add_breakpoint(DEFINITIONS[0]) is None
        assert logged == []

    @pytest.mark.asyncio
    async def test_missing_member_is_swallowed(self, browser, tracker):
        browser.handle("Runtime.evaluate", lambda params, sid: {"result": {"type": "undefined"}})
        logged = []
        tracker._log = lambda *a: logged.append(a)

        assert await tracker.add_breakpoint(DEFINITIONS[2]) is None
        assert browser.commands("Debugger.setBreakpointOnFunctionCall") == []
        assert logged == []

    @pytest.mark.asyncio
    async def test_other_errors_are_logged_not_raised(self, browser, tracker):
        def broken(params, sid):
            raise browser.Error("Internal error", code=-32603)

        browser.handle("Debugger.setBreakpointOnFunctionCall", broken)
        logged = []
        tracker._log = lambda *a: logged.append(a)

        assert await tracker.add_breakpoint(DEFINITIONS[0]) is None
        assert logged and logged[0][0] == "setting breakpoint failed"

    @pytest.mark.asyncio
    async def test_drop_context(self, tracker):
        await tracker.setup_context_tracking(1)
        await tracker.setup_context_tracking(2)

        tracker.drop_context(1)

        assert tracker.get_by_description("window.devicePixelRatio", 1).context_id == 2
        tracker.drop_all_contexts()
        assert tracker.get_by_description("window.devicePixelRatio") is None


class TestHitProcessing:
    @pytest.mark.asyncio
    async def test_fast_path(self, tracker):
        await tracker.setup_context_tracking(1)

        call = tracker.process_binding_called(_binding("window.devicePixelRatio", "https://cdn.test/a.js", context_id=1))

        assert call == CapturedCall("window.devicePixelRatio", "https://cdn.test/a.js", None)

    @pytest.mark.asyncio
    async def test_fast_path_keeps_arguments_when_saving(self, tracker):
        await tracker.setup_context_tracking(1)

        call = tracker.process_binding_called(
            _binding("Document.cookie setter", "https://cdn.test/a.js", ["a=b"], context_id=1))

        assert call.arguments == ("a=b",)

    @pytest.mark.asyncio
    async def test_foreign_binding_is_ignored(self, tracker):
        await tracker.setup_context_tracking(1)

        assert tracker.process_binding_called({"name": "other", "payload": "{}"}) is None
        assert tracker.process_binding_called({"name": BINDING_NAME, "payload": "not json"}) is None
        assert tracker.process_binding_called(_binding("unknown.member", "https://x.test/a.js")) is None

    @pytest.mark.asyncio
    async def test_slow_path_claims_pending_arguments(self, tracker):
        specs = await tracker.setup_context_tracking(1)
        cookie_spec = next(s for s in specs if s.description == "Document.cookie setter")
        tracker.process_script_parsed({"scriptId": "9", "url": "", "embedderName": "https://cdn.test/eval.js"})

        staged = tracker.process_binding_called(_binding("Document.cookie setter", None, ["x=1"], context_id=1))
        call = tracker.process_debugger_pause({
            "hitBreakpoints": [cookie_spec.id],
            "callFrames": [{"url": "", "location": {"scriptId": "9"}}],
        })

        assert staged is None
        assert call == CapturedCall("Document.cookie setter", "https://cdn.test/eval.js", ("x=1",))
        # consumed exactly once
        again = tracker.process_debugger_pause({"hitBreakpoints": [cookie_spec.id], "callFrames": []})
        assert again.arguments is None
        assert again.source == MAIN

    @pytest.mark.asyncio
    async def test_pause_on_foreign_breakpoint(self, tracker):
        await tracker.setup_context_tracking(1)

        assert tracker.process_debugger_pause({"hitBreakpoints": ["user-bp"], "callFrames": []}) is None

    @pytest.mark.asyncio
    async def test_main_url_without_trailing_slash_matches_inline_frames(self, tracker):
        tracker.set_main_url("https://site.test")
        specs = await tracker.setup_context_tracking(1)
        ratio_spec = next(s for s in specs if s.description == "window.devicePixelRatio")

        call = tracker.process_debugger_pause({
            "hitBreakpoints": [ratio_spec.id],
            "callFrames": [{"url": MAIN}, {"url": "https://cdn.test/a.js"}],
        })

        assert tracker.resolver.main_url == MAIN
        assert call.source == "https://cdn.test/a.js"
