"""
Test suite for script attribution of paused API calls.
"""
from pagetrace.interception.attribution import MAX_ASYNC_CALL_STACK_DEPTH, ScriptResolver, StackTrace

MAIN = "https://site.test/"


def _chain(depth, url_at=None):
    """Async StackTrace payload `depth` levels deep, with a URL only at level `url_at`."""
    node = None
    for level in reversed(range(depth)):
        frame = {"url": "https://cdn.test/deep.js" if level == url_at else "", "scriptId": f"s{level}"}
        node = {"callFrames": [frame], "parent": node} if node else {"callFrames": [frame]}
    return node


class TestStackTrace:
    def test_from_none(self):
        assert StackTrace.from_cdp(None) is None

    def test_depth_is_bounded(self):
        trace = StackTrace.from_cdp(_chain(100))

        assert len(list(trace.levels())) == MAX_ASYNC_CALL_STACK_DEPTH

    def test_levels_keep_order(self):
        trace = StackTrace.from_cdp(_chain(3))

        assert [level.call_frames[0].script_id for level in trace.levels()] == ["s0", "s1", "s2"]


class TestScriptResolver:
    def test_frame_url_wins(self):
        resolver = ScriptResolver(MAIN)

        source = resolver.resolve({"callFrames": [
            {"url": "", "location": {"scriptId": "1"}},
            {"url": "https://cdn.test/fp.js", "location": {"scriptId": "2"}},
        ]})

        assert source == "https://cdn.test/fp.js"

    def test_script_id_lookup(self):
        resolver = ScriptResolver(MAIN)
        resolver.add_script("7", "https://cdn.test/by-id.js")

        source = resolver.resolve({"callFrames": [
            {"url": "", "functionLocation": {"scriptId": "7"}, "location": {"scriptId": "8"}},
        ]})

        assert source == "https://cdn.test/by-id.js"

    def test_main_url_frames_are_skipped(self):
        resolver = ScriptResolver(MAIN)

        source = resolver.resolve({"callFrames": [
            {"url": MAIN, "location": {"scriptId": "1"}},
            {"url": "https://third.test/t.js", "location": {"scriptId": "2"}},
        ]})

        assert source == "https://third.test/t.js"

    def test_non_http_urls_do_not_qualify(self):
        resolver = ScriptResolver(MAIN)

        assert not resolver.qualifies("chrome-extension://abc/x.js")
        assert not resolver.qualifies("")
        assert not resolver.qualifies(MAIN)
        assert resolver.qualifies("HTTPS://cdn.test/x.js")

    def test_async_chain_is_searched(self):
        resolver = ScriptResolver(MAIN)

        source = resolver.resolve({"callFrames": [], "asyncStackTrace": _chain(5, url_at=3)})

        assert source == "https://cdn.test/deep.js"

    def test_async_chain_beyond_limit_is_ignored(self):
        logged = []
        resolver = ScriptResolver(MAIN, log=lambda *a: logged.append(a))

        source = resolver.resolve({"callFrames": [], "asyncStackTrace": _chain(40, url_at=35)})

        assert source == MAIN
        assert ("unknown source, assuming global",) in logged

    def test_falls_back_to_main_url(self):
        resolver = ScriptResolver(MAIN)

        assert resolver.resolve({"callFrames": [{"url": "", "location": {"scriptId": "x"}}]}) == MAIN

    def test_duplicate_script_id_is_logged(self):
        logged = []
        resolver = ScriptResolver(MAIN, log=lambda *a: logged.append(a))
        resolver.add_script("1", "https://a.test/1.js")
        resolver.add_script("1", "https://a.test/2.js")

        assert resolver.script_url("1") == "https://a.test/2.js"
        assert logged == [("duplicate scriptId", "1")]
