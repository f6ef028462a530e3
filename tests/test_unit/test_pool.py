"""
Test suite for browser reuse: capacity limits, retirement and shutdown.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from pagetrace.pool import MAX_BROWSER_REUSE, MAX_CONTEXTS_PER_BROWSER, BrowserHandle, BrowserPool


def _fake_handle():
    connection = Mock()
    connection.closed = False
    browser = Mock()
    browser.close = AsyncMock()
    return BrowserHandle(browser=browser, connection=connection, router=Mock())


@pytest.fixture
def launched():
    return []


@pytest.fixture
def launcher(launched):
    async def launch():
        handle = _fake_handle()
        launched.append(handle)
        return handle
    return launch


class TestBrowserPool:
    def test_defaults(self):
        assert MAX_BROWSER_REUSE == 20
        assert MAX_CONTEXTS_PER_BROWSER == 5

    @pytest.mark.asyncio
    async def test_contexts_share_a_browser_up_to_the_limit(self, launcher, launched):
        pool = BrowserPool(max_contexts=2, launcher=launcher)

        handles = [await pool.acquire() for _ in range(3)]

        assert handles[0] is handles[1]
        assert handles[2] is not handles[0]
        assert len(launched) == 2
        assert handles[0].open_context_count == 2

    @pytest.mark.asyncio
    async def test_open_contexts_never_exceed_limit(self, launcher):
        pool = BrowserPool(max_contexts=3, launcher=launcher)

        for _ in range(10):
            await pool.acquire()

        assert all(h.open_context_count <= 3 for h in pool.handles)

    @pytest.mark.asyncio
    async def test_browser_retired_after_max_reuse(self, launcher, launched):
        pool = BrowserPool(max_reuse=2, max_contexts=5, launcher=launcher)

        for _ in range(2):
            handle = await pool.acquire()
            await pool.release(handle)

        first = launched[0]
        first.browser.close.assert_awaited_once()
        assert first not in pool.handles

        await pool.acquire()
        assert len(launched) == 2

    @pytest.mark.asyncio
    async def test_busy_browser_is_not_closed(self, launcher, launched):
        pool = BrowserPool(max_reuse=1, max_contexts=5, launcher=launcher)

        a = await pool.acquire()
        b = await pool.acquire()
        await pool.release(a)

        assert a is b
        launched[0].browser.close.assert_not_awaited()
        # exhausted, so new crawls go elsewhere
        c = await pool.acquire()
        assert c is not a

        await pool.release(b)
        launched[0].browser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dead_browser_is_replaced(self, launcher, launched):
        pool = BrowserPool(launcher=launcher)

        handle = await pool.acquire()
        handle.connection.closed = True
        second = await pool.acquire()
        await pool.release(handle)

        assert second is not handle
        assert handle not in pool.handles
        assert pool.handles == [second]

    @pytest.mark.asyncio
    async def test_close_all(self, launcher, launched, capsys):
        pool = BrowserPool(max_contexts=1, launcher=launcher)
        await pool.acquire()
        await pool.acquire()
        launched[0].browser.close.side_effect = RuntimeError("already gone")

        await pool.close_all()

        assert pool.handles == []
        launched[1].browser.close.assert_awaited_once()
        assert "[WARN]" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_concurrent_acquires_wait_for_one_launch(self, launched):
        async def slow_launch():
            await asyncio.sleep(0.01)
            handle = _fake_handle()
            launched.append(handle)
            return handle

        pool = BrowserPool(max_contexts=5, launcher=slow_launch)

        handles = await asyncio.gather(*(pool.acquire() for _ in range(7)))

        assert len(launched) == 2
        assert sorted(h.open_context_count for h in launched) == [2, 5]
        assert handles.count(launched[0]) == 5

    @pytest.mark.asyncio
    async def test_failed_launch_does_not_block_later_acquires(self, launched):
        attempts = []

        async def flaky_launch():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first launch failed")
            handle = _fake_handle()
            launched.append(handle)
            return handle

        pool = BrowserPool(launcher=flaky_launch)

        with pytest.raises(RuntimeError):
            await pool.acquire()
        handle = await pool.acquire()

        assert handle is launched[0]
        assert pool.handles == [handle]
