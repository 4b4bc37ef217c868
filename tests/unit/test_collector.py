"""Unit tests for the buffered collector."""

import asyncio
import os
from unittest.mock import MagicMock

import pytest

from testpartner.capture.collector import Collector, describe_element, generate_selector
from testpartner.capture.hooks import ConsoleHook
from testpartner.capture.policy import get_policy
from testpartner.errors import StoreError
from testpartner.models.session import EventRecord, EventType, LogLevel, LogRecord
from testpartner.session.manager import SessionManager
from testpartner.store import FileSharedStore

pytestmark = pytest.mark.unit


async def settle(collector):
    """Wait until every background flush of the collector has finished."""
    await asyncio.sleep(0)
    while collector._flush_tasks:
        await asyncio.gather(*list(collector._flush_tasks), return_exceptions=True)


def pushed_batches(manager):
    return [call.args[0] for call in manager.add_events.await_args_list]


class PageConsole:
    """Console of the page under test, counting calls that reach it."""

    def __init__(self):
        self.calls = 0

    def error(self, *args):
        self.calls += 1
        return len(args)


class TestElementDescription:
    """Test selector generation and target reduction."""

    def test_selector_prefers_id(self, button_target):
        assert generate_selector(button_target) == "#save"

    def test_selector_falls_back_to_classes_then_tag(self, plain_target):
        assert generate_selector(plain_target) == ".card"
        assert generate_selector({'tagName': 'SPAN'}) == "span"

    def test_text_is_truncated(self, button_target):
        description = describe_element(button_target, text_limit=4)
        assert description['textContent'] == "Save"
        assert description['selector'] == "#save"

    def test_empty_target(self):
        assert describe_element(None) == {}


class TestAdmission:
    """Test policy-driven admission."""

    @pytest.mark.asyncio
    async def test_nothing_admitted_before_start(self, make_collector):
        collector = make_collector()
        assert collector.track_click(1, 2) is None
        assert collector.record_console("error", ["boom"]) is None
        assert collector.buffered_count == 0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_mouse_moves_are_sampled(self, make_collector):
        collector = make_collector("full", buffer_capacity=10000)
        await collector.start_collecting()

        for i in range(10000):
            collector.track_mouse_move(i % 800, i % 600)

        assert 800 <= collector.admitted_count <= 1200
        assert collector.filtered_count == 10000 - collector.admitted_count
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_click_data(self, make_collector, button_target):
        collector = make_collector()
        await collector.start_collecting()

        event = collector.track_click(10, 20, button_target, viewport={'width': 1280, 'height': 720})

        assert event.type == EventType.CLICK
        assert event.data['target']['tagName'] == "BUTTON"
        assert event.data['url'] == "https://example.com/page"
        assert event.data['viewport'] == {'width': 1280, 'height': 720}
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_click_throttle(self, make_collector, button_target):
        collector = make_collector("optimized")
        await collector.start_collecting()

        assert collector.track_click(1, 1, button_target) is not None
        assert collector.track_click(2, 2, button_target) is None
        assert collector.filtered_count == 1
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_important_targets_only(self, make_collector, button_target, plain_target):
        collector = make_collector("optimized", click_throttle_ms=0)
        await collector.start_collecting()

        assert collector.track_click(1, 1, plain_target) is None
        event = collector.track_click(1, 1, button_target)
        assert event is not None
        assert len(event.data['target']['textContent']) <= 50
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_important_keys_only(self, make_collector):
        collector = make_collector("optimized")
        await collector.start_collecting()

        assert collector.track_keydown("a") is None
        assert collector.track_keydown("Enter", code="Enter") is not None
        assert collector.track_keydown("s", ctrl_key=True) is not None
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_lightweight_policy(self, make_collector, button_target):
        collector = make_collector("lightweight")
        await collector.start_collecting()

        assert collector.track_click(1, 1, button_target) is None
        assert collector.record_console(LogLevel.INFO, ["chatty"]) is None
        assert collector.record_console("warning", ["careful"]).level == LogLevel.WARN
        assert collector.record_network("GET", "/ok", 200, "OK", 12.0, True) is None
        failed = collector.record_network("GET", "/broken", 500, "Internal Server Error", 40.0, False)

        assert failed.level == LogLevel.ERROR
        assert failed.message == "GET /broken - 500 Internal Server Error"
        assert failed.to_event().type == EventType.NETWORK_ERROR
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_minimal_policy_drops_network(self, make_collector):
        collector = make_collector("minimal")
        await collector.start_collecting()

        assert collector.record_network("GET", "/broken", 0, "Network Error", 1.0, False, error="refused") is None
        error = collector.record_error("x is undefined", filename="app.py", lineno=3)
        assert error.message == "Uncaught Exception: x is undefined"
        assert error.to_event().type == EventType.PAGE_ERROR
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_console_arguments_are_stringified(self, make_collector):
        collector = make_collector()
        await collector.start_collecting()

        record = collector.record_console("error", ["failed:", ValueError("bad"), {'id': 1}])

        assert record.args == ["failed:", "ValueError: bad", "{'id': 1}"]
        assert record.message == "failed: ValueError: bad {'id': 1}"
        await collector.stop_collecting()


class TestFlushing:
    """Test batching, retry and overflow."""

    @pytest.mark.asyncio
    async def test_capacity_triggers_one_flush(self, make_collector, mock_session_manager):
        console = PageConsole()
        collector = make_collector(
            "full",
            hooks=[ConsoleHook(console, levels=[LogLevel.ERROR])],
            buffer_capacity=50,
        )
        await collector.start_collecting()

        for i in range(60):
            assert console.error(f"error {i}") == 1
        await settle(collector)

        assert console.calls == 60
        batches = pushed_batches(mock_session_manager)
        assert len(batches) == 1
        assert len(batches[0]) == 50
        assert all(isinstance(event, EventRecord) for event in batches[0])
        assert batches[0][0].type == EventType.CONSOLE_LOG
        assert collector.buffered_count == 10

        await collector.stop_collecting()
        batches = pushed_batches(mock_session_manager)
        assert [len(batch) for batch in batches] == [50, 10]
        assert batches[1][0].data['message'] == "error 50"
        assert 'error' not in vars(console)

    @pytest.mark.asyncio
    async def test_failed_flush_is_retried_in_order(self, make_collector, mock_session_manager):
        mock_session_manager.add_events.side_effect = [StoreError("store unavailable"), 4]
        collector = make_collector()
        await collector.start_collecting()

        first = [collector.track_custom(f"early-{i}") for i in range(3)]
        assert await collector.flush() == 0
        assert collector.failed_flush_count == 1
        assert collector.buffered_count == 3

        late = collector.track_custom("late")
        assert await collector.flush() == 4

        retried = pushed_batches(mock_session_manager)[1]
        assert [event.id for event in retried] == [e.id for e in first] + [late.id]
        assert collector.flushed_count == 4
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_overflow_after_failure_drops_oldest(self, make_collector, mock_session_manager):
        collector = make_collector("full", buffer_capacity=5)

        async def failing_push(events):
            for i in range(3):
                collector.track_custom(f"late-{i}")
            raise StoreError("store unavailable")

        mock_session_manager.add_events.side_effect = failing_push
        await collector.start_collecting()

        for i in range(4):
            collector.track_custom(f"early-{i}")
        await collector.flush()

        names = [record.data['name'] for record in collector.get_buffer()]
        assert names == ["early-2", "early-3", "late-0", "late-1", "late-2"]
        assert collector.dropped_count == 2

        mock_session_manager.add_events.side_effect = lambda events: len(events)
        await collector.stop_collecting()

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_timer_flush(self, make_collector, mock_session_manager):
        collector = make_collector("full", flush_interval=0.05)
        await collector.start_collecting()

        collector.track_custom("tick")
        await asyncio.sleep(0.2)

        assert mock_session_manager.add_events.await_count == 1
        assert collector.buffered_count == 0
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_page_unload_flushes_immediately(self, make_collector, mock_session_manager):
        collector = make_collector()
        await collector.start_collecting()

        collector.track_page_load(title="Checkout")
        collector.track_page_unload()
        await settle(collector)

        batch = pushed_batches(mock_session_manager)[0]
        assert [event.type for event in batch] == [EventType.PAGE_LOAD, EventType.PAGE_UNLOAD]
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_admission_from_other_thread(self, make_collector, mock_session_manager):
        collector = make_collector("full", buffer_capacity=10)
        await collector.start_collecting()

        def produce():
            for i in range(35):
                collector.record_console(LogLevel.ERROR, [f"thread {i}"])

        await asyncio.to_thread(produce)
        await asyncio.sleep(0.01)
        await collector.stop_collecting()

        flushed = [event.data['message'] for batch in pushed_batches(mock_session_manager) for event in batch]
        assert sorted(flushed) == sorted(f"thread {i}" for i in range(35))

    @pytest.mark.asyncio
    async def test_clear_buffer(self, make_collector, mock_session_manager):
        collector = make_collector()
        await collector.start_collecting()
        collector.track_custom("discard me")

        assert collector.clear_buffer() == 1
        await collector.stop_collecting()

        mock_session_manager.add_events.assert_not_awaited()


class TestLifecycle:
    """Test start/stop semantics."""

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, make_collector):
        hook = MagicMock()
        collector = make_collector(hooks=[hook])

        await collector.start_collecting()
        await collector.start_collecting()
        await collector.stop_collecting()
        await collector.stop_collecting()

        hook.install.assert_called_once_with(collector)
        hook.restore.assert_called_once()
        assert not collector.is_collecting

    @pytest.mark.asyncio
    async def test_stop_restores_hooks_in_reverse_and_flushes(self, make_collector, mock_session_manager):
        order = MagicMock()
        collector = make_collector(hooks=[order.first, order.second])
        await collector.start_collecting()
        collector.track_custom("pending")

        await collector.stop_collecting()

        restores = [name for name, _, _ in order.mock_calls if name.endswith('restore')]
        assert restores == ['second.restore', 'first.restore']
        assert len(pushed_batches(mock_session_manager)[0]) == 1
        assert collector.track_custom("after stop") is None

    @pytest.mark.asyncio
    async def test_failing_hook_install_does_not_block_start(self, make_collector):
        broken = MagicMock()
        broken.install.side_effect = RuntimeError("cannot patch")
        collector = make_collector(hooks=[broken])

        await collector.start_collecting()
        assert collector.is_collecting
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_console_hook_feeds_collector(self, make_collector):
        class Console:
            def error(self, *args):
                return None

        console = Console()
        collector = make_collector(hooks=[ConsoleHook(console, levels=[LogLevel.ERROR])])
        await collector.start_collecting()

        console.error("payment failed", 402)

        buffered = collector.get_buffer()
        assert len(buffered) == 1
        assert isinstance(buffered[0], LogRecord)
        assert buffered[0].message == "payment failed 402"
        await collector.stop_collecting()
        assert 'error' not in vars(console)


class TestFlags:
    """Test flagging through the collector."""

    @pytest.mark.asyncio
    async def test_flag_last_event_without_events(self, make_collector, mock_session_manager):
        collector = make_collector()
        assert await collector.flag_last_event() is None
        mock_session_manager.add_flag.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flag_last_event(self, make_collector, mock_session_manager, button_target):
        collector = make_collector()
        await collector.start_collecting()
        event = collector.track_click(5, 5, button_target)

        flag_id = await collector.flag_last_event("looks wrong")

        assert flag_id == "flag_1_abc"
        mock_session_manager.add_flag.assert_awaited_once_with(event.id, "looks wrong")
        await collector.stop_collecting()

    @pytest.mark.asyncio
    async def test_stats(self, make_collector):
        collector = make_collector("minimal")
        await collector.start_collecting()
        collector.record_console("error", ["x"])
        collector.record_console("info", ["y"])

        stats = collector.get_stats()
        assert stats['policy'] == "minimal"
        assert stats['admitted'] == 1
        assert stats['filtered'] == 1
        assert stats['buffered'] == 1
        await collector.stop_collecting()
        assert collector.get_stats()['flushed'] == 1
        assert "minimal" in repr(collector)


class TestFlushingIntoSession:
    """Test flushes against a real session manager and store."""

    @pytest.mark.asyncio
    async def test_records_flushed_while_paused_count_as_dropped(self, session_manager, store):
        collector = Collector(session_manager, policy=get_policy("full"), page_url="https://example.com/")
        await session_manager.start("T1")
        await collector.start_collecting()
        for i in range(5):
            collector.track_custom(f"step-{i}")

        await session_manager.pause()
        await collector.stop_collecting()

        record = await session_manager.get_current_session()
        assert record.events == []
        stats = collector.get_stats()
        assert stats['flushed'] == 0
        assert stats['dropped'] == 5
        assert collector.flush_count == 0

    @pytest.mark.asyncio
    async def test_retry_after_failed_file_write_has_no_duplicates(self, tmp_path, monkeypatch):
        shared = FileSharedStore(tmp_path / "store.json")
        manager = SessionManager(shared, context_name="page")
        collector = Collector(manager, policy=get_policy("full"), page_url="https://example.com/")
        await manager.start("T1")
        await collector.start_collecting()

        real_replace = os.replace
        attempts = []

        def flaky_replace(src, dst):
            attempts.append(dst)
            if len(attempts) == 1:
                raise OSError("disk full")
            real_replace(src, dst)

        monkeypatch.setattr("testpartner.store.file_backend.os.replace", flaky_replace)
        collector.track_custom("a")
        collector.track_custom("b")
        assert await collector.flush() == 0
        assert collector.buffered_count == 2

        collector.track_custom("c")
        assert await collector.flush() == 3

        record = await manager.get_current_session()
        assert [event.data['name'] for event in record.events] == ["a", "b", "c"]
        await collector.stop_collecting()
        await shared.close()
