"""Tests for listener buffers, polling workers and registration."""

import threading
import time

import httpx
import pytest

from apiplan import listeners as lst
from apiplan.errors import CaptureError, DeclarationError, ResolutionError
from apiplan.hooks import Before, EventsClear, SSEListen
from apiplan.http_driver import HttpxDoer
from apiplan.listeners import (
    BufferedListener,
    PollingWorker,
    SSEListener,
    name_and_dest,
    parse_sse,
    register_listener,
    retention,
)


class OtherListener(BufferedListener):
    pass


# ── Buffering ──


class TestBufferedListener:
    def test_unbounded(self):
        listener = BufferedListener()
        for i in range(5):
            listener.receive(f"m{i}")
        assert listener.received() == 5
        assert listener.events() == ["m0", "m1", "m2", "m3", "m4"]

    def test_keeps_newest(self):
        listener = BufferedListener(max_messages=3)
        for i in range(1, 7):
            listener.receive(f"m{i}")
        assert listener.received() == 6
        assert listener.events() == ["m4", "m5", "m6"]
        assert listener.events_count() == 3
        assert listener.received_message(-1) == "m6"
        assert listener.received_message(0) == "m4"

    def test_zero_retains_nothing_but_counts(self):
        listener = BufferedListener(max_messages=0)
        listener.receive("x")
        listener.receive("y")
        assert listener.received() == 2
        assert listener.events() == []

    def test_negative_max_treated_as_zero(self):
        listener = BufferedListener(max_messages=-4)
        listener.receive("x")
        assert listener.events() == []

    def test_index_out_of_range(self):
        listener = BufferedListener()
        with pytest.raises(ResolutionError, match="out of range"):
            listener.received_message(0)

    def test_snapshot_is_a_copy(self):
        listener = BufferedListener()
        listener.receive(1)
        snap = listener.events()
        snap.append(2)
        assert listener.events() == [1]

    def test_json_messages(self):
        listener = BufferedListener(json_messages=True)
        listener.receive('{"a": 1}')
        listener.receive("not json")
        assert listener.events() == [{"a": 1}, "not json"]

    def test_unmarshaler_failure_keeps_raw(self):
        listener = BufferedListener(unmarshaler=lambda raw: 1 / 0)
        listener.receive("raw")
        assert listener.events() == ["raw"]

    def test_counter_rolls_to_one(self):
        listener = BufferedListener()
        listener.count = lst.INT64_MAX
        listener.receive("x")
        assert listener.received() == 1

    def test_clear_keeps_count(self):
        listener = BufferedListener()
        listener.receive("x")
        listener.clear()
        assert listener.events() == []
        assert listener.received() == 1

    def test_stop_calls_closer_once(self):
        calls = []
        listener = BufferedListener(closer=lambda: calls.append(1))
        listener.stop()
        listener.stop()
        assert calls == [1]
        assert listener.stopped

    def test_concurrent_receivers(self):
        listener = BufferedListener(max_messages=10)

        def produce():
            for i in range(500):
                listener.receive(i)

        threads = [threading.Thread(target=produce) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert listener.received() == 2000
        assert listener.events_count() == 10


# ── Polling ──


class TestPollingWorker:
    def test_feeds_listener_until_stopped(self):
        listener = BufferedListener()
        pending = ["a", "b", "c"]

        def poll(timeout_s):
            if pending:
                return pending.pop(0)
            time.sleep(timeout_s)
            return None

        worker = PollingWorker(listener, poll, interval_s=0.01).start()
        deadline = time.monotonic() + 2
        while listener.received() < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        worker.stop()
        assert listener.events() == ["a", "b", "c"]

    def test_poll_errors_are_kept(self):
        listener = BufferedListener()
        cancel = threading.Event()

        def poll(timeout_s):
            cancel.set()
            raise RuntimeError("broker gone")

        worker = PollingWorker(listener, poll, cancel=cancel, interval_s=0.01).start()
        worker._thread.join(timeout=2)
        assert worker.errors and str(worker.errors[0]) == "broker gone"


# ── Registration ──


class TestRegistration:
    def test_name_and_dest(self):
        assert name_and_dest("", "q") == ("q", "q")
        assert name_and_dest("n", "") == ("n", "n")
        assert name_and_dest("n", "q") == ("n", "q")

    def test_retention(self):
        assert retention(0) is None
        assert retention(-1) is None
        assert retention(5) == 5

    def test_register_and_reuse(self, ctx):
        created = []

        def factory():
            listener = BufferedListener()
            created.append(listener)
            return listener

        first = register_listener(ctx, "q", BufferedListener, factory)
        first.receive("old")
        again = register_listener(ctx, "q", BufferedListener, factory)
        assert again is first
        assert len(created) == 1
        assert first.events() == []
        assert ctx.get_listener("q") is first

    def test_type_mismatch(self, ctx):
        register_listener(ctx, "q", BufferedListener, BufferedListener)
        with pytest.raises(DeclarationError, match="expected OtherListener"):
            register_listener(ctx, "q", OtherListener, OtherListener)

    def test_context_snapshots(self, ctx):
        listener = BufferedListener()
        ctx.register_listener("q", listener)
        listener.receive("m1")
        assert ctx.events("q") == ["m1"]
        assert ctx.events_count("q") == 1
        with pytest.raises(ResolutionError):
            ctx.events("unknown")


# ── Server-sent events ──


EVENTS = (
    b": keep-alive\n\n"
    b"data: one\n\n"
    b"event: update\nid: 7\ndata: {\"a\": 1}\n\n"
    b"data: multi\ndata:line\n\n"
)


def sse_doer(seen, status=200, body=EVENTS):
    def handler(request):
        seen.append(request)
        return httpx.Response(status, content=body, headers={"content-type": "text/event-stream"})

    return HttpxDoer(transport=httpx.MockTransport(handler))


def wait_for(check, timeout_s=2.0):
    deadline = time.monotonic() + timeout_s
    while not check() and time.monotonic() < deadline:
        time.sleep(0.01)
    return check()


def test_parse_sse():
    lines = [": hi", "", "data: a", "", "retry: 10", "data: b", "data:  c", "", "data: dangling"]
    assert list(parse_sse(lines)) == ["a", "b\n c"]


class TestSSEListen:
    def test_streams_event_data(self, ctx):
        seen = []
        ctx.http_do = sse_doer(seen)
        SSEListen("ev", "/api/events").execute(ctx)
        assert wait_for(lambda: ctx.events_count("ev") == 3)
        assert ctx.events("ev") == ["one", '{"a": 1}', "multi\nline"]
        assert str(seen[0].url) == "http://api.test/api/events"
        assert seen[0].headers["accept"] == "text/event-stream"
        ctx.stop_listeners()

    def test_json_messages(self, ctx):
        ctx.http_do = sse_doer([], body=b'data: {"id": 3}\n\n')
        SSEListen("ev", "/api/events", json_messages=True).execute(ctx)
        assert wait_for(lambda: ctx.events_count("ev") == 1)
        assert ctx.events("ev") == [{"id": 3}]
        ctx.stop_listeners()

    def test_rerun_clears_and_reuses(self, ctx):
        seen = []
        ctx.http_do = sse_doer(seen)
        SSEListen("ev", "/api/events").execute(ctx)
        listener = ctx.get_listener("ev")
        assert wait_for(lambda: listener.finished.is_set())
        SSEListen("ev", "/api/events").execute(ctx)
        assert ctx.get_listener("ev") is listener
        assert ctx.events("ev") == []
        assert len(seen) == 1
        EventsClear(Before, "ev").execute(ctx)
        ctx.stop_listeners()

    def test_bad_status_is_kept(self, ctx):
        ctx.http_do = sse_doer([], status=503, body=b"")
        SSEListen("ev", "/api/events").execute(ctx)
        listener = ctx.get_listener("ev")
        assert listener.finished.wait(2)
        assert "status 503" in str(listener.errors[0])
        assert ctx.events_count("ev") == 0

    def test_cancel_stops_dispatch(self):
        cancel = threading.Event()
        cancel.set()
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=EVENTS)))
        listener = SSEListener(client, client.build_request("GET", "http://api.test/ev"), cancel=cancel).start()
        assert listener.finished.wait(2)
        assert listener.received() == 0
        assert listener.errors == []
        listener.stop()
        client.close()

    def test_type_clash_with_other_listener(self, ctx):
        register_listener(ctx, "ev", BufferedListener, BufferedListener)
        with pytest.raises(CaptureError, match="expected SSEListener"):
            SSEListen("ev", "/api/events").execute(ctx)
