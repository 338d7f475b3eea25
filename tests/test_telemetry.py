"""Tests for the Telemetry facade: lifecycle, recording, import and concurrency."""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from codexmcp.analytics import (
    AnalyticsSnapshot,
    AnalyticsStore,
    InvalidImportError,
    RequestContext,
    Telemetry,
)
from codexmcp.config import Settings

NOW = datetime(2026, 5, 4, 12, 30, tzinfo=UTC)


def _ctx(endpoint: str = "/mcp", **kwargs) -> RequestContext:
    kwargs.setdefault("method", "POST")
    kwargs.setdefault("peer_address", "127.0.0.1")
    kwargs.setdefault("user_agent", "pytest")
    return RequestContext(endpoint=endpoint, **kwargs)


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def store(analytics_path: Path) -> AnalyticsStore:
    return AnalyticsStore(path=analytics_path)


@pytest.fixture()
def telemetry(store: AnalyticsStore):
    t = Telemetry(store, clock=lambda: NOW)
    t.initialize()
    yield t
    t.shutdown()


class TestLifecycle:
    def test_fresh_start_without_file(self, telemetry: Telemetry, store: AnalyticsStore):
        assert telemetry.running
        summary = telemetry.summarize()
        assert summary.summary.total_requests == 0
        assert not store.path.exists()

    def test_recovered_start_time_is_preserved(self, store: AnalyticsStore):
        started = NOW - timedelta(days=1, hours=2, minutes=3)
        store.save(AnalyticsSnapshot(start_time=started, total_requests=41))

        t = Telemetry(store, clock=lambda: NOW)
        t.initialize()
        try:
            assert t.start_time == started
            summary = t.summarize()
            assert summary.uptime == "1d 2h 3m"
            assert summary.summary.total_requests == 41
        finally:
            t.shutdown()

    def test_shutdown_flushes_state(self, telemetry: Telemetry, store: AnalyticsStore):
        telemetry.record_request(_ctx())
        telemetry.record_tool_call("codex", _ctx())
        telemetry.shutdown()

        assert not telemetry.running
        data = json.loads(store.path.read_text())
        assert data["totalRequests"] == 1
        assert data["totalToolCalls"] == 1
        assert data["recentToolCalls"][0]["tool"] == "codex"

    def test_shutdown_only_flushes_once(self, telemetry: Telemetry, store: AnalyticsStore):
        telemetry.shutdown()
        store.delete()
        telemetry.shutdown()
        assert not store.path.exists()

    def test_periodic_save(self, store: AnalyticsStore):
        t = Telemetry(store, save_interval=0.05)
        t.initialize()
        try:
            t.record_request(_ctx("/health", method="GET"))
            assert _wait_for(lambda: store.path.exists())
            assert _wait_for(
                lambda: json.loads(store.path.read_text()).get("totalRequests") == 1
            )
        finally:
            t.shutdown()

    def test_restart_keeps_counting(self, store: AnalyticsStore):
        first = Telemetry(store)
        first.initialize()
        for _ in range(3):
            first.record_request(_ctx())
        first.shutdown()

        second = Telemetry(store)
        second.initialize()
        second.record_request(_ctx())
        try:
            assert second.summarize().summary.total_requests == 4
            assert second.start_time == first.start_time
        finally:
            second.shutdown()

    def test_from_settings(self, tmp_path: Path):
        settings = Settings(analytics_data_dir=tmp_path, analytics_detail_calls=2)
        t = Telemetry.from_settings(settings)
        for i in range(5):
            t.record_tool_call(f"t{i}", _ctx())
        assert len(t.recent_tool_usage().recent_calls) == 2
        assert t.save_now()
        assert (tmp_path / "analytics.json").exists()


class TestRecording:
    def test_request_and_tool_call(self, telemetry: Telemetry):
        ctx = _ctx(forwarded_for="198.51.100.7, 10.0.0.1")
        telemetry.record_request(ctx)
        telemetry.record_tool_call("codex", ctx)

        summary = telemetry.summarize()
        assert summary.breakdown.by_endpoint == {"/mcp": 1}
        assert summary.clients.by_ip == {"198.51.100.7": 1}
        assert summary.hourly_requests == {"2026-05-04T12": 1}
        assert summary.recent_tool_calls[0].client_ip == "198.51.100.7"
        assert summary.recent_tool_calls[0].timestamp == NOW

    def test_recording_never_raises(self, telemetry: Telemetry, caplog):
        with caplog.at_level(logging.WARNING, logger="codexmcp.analytics.telemetry"):
            telemetry.record_request(None)  # type: ignore[arg-type]
            telemetry.record_tool_call("codex", None)  # type: ignore[arg-type]

        assert telemetry.summarize().summary.total_requests == 0
        assert "Failed to record analytics" in caplog.text

    def test_collector_failure_is_swallowed(self, telemetry: Telemetry, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(telemetry._collector, "record_request", boom)
        telemetry.record_request(_ctx())

    def test_failed_save_keeps_counting(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        t = Telemetry(AnalyticsStore(path=blocker / "analytics.json"))
        t.initialize()
        try:
            t.record_request(_ctx())
            assert t.save_now() is False
            t.record_request(_ctx())
            assert t.summarize().summary.total_requests == 2
        finally:
            t.shutdown()

    def test_concurrent_requests_are_not_lost(self, telemetry: Telemetry):
        ctx = _ctx("/health", method="GET")
        with ThreadPoolExecutor(max_workers=32) as pool:
            list(pool.map(lambda _: telemetry.record_request(ctx), range(1000)))

        summary = telemetry.summarize()
        assert summary.breakdown.by_endpoint["/health"] == 1000
        assert summary.summary.total_requests == 1000

    def test_concurrent_tool_calls_keep_ring_consistent(self, telemetry: Telemetry):
        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda i: telemetry.record_tool_call(f"t{i}", _ctx()), range(400)))

        report = telemetry.recent_tool_usage(limit=100)
        assert report.total_tool_calls == 400
        names = [r.tool_name for r in report.recent_calls]
        assert len(names) == 100
        assert len(set(names)) == 100

    def test_summarize_while_recording(self, telemetry: Telemetry):
        def record(i: int) -> None:
            telemetry.record_request(_ctx())
            telemetry.record_tool_call("codex", _ctx())
            telemetry.summarize()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(record, range(200)))

        assert telemetry.summarize().breakdown.by_tool == {"codex": 200}


class TestImport:
    def test_adds_and_saves(self, telemetry: Telemetry, store: AnalyticsStore):
        telemetry.record_request(_ctx())
        totals = telemetry.import_delta({"totalRequests": 100, "totalToolCalls": 40})

        assert totals == {"totalRequests": 101, "totalToolCalls": 40}
        on_disk = store.read()
        assert on_disk is not None
        assert on_disk.total_requests == 101

    def test_single_field(self, telemetry: Telemetry):
        assert telemetry.import_delta({"totalToolCalls": 7}) == {
            "totalRequests": 0,
            "totalToolCalls": 7,
        }

    def test_tool_calls_may_exceed_requests(self, telemetry: Telemetry):
        totals = telemetry.import_delta({"totalToolCalls": 9})
        assert totals["totalToolCalls"] > totals["totalRequests"]

    def test_same_backup_twice_counts_twice(self, telemetry: Telemetry):
        telemetry.import_delta({"totalRequests": 5})
        assert telemetry.import_delta({"totalRequests": 5})["totalRequests"] == 10

    def test_negative_rejected_without_mutation(self, telemetry: Telemetry, store: AnalyticsStore):
        telemetry.record_request(_ctx())
        with pytest.raises(InvalidImportError) as excinfo:
            telemetry.import_delta({"totalRequests": -5})

        assert excinfo.value.details
        assert telemetry.summarize().summary.total_requests == 1
        assert not store.path.exists()

    def test_partial_negative_rejected_without_mutation(self, telemetry: Telemetry):
        with pytest.raises(InvalidImportError):
            telemetry.import_delta({"totalRequests": 5, "totalToolCalls": -1})
        assert telemetry.summarize().summary.total_requests == 0

    @pytest.mark.parametrize("payload", [{}, {"other": 1}, "abc", None, [5]])
    def test_malformed_rejected(self, telemetry: Telemetry, payload):
        with pytest.raises(InvalidImportError):
            telemetry.import_delta(payload)


class _GatedStore(AnalyticsStore):
    """Holds its first write until ``gate`` is set."""

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.entered = threading.Event()
        self.gate = threading.Event()
        self._first = True

    def write(self, snapshot: AnalyticsSnapshot) -> None:
        if self._first:
            self._first = False
            self.entered.set()
            assert self.gate.wait(timeout=5)
        super().write(snapshot)


class TestOverlappingSaves:
    def test_slow_periodic_save_does_not_overwrite_import(self, analytics_path: Path):
        store = _GatedStore(analytics_path)
        t = Telemetry(store, clock=lambda: NOW)
        t.initialize()
        try:
            periodic = threading.Thread(target=t.save_now)
            periodic.start()
            assert store.entered.wait(timeout=5)

            importer = threading.Thread(target=t.import_delta, args=({"totalRequests": 500},))
            importer.start()
            assert _wait_for(lambda: t.summarize().summary.total_requests == 500)

            store.gate.set()
            periodic.join(timeout=5)
            importer.join(timeout=5)
            assert not periodic.is_alive()
            assert not importer.is_alive()

            on_disk = store.read()
            assert on_disk is not None
            assert on_disk.total_requests == 500
        finally:
            store.gate.set()
            t.shutdown()

    def test_file_never_lags_a_finished_save(self, analytics_path: Path):
        store = _GatedStore(analytics_path)
        t = Telemetry(store, clock=lambda: NOW)
        t.initialize()
        try:
            first = threading.Thread(target=t.save_now)
            first.start()
            assert store.entered.wait(timeout=5)

            t.record_request(_ctx())
            second = threading.Thread(target=t.save_now)
            second.start()

            store.gate.set()
            first.join(timeout=5)
            second.join(timeout=5)

            on_disk = store.read()
            assert on_disk is not None
            assert on_disk.total_requests == 1
        finally:
            store.gate.set()
            t.shutdown()
