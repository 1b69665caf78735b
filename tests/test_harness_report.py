from __future__ import annotations

import json
import os
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cashin_monitor.harness_report import (
    build_report,
    is_fresh,
    load_report,
    parse_report,
    summarize_report,
    wait_for_fresh_report,
    write_report,
)


def _result(status: str) -> dict:
    return {"status": status}


NESTED_REPORT = {
    "stats": {"expected": 99, "wallClockEndedAt": "2026-05-01T10:00:00.000Z"},
    "suites": [
        {
            "title": "cashin.test.ts",
            "specs": [
                {"title": "top level", "tests": [{"results": [_result("passed")]}]},
            ],
            "suites": [
                {
                    "title": "Hourly Cash-in Flow Monitoring",
                    "specs": [
                        {
                            "title": "initiate",
                            "tests": [
                                {"results": [_result("failed"), _result("passed")]},
                                {"title": "retry", "results": [_result("timedOut")]},
                            ],
                        }
                    ],
                }
            ],
        }
    ],
}


def test_summary_walks_nested_suites_and_overrides_expected() -> None:
    summary = summarize_report(parse_report(NESTED_REPORT))
    assert summary is not None
    assert summary.total == 4
    assert summary.failed == 2
    assert summary.succeeded == 2
    assert summary.details == ["initiate => failed", "retry => timedOut"]


def test_expected_is_a_fallback_without_suites() -> None:
    summary = summarize_report(parse_report({"stats": {"expected": 3}}))
    assert summary is not None
    assert (summary.total, summary.failed) == (3, 0)


def test_empty_object_report_still_yields_summary() -> None:
    summary = summarize_report(parse_report({}))
    assert summary is not None
    assert (summary.total, summary.failed) == (0, 0)


def test_empty_documents_yield_no_summary() -> None:
    for raw in (None, False, 0, ""):
        assert parse_report(raw) is None
    assert summarize_report(None) is None


@pytest.mark.parametrize("raw", [[], [1, 2], "x", 5, True])
def test_non_object_report_counts_as_empty_run(raw) -> None:
    summary = summarize_report(parse_report(raw))
    assert summary is not None
    assert (summary.total, summary.failed) == (0, 0)


def test_malformed_nodes_are_skipped() -> None:
    raw = {"suites": [None, {"specs": "x", "suites": [{"specs": [{"tests": [{"results": [None, {}]}]}]}]}]}
    summary = summarize_report(parse_report(raw))
    assert summary is not None
    assert summary.total == 2
    assert summary.failed == 0


def test_end_time_candidates() -> None:
    assert parse_report(NESTED_REPORT).ended_at == datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_report({"endTime": 0}).ended_at == datetime(1970, 1, 1, tzinfo=timezone.utc)
    derived = parse_report({"stats": {"startTime": "2026-05-01T10:00:00Z", "duration": 1500}}).ended_at
    assert derived == datetime(2026, 5, 1, 10, 0, 1, 500000, tzinfo=timezone.utc)
    assert parse_report({"stats": {}}).ended_at is None


def test_load_report_missing_and_corrupt(tmp_path: Path) -> None:
    path = tmp_path / "metrics.json"
    assert load_report(path) is None
    path.write_text("{", encoding="utf-8")
    assert load_report(path) is None
    path.write_text(json.dumps(NESTED_REPORT), encoding="utf-8")
    assert load_report(path) is not None


def test_freshness_window(tmp_path: Path) -> None:
    path = tmp_path / "metrics.json"
    assert not is_fresh(path)
    path.write_text("{}", encoding="utf-8")
    assert is_fresh(path)
    old = time.time() - 120
    os.utime(path, (old, old))
    assert not is_fresh(path)


@pytest.mark.asyncio
async def test_wait_for_fresh_report_times_out_without_raising(tmp_path: Path) -> None:
    ticks = {"now": 0.0}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        ticks["now"] += seconds

    ok = await wait_for_fresh_report(
        tmp_path / "metrics.json",
        timeout_seconds=3,
        sleep=fake_sleep,
        clock=lambda: ticks["now"],
    )
    assert ok is False
    assert sleeps == [1.0, 1.0, 1.0]


@pytest.mark.asyncio
async def test_wait_for_fresh_report_returns_once_fresh(tmp_path: Path) -> None:
    path = tmp_path / "metrics.json"

    async def write_on_sleep(seconds: float) -> None:
        path.write_text("{}", encoding="utf-8")

    assert await wait_for_fresh_report(path, timeout_seconds=10, sleep=write_on_sleep) is True


def test_written_report_round_trips_into_summary(tmp_path: Path) -> None:
    start = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)
    report = build_report(
        suite_title="suite",
        spec_title="check",
        status="failed",
        started_at=start,
        ended_at=start + timedelta(seconds=2),
        error="boom",
    )
    path = tmp_path / "metrics.json"
    assert write_report(path, report)

    loaded = load_report(path)
    summary = summarize_report(loaded)
    assert summary is not None
    assert (summary.total, summary.failed) == (1, 1)
    assert summary.details == ["check => failed"]
    assert loaded.ended_at == start + timedelta(seconds=2)
