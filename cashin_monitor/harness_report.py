from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import structlog

from cashin_monitor.artifacts import parse_iso_datetime


logger = structlog.get_logger(__name__)

REPORT_FRESHNESS_SECONDS = 30.0
REPORT_WAIT_SECONDS = 60.0
REPORT_POLL_SECONDS = 1.0

# Keys under which harness reporters have stored the run end time.
_END_TIME_KEYS = ("wallClockEndedAt", "end", "endTime", "wallClockEnd", "wallClockEnded")


# Report tree: suite -> spec -> test -> result. Suites nest.


@dataclass(frozen=True)
class ReportResult:
    status: str


@dataclass(frozen=True)
class ReportTest:
    title: str
    results: tuple[ReportResult, ...] = ()


@dataclass(frozen=True)
class ReportSpec:
    title: str
    tests: tuple[ReportTest, ...] = ()


@dataclass(frozen=True)
class ReportSuite:
    title: str
    specs: tuple[ReportSpec, ...] = ()
    suites: tuple["ReportSuite", ...] = ()


@dataclass(frozen=True)
class HarnessReport:
    expected: int | None
    suites: tuple[ReportSuite, ...] | None
    ended_at: datetime | None = None


@dataclass
class TestSummary:
    __test__ = False  # not a pytest class

    total: int = 0
    failed: int = 0
    details: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return max(0, self.total - self.failed)


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _parse_result(raw: Any) -> ReportResult:
    status = raw.get("status") if isinstance(raw, dict) else None
    return ReportResult(status=str(status or ""))


def _parse_test(raw: Any, fallback_title: str) -> ReportTest:
    if not isinstance(raw, dict):
        return ReportTest(title=fallback_title)
    title = str(raw.get("title") or fallback_title)
    return ReportTest(title=title, results=tuple(_parse_result(r) for r in _as_list(raw.get("results"))))


def _parse_spec(raw: Any) -> ReportSpec:
    if not isinstance(raw, dict):
        return ReportSpec(title="")
    title = str(raw.get("title") or "")
    return ReportSpec(title=title, tests=tuple(_parse_test(t, title) for t in _as_list(raw.get("tests"))))


def _parse_suite(raw: Any) -> ReportSuite:
    if not isinstance(raw, dict):
        return ReportSuite(title="")
    return ReportSuite(
        title=str(raw.get("title") or ""),
        specs=tuple(_parse_spec(s) for s in _as_list(raw.get("specs"))),
        suites=tuple(_parse_suite(s) for s in _as_list(raw.get("suites"))),
    )


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        return parse_iso_datetime(value)
    return None


def extract_end_time(raw: dict[str, Any]) -> datetime | None:
    stats = raw.get("stats") if isinstance(raw.get("stats"), dict) else {}
    for key in _END_TIME_KEYS:
        value = stats.get(key)
        if value is None:
            value = raw.get(key)
        dt = _coerce_datetime(value)
        if dt is not None:
            return dt
    # Newer reporters only store the start time and a duration in ms.
    started = _coerce_datetime(stats.get("startTime"))
    duration = stats.get("duration")
    if started is not None and isinstance(duration, (int, float)) and not isinstance(duration, bool):
        return started + timedelta(milliseconds=float(duration))
    return None


def parse_report(raw: Any) -> HarnessReport | None:
    """
    None only for an empty document (null, false, 0, ""). Any other non-object
    JSON still counts as a report, one with no tests in it.
    """
    if raw is None or (isinstance(raw, (bool, int, float, str)) and not raw):
        return None
    if not isinstance(raw, dict):
        return HarnessReport(expected=None, suites=None)
    stats = raw.get("stats") if isinstance(raw.get("stats"), dict) else {}
    expected = stats.get("expected")
    if isinstance(expected, bool) or not isinstance(expected, int):
        expected = None
    suites = None
    if isinstance(raw.get("suites"), list):
        suites = tuple(_parse_suite(s) for s in raw["suites"])
    return HarnessReport(expected=expected, suites=suites, ended_at=extract_end_time(raw))


def load_report(path: Path) -> HarnessReport | None:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read harness report", path=str(path), error=str(exc))
        return None
    try:
        raw = json.loads(text)
    except ValueError as exc:
        logger.warning("Failed to parse harness report", path=str(path), error=str(exc))
        return None
    return parse_report(raw)


def _walk(suites: tuple[ReportSuite, ...], summary: TestSummary) -> None:
    for suite in suites:
        for spec in suite.specs:
            for test in spec.tests:
                for result in test.results:
                    summary.total += 1
                    if result.status and result.status != "passed":
                        summary.failed += 1
                        summary.details.append(f"{test.title} => {result.status}")
        _walk(suite.suites, summary)


def summarize_report(report: HarnessReport | None) -> TestSummary | None:
    """
    Count every result in the tree; anything not "passed" is a failure.

    `stats.expected` only seeds the total and is dropped once a suites list is
    present to walk.
    """
    if report is None:
        return None
    summary = TestSummary(total=report.expected or 0)
    if report.suites is not None:
        summary.total = 0
        _walk(report.suites, summary)
    return summary


def is_fresh(path: Path, *, max_age_seconds: float = REPORT_FRESHNESS_SECONDS, now: float | None = None) -> bool:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return False
    ts = time.time() if now is None else now
    return ts - mtime < max_age_seconds


async def wait_for_fresh_report(
    path: Path,
    *,
    timeout_seconds: float = REPORT_WAIT_SECONDS,
    poll_seconds: float = REPORT_POLL_SECONDS,
    max_age_seconds: float = REPORT_FRESHNESS_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Best effort: returns False after the timeout instead of raising."""
    started = clock()
    while True:
        if is_fresh(path, max_age_seconds=max_age_seconds):
            return True
        if clock() - started >= timeout_seconds:
            logger.info("Harness report not fresh; continuing without waiting", path=str(path))
            return False
        await sleep(poll_seconds)


def build_report(
    *,
    suite_title: str,
    spec_title: str,
    status: str,
    started_at: datetime,
    ended_at: datetime,
    error: str | None = None,
) -> dict[str, Any]:
    """A single-test report in the same suite/spec/test/result shape the aggregator reads."""
    duration_ms = max(0.0, (ended_at - started_at).total_seconds() * 1000.0)
    result: dict[str, Any] = {
        "status": status,
        "duration": round(duration_ms, 3),
        "startTime": started_at.isoformat().replace("+00:00", "Z"),
    }
    if error:
        result["error"] = {"message": error}
    passed = status == "passed"
    return {
        "stats": {
            "startTime": started_at.isoformat().replace("+00:00", "Z"),
            "duration": round(duration_ms, 3),
            "wallClockEndedAt": ended_at.isoformat().replace("+00:00", "Z"),
            "expected": 1 if passed else 0,
            "unexpected": 0 if passed else 1,
        },
        "suites": [
            {
                "title": suite_title,
                "specs": [
                    {
                        "title": spec_title,
                        "ok": passed,
                        "tests": [{"title": spec_title, "results": [result]}],
                    }
                ],
                "suites": [],
            }
        ],
    }


def write_report(path: Path, report: dict[str, Any]) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.tmp")
        tmp.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
    except OSError as exc:
        logger.warning("Failed to write harness report", path=str(path), error=str(exc))
        return False
    return True
