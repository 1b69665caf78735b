from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

import structlog

from cashin_monitor.artifacts import (
    ArtifactPaths,
    CashInSuccess,
    RunResult,
    StartMarker,
    clear_exit_code,
    clear_run_result,
    load_run_result,
    read_exit_code,
)
from cashin_monitor.harness_report import (
    REPORT_FRESHNESS_SECONDS,
    REPORT_WAIT_SECONDS,
    HarnessReport,
    TestSummary,
    load_report,
    summarize_report,
    wait_for_fresh_report,
)


logger = structlog.get_logger(__name__)

IST = timezone(timedelta(hours=5, minutes=30), "IST")
RUN_NOTICE_PREFIX = "Payment API Monitor run at"

Notifier = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class AggregationResult:
    message: str | None
    delivered: bool = False

    @property
    def preflight(self) -> bool:
        return self.message is None


def format_ist(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST).strftime("%d/%m/%Y, %H:%M:%S") + " IST"


def synthesize_summary(exit_code: int) -> TestSummary:
    if exit_code == 0:
        return TestSummary(total=1, failed=0)
    return TestSummary(total=1, failed=1, details=[f"Test process exited with code {exit_code}"])


def apply_exit_code(summary: TestSummary, exit_code: int | None) -> TestSummary:
    """A nonzero exit code wins over a report that recorded no failures."""
    if exit_code is None or exit_code == 0 or summary.failed > 0:
        return summary
    return TestSummary(
        total=max(1, summary.total),
        failed=1,
        details=[*summary.details, f"Test process exited with code {exit_code}"],
    )


def result_section(run_result: RunResult | None, summary: TestSummary) -> str:
    if run_result is None:
        if summary.failed > 0:
            return "🚨 Cash-in API Failures\nNo detailed cashin artifact found."
        return "✅ PAYMENT INITIATED (no detailed artifact)"
    if isinstance(run_result, CashInSuccess):
        return (
            "✅ PAYMENT INITIATED SUCCESSFULLY\n"
            f"External ID: {run_result.external_id}\n"
            f"Payment Status: {run_result.final_status}"
        )
    return (
        "🚨 Cash-in API Failures\n"
        f"External ID: {run_result.external_id}\n"
        f"Error Code: {run_result.error_code_message}\n"
        f"ErrorReason: {run_result.error_reason}"
    )


def compose_message(
    *,
    run_at: datetime,
    started_at: datetime | None,
    run_result: RunResult | None,
    summary: TestSummary,
) -> str:
    run_notice = f"{RUN_NOTICE_PREFIX} {format_ist(run_at)}"
    parts = [
        f"{RUN_NOTICE_PREFIX} {format_ist(started_at)}" if started_at else run_notice,
        result_section(run_result, summary),
        f"ENDS: {run_notice}",
        f"Tests: {summary.total}  Failures: {summary.failed}  Success: {summary.succeeded}",
    ]
    return "\n\n".join(parts)


def _report_mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _already_consumed(paths: ArtifactPaths, mtime_ns: int | None) -> bool:
    if mtime_ns is None:
        return False
    try:
        return paths.report_consumed.read_text(encoding="utf-8").strip() == str(mtime_ns)
    except (OSError, UnicodeDecodeError):
        return False


def _mark_consumed(paths: ArtifactPaths, mtime_ns: int | None) -> None:
    if mtime_ns is None:
        return
    try:
        paths.report_consumed.parent.mkdir(parents=True, exist_ok=True)
        paths.report_consumed.write_text(str(mtime_ns), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to record consumed report", path=str(paths.report_consumed), error=str(exc))


async def aggregate(
    paths: ArtifactPaths,
    notifier: Notifier,
    *,
    report_wait_seconds: float = REPORT_WAIT_SECONDS,
    report_freshness_seconds: float = REPORT_FRESHNESS_SECONDS,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> AggregationResult:
    """
    Reconcile the harness report, run result, exit code and start marker into
    one notification.

    With nothing to report the call is a pre-flight pass: it records a start
    marker and sends nothing. A composed message always clears the marker, run
    result and exit code so the next pre-flight starts clean.
    """
    await wait_for_fresh_report(
        paths.report,
        timeout_seconds=report_wait_seconds,
        max_age_seconds=report_freshness_seconds,
    )

    report_mtime = _report_mtime_ns(paths.report)
    report: HarnessReport | None = None
    if _already_consumed(paths, report_mtime):
        logger.info("Harness report already reported; ignoring", path=str(paths.report))
    else:
        report = load_report(paths.report)
    summary = summarize_report(report)

    run_result = load_run_result(paths.result)
    exit_code = read_exit_code(paths.exit_code)
    marker = StartMarker(paths.start_marker)

    if summary is None:
        if exit_code is None:
            logger.info("No harness report or run data found; pre-flight run, recording start time")
            marker.save(now())
            return AggregationResult(message=None)
        logger.info(
            "No harness report; synthesizing summary from exit code",
            exit_code=exit_code,
            has_run_result=run_result is not None,
        )
        summary = synthesize_summary(exit_code)

    summary = apply_exit_code(summary, exit_code)
    run_at = (report.ended_at if report is not None else None) or now()
    message = compose_message(
        run_at=run_at,
        started_at=marker.load(),
        run_result=run_result,
        summary=summary,
    )

    try:
        delivered = bool(await notifier(message))
    except Exception as exc:
        logger.warning("Notification delivery raised", error=f"{type(exc).__name__}: {exc}")
        delivered = False
    logger.info(
        "Combined message composed",
        delivered=delivered,
        total=summary.total,
        failed=summary.failed,
        details=summary.details,
    )

    marker.clear()
    clear_run_result(paths.result)
    clear_exit_code(paths.exit_code)
    _mark_consumed(paths, report_mtime if report is not None else None)
    return AggregationResult(message=message, delivered=delivered)
