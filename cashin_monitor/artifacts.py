from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union

import structlog


logger = structlog.get_logger(__name__)

RESULT_FILENAME = "cashin_result.json"
EXIT_CODE_FILENAME = "exit_code.txt"
START_MARKER_FILENAME = "monitor_start.txt"
REPORT_FILENAME = "metrics.json"
REPORT_CONSUMED_FILENAME = "report_consumed.txt"


@dataclass(frozen=True)
class ArtifactPaths:
    root: Path
    report_override: Path | None = None

    @property
    def result(self) -> Path:
        return self.root / RESULT_FILENAME

    @property
    def exit_code(self) -> Path:
        return self.root / EXIT_CODE_FILENAME

    @property
    def start_marker(self) -> Path:
        return self.root / START_MARKER_FILENAME

    @property
    def report(self) -> Path:
        return self.report_override or (self.root / REPORT_FILENAME)

    @property
    def report_consumed(self) -> Path:
        return self.root / REPORT_CONSUMED_FILENAME


@dataclass(frozen=True)
class CashInSuccess:
    external_id: str
    final_status: str
    timestamp: str
    payment_url: str | None = None
    qr_code: str | None = None
    error_code_message: str = ""

    success = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "success": True,
            "finalStatus": self.final_status,
            "paymentUrl": self.payment_url,
            "qrCode": self.qr_code,
            "errorCodeMessage": self.error_code_message,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class CashInFailure:
    external_id: str
    error_code: Any
    error_message: str
    error_code_message: str
    error_reason: str

    success = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "success": False,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "errorCodeMessage": self.error_code_message,
            "errorReason": self.error_reason,
        }


RunResult = Union[CashInSuccess, CashInFailure]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def run_result_from_dict(raw: Any) -> RunResult | None:
    """Best-effort decode; tolerates missing optional fields from older writers."""
    if not isinstance(raw, dict):
        return None
    external_id = str(raw.get("externalId") or "")
    if raw.get("success"):
        return CashInSuccess(
            external_id=external_id,
            final_status=str(raw.get("finalStatus") or ""),
            timestamp=str(raw.get("timestamp") or ""),
            payment_url=raw.get("paymentUrl"),
            qr_code=raw.get("qrCode"),
            error_code_message=str(raw.get("errorCodeMessage") or ""),
        )
    return CashInFailure(
        external_id=external_id,
        error_code=raw.get("errorCode"),
        error_message=str(raw.get("errorMessage") or ""),
        error_code_message=str(raw.get("errorCodeMessage") or ""),
        error_reason=str(raw.get("errorReason") or ""),
    )


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to delete artifact", path=str(path), error=str(exc))


def record_run_result(path: Path, result: RunResult) -> bool:
    """Persist the run result; a write failure is logged, never raised."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to write run result", path=str(path), error=str(exc))
        return False
    logger.info("Wrote run result", path=str(path), external_id=result.external_id, success=result.success)
    return True


def load_run_result(path: Path) -> RunResult | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read run result", path=str(path), error=str(exc))
        return None
    return run_result_from_dict(raw)


def clear_run_result(path: Path) -> None:
    _unlink_quietly(path)


def write_exit_code(path: Path, code: int) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(int(code)), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to write exit code", path=str(path), error=str(exc))
        return False
    return True


def read_exit_code(path: Path) -> int | None:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to read exit code", path=str(path), error=str(exc))
        return None
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer exit code", path=str(path), raw=raw)
        return None


def clear_exit_code(path: Path) -> None:
    _unlink_quietly(path)


class StartMarker:
    """
    Single-slot mailbox holding the time a pre-flight pass ran.

    Presence of the file is the only coordination; overlapping invocations are
    expected to be serialized by whatever schedules them.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, when: datetime) -> bool:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        text = when.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(text, encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to write start marker", path=str(self.path), error=str(exc))
            return False
        logger.info("Wrote start marker", path=str(self.path), started_at=text)
        return True

    def load(self) -> datetime | None:
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read start marker", path=str(self.path), error=str(exc))
            return None
        return parse_iso_datetime(raw)

    def clear(self) -> None:
        _unlink_quietly(self.path)


def parse_iso_datetime(value: Any) -> datetime | None:
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
