from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from cashin_monitor.payment_client import PaymentStatusObservation


logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_WAIT_SECONDS = 6 * 60.0
UNKNOWN_STATUS = "UNKNOWN"


class PollState(str, enum.Enum):
    INIT = "INIT"
    WAITING_FIRST_CHECK = "WAITING_FIRST_CHECK"
    POLLING = "POLLING"
    TERMINAL_OBSERVED = "TERMINAL_OBSERVED"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    final_status: str
    attempts: int
    errors: int
    last_observation: PaymentStatusObservation | None

    @property
    def terminal(self) -> bool:
        return self.state is PollState.TERMINAL_OBSERVED


StatusFetcher = Callable[[], Awaitable[PaymentStatusObservation]]


async def poll_until_terminal(
    fetch_status: StatusFetcher,
    *,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollOutcome:
    """
    Poll `fetch_status` every `interval_seconds` until a terminal status shows up
    or `max_wait_seconds` elapse.

    The ceiling is measured from the first check and only evaluated between
    cycles, so a slow call is never cancelled. Fetch errors are logged and the
    loop keeps going. On timeout the last non-empty status seen is reported,
    or UNKNOWN when none was ever seen.
    """
    interval = max(0.0, float(interval_seconds))
    state = PollState.WAITING_FIRST_CHECK
    logger.info("Waiting before first status check", wait_seconds=interval)
    await sleep(interval)

    state = PollState.POLLING
    started = clock()
    attempts = 0
    errors = 0
    last_status: str | None = None
    last_observation: PaymentStatusObservation | None = None

    while clock() - started < max_wait_seconds:
        attempts += 1
        try:
            observation = await fetch_status()
        except Exception as exc:
            errors += 1
            logger.warning("Payment status poll failed", attempt=attempts, error=f"{type(exc).__name__}: {exc}")
        else:
            last_observation = observation
            if observation.status_text:
                last_status = observation.status_text
            logger.info(
                "Polled payment status",
                attempt=attempts,
                http_status=observation.http_status,
                status=observation.status_text,
            )
            if observation.is_terminal:
                state = PollState.TERMINAL_OBSERVED
                return PollOutcome(
                    state=state,
                    final_status=observation.status_text,
                    attempts=attempts,
                    errors=errors,
                    last_observation=observation,
                )

        logger.info("Waiting before next poll", wait_seconds=interval)
        await sleep(interval)

    state = PollState.TIMED_OUT
    final_status = last_status or UNKNOWN_STATUS
    logger.warning(
        "Payment status polling timed out",
        max_wait_seconds=max_wait_seconds,
        attempts=attempts,
        final_status=final_status,
    )
    return PollOutcome(
        state=state,
        final_status=final_status,
        attempts=attempts,
        errors=errors,
        last_observation=last_observation,
    )
