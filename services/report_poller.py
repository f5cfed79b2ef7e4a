import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

from config import POLL_BACKOFF_SECONDS, POLL_MAX_WAIT_SECONDS
from services import report_batches
from services.spapi_reports import ReportApiError

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = (2, 4, 8, 15, 20)


def backoff_delays(schedule: Optional[Sequence[float]] = None) -> Iterator[float]:
    """Yield the schedule, then keep repeating its last value."""
    delays = tuple(schedule or POLL_BACKOFF_SECONDS or DEFAULT_BACKOFF_SECONDS)
    for delay in delays:
        yield delay
    while True:
        yield delays[-1]


def poll_until_terminal(
    batch_id: str,
    *,
    max_wait_seconds: Optional[float] = None,
    schedule: Optional[Sequence[float]] = None,
    poll_once: Optional[Callable[[str], Dict[str, Any]]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Dict[str, Any]:
    """
    Call poll_once until the batch is terminal or the wall-clock budget runs out.

    Running out of time is not a failure: the batch stays processing and the
    result carries ``still_processing=True`` so the caller can resume later.
    """
    budget = POLL_MAX_WAIT_SECONDS if max_wait_seconds is None else max_wait_seconds
    poll = poll_once or report_batches.poll_once
    started = clock()
    delays = backoff_delays(schedule)
    attempts = 0
    transport_errors = 0
    last: Dict[str, Any] = {"batch_id": batch_id, "status": "processing"}

    while True:
        attempts += 1
        try:
            last = poll(batch_id)
        except ReportApiError as exc:
            transport_errors += 1
            logger.warning("[ReportPoller] batch=%s attempt=%s transport error: %s", batch_id, attempts, exc)
            last = {**last, "message": str(exc)}
        else:
            if last.get("status") in report_batches.TERMINAL_STATUSES:
                logger.info("[ReportPoller] batch=%s finished %s after %s poll(s)", batch_id, last["status"], attempts)
                return {**last, "attempts": attempts, "transport_errors": transport_errors, "still_processing": False}

        delay = next(delays)
        elapsed = clock() - started
        if elapsed + delay > budget:
            logger.info(
                "[ReportPoller] batch=%s still processing after %.0fs (%s poll(s)); giving up for now",
                batch_id,
                elapsed,
                attempts,
            )
            return {
                **last,
                "status": "processing",
                "attempts": attempts,
                "transport_errors": transport_errors,
                "still_processing": True,
            }
        sleep(delay)
