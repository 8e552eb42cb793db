import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from airquality_exporter.errors import CommandTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 0 retries, exit on failure
DEFAULT_RETRIES = 0
DEFAULT_TIMEOUT_SEC = 10.0


class Outcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass
class AttemptResult:
    """Result of one invocation of a device call."""

    outcome: Outcome
    value: Any = None
    error: Optional[BaseException] = None


def _run_attempt(operation: Callable[[], Any], slot: "queue.Queue[AttemptResult]") -> None:
    try:
        value = operation()
    except Exception as e:
        slot.put(AttemptResult(Outcome.ERROR, error=e))
    else:
        slot.put(AttemptResult(Outcome.SUCCESS, value=value))


def attempt(
    operation: Callable[[], T], timeout: float, *, retries: int = 0, name: str = ""
) -> AttemptResult:
    """Run ``operation`` on a detached thread and wait at most ``timeout`` seconds.

    The thread reports through a single-slot queue. When the timeout wins,
    the thread is abandoned: it is neither joined nor cancelled and whatever
    it eventually puts in the queue is never read.
    """
    slot: "queue.Queue[AttemptResult]" = queue.Queue(maxsize=1)
    worker = threading.Thread(
        target=_run_attempt,
        args=(operation, slot),
        name=f"device-call-{name or 'op'}-{retries}",
        daemon=True,
    )
    worker.start()
    try:
        return slot.get(timeout=timeout)
    except queue.Empty:
        return AttemptResult(Outcome.TIMEOUT, error=CommandTimeout(retries, timeout))


def execute_with_retry(
    operation: Callable[[], T],
    max_retries: int = DEFAULT_RETRIES,
    timeout: float = DEFAULT_TIMEOUT_SEC,
    *,
    backoff_unit: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    name: Optional[str] = None,
) -> T:
    """Execute a blocking device call with bounded retries and a per-attempt timeout.

    Makes up to ``max_retries + 1`` attempts. Before retry ``n`` it sleeps
    ``n * backoff_unit`` seconds, so delays grow linearly (1, 2, 3, ... units).
    Each attempt runs on its own thread and is raced against ``timeout``; an
    attempt that times out is abandoned, not joined.

    Args:
        operation: Callable taking no arguments; raising means failure.
        max_retries: Number of retries after the first attempt. With 0 a single
            attempt is made and any failure is final.
        timeout: Seconds to wait for each attempt.
        backoff_unit: Length of one back-off unit in seconds.
        sleep: Function used to wait between attempts.
        name: Label for log lines, defaults to the callable's name.

    Returns:
        The value returned by the first successful attempt.

    Raises:
        CommandTimeout: The last attempt timed out.
        Exception: Whatever the last failed attempt raised.
        ValueError: ``max_retries`` is negative or ``timeout`` is not positive.
    """
    if max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {max_retries}")
    if timeout <= 0:
        raise ValueError(f"timeout must be > 0, got {timeout}")

    name = name or getattr(operation, "__name__", "device call")

    for retry in range(max_retries + 1):
        if retry > 0:
            logger.debug("Retrying API call", extra={"call": name, "retry": retry})
            sleep(retry * backoff_unit)

        result = attempt(operation, timeout, retries=retry, name=name)

        if result.outcome is Outcome.SUCCESS:
            return result.value

        if result.outcome is Outcome.TIMEOUT:
            logger.warning("Device API response timeout", extra={"call": name, "retries": retry})
        else:
            logger.warning(
                "Device API call failed", extra={"call": name, "retry": retry, "error": str(result.error)}
            )

        if retry == max_retries:
            raise result.error
