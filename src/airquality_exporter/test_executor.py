import logging
import threading
import time
from unittest.mock import Mock

import pytest

from airquality_exporter.errors import CommandTimeout
from airquality_exporter.executor import Outcome, attempt, execute_with_retry


class Flaky:
    """Callable failing a fixed number of times before returning a value."""

    def __init__(self, fails: int, value="ok"):
        self.calls = 0
        self._fails = fails
        self._value = value

    def __call__(self):
        self.calls += 1
        if self.calls <= self._fails:
            raise IOError(f"failure {self.calls}")
        return self._value


def test_single_attempt_success_does_not_sleep():
    """With no retries a successful call returns at once"""
    sleep = Mock()
    op = Flaky(fails=0, value=42)

    assert execute_with_retry(op, 0, 1.0, sleep=sleep) == 42
    assert op.calls == 1
    sleep.assert_not_called()


def test_single_attempt_failure_is_final():
    """With no retries the first error is raised without sleeping"""
    sleep = Mock()
    op = Flaky(fails=5)

    with pytest.raises(IOError, match="failure 1"):
        execute_with_retry(op, 0, 1.0, sleep=sleep)

    assert op.calls == 1
    sleep.assert_not_called()


def test_retries_use_linear_backoff():
    """N retries make N+1 attempts with delays 1, 2, ..., N"""
    sleep = Mock()
    op = Flaky(fails=10)

    with pytest.raises(IOError, match="failure 4"):
        execute_with_retry(op, 3, 1.0, sleep=sleep)

    assert op.calls == 4
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2, 3]


def test_backoff_unit_scales_delays():
    sleep = Mock()

    with pytest.raises(IOError):
        execute_with_retry(Flaky(fails=10), 2, 1.0, backoff_unit=0.5, sleep=sleep)

    assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]


def test_success_after_failures_stops_retrying():
    sleep = Mock()
    op = Flaky(fails=2, value="done")

    assert execute_with_retry(op, 5, 1.0, sleep=sleep) == "done"
    assert op.calls == 3
    assert sleep.call_count == 2


def test_success_does_not_wait_out_timeout():
    """A fast call returns well before the per-attempt timeout"""
    start = time.monotonic()
    execute_with_retry(lambda: None, 0, 5.0)
    assert time.monotonic() - start < 1.0


def test_timeout_abandons_hung_call():
    """A call that never returns yields CommandTimeout without blocking on it"""
    release = threading.Event()

    def hang():
        release.wait()

    start = time.monotonic()
    try:
        with pytest.raises(CommandTimeout) as exc_info:
            execute_with_retry(hang, 0, 0.05)
        assert time.monotonic() - start < 1.0
        assert exc_info.value.retries == 0
        assert "timeout" in str(exc_info.value)
    finally:
        release.set()


def test_timeout_records_retry_count_of_last_attempt():
    release = threading.Event()
    sleep = Mock()

    try:
        with pytest.raises(CommandTimeout) as exc_info:
            execute_with_retry(release.wait, 2, 0.02, sleep=sleep)
        assert exc_info.value.retries == 2
        assert sleep.call_count == 2
    finally:
        release.set()


def test_timeout_then_success_on_retry():
    """A hung first attempt is abandoned and a fresh attempt succeeds"""
    release = threading.Event()
    calls = []

    def op():
        calls.append(len(calls))
        if len(calls) == 1:
            release.wait()
            return "late"
        return "fresh"

    try:
        assert execute_with_retry(op, 1, 0.05, sleep=Mock()) == "fresh"
    finally:
        release.set()


def test_error_after_timeout_is_last_failure():
    """The reason reported is the one from the final attempt"""
    release = threading.Event()
    calls = []

    def op():
        calls.append(1)
        if len(calls) == 1:
            release.wait()
        raise ValueError("device said no")

    try:
        with pytest.raises(ValueError, match="device said no"):
            execute_with_retry(op, 1, 0.05, sleep=Mock())
    finally:
        release.set()


def test_attempt_reports_outcomes():
    assert attempt(lambda: 7, 1.0).outcome is Outcome.SUCCESS
    assert attempt(lambda: 7, 1.0).value == 7

    result = attempt(Flaky(fails=1), 1.0)
    assert result.outcome is Outcome.ERROR
    assert isinstance(result.error, IOError)

    release = threading.Event()
    result = attempt(release.wait, 0.01, retries=3)
    release.set()
    assert result.outcome is Outcome.TIMEOUT
    assert result.error.retries == 3


def test_invalid_policy_is_rejected():
    with pytest.raises(ValueError):
        execute_with_retry(lambda: None, -1, 1.0)
    with pytest.raises(ValueError):
        execute_with_retry(lambda: None, 0, 0)


def test_timeout_is_logged_with_retry_count(caplog):
    caplog.set_level(logging.WARNING, logger="airquality_exporter.executor")
    release = threading.Event()

    def set_passive_mode():
        release.wait()

    try:
        with pytest.raises(CommandTimeout):
            execute_with_retry(set_passive_mode, 0, 0.02)
    finally:
        release.set()

    [record] = [r for r in caplog.records if r.getMessage() == "Device API response timeout"]
    assert record.levelno == logging.WARNING
    assert record.retries == 0
    assert record.call == "set_passive_mode"


def test_retries_and_failures_are_logged(caplog):
    caplog.set_level(logging.DEBUG, logger="airquality_exporter.executor")

    with pytest.raises(IOError):
        execute_with_retry(Flaky(fails=10), 2, 1.0, sleep=Mock(), name="get_cycle")

    retries = [r.retry for r in caplog.records if r.getMessage() == "Retrying API call"]
    failures = [r for r in caplog.records if r.getMessage() == "Device API call failed"]
    assert retries == [1, 2]
    assert [r.retry for r in failures] == [0, 1, 2]
    assert failures[-1].error == "failure 3"
    assert all(r.call == "get_cycle" for r in failures)
