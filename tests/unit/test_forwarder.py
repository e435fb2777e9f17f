"""Unit tests for the retrying forwarder."""

import threading
import time
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from registry_watch.connectors.changes.models import ChangeEvent, ForwardCancelled
from registry_watch.forwarding.forwarder import RetryingForwarder


class FlakyQueue:
    """Fails the first ``failures`` writes, then accepts."""

    def __init__(self, failures: int):
        self.failures = failures
        self.attempts = 0
        self.saved: List[Dict[str, Any]] = []

    def save_object(self, record: Dict[str, Any]) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError(f"queue unavailable ({self.attempts})")
        self.saved.append(record)


class RecordingWait:
    def __init__(self, result: bool = True):
        self.result = result
        self.waits: List[float] = []

    def __call__(self, seconds, stop_event=None) -> bool:
        self.waits.append(seconds)
        return self.result


@pytest.fixture
def change():
    return ChangeEvent(id="lodash", cursor="101", payload={"id": "lodash", "seq": 101})


@pytest.fixture
def reporter():
    return Mock()


class TestRetryingForwarder:
    """Test RetryingForwarder."""

    def test_first_attempt_success(self, change, reporter):
        """Test a healthy queue takes one attempt."""
        queue = FlakyQueue(failures=0)
        wait = RecordingWait()
        forwarder = RetryingForwarder(queue, reporter, wait=wait)

        assert forwarder.forward(change) == 1
        assert wait.waits == []
        assert not reporter.report.called

    def test_retries_until_accepted(self, change, reporter):
        """N failures then success means N + 1 attempts with square backoff."""
        queue = FlakyQueue(failures=3)
        wait = RecordingWait()
        forwarder = RetryingForwarder(queue, reporter, backoff_pow=2, backoff_max_ms=30000, wait=wait)

        assert forwarder.forward(change) == 4
        assert queue.attempts == 4
        assert wait.waits == [1.0, 4.0, 9.0]

    def test_no_retry_ceiling(self, change, reporter):
        """Test N failures lead to exactly N+1 attempts, waits capped at 30s."""
        queue = FlakyQueue(failures=25)
        wait = RecordingWait()
        forwarder = RetryingForwarder(queue, reporter, backoff_pow=2, backoff_max_ms=30000, wait=wait)

        assert forwarder.forward(change) == 26
        assert wait.waits[-1] == 30.0

    def test_record_always_has_zero_retries(self, change, reporter):
        """Test the queued record carries retries 0 after failures."""
        queue = FlakyQueue(failures=2)
        forwarder = RetryingForwarder(queue, reporter, wait=RecordingWait())

        forwarder.forward(change)

        assert queue.saved == [{"objectID": "lodash", "retries": 0, "change": change.payload}]

    def test_each_failure_reported(self, change, reporter):
        """Test each failed attempt reaches the error reporter."""
        queue = FlakyQueue(failures=2)
        forwarder = RetryingForwarder(queue, reporter, wait=RecordingWait())

        forwarder.forward(change)

        assert reporter.report.call_count == 2
        error, context = reporter.report.call_args_list[0][0]
        assert isinstance(error, ConnectionError)
        assert context == {"kind": "forward_failed", "id": "lodash", "cursor": "101", "attempt": 0}
        assert reporter.report.call_args_list[1][0][1]["attempt"] == 1

    def test_cancelled_during_backoff(self, change, reporter):
        """Test an interrupted backoff raises ForwardCancelled."""
        queue = FlakyQueue(failures=100)
        forwarder = RetryingForwarder(queue, reporter, wait=RecordingWait(result=False))

        with pytest.raises(ForwardCancelled):
            forwarder.forward(change, threading.Event())

        assert queue.attempts == 1

    def test_stop_event_interrupts_real_wait(self, change, reporter):
        """A forward stuck in backoff ends promptly once stop is signalled."""
        queue = FlakyQueue(failures=100)
        forwarder = RetryingForwarder(queue, reporter, backoff_pow=2, backoff_max_ms=30000)
        stop_event = threading.Event()
        threading.Timer(0.05, stop_event.set).start()

        started = time.monotonic()
        with pytest.raises(ForwardCancelled):
            forwarder.forward(change, stop_event)
        assert time.monotonic() - started < 1

    def test_invalid_backoff_config(self, reporter):
        """Test invalid backoff settings raise ValueError."""
        with pytest.raises(ValueError, match="backoff_pow must be positive"):
            RetryingForwarder(Mock(), reporter, backoff_pow=0)
        with pytest.raises(ValueError, match="backoff_max_ms must be positive"):
            RetryingForwarder(Mock(), reporter, backoff_max_ms=0)
