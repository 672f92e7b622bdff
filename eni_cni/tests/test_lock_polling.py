from __future__ import annotations

import fcntl
import os

import pytest

from eni_cni.lock import host_lock
from eni_cni.polling import backoff_delays, poll_until, retry


def test_host_lock_creates_file_and_releases(tmp_path):
    lock_path = tmp_path / "run" / "eni-cni.lock"
    with host_lock(lock_path, timeout=1):
        assert lock_path.exists()
    # re-acquirable once released
    with host_lock(lock_path, timeout=0.1):
        pass


def test_host_lock_times_out_when_held(tmp_path):
    lock_path = tmp_path / "eni-cni.lock"
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT)
    fcntl.flock(fd, fcntl.LOCK_EX)
    try:
        with pytest.raises(TimeoutError):
            with host_lock(lock_path, timeout=0.05, poll_interval=0.01):
                pass
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def test_backoff_delays_are_capped():
    delays = backoff_delays(1, 5)
    assert [next(delays) for _ in range(5)] == [1, 2, 4, 5, 5]


def test_poll_until_returns_first_truthy_value():
    answers = iter([None, "", "ens6"])
    sleeps = []
    value = poll_until(lambda: next(answers), timeout=10, interval=0.1, sleep=sleeps.append)
    assert value == "ens6"
    assert len(sleeps) == 2


def test_poll_until_times_out():
    assert poll_until(lambda: None, timeout=0, sleep=lambda _: None) is None


def test_retry_retries_only_matching_errors():
    attempts = []

    def operation(attempt):
        attempts.append(attempt)
        if attempt < 2:
            raise ValueError("busy")
        return "done"

    result = retry(operation, lambda e: isinstance(e, ValueError), attempts=3, sleep=lambda _: None)
    assert result == "done"
    assert attempts == [0, 1, 2]


def test_retry_raises_after_last_attempt():
    def operation(attempt):
        raise ValueError(f"busy {attempt}")

    with pytest.raises(ValueError, match="busy 1"):
        retry(operation, lambda e: True, attempts=2, sleep=lambda _: None)


def test_retry_does_not_retry_other_errors():
    calls = []

    def operation(attempt):
        calls.append(attempt)
        raise KeyError("fatal")

    with pytest.raises(KeyError):
        retry(operation, lambda e: isinstance(e, ValueError), attempts=5, sleep=lambda _: None)
    assert calls == [0]
