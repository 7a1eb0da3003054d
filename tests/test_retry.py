import pytest

from plansync.billing import StorageError, UserNotFound
from plansync.billing.retry import retry


def _flaky(failures, exc=StorageError):
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc("transient")
        return "ok"

    return op, calls


def test_succeeds_after_transient_failures():
    sleeps = []
    op, calls = _flaky(2)
    assert retry(op, base_delay=0.2, sleep=sleeps.append) == "ok"
    assert calls["n"] == 3
    assert sleeps == [0.2, 0.4]


def test_gives_up_after_max_attempts():
    sleeps = []
    op, calls = _flaky(10)
    with pytest.raises(StorageError):
        retry(op, max_attempts=3, sleep=sleeps.append)
    assert calls["n"] == 3
    assert len(sleeps) == 2


def test_fatal_errors_are_not_retried():
    sleeps = []
    op, calls = _flaky(1, exc=UserNotFound)
    with pytest.raises(UserNotFound):
        retry(op, sleep=sleeps.append)
    assert calls["n"] == 1
    assert sleeps == []
