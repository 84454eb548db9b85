from __future__ import annotations

import threading

import pytest

from checkmon.alert_filter import AlertFilter


class _Key:
    def __init__(self, min_failures: int = 1, failure_window: float = 120) -> None:
        self.min_failures = min_failures
        self.failure_window = failure_window


def test_threshold_and_window_scenario() -> None:
    f = AlertFilter()
    check = _Key(min_failures=3, failure_window=120)
    for t in (0, 30, 70, 125):
        f.report(check, "timeout", t)

    # Window (5, 125]: 30, 70, 125 survive -> 3 >= 3.
    assert f.get_filtered_results(now=125) == {(check, "timeout")}
    assert f.failure_counts(check) == {"timeout": 3}

    # Window (140, 260]: nothing survives, and the entry is pruned entirely.
    assert f.get_filtered_results(now=260) == set()
    assert f.failure_counts(check) == {}
    assert len(f) == 0


def test_fewer_than_min_failures_never_alert() -> None:
    f = AlertFilter()
    check = _Key(min_failures=3, failure_window=60)
    f.report(check, "timeout", 100)
    f.report(check, "timeout", 150)
    for now in (100, 150, 159, 200):
        assert f.get_filtered_results(now=now) == set()


def test_single_failure_expires_at_window_boundary() -> None:
    f = AlertFilter()
    check = _Key(min_failures=1, failure_window=120)
    f.report(check, "wrong answer", 1000)

    assert f.get_filtered_results(now=1000) == {(check, "wrong answer")}
    assert f.get_filtered_results(now=1119.5) == {(check, "wrong answer")}
    assert f.get_filtered_results(now=1120) == set()


def test_reasons_are_tracked_independently() -> None:
    f = AlertFilter()
    check = _Key(min_failures=2, failure_window=120)
    f.report(check, "timeout", 10)
    f.report(check, "wrong answer", 11)
    f.report(check, "wrong answer", 12)

    assert f.get_filtered_results(now=20) == {(check, "wrong answer")}

    f.report(check, "timeout", 21)
    assert f.get_filtered_results(now=22) == {(check, "wrong answer"), (check, "timeout")}


def test_duplicate_timestamps_collapse() -> None:
    f = AlertFilter()
    check = _Key(min_failures=2, failure_window=120)
    f.report(check, "timeout", 50)
    f.report(check, "timeout", 50)
    assert f.get_filtered_results(now=60) == set()


def test_empty_reason_is_not_a_failure() -> None:
    f = AlertFilter()
    check = _Key()
    f.report(check, "", 10)
    assert f.get_filtered_results(now=10) == set()
    assert len(f) == 0


def test_window_falls_back_to_and_is_capped_by_max_window() -> None:
    f = AlertFilter(max_window_seconds=100)

    class Opaque:
        pass

    opaque = Opaque()
    f.report(opaque, "down", 0)
    assert f.get_filtered_results(now=99) == {(opaque, "down")}
    assert f.get_filtered_results(now=100) == set()

    wide = _Key(min_failures=1, failure_window=10_000)
    assert f.window_for(wide) == 100
    f.report(wide, "down", 0)
    assert f.get_filtered_results(now=150) == set()


def test_checks_are_isolated_and_forget_drops_history() -> None:
    f = AlertFilter()
    a = _Key()
    b = _Key()
    f.report(a, "timeout", 10)
    f.report(b, "timeout", 10)
    assert f.get_filtered_results(now=11) == {(a, "timeout"), (b, "timeout")}

    f.forget(a)
    assert f.get_filtered_results(now=12) == {(b, "timeout")}


def test_invalid_max_window_rejected() -> None:
    with pytest.raises(ValueError):
        AlertFilter(max_window_seconds=0)


def test_concurrent_reports_are_all_counted() -> None:
    f = AlertFilter()
    checks = [_Key(min_failures=500, failure_window=10_000) for _ in range(4)]

    def _worker(check: _Key) -> None:
        for i in range(500):
            f.report(check, "timeout", float(i))
            if i % 50 == 0:
                f.get_filtered_results(now=500.0)

    threads = [threading.Thread(target=_worker, args=(c,)) for c in checks]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert f.get_filtered_results(now=500.0) == {(c, "timeout") for c in checks}


def test_non_finite_window_falls_back_to_max_window() -> None:
    f = AlertFilter(max_window_seconds=100)
    broken = _Key(min_failures=1, failure_window=float("nan"))
    assert f.window_for(broken) == 100
    f.report(broken, "no reply", 100)
    assert f.get_filtered_results(now=100) == {(broken, "no reply")}


@pytest.mark.parametrize("value", [float("nan"), float("inf")])
def test_non_finite_max_window_rejected(value: float) -> None:
    with pytest.raises(ValueError):
        AlertFilter(max_window_seconds=value)
