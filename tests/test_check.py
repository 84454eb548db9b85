from __future__ import annotations

import threading
from typing import Any, Mapping

import pytest
import yaml

from checkmon.check import (
    CHECK_KINDS,
    NEVER_RUN,
    AlertingOptions,
    Check,
    CheckResult,
    ConfigError,
    build_check,
    check_config_keys,
    parse_alerting_options,
    register_check,
)


class _StaticCheck(Check):
    def __init__(self, reason: str = "", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.reason = reason

    def perform(self) -> CheckResult:
        return CheckResult(self.reason)

    def get_description(self) -> str:
        return f"static check reason={self.reason!r}"


@pytest.fixture
def echo_kind():
    @register_check("echo-test")
    class EchoCheck(_StaticCheck):
        @classmethod
        def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
            used = check_config_keys(record, mandatory=("reason",), optional=("extra",))
            check = cls(
                reason=str(record["reason"]),
                min_failures=options.min_failures,
                failure_window=options.failure_window,
                subject=options.subject,
                notifiers=notifiers,
            )
            return check, used

    yield EchoCheck
    CHECK_KINDS.pop("echo-test", None)


def test_check_result_ok_and_equality() -> None:
    assert CheckResult().ok is True
    assert CheckResult("timeout").ok is False
    assert CheckResult("timeout", ts=1.0) == CheckResult("timeout", ts=2.0)


def test_status_defaults_to_never_run_and_round_trips() -> None:
    check = _StaticCheck()
    assert check.get_status() is NEVER_RUN
    assert check.get_status().ts is None

    result = CheckResult("server unreachable", ts=5.0)
    check.set_status(result)
    assert check.get_status() is result


def test_perform_does_not_touch_status() -> None:
    check = _StaticCheck("timeout")
    assert check.perform().reason == "timeout"
    assert check.get_status() is NEVER_RUN


def test_concurrent_status_reads_see_whole_values() -> None:
    check = _StaticCheck()
    values = [CheckResult(f"reason-{i}", ts=float(i)) for i in range(200)]
    allowed = {id(v) for v in values} | {id(NEVER_RUN)}
    seen_bad: list[CheckResult] = []
    done = threading.Event()

    def _reader() -> None:
        while not done.is_set():
            cur = check.get_status()
            if id(cur) not in allowed or (cur.reason and cur.ts != float(cur.reason.split("-")[1])):
                seen_bad.append(cur)

    readers = [threading.Thread(target=_reader) for _ in range(4)]
    for t in readers:
        t.start()
    for v in values:
        check.set_status(v)
    done.set()
    for t in readers:
        t.join()

    assert seen_bad == []
    assert check.get_status() is values[-1]


def test_parse_alerting_options_defaults_and_consumed_keys() -> None:
    record = {"server": "192.0.2.1"}
    options, consumed = parse_alerting_options(record)
    assert options == AlertingOptions(min_failures=1, failure_window=120, subject=None)
    assert consumed == set()
    assert record == {"server": "192.0.2.1"}


def test_parse_alerting_options_reads_and_reports_keys() -> None:
    record = {"minFailures": 3, "failureWindow": 300, "subject": "web", "url": "https://x"}
    options, consumed = parse_alerting_options(record)
    assert options.min_failures == 3
    assert options.failure_window == 300.0
    assert options.subject == "web"
    assert consumed == {"minFailures", "failureWindow", "subject"}
    assert "minFailures" in record  # caller's record is not mutated


@pytest.mark.parametrize(
    "record",
    [
        {"minFailures": 0},
        {"minFailures": "many"},
        {"minFailures": True},
        {"minFailures": 2.7},
        {"minFailures": float("nan")},
        {"failureWindow": 0},
        {"failureWindow": "soon"},
        {"failureWindow": float("nan")},
        {"failureWindow": float("inf")},
        {"failureWindow": False},
    ],
)
def test_parse_alerting_options_rejects_bad_values(record: dict) -> None:
    with pytest.raises(ConfigError):
        parse_alerting_options(record)


def test_check_config_keys_reports_missing_and_unknown() -> None:
    assert check_config_keys({"a": 1, "b": 2}, mandatory=("a",), optional=("b", "c")) == {"a", "b"}
    with pytest.raises(ConfigError, match="missing mandatory keys: a"):
        check_config_keys({"b": 2}, mandatory=("a",), optional=("b",))
    with pytest.raises(ConfigError, match="unknown keys: zz"):
        check_config_keys({"a": 1, "zz": 2}, mandatory=("a",))


def test_build_check_uses_registry_and_alerting_keys(echo_kind) -> None:
    check = build_check("echo-test", {"reason": "boom", "minFailures": 2, "failureWindow": 60, "subject": "s"})
    assert isinstance(check, echo_kind)
    assert check.get_checker_name() == "echo-test"
    assert check.min_failures == 2
    assert check.failure_window == 60.0
    assert check.subject == "s"
    assert check.perform().reason == "boom"


def test_build_check_rejects_unknown_kind_and_leftover_keys(echo_kind) -> None:
    with pytest.raises(ConfigError, match="unknown check kind"):
        build_check("nope", {})
    with pytest.raises(ConfigError, match="unknown keys: bogus"):
        build_check("echo-test", {"reason": "x", "bogus": 1})
    with pytest.raises(ConfigError, match="missing mandatory keys: reason"):
        build_check("echo-test", {"minFailures": 2})


def test_notifiers_are_snapshotted_at_construction(echo_kind) -> None:
    registered: list = [object()]
    check = build_check("echo-test", {"reason": "x"}, notifiers=registered)
    registered.append(object())
    assert len(check.notifiers) == 1
    assert isinstance(check.notifiers, tuple)


def test_checks_hash_by_identity() -> None:
    a = _StaticCheck("x")
    b = _StaticCheck("x")
    assert len({a, b}) == 2


def test_parse_alerting_options_accepts_integral_float_count() -> None:
    options, _ = parse_alerting_options({"minFailures": 3.0, "failureWindow": "90"})
    assert options.min_failures == 3
    assert options.failure_window == 90.0


def test_build_check_rejects_nan_window_from_yaml(echo_kind) -> None:
    record = yaml.safe_load("{reason: x, failureWindow: .nan}")
    with pytest.raises(ConfigError, match="failureWindow must be finite"):
        build_check("echo-test", record)
