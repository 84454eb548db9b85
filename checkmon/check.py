from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

if TYPE_CHECKING:
    from checkmon.notifiers import Notifier


DEFAULT_MIN_FAILURES = 1
DEFAULT_FAILURE_WINDOW_SECONDS = 120

# Keys consumed by the generic layer before a kind sees the record.
ALERTING_KEYS = ("subject", "minFailures", "failureWindow")

# Telemetry values are free-form scalars.
Scalar = str | int | float | bool | None


class ConfigError(ValueError):
    pass


def as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(x).strip() for x in value if str(x or "").strip()]
    s = str(value).strip()
    return [s] if s else []


@dataclass(frozen=True)
class CheckResult:
    reason: str = ""
    ts: float | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return not self.reason


NEVER_RUN = CheckResult()


@dataclass(frozen=True)
class AlertingOptions:
    min_failures: int = DEFAULT_MIN_FAILURES
    failure_window: float = DEFAULT_FAILURE_WINDOW_SECONDS
    subject: str | None = None


def _as_count(raw: Any, key: str) -> int:
    # YAML turns `true` into a bool and `2.7` into a float; neither is a count.
    if isinstance(raw, bool):
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if isinstance(raw, float) and not (math.isfinite(raw) and raw.is_integer()):
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _as_seconds(raw: Any, key: str) -> float:
    if isinstance(raw, bool):
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if not math.isfinite(value):
        raise ConfigError(f"{key} must be finite, got {raw!r}")
    return value


def parse_alerting_options(record: Mapping[str, Any]) -> tuple[AlertingOptions, set[str]]:
    """
    Extract minFailures/failureWindow/subject from a check record.

    Returns the options plus the names of the keys that were consumed; the record
    itself is left untouched.
    """
    consumed = {k for k in ALERTING_KEYS if k in record}

    mf = _as_count(record.get("minFailures", DEFAULT_MIN_FAILURES), "minFailures")
    fw = _as_seconds(record.get("failureWindow", DEFAULT_FAILURE_WINDOW_SECONDS), "failureWindow")
    if mf < 1:
        raise ConfigError(f"minFailures must be >= 1, got {mf}")
    if fw <= 0:
        raise ConfigError(f"failureWindow must be > 0, got {fw}")

    subject = record.get("subject")
    subject = str(subject).strip() if subject is not None and str(subject).strip() else None
    return AlertingOptions(min_failures=mf, failure_window=fw, subject=subject), consumed


def check_config_keys(
    record: Mapping[str, Any],
    *,
    mandatory: Iterable[str],
    optional: Iterable[str] = (),
) -> set[str]:
    """
    Validate a kind-specific record: every mandatory key present, nothing unknown.
    Returns the set of keys the kind consumes.
    """
    mandatory_set = set(mandatory)
    allowed = mandatory_set | set(optional)
    missing = sorted(mandatory_set - set(record))
    unknown = sorted(set(record) - allowed)
    problems: list[str] = []
    if missing:
        problems.append(f"missing mandatory keys: {', '.join(missing)}")
    if unknown:
        problems.append(f"unknown keys: {', '.join(unknown)}")
    if problems:
        raise ConfigError("; ".join(problems))
    return set(record) & allowed


class Check(ABC):
    """
    A configured probe with its own alerting thresholds.

    Subclasses implement perform(); the Runner records the outcome via set_status().
    Identity (the object itself) is the key the AlertFilter tracks failures under.
    """

    checker_name: str = "check"

    def __init__(
        self,
        *,
        min_failures: int = DEFAULT_MIN_FAILURES,
        failure_window: float = DEFAULT_FAILURE_WINDOW_SECONDS,
        subject: str | None = None,
        notifiers: Sequence[Notifier] = (),
    ) -> None:
        self.min_failures = max(1, int(min_failures))
        self.failure_window = float(failure_window)
        self.subject = subject
        # Snapshot: later changes to the caller's list do not reach this check.
        self.notifiers: tuple[Notifier, ...] = tuple(notifiers)
        self.attributes: dict[str, Scalar] = {}
        # Named results of the latest run; the Runner resets this before each perform().
        self.results: dict[str, dict[str, Scalar]] = {}
        self._status = NEVER_RUN
        self._status_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        record: Mapping[str, Any],
        *,
        options: AlertingOptions,
        notifiers: Sequence[Notifier] = (),
    ) -> tuple[Check, set[str]]:
        raise ConfigError(f"check kind {cls.checker_name!r} cannot be built from configuration")

    @abstractmethod
    def perform(self) -> CheckResult:
        ...

    @abstractmethod
    def get_description(self) -> str:
        ...

    def get_checker_name(self) -> str:
        return self.checker_name

    def get_status(self) -> CheckResult:
        with self._status_lock:
            return self._status

    def set_status(self, result: CheckResult) -> None:
        with self._status_lock:
            self._status = result

    def _fail(self, reason: str) -> CheckResult:
        return CheckResult(reason=reason, ts=time.time())

    def _ok(self) -> CheckResult:
        return CheckResult(reason="", ts=time.time())

    def __repr__(self) -> str:
        label = self.subject or self.get_description()
        return f"<{type(self).__name__} {label}>"


CHECK_KINDS: dict[str, type[Check]] = {}


def register_check(kind: str) -> Callable[[type[Check]], type[Check]]:
    def _register(cls: type[Check]) -> type[Check]:
        if kind in CHECK_KINDS and CHECK_KINDS[kind] is not cls:
            raise ValueError(f"check kind {kind!r} already registered")
        cls.checker_name = kind
        CHECK_KINDS[kind] = cls
        return cls

    return _register


def build_check(
    kind: str,
    record: Mapping[str, Any],
    *,
    notifiers: Sequence[Notifier] = (),
) -> Check:
    cls = CHECK_KINDS.get(str(kind or "").strip().lower())
    if cls is None:
        known = ", ".join(sorted(CHECK_KINDS)) or "<none>"
        raise ConfigError(f"unknown check kind {kind!r} (known: {known})")

    options, consumed = parse_alerting_options(record)
    remaining = {k: v for k, v in record.items() if k not in consumed}
    try:
        check, used = cls.from_config(remaining, options=options, notifiers=notifiers)
    except (TypeError, ValueError) as exc:
        # ConfigError is a ValueError; bad number conversions land here too.
        raise ConfigError(f"{kind} check: {exc}") from None

    leftover = sorted(set(remaining) - used)
    if leftover:
        raise ConfigError(f"{kind} check: unknown keys: {', '.join(leftover)}")
    return check
