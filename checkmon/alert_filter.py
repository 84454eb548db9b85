from __future__ import annotations

import math
import threading
import time
from typing import Any, Hashable

DEFAULT_MAX_WINDOW_SECONDS = 3600.0


class AlertFilterInvariantError(RuntimeError):
    pass


class AlertFilter:
    """
    Flap suppression: a (check, reason) pair is alerting while at least
    `check.min_failures` failures were reported within the trailing
    `check.failure_window` seconds.

    Only failures are recorded. Recovery happens when failures age out of the
    window, not on the first success. Checks are opaque keys here; the window and
    threshold are read off them when available, otherwise the filter falls back to
    `max_window_seconds` and a threshold of 1.
    """

    def __init__(self, max_window_seconds: float = DEFAULT_MAX_WINDOW_SECONDS) -> None:
        if not math.isfinite(float(max_window_seconds)) or float(max_window_seconds) <= 0:
            raise ValueError("max_window_seconds must be a finite number > 0")
        self.max_window_seconds = float(max_window_seconds)
        self._reports: dict[Hashable, dict[str, set[float]]] = {}
        # One lock for the whole mapping: pruning a key races with inserts into it.
        self._lock = threading.Lock()

    def report(self, check: Hashable, reason: str, ts: float | None = None) -> None:
        if not reason:
            return
        t = time.time() if ts is None else float(ts)
        with self._lock:
            self._reports.setdefault(check, {}).setdefault(reason, set()).add(t)

    def window_for(self, check: Any) -> float:
        window = getattr(check, "failure_window", None)
        try:
            window = float(window) if window is not None else None
        except (TypeError, ValueError):
            window = None
        if window is None or not math.isfinite(window) or window <= 0:
            return self.max_window_seconds
        return min(window, self.max_window_seconds)

    @staticmethod
    def threshold_for(check: Any) -> int:
        try:
            return max(1, int(getattr(check, "min_failures", 1)))
        except (TypeError, ValueError):
            return 1

    def get_filtered_results(self, now: float | None = None) -> set[tuple[Any, str]]:
        now_ts = time.time() if now is None else float(now)
        active: set[tuple[Any, str]] = set()

        with self._lock:
            for check in list(self._reports):
                by_reason = self._reports[check]
                window = self.window_for(check)
                if not math.isfinite(window) or window <= 0:
                    raise AlertFilterInvariantError(f"invalid window {window} for {check!r}")
                cutoff = now_ts - window
                threshold = self.threshold_for(check)

                for reason in list(by_reason):
                    kept = {t for t in by_reason[reason] if t > cutoff}
                    if not kept:
                        del by_reason[reason]
                        continue
                    by_reason[reason] = kept
                    if len(kept) >= threshold:
                        active.add((check, reason))

                if not by_reason:
                    del self._reports[check]

        return active

    def failure_counts(self, check: Hashable) -> dict[str, int]:
        """Currently retained (not yet pruned) failure counts per reason."""
        with self._lock:
            return {reason: len(ts) for reason, ts in self._reports.get(check, {}).items()}

    def forget(self, check: Hashable) -> None:
        with self._lock:
            self._reports.pop(check, None)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(by_reason) for by_reason in self._reports.values())
