from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from checkmon.alert_filter import AlertFilter
from checkmon.check import Check, CheckResult

LOGGER = logging.getLogger("checkmon.runner")

AlertKey = tuple[Check, str]
NamedResults = dict[str, dict[str, Any]]


class RowSink(Protocol):
    def add_row(self, table: str, row: dict[str, Any]) -> None:
        ...


@dataclass
class CycleOutcome:
    ts: float
    completed: dict[Check, CheckResult] = field(default_factory=dict)
    skipped: list[Check] = field(default_factory=list)
    raised: set[AlertKey] = field(default_factory=set)
    cleared: set[AlertKey] = field(default_factory=set)
    active: frozenset[AlertKey] = frozenset()


def check_label(check: Check) -> str:
    try:
        desc = check.get_description()
    except Exception as exc:
        desc = f"{type(check).__name__} (description unavailable: {type(exc).__name__})"
    return f"{check.subject}: {desc}" if check.subject else desc


def _execute(check: Check) -> tuple[CheckResult, NamedResults]:
    """Run one probe; returns its result and the named results this run produced."""
    check.results = {}
    try:
        result = check.perform()
    except Exception as exc:
        LOGGER.exception("Check raised check=%s", check_label(check))
        result = CheckResult(reason=f"exception: {type(exc).__name__}: {exc}", ts=time.time())
    if not isinstance(result, CheckResult):
        result = CheckResult(reason=f"invalid result type {type(result).__name__}", ts=time.time())
    return result, {name: dict(metrics) for name, metrics in check.results.items()}


class Runner:
    """
    Drives the check set: one cycle runs every idle check, records the outcomes,
    and turns the AlertFilter's verdict into raise/clear edges.

    A check whose previous execution is still running is skipped; its result is
    picked up in whichever later cycle finds it finished.
    """

    def __init__(
        self,
        checks: Iterable[Check],
        alert_filter: AlertFilter | None = None,
        *,
        sink: RowSink | None = None,
        max_workers: int = 25,
        cycle_timeout_seconds: float = 50.0,
    ) -> None:
        self.checks: list[Check] = list(checks)
        self.alert_filter = alert_filter if alert_filter is not None else AlertFilter()
        self.sink = sink
        self.cycle_timeout_seconds = max(0.0, float(cycle_timeout_seconds))
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="checkmon-probe")
        self._in_flight: dict[Check, asyncio.Future[tuple[CheckResult, NamedResults]]] = {}
        self._active: frozenset[AlertKey] = frozenset()
        self.cycles = 0

    @property
    def active_alerts(self) -> frozenset[AlertKey]:
        return self._active

    def in_flight(self, check: Check) -> bool:
        fut = self._in_flight.get(check)
        return fut is not None and not fut.done()

    async def run_cycle(self, now: float | None = None) -> CycleOutcome:
        loop = asyncio.get_running_loop()
        cycle_ts = time.time() if now is None else float(now)
        outcome = CycleOutcome(ts=cycle_ts)

        started: list[asyncio.Future[tuple[CheckResult, NamedResults]]] = []
        for check in self.checks:
            fut = self._in_flight.get(check)
            if fut is not None and not fut.done():
                LOGGER.warning("Check still running, skipping this cycle check=%s", check_label(check))
                outcome.skipped.append(check)
                continue
            if fut is None:
                fut = loop.run_in_executor(self._executor, _execute, check)
                self._in_flight[check] = fut
            started.append(fut)

        if started:
            await asyncio.wait(started, timeout=self.cycle_timeout_seconds)

        for check in self.checks:
            fut = self._in_flight.get(check)
            if fut is None:
                continue
            if not fut.done():
                if check not in outcome.skipped:
                    LOGGER.warning("Check did not finish within cycle check=%s", check_label(check))
                    outcome.skipped.append(check)
                continue
            del self._in_flight[check]
            result, named = fut.result()
            self._record(check, result, named, cycle_ts)
            outcome.completed[check] = result

        active = frozenset(self.alert_filter.get_filtered_results(now=cycle_ts))
        outcome.raised = set(active - self._active)
        outcome.cleared = set(self._active - active)
        outcome.active = active
        self._active = active
        self.cycles += 1

        for check, reason in sorted(outcome.raised, key=lambda k: (check_label(k[0]), k[1])):
            LOGGER.warning("Alert raised check=%s reason=%s", check_label(check), reason)
            await self._fan_out(check, reason, raised=True)
        for check, reason in sorted(outcome.cleared, key=lambda k: (check_label(k[0]), k[1])):
            LOGGER.info("Alert cleared check=%s reason=%s", check_label(check), reason)
            await self._fan_out(check, reason, raised=False)

        return outcome

    def _record(self, check: Check, result: CheckResult, named: NamedResults, cycle_ts: float) -> None:
        check.set_status(result)
        if result.ok:
            LOGGER.debug("Check ok check=%s", check_label(check))
        else:
            self.alert_filter.report(check, result.reason, cycle_ts)
            LOGGER.info(
                "Check failed check=%s reason=%s min_failures=%s window=%ss",
                check_label(check),
                result.reason,
                check.min_failures,
                check.failure_window,
            )
        if self.sink is not None:
            self._persist(check, result, named, cycle_ts)

    def _persist(self, check: Check, result: CheckResult, named: NamedResults, cycle_ts: float) -> None:
        table = check.get_checker_name()
        base: dict[str, Any] = {
            "tstamp": cycle_ts,
            "subject": check.subject,
            "ok": result.ok,
            "reason": result.reason or None,
        }
        base.update(check.attributes)
        try:
            self.sink.add_row(table, base)
            for subname, metrics in named.items():
                row = dict(base)
                row["subname"] = subname
                row.update(metrics)
                self.sink.add_row(table, row)
        except Exception as exc:
            LOGGER.warning("Failed to persist check result check=%s error=%s", check_label(check), exc)

    async def _fan_out(self, check: Check, reason: str, *, raised: bool) -> None:
        if not check.notifiers:
            return
        description = check_label(check)
        calls = [
            (n.notify(description, reason) if raised else n.clear(description, reason)) for n in check.notifiers
        ]
        results = await asyncio.gather(*calls, return_exceptions=True)
        for notifier, res in zip(check.notifiers, results):
            if isinstance(res, BaseException):
                LOGGER.warning(
                    "Notifier failed notifier=%s raised=%s check=%s reason=%s error=%s: %s",
                    getattr(notifier, "name", type(notifier).__name__),
                    raised,
                    description,
                    reason,
                    type(res).__name__,
                    res,
                )

    async def run_forever(self, interval_seconds: float, stop: asyncio.Event | None = None) -> None:
        interval = max(1.0, float(interval_seconds))
        stop = stop if stop is not None else asyncio.Event()
        while not stop.is_set():
            cycle_started = time.monotonic()
            outcome = await self.run_cycle()
            LOGGER.info(
                "Cycle done checks=%s completed=%s skipped=%s active_alerts=%s",
                len(self.checks),
                len(outcome.completed),
                len(outcome.skipped),
                len(outcome.active),
            )
            sleep_for = max(0.0, interval - (time.monotonic() - cycle_started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        # Hung probes keep their worker thread; do not wait for them.
        self._executor.shutdown(wait=False, cancel_futures=True)
