from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from checkmon.runner import Runner, check_label


def _status_payload(runner: Runner) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for check in runner.checks:
        status = check.get_status()
        out.append(
            {
                "kind": check.get_checker_name(),
                "subject": check.subject,
                "description": check.get_description(),
                "ok": status.ok,
                "reason": status.reason or None,
                "last_run_ts": status.ts,
                "running": runner.in_flight(check),
            }
        )
    return out


def create_app(runner: Runner) -> FastAPI:
    app = FastAPI(title="checkmon", version="0.1.0")

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "cycles": runner.cycles}

    @app.get("/checks")
    def checks() -> dict[str, Any]:
        return {"checks": _status_payload(runner)}

    @app.get("/alerts")
    def alerts() -> dict[str, Any]:
        active = sorted(runner.active_alerts, key=lambda k: (check_label(k[0]), k[1]))
        return {
            "alerts": [
                {"kind": check.get_checker_name(), "check": check_label(check), "reason": reason}
                for check, reason in active
            ]
        }

    return app
