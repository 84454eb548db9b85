"""Configuration loading: YAML file -> settings, notifiers and checks."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

# Importing the kind modules registers them in CHECK_KINDS.
import checkmon.checks_dns  # noqa: F401
import checkmon.checks_http  # noqa: F401
import checkmon.checks_net  # noqa: F401
from checkmon.check import Check, ConfigError, build_check
from checkmon.notifiers import Notifier, build_notifier


class WebConfig(BaseModel):
    """Read-only status endpoint."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=False, description="Serve the JSON status surface")
    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8080, description="Bind port")


class MonitorSettings(BaseModel):
    """Top-level monitor configuration."""
    model_config = ConfigDict(extra="forbid")

    interval_seconds: float = Field(default=60.0, gt=0, description="Seconds between check cycles")
    max_window_seconds: float = Field(default=3600.0, gt=0, description="Upper bound for failure windows")
    check_concurrency: int = Field(default=25, ge=1, description="Worker threads running probes")
    cycle_timeout_seconds: Optional[float] = Field(
        default=None, ge=0, description="How long a cycle waits for probes (default: 5/6 of the interval)"
    )
    sqlite_path: Optional[str] = Field(default=None, description="Telemetry database; omit to disable")
    web: WebConfig = Field(default_factory=WebConfig)
    notifiers: list[dict[str, Any]] = Field(default_factory=list, description="Notifier entries")
    checks: list[dict[str, Any]] = Field(default_factory=list, description="Check entries (kind + record)")

    def effective_cycle_timeout(self) -> float:
        if self.cycle_timeout_seconds is not None:
            return float(self.cycle_timeout_seconds)
        return float(self.interval_seconds) * 5.0 / 6.0


def load_config(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    return data


def parse_settings(raw: dict[str, Any]) -> MonitorSettings:
    try:
        settings = MonitorSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"invalid monitor config: {exc}") from None
    if not settings.checks:
        raise ConfigError("Config must contain a non-empty 'checks' list")
    return settings


def load_settings(path: Path) -> MonitorSettings:
    return parse_settings(load_config(path))


def build_notifiers(settings: MonitorSettings, client: httpx.AsyncClient) -> list[Notifier]:
    notifiers: list[Notifier] = []
    for i, entry in enumerate(settings.notifiers):
        if not isinstance(entry, dict):
            raise ConfigError(f"notifiers[{i}] must be a mapping")
        notifiers.append(build_notifier(entry, client))
    return notifiers


def build_checks(settings: MonitorSettings, notifiers: Sequence[Notifier]) -> list[Check]:
    checks: list[Check] = []
    for i, entry in enumerate(settings.checks):
        if not isinstance(entry, dict):
            raise ConfigError(f"checks[{i}] must be a mapping")
        kind = entry.get("kind")
        if not kind:
            raise ConfigError(f"checks[{i}] is missing 'kind'")
        record = {k: v for k, v in entry.items() if k != "kind"}
        try:
            checks.append(build_check(str(kind), record, notifiers=notifiers))
        except ConfigError as exc:
            raise ConfigError(f"checks[{i}]: {exc}") from None
    return checks
