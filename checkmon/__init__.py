"""Active monitoring: health checks, flap-suppressed alerting and notifications."""

from .alert_filter import AlertFilter
from .check import Check, CheckResult, ConfigError, build_check, register_check
from .runner import Runner

__all__ = ["AlertFilter", "Check", "CheckResult", "ConfigError", "Runner", "build_check", "register_check"]
