from __future__ import annotations

import math
import re
import shutil
import socket
import subprocess
from typing import Any, Mapping, Sequence

from checkmon.check import (
    AlertingOptions,
    Check,
    CheckResult,
    ConfigError,
    as_str_list,
    check_config_keys,
    register_check,
)


DEFAULT_NET_TIMEOUT_SECONDS = 5.0

_PING_TIME_RE = re.compile(r"time[=<]\s*([0-9.]+)\s*ms")


def _tcp_connect(host: str, port: int, timeout_seconds: float) -> bool:
    """True when a TCP connection to host:port succeeds within the timeout."""
    try:
        with socket.create_connection((host, int(port)), timeout=max(0.2, float(timeout_seconds))):
            return True
    except OSError:
        return False


def _ping(host: str, timeout_seconds: float) -> float | None:
    """
    One ICMP echo via the system ping binary (raw sockets need privileges).
    Returns the round trip in ms, or None when no reply arrived.
    """
    binary = shutil.which("ping")
    if binary is None:
        raise RuntimeError("ping binary not found")
    wait = max(1, int(math.ceil(float(timeout_seconds))))
    cmd = [binary, "-c", "1", "-W", str(wait)]
    if ":" in host:
        cmd.insert(1, "-6")
    cmd.append(host)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=wait + 2)
    except subprocess.TimeoutExpired:
        return None
    if proc.returncode != 0:
        return None
    m = _PING_TIME_RE.search(proc.stdout or "")
    return float(m.group(1)) if m else 0.0


@register_check("tcpportclosed")
class TCPPortClosedCheck(Check):
    """Fails when any of the listed ports accepts a connection on any server."""

    def __init__(
        self,
        *,
        servers: Sequence[str],
        ports: Sequence[int],
        timeout_seconds: float = DEFAULT_NET_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.servers = sorted(set(servers))
        self.ports = sorted({int(p) for p in ports})
        self.timeout_seconds = float(timeout_seconds)
        self.attributes.update(
            {"servers": ",".join(self.servers), "ports": ",".join(str(p) for p in self.ports)}
        )

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(record, mandatory=("servers", "ports"), optional=("timeout",))
        servers = as_str_list(record["servers"])
        try:
            ports = [int(p) for p in as_str_list(record["ports"])]
        except ValueError:
            raise ConfigError(f"invalid ports {record['ports']!r}") from None
        if not servers or not ports:
            raise ConfigError("servers and ports must not be empty")
        check = cls(
            servers=servers,
            ports=ports,
            timeout_seconds=float(record.get("timeout", DEFAULT_NET_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        return f"TCP closed check, servers {self.servers}, ports {self.ports}"

    def perform(self) -> CheckResult:
        open_ports: list[str] = []
        for server in self.servers:
            for port in self.ports:
                if _tcp_connect(server, port, self.timeout_seconds):
                    open_ports.append(f"{server}:{port}")
        if open_ports:
            return self._fail(f"ports open: {', '.join(open_ports)}")
        return self._ok()


@register_check("ping")
class PingCheck(Check):
    def __init__(
        self,
        *,
        servers: Sequence[str],
        timeout_seconds: float = DEFAULT_NET_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.servers = sorted(set(servers))
        self.timeout_seconds = float(timeout_seconds)
        self.attributes.update({"servers": ",".join(self.servers)})

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(record, mandatory=("servers",), optional=("timeout",))
        servers = as_str_list(record["servers"])
        if not servers:
            raise ConfigError("servers must not be empty")
        check = cls(
            servers=servers,
            timeout_seconds=float(record.get("timeout", DEFAULT_NET_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        return f"PING check, servers {self.servers}"

    def perform(self) -> CheckResult:
        silent: list[str] = []
        for server in self.servers:
            try:
                rtt = _ping(server, self.timeout_seconds)
            except Exception as exc:
                return self._fail(f"ping unavailable: {type(exc).__name__}")
            if rtt is None:
                silent.append(server)
            else:
                self.results[server] = {"msec": rtt}
        if silent:
            return self._fail(f"no ping reply from {', '.join(silent)}")
        return self._ok()
