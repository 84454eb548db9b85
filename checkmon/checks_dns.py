from __future__ import annotations

import time
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


DEFAULT_DNS_TIMEOUT_SECONDS = 5.0


def parse_server(value: Any, *, default_port: int = 53) -> tuple[str, int]:
    """
    Accepts "192.0.2.1", "192.0.2.1:5300", "[2001:db8::1]:53" or a bare IPv6 address.
    """
    s = str(value or "").strip()
    if not s:
        raise ConfigError("empty server address")
    if s.startswith("["):
        host, _, rest = s[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif s.count(":") == 1:
        host, _, port = s.partition(":")
    else:
        host, port = s, ""
    try:
        return host, int(port) if port else int(default_port)
    except ValueError:
        raise ConfigError(f"invalid port in server address {s!r}") from None


def format_server(server: tuple[str, int]) -> str:
    host, port = server
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _query(
    *,
    server: tuple[str, int],
    qname: str,
    rdtype: str,
    timeout_seconds: float,
    rd: bool = True,
    want_dnssec: bool = False,
):
    # dnspython is imported lazily so the monitor starts without it when no DNS
    # checks are configured.
    import dns.flags  # type: ignore
    import dns.message  # type: ignore
    import dns.query  # type: ignore

    q = dns.message.make_query(qname, rdtype, want_dnssec=want_dnssec)
    if not rd:
        q.flags &= ~dns.flags.RD
    host, port = server
    return dns.query.udp(q, host, port=port, timeout=max(0.5, float(timeout_seconds)))


def _query_error_reason(exc: Exception) -> str:
    import dns.exception  # type: ignore

    if isinstance(exc, dns.exception.Timeout):
        return "server unreachable"
    if isinstance(exc, OSError):
        return f"server unreachable: {type(exc).__name__}"
    return f"query failed: {type(exc).__name__}"


def _rcode_text(msg) -> str:
    import dns.rcode  # type: ignore

    return dns.rcode.to_text(msg.rcode())


def _matching_rrsets(msg, qname: str, rdtype: str) -> list:
    import dns.name  # type: ignore
    import dns.rdatatype  # type: ignore

    name = dns.name.from_text(qname)
    want = dns.rdatatype.from_text(rdtype)
    return [rrset for rrset in msg.answer if rrset.name == name and rrset.rdtype == want]


@register_check("dns")
class DNSCheck(Check):
    def __init__(
        self,
        *,
        server: tuple[str, int],
        qname: str,
        qtype: str,
        acceptable: Sequence[str],
        rd: bool = True,
        timeout_seconds: float = DEFAULT_DNS_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.server = server
        self.qname = qname
        self.qtype = qtype.upper()
        self.acceptable = {a.strip().lower() for a in acceptable if a.strip()}
        self.rd = bool(rd)
        self.timeout_seconds = float(timeout_seconds)
        self.attributes.update(
            {"server": format_server(server), "qname": qname, "qtype": self.qtype, "rd": self.rd}
        )

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(
            record, mandatory=("server", "name", "type", "acceptable"), optional=("rd", "timeout")
        )
        acceptable = as_str_list(record["acceptable"])
        if not acceptable:
            raise ConfigError("acceptable must list at least one answer")
        check = cls(
            server=parse_server(record["server"]),
            qname=str(record["name"]),
            qtype=str(record["type"]),
            acceptable=acceptable,
            rd=bool(record.get("rd", True)),
            timeout_seconds=float(record.get("timeout", DEFAULT_DNS_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        return (
            f"DNS check, server {format_server(self.server)}, qname {self.qname}, "
            f"qtype {self.qtype}, acceptable: {sorted(self.acceptable)}"
        )

    def perform(self) -> CheckResult:
        started = time.perf_counter()
        try:
            resp = _query(
                server=self.server,
                qname=self.qname,
                rdtype=self.qtype,
                timeout_seconds=self.timeout_seconds,
                rd=self.rd,
            )
        except Exception as exc:
            return self._fail(_query_error_reason(exc))
        self.results["query"] = {"msec": round((time.perf_counter() - started) * 1000.0, 3)}

        rcode = _rcode_text(resp)
        if rcode != "NOERROR":
            return self._fail(f"rcode {rcode}")

        answers: set[str] = set()
        for rrset in _matching_rrsets(resp, self.qname, self.qtype):
            answers |= {rd.to_text().strip().lower() for rd in rrset}
        if not answers:
            return self._fail("no answer")

        unacceptable = sorted(answers - self.acceptable)
        if unacceptable:
            return self._fail(f"unacceptable answer: {', '.join(unacceptable)}")
        return self._ok()


@register_check("rrsig")
class RRSIGCheck(Check):
    def __init__(
        self,
        *,
        server: tuple[str, int],
        qname: str,
        qtype: str = "SOA",
        min_days: float = 0.0,
        timeout_seconds: float = DEFAULT_DNS_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.server = server
        self.qname = qname
        self.qtype = qtype.upper()
        self.min_days = float(min_days)
        self.timeout_seconds = float(timeout_seconds)
        self.attributes.update({"server": format_server(server), "qname": qname, "qtype": self.qtype})

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(record, mandatory=("server", "name"), optional=("type", "minDays", "timeout"))
        check = cls(
            server=parse_server(record["server"]),
            qname=str(record["name"]),
            qtype=str(record.get("type") or "SOA"),
            min_days=float(record.get("minDays", 0)),
            timeout_seconds=float(record.get("timeout", DEFAULT_DNS_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        return (
            f"RRSIG check, server {format_server(self.server)}, qname {self.qname}, "
            f"qtype {self.qtype}, minDays: {self.min_days:g}"
        )

    def perform(self) -> CheckResult:
        import dns.rdatatype  # type: ignore

        try:
            resp = _query(
                server=self.server,
                qname=self.qname,
                rdtype=self.qtype,
                timeout_seconds=self.timeout_seconds,
                want_dnssec=True,
            )
        except Exception as exc:
            return self._fail(_query_error_reason(exc))

        rcode = _rcode_text(resp)
        if rcode != "NOERROR":
            return self._fail(f"rcode {rcode}")

        covered = dns.rdatatype.from_text(self.qtype)
        expirations: list[int] = []
        for rrset in _matching_rrsets(resp, self.qname, "RRSIG"):
            expirations.extend(int(sig.expiration) for sig in rrset if sig.type_covered == covered)
        if not expirations:
            return self._fail(f"no RRSIG for {self.qname}/{self.qtype}")

        days = (min(expirations) - time.time()) / 86400.0
        self.results["rrsig"] = {"days": round(days, 3)}
        if days < 0:
            return self._fail(f"RRSIG for {self.qname}/{self.qtype} expired")
        if days < self.min_days:
            return self._fail(f"RRSIG for {self.qname}/{self.qtype} expires in less than {self.min_days:g} days")
        return self._ok()


@register_check("dnssoa")
class DNSSOACheck(Check):
    def __init__(
        self,
        *,
        domain: str,
        servers: Sequence[tuple[str, int]],
        timeout_seconds: float = DEFAULT_DNS_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.domain = domain
        self.servers = sorted(set(servers))
        self.timeout_seconds = float(timeout_seconds)
        self.attributes.update({"domain": domain, "servers": ",".join(format_server(s) for s in self.servers)})

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(record, mandatory=("domain", "servers"), optional=("timeout",))
        servers = [parse_server(s) for s in as_str_list(record["servers"])]
        if not servers:
            raise ConfigError("servers must not be empty")
        check = cls(
            domain=str(record["domain"]),
            servers=servers,
            timeout_seconds=float(record.get("timeout", DEFAULT_DNS_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        servers = [format_server(s) for s in self.servers]
        return f"DNS SOA check, servers {servers}, domain {self.domain}"

    def perform(self) -> CheckResult:
        serials: dict[str, int] = {}
        problems: list[str] = []
        for server in self.servers:
            label = format_server(server)
            try:
                resp = _query(server=server, qname=self.domain, rdtype="SOA", timeout_seconds=self.timeout_seconds)
            except Exception as exc:
                problems.append(f"{label} {_query_error_reason(exc)}")
                continue
            rrsets = _matching_rrsets(resp, self.domain, "SOA")
            if not rrsets:
                problems.append(f"{label} returned no SOA")
                continue
            serials[label] = int(rrsets[0][0].serial)
            self.results[label] = {"serial": serials[label]}

        if problems:
            return self._fail("; ".join(problems))
        if len(set(serials.values())) > 1:
            return self._fail("SOA serials differ between servers")
        return self._ok()
