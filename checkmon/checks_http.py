from __future__ import annotations

import socket
import ssl
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from checkmon.check import AlertingOptions, Check, CheckResult, ConfigError, check_config_keys, register_check


DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_MIN_CERT_DAYS = 14
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}


def _parse_cert_not_after(cert: dict[str, Any]) -> datetime | None:
    # Python ssl.getpeercert() returns e.g. "Feb  6 12:00:00 2026 GMT"
    s = cert.get("notAfter")
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.strptime(s.strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _cert_days_remaining(*, host: str, port: int, connect_ip: str | None, timeout_seconds: float) -> float:
    """Days until the peer certificate's notAfter, verified against `host`."""
    ctx = ssl.create_default_context()
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    with socket.create_connection((connect_ip or host, port), timeout=max(1.0, float(timeout_seconds))) as sock:
        with ctx.wrap_socket(sock, server_hostname=host) as tls:
            cert = tls.getpeercert() or {}
    not_after = _parse_cert_not_after(cert)
    if not_after is None:
        raise ValueError("certificate has no notAfter")
    return (not_after - datetime.now(timezone.utc)).total_seconds() / 86400.0


def _safe_url(url: str) -> str:
    s = (url or "").strip()
    if not s:
        return s
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return s[:500]


@register_check("https")
class HTTPSCheck(Check):
    def __init__(
        self,
        *,
        url: str,
        method: str = "GET",
        max_age_minutes: float = 0,
        min_bytes: int = 0,
        min_cert_days: float = DEFAULT_MIN_CERT_DAYS,
        server_ip: str | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        parts = urlsplit(url)
        if parts.scheme.lower() != "https" or not parts.hostname:
            raise ConfigError(f"url must be an https:// URL, got {url!r}")
        self.url = url
        self.host = parts.hostname
        self.port = int(parts.port or 443)
        self.method = method.upper()
        self.max_age_minutes = float(max_age_minutes)
        self.min_bytes = int(min_bytes)
        self.min_cert_days = float(min_cert_days)
        self.server_ip = server_ip
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self.attributes.update({"url": _safe_url(url), "method": self.method, "serverIP": server_ip})

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(
            record,
            mandatory=("url",),
            optional=("method", "maxAgeMinutes", "minBytes", "minCertDays", "serverIP", "timeout"),
        )
        method = str(record.get("method") or "GET").upper()
        if method not in {"GET", "HEAD"}:
            raise ConfigError(f"unsupported method {method!r}")
        check = cls(
            url=str(record["url"]),
            method=method,
            max_age_minutes=float(record.get("maxAgeMinutes", 0)),
            min_bytes=int(record.get("minBytes", 0)),
            min_cert_days=float(record.get("minCertDays", DEFAULT_MIN_CERT_DAYS)),
            server_ip=(str(record["serverIP"]).strip() or None) if record.get("serverIP") else None,
            timeout_seconds=float(record.get("timeout", DEFAULT_HTTP_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        desc = f"HTTPS check, URL {_safe_url(self.url)}, method {self.method}"
        if self.server_ip:
            desc += f", server {self.server_ip}"
        return desc

    def _request(self) -> httpx.Response:
        url = self.url
        headers: dict[str, str] = {}
        extensions: dict[str, Any] = {}
        if self.server_ip:
            # Connect to the pinned address but keep Host/SNI (and cert verification) on the name.
            parts = urlsplit(self.url)
            ip_host = f"[{self.server_ip}]" if ":" in self.server_ip else self.server_ip
            netloc = f"{ip_host}:{self.port}" if parts.port else ip_host
            url = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
            headers["Host"] = parts.netloc
            extensions["sni_hostname"] = self.host
        with httpx.Client(transport=self._transport, timeout=self.timeout_seconds) as client:
            return client.request(self.method, url, headers=headers, extensions=extensions or None)

    def perform(self) -> CheckResult:
        started = time.perf_counter()
        try:
            resp = self._request()
        except httpx.TimeoutException:
            return self._fail("timeout")
        except httpx.HTTPError as exc:
            return self._fail(f"http error: {type(exc).__name__}")
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 3)
        body_bytes = len(resp.content or b"")
        metrics: dict[str, Any] = {"status": resp.status_code, "bytes": body_bytes, "msec": elapsed_ms}
        self.results["http"] = metrics

        if not resp.is_success:
            return self._fail(f"status {resp.status_code}")
        if self.min_bytes and self.method != "HEAD" and body_bytes < self.min_bytes:
            return self._fail(f"body smaller than {self.min_bytes} bytes")

        if self.max_age_minutes > 0:
            raw = resp.headers.get("last-modified")
            if not raw:
                return self._fail("no Last-Modified header")
            try:
                modified = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                return self._fail("unparseable Last-Modified header")
            if modified.tzinfo is None:
                modified = modified.replace(tzinfo=timezone.utc)
            age_minutes = (datetime.now(timezone.utc) - modified).total_seconds() / 60.0
            metrics["ageMinutes"] = round(age_minutes, 3)
            if age_minutes > self.max_age_minutes:
                return self._fail(f"content older than {self.max_age_minutes:g} minutes")

        if self.min_cert_days > 0:
            try:
                days = _cert_days_remaining(
                    host=self.host, port=self.port, connect_ip=self.server_ip, timeout_seconds=self.timeout_seconds
                )
            except Exception as exc:
                return self._fail(f"certificate check failed: {type(exc).__name__}")
            metrics["certDays"] = round(days, 3)
            if days < self.min_cert_days:
                return self._fail(f"certificate expires in less than {self.min_cert_days:g} days")
        return self._ok()


@register_check("redir")
class HTTPRedirCheck(Check):
    """Expects `fromUrl` to redirect to exactly `toUrl`, and `toUrl` to answer."""

    def __init__(
        self,
        *,
        from_url: str,
        to_url: str,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        for u in (from_url, to_url):
            if urlsplit(u).scheme.lower() not in {"http", "https"} or not urlsplit(u).hostname:
                raise ConfigError(f"not an http(s) URL: {u!r}")
        self.from_url = from_url
        self.to_url = to_url
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self.attributes.update({"fromUrl": _safe_url(from_url), "toUrl": _safe_url(to_url)})

    @classmethod
    def from_config(cls, record: Mapping[str, Any], *, options: AlertingOptions, notifiers=()):
        used = check_config_keys(record, mandatory=("fromUrl", "toUrl"), optional=("timeout",))
        check = cls(
            from_url=str(record["fromUrl"]),
            to_url=str(record["toUrl"]),
            timeout_seconds=float(record.get("timeout", DEFAULT_HTTP_TIMEOUT_SECONDS)),
            min_failures=options.min_failures,
            failure_window=options.failure_window,
            subject=options.subject,
            notifiers=notifiers,
        )
        return check, used

    def get_description(self) -> str:
        return f"HTTP(s) redir check, from {self.from_url}, to {self.to_url}"

    def perform(self) -> CheckResult:
        try:
            with httpx.Client(transport=self._transport, timeout=self.timeout_seconds) as client:
                resp = client.get(self.from_url, follow_redirects=False)
                if resp.status_code not in REDIRECT_STATUS_CODES:
                    return self._fail(f"no redirect (status {resp.status_code})")
                location = urljoin(self.from_url, resp.headers.get("location") or "")
                self.results["redirect"] = {"status": resp.status_code, "location": _safe_url(location)}
                if location != self.to_url:
                    return self._fail(f"redirected to {location} instead of {self.to_url}")
                target = client.get(self.to_url, follow_redirects=True)
        except httpx.TimeoutException:
            return self._fail("timeout")
        except httpx.HTTPError as exc:
            return self._fail(f"http error: {type(exc).__name__}")
        if not target.is_success:
            return self._fail(f"redirect target returned status {target.status_code}")
        return self._ok()
