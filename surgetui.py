#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
surge-tui (single-file)

- Terminal dashboard for the Surge proxy: policies, requests, connections, DNS cache.
- Three backends behind one facade:
  HTTP API (full) -> surge-cli (reduced) -> process probe (start Surge only).
- The facade falls back on failure and upgrades again on the periodic health tick.
- TUI (urwid): Overview + Policies + Requests + Connections + DNS
- Bulk latency test runs as a background task; measured latencies survive refreshes.

"""

from __future__ import annotations

import argparse
import asyncio
import copy
import dataclasses
import enum
import json
import os
import re
import signal
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import httpx
import psutil
import urwid
import yaml

import logging
from logging.handlers import RotatingFileHandler

__version__ = "0.4.0"

DEFAULT_CLI_PATH = "/Applications/Surge.app/Contents/Applications/surge-cli"
DEFAULT_TEST_URL = "http://www.gstatic.com/generate_204"
MAX_CHAIN_DEPTH = 10
PUMP_INTERVAL = 0.25

# asyncio and httpx are chatty at INFO; keep our log file readable
logging.getLogger("asyncio").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.WARNING)

# Module logger (configured in main())
LOG = logging.getLogger("surgetui")

# Throttled logging (single asyncio loop, no locking needed)
_LOG_THROTTLE_STATE: dict[str, tuple[float, int]] = {}
# key -> (last_ts, suppressed_count)


def log_throttled(
    level: int,
    key: str,
    msg: str,
    *args,
    interval_s: float = 2.0,
    exc_info: bool = False,
    **kwargs,
) -> None:
    """
    Log a message at most once per interval for a given key.

    The poll loop hits the same failure every second while a backend is down;
    repeats are counted and reported as " (suppressed N similar messages)".
    """
    now = time.time()
    last_ts, suppressed = _LOG_THROTTLE_STATE.get(key, (0.0, 0))

    if (now - last_ts) < float(interval_s):
        _LOG_THROTTLE_STATE[key] = (last_ts, suppressed + 1)
        return

    _LOG_THROTTLE_STATE[key] = (now, 0)
    if suppressed:
        msg = f"{msg} (suppressed {suppressed} similar messages)"
    LOG.log(level, msg, *args, exc_info=exc_info, **kwargs)


def setup_logging(log_path: str, level: str = "INFO") -> None:
    """Configure application logging.

    The TUI owns the terminal, so logs go to a rotating file next to the
    working directory by default; stderr is only a last resort.

    Args:
        log_path: Path to the log file.
        level: Logging level name (e.g. INFO, DEBUG).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    try:
        d = os.path.dirname(log_path)
        if d:
            os.makedirs(d, exist_ok=True)
    except OSError:
        log_path = os.path.basename(log_path) or "surge-tui.log"

    root = logging.getLogger()
    root.setLevel(lvl)

    # Avoid duplicate handlers (tests call this more than once)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        fh = RotatingFileHandler(
            log_path,
            maxBytes=10 * 1024 * 1024,   # 10 MB
            backupCount=5,
            encoding="utf-8",
        )
        fh.setLevel(lvl)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError:
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(lvl)
        sh.setFormatter(fmt)
        root.addHandler(sh)

    LOG.info("Logging initialized: %s level=%s", log_path, logging.getLevelName(lvl))


class LogBuffer(logging.Handler):
    """Last `capacity` log records, kept in memory for the DevTools overlay."""

    def __init__(self, capacity: int = 200, level: int = logging.NOTSET):
        super().__init__(level)
        self.records: Deque[Tuple[float, str, str]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.records.append((record.created, record.levelname, _one_line(record.getMessage())))
        except Exception:
            self.handleError(record)


def _one_line(s: str, limit: int = 300) -> str:
    s = (s or "").replace("\r", " ").replace("\n", " ").strip()
    if len(s) > limit:
        s = s[:limit] + "…"
    return s


# Config model
@dataclass
class SurgeConfig:
    # HTTP API (X-Key authenticated)
    http_api_host: str = "127.0.0.1"
    http_api_port: int = 6171
    http_api_key: str = ""
    request_timeout: float = 3.0

    # surge-cli fallback
    cli_path: str = DEFAULT_CLI_PATH
    cli_timeout: float = 60.0

    # process probe / launch
    process_name: str = "Surge"
    launch_command: List[str] = field(default_factory=lambda: ["open", "-a", "Surge"])


@dataclass
class UiConfig:
    refresh_interval: float = 1.0
    # seconds between backend re-selection attempts (upgrade path)
    health_interval: float = 10.0
    max_requests: int = 100
    max_connections: int = 200
    max_dns_records: int = 500
    # how long "start Surge" waits for the process to appear
    start_timeout: float = 10.0
    test_url: str = DEFAULT_TEST_URL


@dataclass
class AppConfig:
    surge: SurgeConfig = field(default_factory=SurgeConfig)
    ui: UiConfig = field(default_factory=UiConfig)
    path: Optional[str] = None


ENV_OVERRIDES = {
    "SURGE_HTTP_API_HOST": ("http_api_host", str),
    "SURGE_HTTP_API_PORT": ("http_api_port", int),
    "SURGE_HTTP_API_KEY": ("http_api_key", str),
    "SURGE_CLI_PATH": ("cli_path", str),
}


def default_config_paths() -> List[str]:
    home = os.path.expanduser("~")
    return [
        os.path.join(os.getcwd(), "surge-tui.yaml"),
        os.path.join(home, ".config", "surge-tui", "surge-tui.yaml"),
        os.path.join(home, ".config", "surge-tui", "config.yaml"),
    ]


def dump_example_config() -> str:
    example = {
        "surge": {
            "http_api_host": "127.0.0.1",
            "http_api_port": 6171,
            "http_api_key": "your-secret-key",
            "request_timeout": 3.0,
            "cli_path": DEFAULT_CLI_PATH,
            "cli_timeout": 60.0,
            "process_name": "Surge",
            "launch_command": ["open", "-a", "Surge"],
        },
        "ui": {
            "refresh_interval": 1.0,
            "health_interval": 10.0,
            "max_requests": 100,
            "max_connections": 200,
            "max_dns_records": 500,
            "start_timeout": 10.0,
            "test_url": DEFAULT_TEST_URL,
        },
    }
    return yaml.safe_dump(example, sort_keys=False)


def _positive(name: str, value: Any, cast=float) -> Any:
    v = cast(value)
    if v <= 0:
        raise ValueError(f"{name} must be > 0 (got {value!r})")
    return v


def _apply_env(surge: SurgeConfig, env: Mapping[str, str]) -> None:
    for var, (attr, cast) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            setattr(surge, attr, cast(raw))
        except ValueError:
            LOG.warning("Ignoring %s=%r: not a valid %s", var, raw, cast.__name__)


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load YAML config and overlay environment variables.

    Lookup:
      - explicit path (must exist)
      - otherwise the first existing file of default_config_paths()
      - otherwise built-in defaults

    SURGE_HTTP_API_HOST / _PORT / _KEY and SURGE_CLI_PATH always win over the file.
    """
    env = os.environ if env is None else env

    if path is None:
        path = next((p for p in default_config_paths() if os.path.isfile(p)), None)

    raw: Any = {}
    if path is not None:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config must be a mapping with 'surge' and 'ui' sections")

    s_raw = raw.get("surge") or {}
    u_raw = raw.get("ui") or {}
    if not isinstance(s_raw, dict) or not isinstance(u_raw, dict):
        raise ValueError("'surge' and 'ui' sections must be mappings")

    d_s = SurgeConfig()
    d_u = UiConfig()

    launch = s_raw.get("launch_command", d_s.launch_command)
    if isinstance(launch, str):
        launch = launch.split()
    surge = SurgeConfig(
        http_api_host=str(s_raw.get("http_api_host", d_s.http_api_host)),
        http_api_port=int(s_raw.get("http_api_port", d_s.http_api_port)),
        http_api_key=str(s_raw.get("http_api_key", d_s.http_api_key) or ""),
        request_timeout=_positive("surge.request_timeout", s_raw.get("request_timeout", d_s.request_timeout)),
        cli_path=str(s_raw.get("cli_path") or d_s.cli_path),
        cli_timeout=_positive("surge.cli_timeout", s_raw.get("cli_timeout", d_s.cli_timeout)),
        process_name=str(s_raw.get("process_name", d_s.process_name)),
        launch_command=[str(x) for x in (launch or [])],
    )
    ui = UiConfig(
        refresh_interval=_positive("ui.refresh_interval", u_raw.get("refresh_interval", d_u.refresh_interval)),
        health_interval=_positive("ui.health_interval", u_raw.get("health_interval", d_u.health_interval)),
        max_requests=_positive("ui.max_requests", u_raw.get("max_requests", d_u.max_requests), int),
        max_connections=_positive("ui.max_connections", u_raw.get("max_connections", d_u.max_connections), int),
        max_dns_records=_positive("ui.max_dns_records", u_raw.get("max_dns_records", d_u.max_dns_records), int),
        start_timeout=_positive("ui.start_timeout", u_raw.get("start_timeout", d_u.start_timeout)),
        test_url=str(u_raw.get("test_url", d_u.test_url)),
    )

    _apply_env(surge, env)

    if not (0 < surge.http_api_port < 65536):
        raise ValueError(f"surge.http_api_port out of range: {surge.http_api_port}")

    return AppConfig(surge=surge, ui=ui, path=path)


def cmd_check(config_path: Optional[str]) -> int:
    try:
        cfg = load_config(config_path)
    except Exception as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if not cfg.surge.http_api_key:
        print("Config error: surge.http_api_key is empty (set it or SURGE_HTTP_API_KEY)", file=sys.stderr)
        return 2
    print(f"OK ({cfg.path or 'defaults'})")
    return 0


# Errors
class SurgeError(Exception):
    """Base class for every backend / facade failure."""
    kind = "error"


class UnavailableError(SurgeError):
    """Timeout, connection refused, missing executable: retryable by mode re-selection."""
    kind = "unavailable"


class HttpStatusError(UnavailableError):
    """Non-2xx answer from the HTTP API (other than auth failures)."""
    kind = "unavailable"

    def __init__(self, path: str, status_code: int):
        super().__init__(f"HTTP {path} returned status {status_code}")
        self.path = path
        self.status_code = status_code


class UnauthorizedError(SurgeError):
    """Bad API key. Not retryable; the server text is surfaced verbatim."""
    kind = "unauthorized"


class UnsupportedError(SurgeError):
    """Operation not implemented by the backend currently in use."""
    kind = "unsupported"

    def __init__(self, operation: str, mode: "BackendMode"):
        super().__init__(f"{operation} is not supported in {mode.label} mode")
        self.operation = operation
        self.mode = mode


class ParseError(SurgeError):
    """Response shape did not match what the adapter expects (contract drift)."""
    kind = "parse"

    def __init__(self, source: str, detail: str):
        super().__init__(f"Parse error ({source}): {detail}")
        self.source = source
        self.detail = detail


class ProcessError(SurgeError):
    """Subprocess exited non-zero; carries the captured diagnostic text."""
    kind = "process"

    def __init__(self, command: Sequence[str], returncode: Optional[int], stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        super().__init__(f"{' '.join(self.command)} exited with {returncode}: {_one_line(self.stderr) or '(no output)'}")


class NoBackendError(SurgeError):
    """Surge is running but neither the HTTP API nor surge-cli answers."""
    kind = "no_backend"


# errors that make the current backend suspect (early re-selection)
SUSPECT_ERRORS = (UnavailableError, ParseError, ProcessError)


# Domain model
class BackendMode(enum.IntEnum):
    """Backend in use, ordered by capability."""
    SYSTEM_PROBE = 0
    COMMAND_LINE = 1
    HTTP_API = 2

    @property
    def label(self) -> str:
        return {
            BackendMode.SYSTEM_PROBE: "process probe",
            BackendMode.COMMAND_LINE: "surge-cli",
            BackendMode.HTTP_API: "HTTP API",
        }[self]


class OutboundMode(str, enum.Enum):
    DIRECT = "direct"
    PROXY = "proxy"
    RULE = "rule"

    def next(self) -> "OutboundMode":
        order = [OutboundMode.DIRECT, OutboundMode.PROXY, OutboundMode.RULE]
        return order[(order.index(self) + 1) % len(order)]


class Availability(enum.Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Policy:
    """
    A concrete proxy policy.

    Only a latency test sets availability / latency_ms / tested_at; a refresh
    from the backend carries identity only.
    """
    name: str
    type_tag: str = "unknown"
    availability: Availability = Availability.UNKNOWN
    latency_ms: Optional[int] = None
    tested_at: Optional[float] = None

    @property
    def alive(self) -> bool:
        return self.availability is Availability.AVAILABLE

    def with_measurement_of(self, other: "Policy") -> "Policy":
        return dataclasses.replace(
            self,
            availability=other.availability,
            latency_ms=other.latency_ms,
            tested_at=other.tested_at,
        )


@dataclass(frozen=True)
class PolicyMember:
    # one entry of /v1/policy_groups (keys: name, isGroup, typeDescription, lineHash, enabled)
    name: str
    is_group: bool = False
    type_description: str = ""
    enabled: bool = True
    line_hash: str = ""

    @classmethod
    def from_api(cls, raw: Any, source: str) -> "PolicyMember":
        if isinstance(raw, str):
            return cls(name=raw)
        if not isinstance(raw, Mapping) or not isinstance(raw.get("name"), str):
            raise ParseError(source, f"group member without a name: {_one_line(repr(raw), 120)}")
        return cls(
            name=raw["name"],
            is_group=bool(raw.get("isGroup", False)),
            type_description=str(raw.get("typeDescription") or ""),
            enabled=bool(raw.get("enabled", True)),
            line_hash=str(raw.get("lineHash") or ""),
        )


@dataclass(frozen=True)
class PolicyGroup:
    """
    A named selector over policies or other groups.

    Members are names resolved lazily against the snapshot, so groups may
    reference each other in cycles; see resolve_policy_chain().
    available: members alive in the last completed latency test (None = never tested).
    """
    name: str
    members: Tuple[PolicyMember, ...] = ()
    selected: Optional[str] = None
    available: Optional[Tuple[str, ...]] = None

    def member_names(self) -> List[str]:
        return [m.name for m in self.members]

    def selected_index(self) -> int:
        for idx, m in enumerate(self.members):
            if m.name == self.selected:
                return idx
        return 0


def _as_float(x: Any) -> Optional[float]:
    if x is None or isinstance(x, bool):
        return None
    try:
        return float(x)
    except (TypeError, ValueError):
        return None


def _as_int(x: Any, default: int = 0) -> int:
    if x is None or isinstance(x, bool):
        return default
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _as_str_list(x: Any) -> Tuple[str, ...]:
    if isinstance(x, str):
        return (x,)
    if isinstance(x, (list, tuple)):
        return tuple(str(v) for v in x if v is not None)
    return ()


@dataclass(frozen=True)
class RequestRecord:
    """
    One entry of /v1/requests/recent or /v1/requests/active.

    Field names are mapped explicitly from the API's camelCase:
      - startDate is float seconds since epoch
      - outBytes is what the client uploaded, inBytes what it downloaded
    """
    id: int
    process_path: Optional[str] = None
    rule: Optional[str] = None
    policy_name: Optional[str] = None
    remote_host: Optional[str] = None
    url: Optional[str] = None
    method: Optional[str] = None
    status: Optional[str] = None
    started_at: Optional[float] = None
    uploaded_bytes: int = 0
    downloaded_bytes: int = 0
    completed: bool = False
    failed: bool = False
    notes: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, raw: Any, source: str) -> "RequestRecord":
        if not isinstance(raw, Mapping) or "id" not in raw:
            raise ParseError(source, f"request entry without id: {_one_line(repr(raw), 120)}")
        try:
            rid = int(raw["id"])
        except (TypeError, ValueError):
            raise ParseError(source, f"request id is not an integer: {raw['id']!r}") from None
        return cls(
            id=rid,
            process_path=raw.get("processPath"),
            rule=raw.get("rule"),
            policy_name=raw.get("policyName"),
            remote_host=raw.get("remoteHost"),
            url=raw.get("URL"),
            method=raw.get("method"),
            status=raw.get("status"),
            started_at=_as_float(raw.get("startDate")),
            uploaded_bytes=_as_int(raw.get("outBytes")),
            downloaded_bytes=_as_int(raw.get("inBytes")),
            completed=bool(raw.get("completed", False)),
            failed=bool(raw.get("failed", False)),
            notes=_as_str_list(raw.get("notes")),
        )

    @property
    def app_name(self) -> str:
        if not self.process_path:
            return "Unknown"
        return self.process_path.rstrip("/").rsplit("/", 1)[-1] or self.process_path


@dataclass(frozen=True)
class DnsRecord:
    # /v1/dns "dnsCache" entry (keys: domain, data, expiresTime, server, logs, path, timeCost)
    domain: str
    addresses: Tuple[str, ...] = ()
    expires_at: Optional[float] = None
    server: Optional[str] = None
    logs: Tuple[str, ...] = ()
    path: Optional[str] = None
    time_cost: Optional[float] = None

    @classmethod
    def from_api(cls, raw: Any, source: str) -> "DnsRecord":
        if not isinstance(raw, Mapping) or not isinstance(raw.get("domain"), str):
            raise ParseError(source, f"dns entry without domain: {_one_line(repr(raw), 120)}")
        return cls(
            domain=raw["domain"],
            addresses=_as_str_list(raw.get("data")),
            expires_at=_as_float(raw.get("expiresTime")),
            server=raw.get("server"),
            logs=_as_str_list(raw.get("logs")),
            path=raw.get("path"),
            time_cost=_as_float(raw.get("timeCost")),
        )

    def ttl_s(self, now: Optional[float] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))


@dataclass(frozen=True)
class FeatureToggles:
    mitm: Optional[bool] = None
    capture: Optional[bool] = None


FEATURES = ("mitm", "capture")


class AlertKind(enum.Enum):
    SURGE_NOT_RUNNING = "surge_not_running"
    API_UNAVAILABLE = "api_unavailable"
    CONFIG_ERROR = "config_error"
    WARNING = "warning"


@dataclass(frozen=True)
class Alert:
    """
    The single advisory banner explaining why functionality is degraded.

    action tells the UI which recovery the user may trigger:
      - "start":  start Surge (S)
      - "reload": reload the profile (R)
    """
    kind: AlertKind
    text: str = ""

    @classmethod
    def surge_not_running(cls) -> "Alert":
        return cls(AlertKind.SURGE_NOT_RUNNING)

    @classmethod
    def api_unavailable(cls, reason: str = "") -> "Alert":
        return cls(AlertKind.API_UNAVAILABLE, reason)

    @classmethod
    def config_error(cls, text: str) -> "Alert":
        return cls(AlertKind.CONFIG_ERROR, text)

    @classmethod
    def warning(cls, text: str) -> "Alert":
        return cls(AlertKind.WARNING, text)

    @property
    def action(self) -> Optional[str]:
        if self.kind is AlertKind.SURGE_NOT_RUNNING:
            return "start"
        if self.kind in (AlertKind.API_UNAVAILABLE, AlertKind.CONFIG_ERROR):
            return "reload"
        return None

    def message(self) -> str:
        if self.kind is AlertKind.SURGE_NOT_RUNNING:
            base = "Surge is not running"
        elif self.kind is AlertKind.API_UNAVAILABLE:
            base = "HTTP API unavailable, running on reduced features"
        elif self.kind is AlertKind.CONFIG_ERROR:
            base = "Config error"
        else:
            base = "Warning"
        return f"{base}: {self.text}" if self.text else base


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable point-in-time read of everything the dashboard shows.

    List fields are None when the backend in use cannot report them, and an
    empty tuple when there is genuinely nothing to report.
    Never mutated: derive a new one with dataclasses.replace().
    """
    mode: BackendMode = BackendMode.SYSTEM_PROBE
    running: bool = False
    outbound_mode: Optional[OutboundMode] = None
    policies: Optional[Tuple[Policy, ...]] = None
    groups: Optional[Tuple[PolicyGroup, ...]] = None
    recent_requests: Optional[Tuple[RequestRecord, ...]] = None
    active_connections: Optional[Tuple[RequestRecord, ...]] = None
    dns_records: Optional[Tuple[DnsRecord, ...]] = None
    features: FeatureToggles = field(default_factory=FeatureToggles)
    alert: Optional[Alert] = None
    taken_at: float = 0.0

    @property
    def http_api_available(self) -> bool:
        return self.mode is BackendMode.HTTP_API

    def group_map(self) -> Dict[str, PolicyGroup]:
        return {g.name: g for g in (self.groups or ())}

    def policy(self, name: str) -> Optional[Policy]:
        for p in self.policies or ():
            if p.name == name:
                return p
        return None

    def group(self, name: str) -> Optional[PolicyGroup]:
        for g in self.groups or ():
            if g.name == name:
                return g
        return None


# Response parsing (shared by the HTTP and CLI adapters)
def _parse_outbound_mode(data: Any, source: str) -> OutboundMode:
    mode = data.get("mode") if isinstance(data, Mapping) else data
    try:
        return OutboundMode(str(mode).lower())
    except ValueError:
        raise ParseError(source, f"unknown outbound mode {mode!r}") from None


def _parse_policy_list(data: Any, source: str) -> List[Policy]:
    """
    Accepts:
      - {"proxies": [...], "policy-groups": [...]}   (HTTP API)
      - a bare list of names or {"name", "type"} objects   (surge-cli --raw)

    Only concrete proxies are returned; groups come from list_policy_groups().
    """
    if isinstance(data, Mapping):
        if "proxies" not in data:
            raise ParseError(source, "missing 'proxies'")
        entries = data.get("proxies") or []
        default_tag = "proxy"
    else:
        entries = data
        default_tag = "unknown"
    if not isinstance(entries, list):
        raise ParseError(source, f"expected a list of policies, got {type(entries).__name__}")

    out: List[Policy] = []
    for e in entries:
        if isinstance(e, str):
            out.append(Policy(name=e, type_tag=default_tag))
        elif isinstance(e, Mapping) and isinstance(e.get("name"), str):
            out.append(Policy(name=e["name"], type_tag=str(e.get("type") or e.get("typeDescription") or default_tag)))
        else:
            raise ParseError(source, f"policy entry without a name: {_one_line(repr(e), 120)}")
    return out


def _parse_group_mapping(data: Any, source: str) -> List[PolicyGroup]:
    """
    /v1/policy_groups is documented as an array but Surge answers with an object
    keyed by group name: {"Proxy": [{"name": ..., "isGroup": ...}, ...], ...}.
    The array form ([{"name": ..., "policies": [...]}]) is accepted too.
    Groups come back sorted by name, without selection.
    """
    groups: List[PolicyGroup] = []
    if isinstance(data, Mapping):
        for name, members in data.items():
            if not isinstance(members, list):
                raise ParseError(source, f"group {name!r}: members is {type(members).__name__}, not a list")
            groups.append(PolicyGroup(
                name=str(name),
                members=tuple(PolicyMember.from_api(m, source) for m in members),
            ))
    elif isinstance(data, list):
        for g in data:
            if not isinstance(g, Mapping) or not isinstance(g.get("name"), str):
                raise ParseError(source, f"group entry without a name: {_one_line(repr(g), 120)}")
            members = g.get("policies", g.get("members", []))
            if not isinstance(members, list):
                raise ParseError(source, f"group {g['name']!r}: members is not a list")
            sel = g.get("selected") or g.get("policy")
            groups.append(PolicyGroup(
                name=g["name"],
                members=tuple(PolicyMember.from_api(m, source) for m in members),
                selected=sel if isinstance(sel, str) else None,
            ))
    else:
        raise ParseError(source, f"expected an object keyed by group name, got {type(data).__name__}")
    groups.sort(key=lambda g: g.name)
    return groups


def _parse_records(data: Any, source: str, key: str, factory) -> list:
    entries = data.get(key) if isinstance(data, Mapping) else data
    if not isinstance(entries, list):
        raise ParseError(source, f"missing '{key}' list")
    return [factory(e, source) for e in entries]


def _parse_requests(data: Any, source: str) -> List[RequestRecord]:
    return _parse_records(data, source, "requests", RequestRecord.from_api)


def _parse_dns(data: Any, source: str) -> List[DnsRecord]:
    return _parse_records(data, source, "dnsCache", DnsRecord.from_api)


# "Name: RTT 123 ms, Total 456 ms" / "Name: Failed"
_TEST_LINE_RE = re.compile(
    r"^(?P<name>.+?):\s*(?:RTT\s+(?P<rtt>\d+)\s*ms\b.*|(?P<failed>Failed\b.*))$",
    re.IGNORECASE,
)


def parse_test_line(line: str, tested_at: float) -> Optional[Policy]:
    m = _TEST_LINE_RE.match((line or "").strip())
    if not m:
        return None
    name = m.group("name").strip()
    if not name:
        return None
    if m.group("rtt") is not None:
        return Policy(name=name, availability=Availability.AVAILABLE,
                      latency_ms=int(m.group("rtt")), tested_at=tested_at)
    return Policy(name=name, availability=Availability.UNAVAILABLE, tested_at=tested_at)


def parse_test_output(text: str, tested_at: Optional[float] = None) -> List[Policy]:
    """Parse `surge-cli test-all-policies` output; unrelated lines are skipped."""
    tested_at = time.time() if tested_at is None else tested_at
    out: List[Policy] = []
    for line in (text or "").splitlines():
        p = parse_test_line(line, tested_at)
        if p is not None:
            out.append(p)
    return out


def profile_has_http_api(profile_text: str) -> Optional[bool]:
    """
    Look for a non-empty `http-api = ...` line in the [General] section.

    Returns None when the text has no [General] section (cannot tell).
    """
    section = None
    saw_general = False
    for raw in (profile_text or "").splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";", "//")):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = line[1:-1].strip().lower()
            saw_general = saw_general or section == "general"
            continue
        if section != "general" or "=" not in line:
            continue
        key, _, value = line.partition("=")
        if key.strip().lower() == "http-api" and value.strip():
            return True
    return False if saw_general else None


# Backends
class HttpBackend:
    """
    Surge HTTP API adapter (full feature set).

    - X-Key header authentication
    - timeouts / refused connections -> UnavailableError
    - 401/403 -> UnauthorizedError with the server text
    - other non-2xx -> HttpStatusError
    - unexpected JSON shape -> ParseError
    """

    MODE = BackendMode.HTTP_API
    CAPABILITIES = frozenset({
        "health_check",
        "get_outbound_mode", "set_outbound_mode",
        "list_policies", "list_policy_groups", "select_policy",
        "test_policy", "test_policy_group",
        "get_recent_requests", "get_active_connections", "kill_connection",
        "get_feature", "set_feature",
        "reload_config",
        "get_dns_cache", "flush_dns",
    })

    def __init__(
        self,
        host: str,
        port: int,
        api_key: str,
        *,
        timeout: float = 3.0,
        test_url: str = DEFAULT_TEST_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = f"http://{host}:{port}"
        self.timeout = float(timeout)
        self.test_url = test_url
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers={"X-Key": api_key, "User-Agent": f"surge-tui/{__version__}"},
            transport=transport,
        )

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "HttpBackend":
        return cls(
            cfg.surge.http_api_host,
            cfg.surge.http_api_port,
            cfg.surge.http_api_key,
            timeout=cfg.surge.request_timeout,
            test_url=cfg.ui.test_url,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, *, params: Optional[dict] = None, body: Any = None) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, params=params, json=body)
        except httpx.TimeoutException as e:
            raise UnavailableError(f"HTTP {method} {path} timed out after {self.timeout:g}s") from e
        except httpx.TransportError as e:
            raise UnavailableError(f"HTTP {method} {path} failed: {type(e).__name__}: {e}") from e

        if resp.status_code in (401, 403):
            raise UnauthorizedError(_one_line(resp.text) or f"HTTP {resp.status_code} for {path}")
        if not resp.is_success:
            raise HttpStatusError(path, resp.status_code)
        return resp

    async def _get_json(self, path: str, params: Optional[dict] = None) -> Any:
        resp = await self._request("GET", path, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise ParseError(f"HTTP {path}", f"invalid JSON: {e}") from e

    async def _post(self, path: str, body: Any = None) -> None:
        await self._request("POST", path, body=body)

    async def health_check(self) -> None:
        await self.get_outbound_mode()

    async def get_outbound_mode(self) -> OutboundMode:
        return _parse_outbound_mode(await self._get_json("/v1/outbound"), "HTTP /v1/outbound")

    async def set_outbound_mode(self, mode: OutboundMode) -> None:
        await self._post("/v1/outbound", {"mode": OutboundMode(mode).value})

    async def list_policies(self) -> List[Policy]:
        return _parse_policy_list(await self._get_json("/v1/policies"), "HTTP /v1/policies")

    async def list_policy_groups(self) -> List[PolicyGroup]:
        groups = _parse_group_mapping(await self._get_json("/v1/policy_groups"), "HTTP /v1/policy_groups")
        out: List[PolicyGroup] = []
        for g in groups:
            selected = g.selected or await self._selected_in_group(g.name)
            out.append(dataclasses.replace(g, selected=selected))
        return out

    async def _selected_in_group(self, group: str) -> Optional[str]:
        try:
            data = await self._get_json("/v1/policy_groups/select", params={"group_name": group})
        except (HttpStatusError, ParseError) as e:
            # url-test / fallback groups have no manual selection
            LOG.debug("No selection for group %r: %s", group, e)
            return None
        if isinstance(data, Mapping) and isinstance(data.get("policy"), str):
            return data["policy"]
        return None

    async def select_policy(self, group: str, policy: str) -> None:
        await self._post("/v1/policy_groups/select", {"group_name": group, "policy": policy})

    async def test_policy(self, name: str) -> None:
        await self._post("/v1/policies/test", {"policy_names": [name], "url": self.test_url})

    async def test_policy_group(self, group: str) -> List[str]:
        resp = await self._request("POST", "/v1/policy_groups/test", body={"group_name": group})
        try:
            data = resp.json()
        except ValueError:
            return []
        if isinstance(data, Mapping):
            return list(_as_str_list(data.get("available")))
        return []

    async def get_recent_requests(self) -> List[RequestRecord]:
        return _parse_requests(await self._get_json("/v1/requests/recent"), "HTTP /v1/requests/recent")

    async def get_active_connections(self) -> List[RequestRecord]:
        return _parse_requests(await self._get_json("/v1/requests/active"), "HTTP /v1/requests/active")

    async def kill_connection(self, conn_id: int) -> None:
        await self._post("/v1/requests/kill", {"id": int(conn_id)})

    async def get_feature(self, name: str) -> bool:
        if name not in FEATURES:
            raise ValueError(f"unknown feature {name!r}")
        data = await self._get_json(f"/v1/features/{name}")
        if not isinstance(data, Mapping) or not isinstance(data.get("enabled"), bool):
            raise ParseError(f"HTTP /v1/features/{name}", "missing boolean 'enabled'")
        return data["enabled"]

    async def set_feature(self, name: str, enabled: bool) -> None:
        if name not in FEATURES:
            raise ValueError(f"unknown feature {name!r}")
        await self._post(f"/v1/features/{name}", {"enabled": bool(enabled)})

    async def reload_config(self) -> None:
        await self._post("/v1/profiles/reload")

    async def get_dns_cache(self) -> List[DnsRecord]:
        return _parse_dns(await self._get_json("/v1/dns"), "HTTP /v1/dns")

    async def flush_dns(self) -> None:
        await self._post("/v1/dns/flush")


class CliBackend:
    """
    surge-cli adapter (reduced feature set).

    JSON comes from `surge-cli --raw <command>`; the bulk latency test is only
    available here (text output, see parse_test_output()).
    """

    MODE = BackendMode.COMMAND_LINE
    CAPABILITIES = frozenset({
        "health_check",
        "list_policies",
        "test_policy", "test_policy_group", "test_all_policies",
        "get_recent_requests", "get_active_connections", "kill_connection",
        "reload_config",
        "get_dns_cache", "flush_dns",
    })

    def __init__(self, cli_path: str = DEFAULT_CLI_PATH, *, timeout: float = 60.0, probe_timeout: float = 5.0):
        self.cli_path = cli_path
        self.timeout = float(timeout)
        self.probe_timeout = float(probe_timeout)

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "CliBackend":
        return cls(cfg.surge.cli_path, timeout=cfg.surge.cli_timeout)

    async def _run(self, args: Sequence[str], *, timeout: Optional[float] = None) -> str:
        cmd = [self.cli_path, *args]
        t = self.timeout if timeout is None else timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UnavailableError(f"cannot execute {self.cli_path}: {e}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=t)
        except asyncio.TimeoutError as e:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise UnavailableError(f"{' '.join(cmd)} timed out after {t:g}s") from e

        if proc.returncode != 0:
            diag = err.decode("utf-8", errors="replace").strip() or out.decode("utf-8", errors="replace").strip()
            raise ProcessError(cmd, proc.returncode, diag)
        return out.decode("utf-8", errors="replace")

    async def _run_json(self, args: Sequence[str], *, timeout: Optional[float] = None) -> Any:
        text = await self._run(["--raw", *args], timeout=timeout)
        try:
            return json.loads(text)
        except ValueError as e:
            raise ParseError(f"surge-cli {' '.join(args)}", f"invalid JSON: {e}") from e

    async def health_check(self) -> None:
        if not os.path.isfile(self.cli_path):
            raise UnavailableError(f"surge-cli not found at {self.cli_path}")
        await self._run_json(["dump", "policy"], timeout=self.probe_timeout)

    async def api_enabled_in_profile(self) -> Optional[bool]:
        """Check the effective profile for http-api; None when it cannot be read."""
        try:
            text = await self._run(["dump", "profile", "effective"], timeout=self.probe_timeout)
        except SurgeError as e:
            LOG.debug("Cannot read effective profile: %s", e)
            return None
        return profile_has_http_api(text)

    async def list_policies(self) -> List[Policy]:
        return _parse_policy_list(await self._run_json(["dump", "policy"]), "surge-cli dump policy")

    async def test_policy(self, name: str) -> None:
        await self._run(["test-policy", name])

    async def test_policy_group(self, group: str) -> List[str]:
        # the CLI reports nothing parseable for a group re-test
        await self._run(["test-group", group])
        return []

    async def test_all_policies(self) -> List[Policy]:
        text = await self._run(["test-all-policies"])
        results = parse_test_output(text, time.time())
        LOG.info("test-all-policies: %d results (%d alive)", len(results), sum(1 for p in results if p.alive))
        return results

    async def get_recent_requests(self) -> List[RequestRecord]:
        return _parse_requests(await self._run_json(["dump", "request"]), "surge-cli dump request")

    async def get_active_connections(self) -> List[RequestRecord]:
        return _parse_requests(await self._run_json(["dump", "active"]), "surge-cli dump active")

    async def kill_connection(self, conn_id: int) -> None:
        await self._run(["kill", str(int(conn_id))])

    async def reload_config(self) -> None:
        await self._run(["reload"])

    async def get_dns_cache(self) -> List[DnsRecord]:
        return _parse_dns(await self._run_json(["dump", "dns"]), "surge-cli dump dns")

    async def flush_dns(self) -> None:
        await self._run(["flush", "dns"])


class SystemBackend:
    """Process probe: is Surge running, and launch it. Nothing else."""

    MODE = BackendMode.SYSTEM_PROBE
    CAPABILITIES = frozenset({"health_check", "launch"})

    def __init__(self, process_name: str = "Surge", launch_command: Optional[Sequence[str]] = None, *, launch_timeout: float = 15.0):
        self.process_name = process_name
        self.launch_command = list(launch_command) if launch_command is not None else ["open", "-a", "Surge"]
        self.launch_timeout = float(launch_timeout)

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "SystemBackend":
        return cls(cfg.surge.process_name, cfg.surge.launch_command)

    def _find_pid(self) -> Optional[int]:
        for proc in psutil.process_iter(["name"]):
            if proc.info.get("name") == self.process_name:
                return proc.pid
        return None

    async def pid(self) -> Optional[int]:
        try:
            return await asyncio.to_thread(self._find_pid)
        except psutil.Error as e:
            log_throttled(logging.WARNING, "system.probe", "Process probe failed: %s", e, interval_s=30.0)
            return None

    async def is_running(self) -> bool:
        return await self.pid() is not None

    async def health_check(self) -> None:
        if not await self.is_running():
            raise UnavailableError(f"{self.process_name} is not running")

    async def launch(self) -> None:
        if not self.launch_command:
            raise UnsupportedError("launch", self.MODE)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.launch_command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise UnavailableError(f"cannot execute {self.launch_command[0]}: {e}") from e
        try:
            _, err = await asyncio.wait_for(proc.communicate(), timeout=self.launch_timeout)
        except asyncio.TimeoutError as e:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise UnavailableError(f"{' '.join(self.launch_command)} timed out after {self.launch_timeout:g}s") from e
        if proc.returncode != 0:
            raise ProcessError(self.launch_command, proc.returncode, err.decode("utf-8", errors="replace"))
        LOG.info("Launched %s via %s", self.process_name, " ".join(self.launch_command))


# Resilience facade
class SurgeClient:
    """
    One client over three backends, with automatic fallback.

    Mode selection (select_mode):
      - Surge process absent            -> SYSTEM_PROBE, alert "not running"
      - HTTP health check OK            -> HTTP_API, alert cleared
      - HTTP failed, surge-cli OK       -> COMMAND_LINE, alert explains why
      - HTTP failed, surge-cli failed   -> SYSTEM_PROBE, NoBackendError

    Every operation is dispatched to the most capable backend at or below the
    current mode that implements it, so test_all_policies goes to surge-cli
    even while the HTTP API is up.
    A transport/parse/process failure marks the facade suspect; the next
    maybe_reselect() call re-runs selection immediately instead of waiting
    for the health interval.
    """

    def __init__(
        self,
        http: HttpBackend,
        cli: CliBackend,
        system: SystemBackend,
        *,
        health_interval: float = 10.0,
        start_timeout: float = 10.0,
        start_poll_interval: float = 0.5,
        max_requests: int = 100,
        max_connections: int = 200,
        max_dns_records: int = 500,
        clock=time.monotonic,
    ):
        self.http = http
        self.cli = cli
        self.system = system
        self.health_interval = float(health_interval)
        self.start_timeout = float(start_timeout)
        self.start_poll_interval = float(start_poll_interval)
        self.max_requests = int(max_requests)
        self.max_connections = int(max_connections)
        self.max_dns_records = int(max_dns_records)
        self._clock = clock

        self.mode = BackendMode.SYSTEM_PROBE
        self.running = False
        self.alert: Optional[Alert] = None
        self.suspect = False
        self.last_selection: Optional[float] = None
        self.last_error: Optional[str] = None
        self._snapshot_aborted = False

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "SurgeClient":
        return cls(
            HttpBackend.from_config(cfg),
            CliBackend.from_config(cfg),
            SystemBackend.from_config(cfg),
            health_interval=cfg.ui.health_interval,
            start_timeout=cfg.ui.start_timeout,
            max_requests=cfg.ui.max_requests,
            max_connections=cfg.ui.max_connections,
            max_dns_records=cfg.ui.max_dns_records,
        )

    def fork(self) -> "SurgeClient":
        """Independent facade over the same adapters (for background tasks)."""
        twin = copy.copy(self)
        twin.suspect = False
        return twin

    async def aclose(self) -> None:
        aclose = getattr(self.http, "aclose", None)
        if aclose is not None:
            await aclose()

    # dispatch
    def _adapter(self, mode: BackendMode):
        return {
            BackendMode.HTTP_API: self.http,
            BackendMode.COMMAND_LINE: self.cli,
            BackendMode.SYSTEM_PROBE: self.system,
        }[mode]

    def adapter_for(self, operation: str):
        for mode in sorted(BackendMode, reverse=True):
            if mode > self.mode:
                continue
            adapter = self._adapter(mode)
            if operation in adapter.CAPABILITIES:
                return adapter
        raise UnsupportedError(operation, self.mode)

    def supports(self, operation: str) -> bool:
        try:
            self.adapter_for(operation)
        except UnsupportedError:
            return False
        return True

    async def _call(self, operation: str, *args):
        adapter = self.adapter_for(operation)
        try:
            return await getattr(adapter, operation)(*args)
        except SUSPECT_ERRORS as e:
            self.mark_suspect(operation, adapter.MODE, e)
            raise

    def mark_suspect(self, operation: str, mode: BackendMode, exc: object) -> None:
        if not self.suspect:
            LOG.warning("%s failed via %s, backend marked suspect: %s", operation, mode.label, exc)
        self.suspect = True
        self.last_error = str(exc)

    # mode selection
    def _set_mode(self, mode: BackendMode, alert: Optional[Alert]) -> None:
        if mode != self.mode or alert != self.alert:
            LOG.info(
                "Backend mode: %s -> %s (%s)",
                self.mode.label, mode.label, alert.message() if alert else "no alert",
            )
        self.mode = mode
        self.alert = alert

    async def _api_unavailable_reason(self, exc: SurgeError) -> str:
        enabled = await self.cli.api_enabled_in_profile()
        if enabled is False:
            return "http-api is not enabled in the profile"
        return str(exc)

    async def select_mode(self) -> BackendMode:
        self.last_selection = self._clock()
        self.suspect = False

        self.running = await self.system.is_running()
        if not self.running:
            self._set_mode(BackendMode.SYSTEM_PROBE, Alert.surge_not_running())
            return self.mode

        try:
            await self.http.health_check()
        except UnauthorizedError as e:
            alert = Alert.config_error(str(e))
        except SurgeError as e:
            alert = Alert.api_unavailable(await self._api_unavailable_reason(e))
        else:
            self._set_mode(BackendMode.HTTP_API, None)
            return self.mode

        try:
            await self.cli.health_check()
        except SurgeError as e:
            self._set_mode(BackendMode.SYSTEM_PROBE, alert)
            raise NoBackendError(f"Surge is running but no backend answers: {alert.message()}; surge-cli: {e}") from e

        self._set_mode(BackendMode.COMMAND_LINE, alert)
        return self.mode

    def reselect_due(self, now: Optional[float] = None) -> bool:
        if self.suspect or self.last_selection is None:
            return True
        now = self._clock() if now is None else now
        return (now - self.last_selection) >= self.health_interval

    async def maybe_reselect(self, now: Optional[float] = None) -> bool:
        """Run select_mode() if suspect or the health interval elapsed; True if it ran."""
        if not self.reselect_due(now):
            return False
        await self.select_mode()
        return True

    # recovery actions
    async def start_surge(self) -> bool:
        """Launch Surge and wait for the process; returns False on timeout."""
        await self.system.launch()
        deadline = self._clock() + self.start_timeout
        while not await self.system.is_running():
            if self._clock() >= deadline:
                LOG.warning("Surge did not appear within %.1fs", self.start_timeout)
                self.suspect = True
                return False
            await asyncio.sleep(self.start_poll_interval)
        await self.select_mode()
        return True

    async def reload_config(self) -> BackendMode:
        try:
            await self.cli.reload_config()
        except SUSPECT_ERRORS as e:
            self.mark_suspect("reload_config", BackendMode.COMMAND_LINE, e)
            raise
        LOG.info("Profile reloaded")
        return await self.select_mode()

    # operations
    async def get_outbound_mode(self) -> OutboundMode:
        return await self._call("get_outbound_mode")

    async def set_outbound_mode(self, mode: OutboundMode) -> None:
        await self._call("set_outbound_mode", mode)

    async def list_policies(self) -> List[Policy]:
        return await self._call("list_policies")

    async def list_policy_groups(self) -> List[PolicyGroup]:
        return await self._call("list_policy_groups")

    async def select_policy(self, group: str, policy: str) -> None:
        await self._call("select_policy", group, policy)

    async def test_policy(self, name: str) -> None:
        await self._call("test_policy", name)

    async def test_policy_group(self, group: str) -> List[str]:
        return await self._call("test_policy_group", group)

    async def test_all_policies(self) -> List[Policy]:
        return await self._call("test_all_policies")

    async def get_recent_requests(self) -> List[RequestRecord]:
        return await self._call("get_recent_requests")

    async def get_active_connections(self) -> List[RequestRecord]:
        return await self._call("get_active_connections")

    async def kill_connection(self, conn_id: int) -> None:
        await self._call("kill_connection", conn_id)

    async def get_feature(self, name: str) -> bool:
        return await self._call("get_feature", name)

    async def set_feature(self, name: str, enabled: bool) -> None:
        await self._call("set_feature", name, enabled)

    async def get_dns_cache(self) -> List[DnsRecord]:
        return await self._call("get_dns_cache")

    async def flush_dns(self) -> None:
        await self._call("flush_dns")

    async def _fetch(self, operation: str, *args):
        # None means "this mode cannot tell"; failures are logged and also read as None.
        # the first failure that marks the backend suspect ends the snapshot
        if self._snapshot_aborted or not self.supports(operation):
            return None
        try:
            return await self._call(operation, *args)
        except SUSPECT_ERRORS as e:
            self._snapshot_aborted = True
            log_throttled(logging.WARNING, f"snapshot.{operation}", "Snapshot: %s failed, skipping the rest: %s", operation, e, interval_s=10.0)
            return None
        except SurgeError as e:
            log_throttled(logging.WARNING, f"snapshot.{operation}", "Snapshot: %s failed: %s", operation, e, interval_s=10.0)
            return None

    async def snapshot(self) -> Snapshot:
        self._snapshot_aborted = False
        outbound = await self._fetch("get_outbound_mode")
        features = FeatureToggles(
            mitm=await self._fetch("get_feature", "mitm"),
            capture=await self._fetch("get_feature", "capture"),
        )
        groups = await self._fetch("list_policy_groups")
        policies = await self._fetch("list_policies")
        if policies is not None and groups is not None:
            policies = _describe_policy_types(policies, groups)

        recent = await self._fetch("get_recent_requests")
        if recent is not None:
            recent = sorted(recent, key=lambda r: r.started_at or 0.0, reverse=True)[: self.max_requests]
        active = await self._fetch("get_active_connections")
        if active is not None:
            active = active[: self.max_connections]
        dns = await self._fetch("get_dns_cache")
        if dns is not None:
            dns = dns[: self.max_dns_records]

        return Snapshot(
            mode=self.mode,
            running=self.running,
            outbound_mode=outbound,
            policies=_tuple_or_none(policies),
            groups=_tuple_or_none(groups),
            recent_requests=_tuple_or_none(recent),
            active_connections=_tuple_or_none(active),
            dns_records=_tuple_or_none(dns),
            features=features,
            alert=self.alert,
            taken_at=time.time(),
        )


def _tuple_or_none(x: Optional[Iterable]) -> Optional[tuple]:
    return None if x is None else tuple(x)


def _describe_policy_types(policies: Sequence[Policy], groups: Sequence[PolicyGroup]) -> List[Policy]:
    # /v1/policies has no types; group members carry typeDescription
    types: Dict[str, str] = {}
    for g in groups:
        for m in g.members:
            if not m.is_group and m.type_description:
                types.setdefault(m.name, m.type_description)
    return [dataclasses.replace(p, type_tag=types[p.name]) if p.name in types else p for p in policies]


# Policy chain resolution
class ResolutionFailure(enum.Enum):
    CYCLE = "cycle detected"
    DEPTH_EXCEEDED = "depth exceeded"
    NO_SELECTION = "no selection"


@dataclass(frozen=True)
class Resolution:
    start: str
    chain: Tuple[str, ...] = ()
    leaf: Optional[str] = None
    failure: Optional[ResolutionFailure] = None
    policy: Optional[Policy] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.leaf is not None

    def describe(self) -> str:
        if self.failure is not None:
            return f"{' -> '.join(self.chain)} ({self.failure.value})"
        return " -> ".join(self.chain)


def _runs_into_cycle(groups: Mapping[str, PolicyGroup], name: str, visited: Iterable[str]) -> bool:
    # bounded by the number of groups: a longer walk must repeat a group
    seen = set(visited)
    for _ in range(len(groups) + 1):
        group = groups.get(name)
        if group is None:
            return False
        if name in seen:
            return True
        seen.add(name)
        if not group.selected:
            return False
        name = group.selected
    return True


def resolve_policy_chain(
    groups: Union[Mapping[str, PolicyGroup], Iterable[PolicyGroup]],
    start: str,
    max_depth: int = MAX_CHAIN_DEPTH,
) -> Resolution:
    """
    Follow group selections from `start` down to a concrete policy.

    The chain counts every node including the leaf, so at most max_depth - 1
    groups can be crossed. Failures:
      - CYCLE:          a group repeats (also reported when the depth ceiling
                        is hit on a chain that would repeat later)
      - DEPTH_EXCEEDED: more than max_depth - 1 groups without a repeat
      - NO_SELECTION:   a group on the chain has nothing selected
    A name that is not a group is the leaf.
    """
    by_name = groups if isinstance(groups, Mapping) else {g.name: g for g in groups}
    chain: List[str] = []
    visited: set = set()
    name = start
    while True:
        group = by_name.get(name)
        if group is not None and name in visited:
            return Resolution(start, chain=tuple(chain + [name]), failure=ResolutionFailure.CYCLE)
        if len(chain) >= max_depth:
            failure = ResolutionFailure.CYCLE if _runs_into_cycle(by_name, name, visited) else ResolutionFailure.DEPTH_EXCEEDED
            return Resolution(start, chain=tuple(chain), failure=failure)
        chain.append(name)
        if group is None:
            return Resolution(start, chain=tuple(chain), leaf=name)
        visited.add(name)
        if not group.selected:
            return Resolution(start, chain=tuple(chain), failure=ResolutionFailure.NO_SELECTION)
        name = group.selected


def resolve_policy(snapshot: Snapshot, start: str, max_depth: int = MAX_CHAIN_DEPTH) -> Resolution:
    """resolve_policy_chain() against a snapshot, with the leaf Policy attached."""
    res = resolve_policy_chain(snapshot.group_map(), start, max_depth)
    if res.leaf is None:
        return res
    return dataclasses.replace(res, policy=snapshot.policy(res.leaf))


# Latency test cache / snapshot merge
class PolicyTestCache:
    """
    Latest latency measurement per policy name.

    record() is the only writer; snapshots read it through merge_test_cache().
    """

    def __init__(self):
        self._entries: Dict[str, Policy] = {}

    def record(self, results: Iterable[Policy]) -> int:
        n = 0
        for p in results:
            self._entries[p.name] = p
            n += 1
        return n

    def get(self, name: str) -> Optional[Policy]:
        return self._entries.get(name)

    def values(self) -> List[Policy]:
        return sorted(self._entries.values(), key=lambda p: p.name)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def merge_test_cache(snapshot: Snapshot, cache: PolicyTestCache) -> Snapshot:
    """
    Overlay cached measurements onto a fresh snapshot.

    Identity (names, order, type) comes from the snapshot; only availability,
    latency and tested_at come from the cache. A snapshot that cannot list
    policies keeps policies=None.
    """
    if not len(cache) or snapshot.policies is None:
        return snapshot
    merged = tuple(
        p.with_measurement_of(cache.get(p.name)) if p.name in cache else p
        for p in snapshot.policies
    )
    return dataclasses.replace(snapshot, policies=merged)


def apply_test_results(snapshot: Snapshot, cache: PolicyTestCache, group: Optional[str], results: Iterable[Policy]) -> Snapshot:
    results = list(results)
    cache.record(results)
    merged = merge_test_cache(snapshot, cache)
    if not group or merged.groups is None:
        return merged
    alive = {p.name for p in results if p.alive}
    groups = tuple(
        dataclasses.replace(g, available=tuple(m.name for m in g.members if m.name in alive))
        if g.name == group else g
        for g in merged.groups
    )
    return dataclasses.replace(merged, groups=groups)


# Background latency test
@dataclass(frozen=True)
class TestStarted:
    group: str


@dataclass(frozen=True)
class TestCompleted:
    group: str
    results: Tuple[Policy, ...]


@dataclass(frozen=True)
class TestFailed:
    group: str
    error: str
    # backend the failure was seen on when it should trigger re-selection
    suspect_mode: Optional[BackendMode] = None


TestMessage = Union[TestStarted, TestCompleted, TestFailed]


class TestCoordinator:
    """
    Runs the bulk latency test off the input path.

    - at most one test in flight; further triggers are ignored (start() -> False)
    - the worker only talks through the queue: Started, then Completed or Failed
    - drain() never blocks and clears the in-flight flag on the terminal message
    """

    def __init__(self):
        self.queue: "asyncio.Queue[TestMessage]" = asyncio.Queue()
        self.in_flight = False
        self.group: Optional[str] = None
        self.ignored = 0
        self._task: Optional[asyncio.Task] = None

    def start(self, client: SurgeClient, group: str) -> bool:
        if self.in_flight:
            self.ignored += 1
            LOG.info("Latency test already running for %r, trigger ignored", self.group)
            return False
        self.in_flight = True
        self.group = group
        self._task = asyncio.get_running_loop().create_task(self._run(client.fork(), group))
        return True

    async def _run(self, client: SurgeClient, group: str) -> None:
        self.queue.put_nowait(TestStarted(group))
        try:
            results = await client.test_all_policies()
        except SUSPECT_ERRORS as e:
            LOG.warning("Latency test for %r failed: %s", group, e)
            mode = client.adapter_for("test_all_policies").MODE
            self.queue.put_nowait(TestFailed(group, str(e), suspect_mode=mode))
        except SurgeError as e:
            LOG.warning("Latency test for %r failed: %s", group, e)
            self.queue.put_nowait(TestFailed(group, str(e)))
        except Exception as e:
            LOG.error("Latency test for %r crashed", group, exc_info=True)
            self.queue.put_nowait(TestFailed(group, f"{type(e).__name__}: {e}"))
        else:
            self.queue.put_nowait(TestCompleted(group, tuple(results)))

    def drain(self) -> List[TestMessage]:
        out: List[TestMessage] = []
        while True:
            try:
                msg = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(msg, (TestCompleted, TestFailed)):
                self.in_flight = False
                self._task = None
            out.append(msg)
        return out

    async def shutdown(self) -> None:
        t = self._task
        if t is None or t.done():
            return
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


# Application state (UI-independent)
@dataclass
class Notification:
    message: str
    level: str = "info"  # info | success | warning | error
    created_at: float = field(default_factory=time.time)


class Dashboard:
    """
    Long-lived state shared by the TUI and headless mode.

    step() is the loop body: drain test messages, re-select the backend when
    due, refresh the snapshot when idle for refresh_interval.
    """

    NOTIFICATIONS_MAX = 50

    def __init__(self, client: SurgeClient, *, refresh_interval: float = 1.0, clock=time.monotonic):
        self.client = client
        self.refresh_interval = float(refresh_interval)
        self._clock = clock

        self.cache = PolicyTestCache()
        self.tests = TestCoordinator()
        self.snapshot = Snapshot()
        self.notifications: Deque[Notification] = deque(maxlen=self.NOTIFICATIONS_MAX)

        self.last_refresh: Optional[float] = None
        self.last_input: Optional[float] = None
        self._no_backend: Optional[str] = None
        self._last_error: Optional[str] = None
        # one backend round-trip at a time; the pump alarm and key presses both call step()
        self._step_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "Dashboard":
        return cls(SurgeClient.from_config(cfg), refresh_interval=cfg.ui.refresh_interval)

    def notify(self, message: str, level: str = "info") -> None:
        self.notifications.append(Notification(message, level))
        lvl = {"error": logging.ERROR, "warning": logging.WARNING}.get(level, logging.INFO)
        LOG.log(lvl, "Notification: %s", message)

    async def start(self) -> None:
        await self._reselect(force=True)
        await self.refresh()

    async def close(self) -> None:
        await self.tests.shutdown()
        await self.client.aclose()

    async def refresh(self) -> None:
        snap = await self.client.snapshot()
        self.snapshot = merge_test_cache(snap, self.cache)
        self.last_refresh = self._clock()
        err = self.client.last_error if self.client.suspect else None
        if err and err != self._last_error:
            self.notify(f"Backend error: {err}", "warning")
        self._last_error = err

    async def _reselect(self, force: bool = False, now: Optional[float] = None) -> bool:
        before = (self.client.mode, self.client.alert)
        try:
            if force:
                await self.client.select_mode()
            else:
                await self.client.maybe_reselect(now)
            self._no_backend = None
        except NoBackendError as e:
            if self._no_backend != str(e):
                self.notify(str(e), "warning")
            self._no_backend = str(e)
        return (self.client.mode, self.client.alert) != before

    def apply_message(self, msg: TestMessage) -> None:
        if isinstance(msg, TestStarted):
            self.notify(f"Testing policies for {msg.group}…")
        elif isinstance(msg, TestCompleted):
            self.snapshot = apply_test_results(self.snapshot, self.cache, msg.group, msg.results)
            alive = sum(1 for p in msg.results if p.alive)
            self.notify(f"Latency test done for {msg.group}: {alive}/{len(msg.results)} alive", "success")
        elif isinstance(msg, TestFailed):
            if msg.suspect_mode is not None:
                self.client.mark_suspect("test_all_policies", msg.suspect_mode, msg.error)
            self.notify(f"Latency test failed for {msg.group}: {msg.error}", "error")

    def pump(self) -> bool:
        msgs = self.tests.drain()
        for m in msgs:
            self.apply_message(m)
        return bool(msgs)

    def note_input(self) -> None:
        self.last_input = self._clock()

    def refresh_due(self, now: float) -> bool:
        if self.last_refresh is None:
            return True
        idle_since = max(self.last_refresh, self.last_input or self.last_refresh)
        return (now - idle_since) >= self.refresh_interval

    async def step(self, now: Optional[float] = None, had_input: bool = False) -> bool:
        """One loop iteration; returns True when something visible changed."""
        now = self._clock() if now is None else now
        if had_input:
            self.last_input = now
        changed = self.pump()
        if self._step_lock.locked():
            return changed
        async with self._step_lock:
            if await self._reselect(now=now):
                changed = True
                await self.refresh()
            elif self.refresh_due(now):
                await self.refresh()
                changed = True
        return changed

    # user actions
    async def _guard(self, what: str, coro) -> bool:
        try:
            await coro
        except UnsupportedError as e:
            self.notify(str(e), "warning")
            return False
        except SurgeError as e:
            self.notify(f"{what} failed: {e}", "error")
            return False
        return True

    def run_latency_test(self, group: Optional[str]) -> bool:
        if not self.client.supports("test_all_policies"):
            self.notify(str(UnsupportedError("test_all_policies", self.client.mode)), "warning")
            return False
        group = group or "all policies"
        if not self.tests.start(self.client, group):
            self.notify("A latency test is already running", "warning")
            return False
        return True

    async def select_policy(self, group: str, policy: str) -> None:
        if await self._guard("Select policy", self.client.select_policy(group, policy)):
            self.notify(f"{group} -> {policy}", "success")
            await self.refresh()

    async def cycle_outbound_mode(self) -> None:
        current = self.snapshot.outbound_mode or OutboundMode.RULE
        nxt = current.next()
        if await self._guard("Switch outbound mode", self.client.set_outbound_mode(nxt)):
            self.notify(f"Outbound mode: {nxt.value}", "success")
            await self.refresh()

    async def toggle_feature(self, name: str) -> None:
        current = getattr(self.snapshot.features, name)
        if current is None:
            self.notify(f"{name} state is unknown in {self.client.mode.label} mode", "warning")
            return
        if await self._guard(f"Toggle {name}", self.client.set_feature(name, not current)):
            self.notify(f"{name.upper()} {'enabled' if not current else 'disabled'}", "success")
            await self.refresh()

    async def kill_connection(self, record: RequestRecord) -> None:
        if await self._guard("Kill connection", self.client.kill_connection(record.id)):
            self.notify(f"Killed connection {record.id} ({record.remote_host or record.url or '?'})", "success")
            await self.refresh()

    async def flush_dns(self) -> None:
        if await self._guard("Flush DNS", self.client.flush_dns()):
            self.notify("DNS cache flushed", "success")
            await self.refresh()

    async def test_group(self, group: str) -> None:
        try:
            available = await self.client.test_policy_group(group)
        except SurgeError as e:
            self.notify(f"Group test failed: {e}", "error")
            return
        self.notify(f"Group {group} re-tested ({len(available)} available)", "success")
        await self.refresh()

    async def start_surge(self) -> None:
        self.notify("Starting Surge…")
        try:
            ok = await self.client.start_surge()
        except NoBackendError as e:
            self.notify(str(e), "error")
            ok = True
        except SurgeError as e:
            self.notify(f"Start Surge failed: {e}", "error")
            return
        if not ok:
            self.notify("Surge did not start in time", "error")
        await self.refresh()

    async def reload_config(self) -> None:
        try:
            await self.client.reload_config()
        except NoBackendError as e:
            self.notify(str(e), "error")
        except SurgeError as e:
            self.notify(f"Reload failed: {e}", "error")
            return
        else:
            self.notify("Profile reloaded", "success")
        await self.refresh()


# Search filters (/ key)
@dataclass(frozen=True)
class _Clause:
    field: str
    op: str  # "=", "^=", "~", "in", "has"
    value: str
    neg: bool = False
    rx: Optional[re.Pattern] = None
    in_items: Optional[Tuple[str, ...]] = None


def _split_tokens(expr: str) -> List[str]:
    """
    Split by spaces but keep parentheses groups intact for `in (...)`.
    No quoting support.
    """
    s = (expr or "").strip()
    if not s:
        return []
    out: List[str] = []
    buf: List[str] = []
    depth = 0
    for ch in s:
        if ch == "(":
            depth += 1
            buf.append(ch)
        elif ch == ")":
            depth = max(0, depth - 1)
            buf.append(ch)
        elif ch.isspace() and depth == 0:
            if buf:
                out.append("".join(buf).strip())
                buf = []
        else:
            buf.append(ch)
    if buf:
        out.append("".join(buf).strip())
    return [t for t in out if t]


def _parse_in_list(text: str) -> Tuple[str, ...]:
    t = text.strip()
    if not (t.startswith("(") and t.endswith(")")):
        raise ValueError("in(...) expects parentheses, e.g. policy in (HK*,DIRECT)")
    items = [x.strip().lower() for x in t[1:-1].split(",")]
    return tuple(x for x in items if x)


def _known_field(name: str) -> str:
    f = name.lower()
    if f not in FILTER_FIELDS:
        raise ValueError(f"unknown field {f!r} (known: {', '.join(sorted(FILTER_FIELDS))})")
    return f


def _compile_clause(tok: str) -> _Clause:
    neg = False
    t = tok.strip()
    if t.startswith("-") and len(t) > 1:
        neg = True
        t = t[1:].strip()

    m = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)\s+in\s+(.+)$", t)
    if m:
        fname, rest = _known_field(m.group(1)), m.group(2).strip()
        return _Clause(field=fname, op="in", value=rest, neg=neg, in_items=_parse_in_list(rest))

    m = re.match(r"^([A-Za-z_][A-Za-z0-9_]*)(\^=|~|=)(.*)$", t)
    if m:
        fname, op, val = _known_field(m.group(1)), m.group(2), m.group(3).strip()
        if op == "~":
            try:
                rx = re.compile(val, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"bad regex {val!r}: {e}") from None
            return _Clause(field=fname, op=op, value=val, neg=neg, rx=rx)
        return _Clause(field=fname, op=op, value=val.lower(), neg=neg)

    # bare word: substring over the item's search fields
    return _Clause(field="__any__", op="has", value=t.lower(), neg=neg)


def filter_fields(item: Any) -> Dict[str, str]:
    """Lower-cased filterable fields of a list item."""
    if isinstance(item, RequestRecord):
        f = {
            "id": str(item.id),
            "app": item.app_name,
            "process": item.process_path or "",
            "url": item.url or "",
            "host": item.remote_host or "",
            "method": item.method or "",
            "policy": item.policy_name or "",
            "rule": item.rule or "",
            "status": item.status or "",
            "failed": "1" if item.failed else "0",
        }
    elif isinstance(item, DnsRecord):
        f = {
            "domain": item.domain,
            "address": " ".join(item.addresses),
            "server": item.server or "",
            "path": item.path or "",
        }
    elif isinstance(item, PolicyGroup):
        f = {"name": item.name, "selected": item.selected or ""}
    elif isinstance(item, PolicyMember):
        f = {"name": item.name, "type": item.type_description, "group": "1" if item.is_group else "0"}
    else:
        f = {}
    return {k: v.lower() for k, v in f.items()}


FILTER_FIELDS = frozenset({
    "id", "app", "process", "url", "host", "method", "policy", "rule", "status", "failed",
    "domain", "address", "server", "path",
    "name", "selected", "type", "group",
})

# fields a bare word is matched against, per item type
SEARCH_FIELDS: Dict[type, Tuple[str, ...]] = {
    RequestRecord: ("url", "host", "policy", "process"),
    DnsRecord: ("domain",),
    PolicyGroup: ("name", "selected"),
    PolicyMember: ("name", "type"),
}


def _match_value(cl: _Clause, actual: str) -> bool:
    if cl.op == "=":
        return actual == cl.value
    if cl.op == "^=":
        return actual.startswith(cl.value)
    if cl.op == "~":
        return cl.rx is not None and cl.rx.search(actual) is not None
    if cl.op == "in":
        items = cl.in_items or ()
        if not items:
            return True
        for it in items:
            if it.endswith("*"):
                if actual.startswith(it[:-1]):
                    return True
            elif actual == it:
                return True
        return False
    return False


@dataclass
class FilterSpec:
    """
    Parsed search expression for the list views.

    Supported patterns (case-insensitive):
      - word               substring of the view's main fields (URL, host, policy, process / domain / name)
      - key=value          exact field match
      - key^=prefix
      - key~regex
      - key in (a,b,HK*)   with trailing-* wildcards
      - negation: -word, -key=value, -key in (...)
    All clauses must match.
    """
    raw: str = ""
    clauses: List[_Clause] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return bool(self.clauses)

    def matches(self, item: Any) -> bool:
        fields = filter_fields(item)
        for cl in self.clauses:
            if cl.field == "__any__":
                keys = SEARCH_FIELDS.get(type(item), ())
                ok = any(cl.value in fields.get(k, "") for k in keys)
            else:
                ok = _match_value(cl, fields.get(cl.field, ""))
            if cl.neg:
                ok = not ok
            if not ok:
                return False
        return True

    def apply(self, items: Iterable[Any]) -> List[Any]:
        if not self.clauses:
            return list(items)
        return [x for x in items if self.matches(x)]


def parse_filter_expr(expr: str) -> FilterSpec:
    """Parse a search string into a FilterSpec; raises ValueError with a readable message."""
    e = (expr or "").strip()
    if not e:
        return FilterSpec()

    toks = _split_tokens(e)

    # ["policy", "in", "(a,b)"] -> ["policy in (a,b)"]
    merged: List[str] = []
    i = 0
    ident_rx = re.compile(r"^-?[A-Za-z_][A-Za-z0-9_]*$")
    while i < len(toks):
        if (
            i + 2 < len(toks)
            and ident_rx.match(toks[i])
            and toks[i + 1] == "in"
            and toks[i + 2].startswith("(")
        ):
            merged.append(f"{toks[i]} in {toks[i + 2]}")
            i += 3
            continue
        merged.append(toks[i])
        i += 1

    return FilterSpec(raw=e, clauses=[_compile_clause(t) for t in merged])


def group_by_app(records: Iterable[RequestRecord]) -> List[Tuple[str, List[RequestRecord]]]:
    """Records per application, busiest first, then by name."""
    apps: Dict[str, List[RequestRecord]] = {}
    for r in records:
        apps.setdefault(r.app_name, []).append(r)
    return sorted(apps.items(), key=lambda kv: (-len(kv[1]), kv[0]))


# Formatting helpers
def fmt_ts(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return time.strftime("%H:%M:%S", time.localtime(ts))


def fmt_bytes(n: int) -> str:
    f = float(n or 0)
    for unit in ("B", "K", "M", "G"):
        if f < 1024 or unit == "G":
            return f"{f:.0f}{unit}" if unit == "B" else f"{f:.1f}{unit}"
        f /= 1024
    return f"{f:.1f}G"


def latency_attr(ms: Optional[int]) -> str:
    if ms is None:
        return "bg"
    if ms < 100:
        return "lat_good"
    if ms < 300:
        return "lat_warn"
    return "lat_bad"


def fmt_latency(p: Optional[Policy]):
    """urwid markup for a policy's cached measurement."""
    if p is None or p.availability is Availability.UNKNOWN:
        return ("muted", "-")
    if not p.alive:
        return ("lat_bad", "failed")
    if p.latency_ms is None:
        return ("lat_good", "ok")
    return (latency_attr(p.latency_ms), f"{p.latency_ms}ms")


def fmt_ago(ts: Optional[float], now: Optional[float] = None) -> str:
    if not ts:
        return "-"
    secs = max(0, int((time.time() if now is None else now) - ts))
    if secs < 60:
        return f"{secs}s ago"
    if secs < 3600:
        return f"{secs // 60}m ago"
    return f"{secs // 3600}h ago"


DETAIL_NOTES_MAX = 10


def request_detail_markup(r: Optional[RequestRecord], now: Optional[float] = None) -> list:
    """urwid markup for the detail pane of one request / connection."""
    if r is None:
        return [("muted", "No request selected.")]
    if r.completed:
        state = ("lat_good", "Completed")
    elif r.failed:
        state = ("row_error", "Failed")
    else:
        state = ("lat_warn", "In progress")
    out: list = [state, f"   #{r.id}\n\n"]
    if r.url:
        out += [("bold", "URL\n"), ("lat_good", r.url), "\n\n"]
    out += [("bold", "Request: "), ("lat_warn", f"{r.method or 'GET'} -> {r.status or '-'}"), "\n"]
    if r.remote_host:
        out += [("bold", "Host:    "), r.remote_host, "\n"]
    out.append("\n")
    if r.rule:
        out += [("bold", "Rule:    "), r.rule, "\n"]
    if r.policy_name:
        out += [("bold", "Policy:  "), ("lat_warn", r.policy_name), "\n"]
    out += [
        "\n", ("bold", "Traffic\n"),
        f"  Upload    {fmt_bytes(r.uploaded_bytes)}\n",
        f"  Download  {fmt_bytes(r.downloaded_bytes)}\n",
    ]
    if r.process_path:
        out += ["\n", ("bold", "Process\n"), ("muted", r.process_path), "\n"]
    if r.started_at:
        out += ["\n", ("bold", "Started: "), f"{fmt_ts(r.started_at)} ({fmt_ago(r.started_at, now)})\n"]
    if r.notes:
        out += ["\n", ("bold", "Notes\n")]
        for note in r.notes[:DETAIL_NOTES_MAX]:
            out.append(f"  {note}\n")
        if len(r.notes) > DETAIL_NOTES_MAX:
            out.append(("muted", f"  ... {len(r.notes) - DETAIL_NOTES_MAX} more\n"))
    return out


def status_line(dash: Dashboard) -> str:
    snap = dash.snapshot
    parts = [f"[{snap.mode.label}]"]
    if snap.outbound_mode is not None:
        parts.append(f"outbound={snap.outbound_mode.value}")
    if dash.tests.in_flight:
        parts.append("testing…")
    if snap.alert is not None:
        hint = {"start": " (S to start)", "reload": " (R to reload)"}.get(snap.alert.action or "", "")
        parts.append(snap.alert.message() + hint)
    if dash.notifications:
        parts.append(dash.notifications[-1].message)
    return " | ".join(parts)


# TUI widgets
class SelectableRow(urwid.WidgetWrap):
    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        return key


class SnapshotList(urwid.WidgetWrap):
    """
    Base for the list views: fixed header + ListBox of SelectableRow.

    Rows carry the domain object in `_item`; rebuilding keeps the focus index.
    filter_spec narrows the rows (/ key).
    """

    columns: List[Tuple[int, str]] = []
    note_width = 24

    def __init__(self):
        self.filter_spec = FilterSpec()
        self.walker = urwid.SimpleFocusListWalker([])
        self.listbox = urwid.ListBox(self.walker)
        self._hdr_note = urwid.Text("", align="right", wrap="clip")
        self.frame = urwid.Frame(self.listbox, header=urwid.AttrMap(self._build_header(), "header"))
        super().__init__(self.frame)

    def _build_header(self) -> urwid.Widget:
        cols: list = [("fixed", w, urwid.Text(title)) if w else urwid.Text(title) for w, title in self.columns]
        if self.note_width:
            cols.append(("fixed", self.note_width, self._hdr_note))
        return urwid.Columns(cols, dividechars=1)

    def _row(self, cells: Sequence[Any], item: Any, attr: str = "bg") -> urwid.Widget:
        cols = []
        for (w, _), cell in zip(self.columns, cells):
            t = urwid.Text(cell, wrap="clip")
            cols.append(("fixed", w, t) if w else t)
        sel = SelectableRow(urwid.Columns(cols, dividechars=1))
        row = urwid.AttrMap(sel, attr, focus_map="focus")
        row._item = item
        return row

    def _set_rows(self, rows: List[urwid.Widget], empty: str = "(empty)") -> None:
        idx = self.focus_index()
        if not rows:
            rows = [urwid.Text(("muted", f"  {empty}"))]
        self.walker[:] = rows
        if idx is not None and self.walker:
            self.walker.set_focus(min(idx, len(self.walker) - 1))

    def focus_index(self) -> Optional[int]:
        if not self.walker:
            return None
        return self.walker.focus

    def focused_item(self) -> Any:
        if not self.walker:
            return None
        w = self.walker[self.walker.focus]
        return getattr(w, "_item", None)

    def set_note(self, text: str) -> None:
        self._hdr_note.set_text(text)

    def current_filter(self) -> FilterSpec:
        return self.filter_spec

    def set_filter(self, spec: FilterSpec) -> None:
        self.filter_spec = spec

    def count_note(self, shown: int, total: int, unit: str) -> str:
        if self.current_filter().active:
            return f"{shown}/{total} {unit} /{_one_line(self.current_filter().raw, 10)}"
        return f"{total} {unit}"


class OverviewView(urwid.WidgetWrap):
    def __init__(self):
        self.text = urwid.Text("")
        super().__init__(urwid.Filler(urwid.Padding(self.text, left=2, right=2), valign="top", top=1))

    def update(self, dash: Dashboard) -> None:
        s = dash.snapshot

        def onoff(v: Optional[bool]) -> str:
            return "?" if v is None else ("on" if v else "off")

        def count(x) -> str:
            return "n/a" if x is None else str(len(x))

        lines: list = [
            ("header", " Surge status "), "\n\n",
            f"  Backend        {s.mode.label}\n",
            f"  Surge running  {'yes' if s.running else 'no'}\n",
            f"  HTTP API       {'available' if s.http_api_available else 'unavailable'}\n",
            f"  Outbound mode  {s.outbound_mode.value if s.outbound_mode else '?'}   (M to cycle)\n",
            f"  MITM           {onoff(s.features.mitm)}   (I to toggle)\n",
            f"  Capture        {onoff(s.features.capture)}   (C to toggle)\n\n",
            f"  Policies {count(s.policies)}   Groups {count(s.groups)}   "
            f"Requests {count(s.recent_requests)}   Connections {count(s.active_connections)}   "
            f"DNS {count(s.dns_records)}\n",
            f"  Tested policies {len(dash.cache)}{'   (test running…)' if dash.tests.in_flight else ''}\n",
            f"  Last refresh   {fmt_ts(s.taken_at)}\n",
        ]
        if s.alert is not None:
            hint = {"start": "Press S to start Surge", "reload": "Press R to reload the profile"}.get(s.alert.action or "", "")
            lines += ["\n", ("alert", f" {s.alert.message()} "), "\n"]
            if hint:
                lines.append(f"  {hint}\n")
        self.text.set_text(lines)


class PolicyGroupsList(SnapshotList):
    """
    Policies view.

    Top level lists groups (selection, resolved leaf, cached latency);
    Enter opens a group and lists its members, Esc goes back.
    """

    columns = [(24, "Group"), (22, "Selected"), (0, "Resolves to"), (9, "Latency"), (7, "Alive")]
    member_columns = [(2, ""), (28, "Member"), (18, "Type"), (9, "Latency"), (0, "Status")]

    def __init__(self):
        self.open_group: Optional[str] = None
        # search inside an open group is separate from the group-list search
        self.member_filter = FilterSpec()
        super().__init__()

    def current_filter(self) -> FilterSpec:
        return self.member_filter if self.open_group is not None else self.filter_spec

    def set_filter(self, spec: FilterSpec) -> None:
        if self.open_group is not None:
            self.member_filter = spec
        else:
            self.filter_spec = spec

    def _set_columns(self, cols) -> None:
        self.columns = cols
        self.frame.header = urwid.AttrMap(self._build_header(), "header")

    def enter_group(self, name: str) -> None:
        self.open_group = name
        self.member_filter = FilterSpec()
        self._set_columns(self.member_columns)
        self.walker[:] = []

    def leave_group(self) -> Optional[str]:
        name, self.open_group = self.open_group, None
        self.member_filter = FilterSpec()
        self._set_columns(PolicyGroupsList.columns)
        self.walker[:] = []
        return name

    def update(self, dash: Dashboard) -> None:
        s = dash.snapshot
        if s.groups is None:
            self.set_note(f"n/a in {s.mode.label} mode")
            self._set_rows([], empty="policy groups are not available in this mode")
            return
        if self.open_group is not None:
            self._update_members(s)
        else:
            self._update_groups(s)

    def _update_groups(self, s: Snapshot) -> None:
        rows = []
        shown = self.filter_spec.apply(s.groups or ())
        for g in shown:
            res = resolve_policy(s, g.name)
            if res.failure is not None:
                resolved: Any = ("row_error", res.failure.value)
                lat: Any = ("muted", "-")
                attr = "row_warn"
            else:
                resolved = " -> ".join(res.chain[1:]) or (res.leaf or "")
                lat = fmt_latency(res.policy)
                attr = "bg"
            alive = "-" if g.available is None else f"{len(g.available)}/{len(g.members)}"
            rows.append(self._row([g.name, g.selected or "-", resolved, lat, alive], g, attr))
        self.set_note(self.count_note(len(shown), len(s.groups or ()), "groups"))
        self._set_rows(rows, empty="no matching groups" if self.filter_spec.active else "no policy groups")

    def _update_members(self, s: Snapshot) -> None:
        g = s.group(self.open_group or "")
        if g is None:
            self.set_note("group vanished")
            self._set_rows([], empty=f"group {self.open_group!r} no longer exists")
            return
        rows = []
        members = self.member_filter.apply(g.members)
        for m in members:
            if m.is_group:
                res = resolve_policy(s, m.name)
                lat = fmt_latency(res.policy) if res.failure is None else ("row_error", res.failure.value)
            else:
                lat = fmt_latency(s.policy(m.name))
            if not m.enabled:
                status = "disabled"
            elif g.available is not None:
                status = "alive" if m.name in g.available else "dead"
            else:
                status = "group" if m.is_group else ""
            marker = "●" if m.name == g.selected else " "
            rows.append(self._row([marker, m.name, m.type_description or ("group" if m.is_group else ""), lat, status], m))
        self.set_note(f"{_one_line(g.name, 8)}: " + self.count_note(len(members), len(g.members), "members"))
        self._set_rows(rows, empty="no matching members" if self.member_filter.active else "group has no members")


class RequestsList(SnapshotList):
    columns = [(8, "Time"), (16, "App"), (7, "Method"), (18, "Policy"), (8, "Up"), (8, "Down"), (10, "Status"), (0, "URL / Host")]

    def __init__(self, field_name: str):
        self.field_name = field_name  # recent_requests | active_connections
        super().__init__()

    def update(self, dash: Dashboard) -> None:
        s = dash.snapshot
        records = getattr(s, self.field_name)
        if records is None:
            self.show_unavailable(s.mode)
            return
        self.show(self.filter_spec.apply(records), len(records))

    def show_unavailable(self, mode: BackendMode) -> None:
        self.set_note(f"n/a in {mode.label} mode")
        self._set_rows([], empty="not available in this mode")

    def show(self, records: Sequence[RequestRecord], total: int, label: Optional[str] = None) -> None:
        rows = []
        for r in records:
            attr = "row_error" if r.failed else ("bg" if r.completed or self.field_name == "active_connections" else "row_warn")
            rows.append(self._row([
                fmt_ts(r.started_at),
                r.app_name,
                r.method or "-",
                r.policy_name or "-",
                fmt_bytes(r.uploaded_bytes),
                fmt_bytes(r.downloaded_bytes),
                r.status or ("failed" if r.failed else "-"),
                r.url or r.remote_host or "-",
            ], r, attr))
        if label is not None:
            self.set_note(f"{_one_line(label, 14)}: {len(records)} rows")
        else:
            self.set_note(self.count_note(len(records), total, "rows"))
        self._set_rows(rows, empty="no matches" if self.filter_spec.active else "nothing yet")


class AppList(SnapshotList):
    columns = [(0, "App"), (5, "Reqs")]
    note_width = 0

    def show(self, groups: Sequence[Tuple[str, Sequence[RequestRecord]]]) -> None:
        self._set_rows([self._row([name, str(len(recs))], name) for name, recs in groups], empty="no apps")


class RequestDetail(urwid.WidgetWrap):
    def __init__(self):
        self.text = urwid.Text("")
        body = urwid.ListBox(urwid.SimpleFocusListWalker([self.text]))
        super().__init__(urwid.LineBox(body, title="Detail"))

    def show(self, rec: Optional[RequestRecord]) -> None:
        self.text.set_text(request_detail_markup(rec))


class RequestsView(urwid.WidgetWrap):
    """
    Requests / Connections view: the table plus a detail pane for the focused row.

    Grouped mode (G) adds an application column on the left; the table then
    lists only the focused application's records. The search filter applies
    before grouping. The detail pane follows the table focus through the
    walker's "modified" signal.
    """

    def __init__(self, field_name: str):
        self.field_name = field_name
        self.grouped = False
        self.table = RequestsList(field_name)
        self.apps = AppList()
        self.detail = RequestDetail()
        self._by_app: Dict[str, List[RequestRecord]] = {}
        self._total = 0
        urwid.connect_signal(self.table.walker, "modified", self._show_detail)
        urwid.connect_signal(self.apps.walker, "modified", self._show_app)
        super().__init__(self._layout())

    def _layout(self) -> urwid.Widget:
        cols: list = [("weight", 3, self.table), ("weight", 2, self.detail)]
        if self.grouped:
            cols.insert(0, ("weight", 1, self.apps))
        return urwid.Columns(cols, dividechars=1)

    def toggle_grouped(self) -> bool:
        self.grouped = not self.grouped
        self._w = self._layout()
        return self.grouped

    def current_filter(self) -> FilterSpec:
        return self.table.current_filter()

    def set_filter(self, spec: FilterSpec) -> None:
        self.table.set_filter(spec)

    def focused_item(self) -> Optional[RequestRecord]:
        item = self.table.focused_item()
        return item if isinstance(item, RequestRecord) else None

    def update(self, dash: Dashboard) -> None:
        records = getattr(dash.snapshot, self.field_name)
        if records is None:
            self._by_app = {}
            self.apps.show([])
            self.table.show_unavailable(dash.snapshot.mode)
        else:
            shown = self.table.filter_spec.apply(records)
            self._total = len(records)
            if self.grouped:
                groups = group_by_app(shown)
                self._by_app = dict(groups)
                self.apps.show(groups)
                self._show_app()
            else:
                self.table.show(shown, self._total)
        self._show_detail()

    def _show_app(self) -> None:
        if not self.grouped:
            return
        app = self.apps.focused_item()
        if app is None:
            self.table.show([], self._total)
        else:
            self.table.show(self._by_app.get(app, []), self._total, label=app)

    def _show_detail(self) -> None:
        self.detail.show(self.focused_item())


class DnsList(SnapshotList):
    columns = [(32, "Domain"), (0, "Addresses"), (20, "Server"), (6, "TTL"), (8, "Cost")]

    def update(self, dash: Dashboard) -> None:
        s = dash.snapshot
        if s.dns_records is None:
            self.set_note(f"n/a in {s.mode.label} mode")
            self._set_rows([], empty="DNS cache is not available in this mode")
            return
        now = time.time()
        shown = self.filter_spec.apply(s.dns_records)
        rows = []
        for d in shown:
            ttl = d.ttl_s(now)
            cost = "-" if d.time_cost is None else f"{d.time_cost * 1000:.0f}ms"
            rows.append(self._row([
                d.domain, ", ".join(d.addresses) or "-", d.server or "-",
                "-" if ttl is None else str(ttl), cost,
            ], d))
        self.set_note(self.count_note(len(shown), len(s.dns_records), "entries"))
        self._set_rows(rows, empty="no matches" if self.filter_spec.active else "DNS cache is empty")


class ConfirmDialog(urwid.WidgetWrap):
    """
    Yes/no modal.

    Handles y/n/Enter/Esc in its own keypress() so global hotkeys stay intact.
    """
    def __init__(self, title: str, question: str, on_yes, on_no):
        self._on_yes = on_yes
        self._on_no = on_no
        pile = urwid.Pile([
            urwid.Text(question),
            urwid.Divider(),
            urwid.Text("Y/Enter = yes   N/Esc = no"),
        ])
        box = urwid.LineBox(urwid.Padding(pile, left=1, right=1), title=title)
        super().__init__(urwid.AttrMap(box, "popup"))

    def selectable(self) -> bool:
        return True

    def keypress(self, size, key):
        if key in ("y", "Y", "enter"):
            try:
                self._on_yes()
            except Exception:
                LOG.debug("ConfirmDialog yes callback failed", exc_info=True)
            return None
        if key in ("n", "N", "esc"):
            try:
                self._on_no()
            except Exception:
                LOG.debug("ConfirmDialog no callback failed", exc_info=True)
            return None
        return None


class FilterDialog(urwid.WidgetWrap):
    """
    Modal search input.

    Handles Enter/Esc in its own keypress() so MainLoop.unhandled_input stays untouched
    and digits or letters typed here never reach the global hotkeys.
    """
    def __init__(self, title: str, initial: str, on_apply, on_cancel):
        self._on_apply = on_apply
        self._on_cancel = on_cancel

        self.edit = urwid.Edit(edit_text=initial or "")
        self.edit.set_edit_pos(len(self.edit.edit_text))
        line = urwid.Columns([
            ("fixed", 8, urwid.Text("Search:")),
            urwid.AttrMap(self.edit, "popup_details"),
        ], dividechars=1)
        hint = urwid.Text(
            "Enter=apply  Esc=cancel  Empty=clear\n"
            "word  key=value  key^=prefix  key~regex  key in (a,b*)  -negate"
        )
        pile = urwid.Pile([line, urwid.Divider(), hint])
        box = urwid.LineBox(urwid.Padding(pile, left=1, right=1), title=title)
        super().__init__(urwid.AttrMap(box, "popup"))

    def keypress(self, size, key):
        if key == "enter":
            try:
                self._on_apply(self.edit.edit_text)
            except Exception:
                LOG.debug("FilterDialog apply callback failed", exc_info=True)
            return None
        if key == "esc":
            try:
                self._on_cancel()
            except Exception:
                LOG.debug("FilterDialog cancel callback failed", exc_info=True)
            return None
        return super().keypress(size, key)


VIEWS = [
    ("overview", "1 Overview"),
    ("policies", "2 Policies"),
    ("requests", "3 Requests"),
    ("connections", "4 Connections"),
    ("dns", "5 DNS"),
]

SEARCHABLE_VIEWS = ("policies", "requests", "connections", "dns")


class TuiApp:
    """
    Main TUI controller.

    Views (1-5, Tab): Overview, Policies, Requests, Connections, DNS.

    Manages:
      - global hotkeys (q, r, s, t, m, n, h, ...)
      - overlays: help, notifications, DevTools log, kill confirmation, search dialog
      - per-view search filters (/), cleared with Esc
      - the pump alarm: Dashboard.step() every PUMP_INTERVAL and after each key

    Important:
      - every backend call runs as a task on the asyncio loop; on_key never awaits.
      - overlays must not break MainLoop.unhandled_input; hotkeys should always keep working.
    """
    palette = [
        ("bg", "light gray", "dark blue"),
        ("row_error", "light red", "dark blue"),
        ("row_warn", "yellow", "dark blue"),
        ("header", "black", "light gray"),
        ("focus", "black", "light cyan"),
        ("footer", "black", "light gray"),
        ("tab", "light gray", "dark blue"),
        ("tab_active", "black", "light cyan"),
        ("alert", "white", "dark red"),
        ("muted", "dark gray", "dark blue"),
        ("lat_good", "light cyan", "dark blue"),
        ("lat_warn", "yellow", "dark blue"),
        ("lat_bad", "light red", "dark blue"),
        ("popup", "light gray", "dark blue"),
        ("popup_title", "black", "light gray"),
        ("popup_details", "black", "light gray"),
        ("bold", "white,bold", "dark blue"),
    ]

    def __init__(self, dash: Dashboard, loop: asyncio.AbstractEventLoop):
        self.dash = dash
        self.aio_loop = loop

        self.overview = OverviewView()
        self.policies = PolicyGroupsList()
        self.requests = RequestsView("recent_requests")
        self.connections = RequestsView("active_connections")
        self.dns = DnsList()
        self.views: Dict[str, urwid.Widget] = {
            "overview": self.overview,
            "policies": self.policies,
            "requests": self.requests,
            "connections": self.connections,
            "dns": self.dns,
        }
        self.view_mode = "overview"

        self.tabs = urwid.Text("")
        self.hotkeys = urwid.Text("", align="left")
        self.status = urwid.Text("", align="left")
        self.footer_w = urwid.Pile([
            urwid.AttrMap(self.hotkeys, "footer"),
            urwid.AttrMap(self.status, "footer"),
        ])

        self.top = urwid.Frame(
            urwid.AttrMap(self.overview, "bg"),
            header=urwid.AttrMap(self.tabs, "tab"),
            footer=self.footer_w,
        )
        self._update_chrome()

        self.loop = urwid.MainLoop(
            self.top,
            palette=self.palette,
            event_loop=urwid.AsyncioEventLoop(loop=self.aio_loop),
            unhandled_input=self.on_key,
        )

        self._overlay: Optional[urwid.Overlay] = None
        self._busy: Optional[asyncio.Task] = None
        self._pump_task: Optional[asyncio.Task] = None

        self.devlog = LogBuffer()
        LOG.addHandler(self.devlog)

    # chrome
    def set_status(self, msg: str) -> None:
        self.status.set_text(msg)

    def _hotkeys_hint_text(self) -> str:
        common = "Q quit | 1-5/Tab views | R refresh/reload | N notifications | H help"
        if self.view_mode == "policies":
            if self.policies.open_group:
                return f"Enter select | T test | / search | Esc back | {common}"
            return f"Enter open group | T test all | G test group | / search | M outbound | {common}"
        if self.view_mode == "requests":
            return f"/ search | G group by app | {common}"
        if self.view_mode == "connections":
            return f"K kill connection | / search | G group by app | {common}"
        if self.view_mode == "dns":
            return f"F flush DNS | / search | {common}"
        if self.view_mode == "overview":
            return f"M outbound | I MITM | C capture | S start Surge | ` DevTools | {common}"
        return common

    def _update_chrome(self) -> None:
        markup: list = []
        for key, label in VIEWS:
            markup.append(("tab_active" if key == self.view_mode else "tab", f" {label} "))
            markup.append(" ")
        self.tabs.set_text(markup)
        self.hotkeys.set_text(self._hotkeys_hint_text())
        self.set_status(status_line(self.dash))

    def switch_view(self, name: str) -> None:
        self.hide_overlay()
        self.view_mode = name
        self.top.body = urwid.AttrMap(self.views[name], "bg")
        self.render()

    def next_view(self) -> None:
        names = [k for k, _ in VIEWS]
        self.switch_view(names[(names.index(self.view_mode) + 1) % len(names)])

    def render(self) -> None:
        try:
            view = self.views[self.view_mode]
            view.update(self.dash)
            self._update_chrome()
        except Exception:
            log_throttled(logging.DEBUG, "tui_render_failed", "TUI render failed", interval_s=5.0, exc_info=True)

    # background actions
    def _spawn(self, coro, label: str) -> None:
        if self._busy is not None and not self._busy.done():
            coro.close()
            self.set_status(f"Busy, {label} ignored")
            return

        async def _run():
            try:
                await coro
            except Exception:
                LOG.error("%s failed", label, exc_info=True)
            self.render()

        self._busy = self.aio_loop.create_task(_run())

    # keys
    def on_key(self, key):
        if key in ("q", "Q"):
            raise urwid.ExitMainLoop()

        if isinstance(key, tuple):  # mouse events
            return

        handled = self._dispatch_key(key)
        self.aio_loop.create_task(self._after_input())
        return handled

    def _dispatch_key(self, key) -> bool:
        if self._overlay is not None:
            if key in ("esc", "enter", "h", "H", "?", "n", "N", "`", "~"):
                self.hide_overlay()
            return True

        if key in ("1", "2", "3", "4", "5"):
            self.switch_view(VIEWS[int(key) - 1][0])
            return True
        if key == "tab":
            self.next_view()
            return True
        if key in ("h", "H", "?", "f1"):
            self.show_help()
            return True
        if key in ("n", "N"):
            self.show_notifications()
            return True
        if key in ("`", "~"):
            self.show_devtools()
            return True
        if key == "/" and self.view_mode in SEARCHABLE_VIEWS:
            self.show_filter_dialog()
            return True
        if key == "esc" and self.clear_filter():
            return True

        alert = self.dash.snapshot.alert
        if key in ("r", "R"):
            if alert is not None and alert.action == "reload":
                self.set_status("Reloading profile…")
                self._spawn(self.dash.reload_config(), "reload")
            else:
                self._spawn(self.dash.refresh(), "refresh")
            return True
        if key in ("s", "S"):
            if alert is not None and alert.action == "start":
                self._spawn(self.dash.start_surge(), "start Surge")
            else:
                self.set_status("Surge is already running")
            return True
        if key in ("m", "M"):
            self._spawn(self.dash.cycle_outbound_mode(), "outbound mode")
            return True

        if self.view_mode == "overview" and key in ("i", "I", "c", "C"):
            name = "mitm" if key in ("i", "I") else "capture"
            self._spawn(self.dash.toggle_feature(name), f"toggle {name}")
            return True

        if self.view_mode == "policies":
            return self._policies_key(key)
        if self.view_mode in ("requests", "connections") and key in ("g", "G"):
            self.toggle_grouped()
            return True
        if self.view_mode == "connections" and key in ("k", "K"):
            self.confirm_kill()
            return True
        if self.view_mode == "dns" and key in ("f", "F"):
            self._spawn(self.dash.flush_dns(), "flush DNS")
            return True
        return False

    def _policies_key(self, key) -> bool:
        item = self.policies.focused_item()
        if key in ("t", "T"):
            group = self.policies.open_group or (item.name if isinstance(item, PolicyGroup) else None)
            self.dash.run_latency_test(group)
            self.render()
            return True
        if key in ("g", "G") and isinstance(item, PolicyGroup):
            self._spawn(self.dash.test_group(item.name), "group test")
            return True
        if key == "enter":
            if self.policies.open_group is None and isinstance(item, PolicyGroup):
                self.policies.enter_group(item.name)
                self.render()
            elif isinstance(item, PolicyMember) and self.policies.open_group:
                self._spawn(self.dash.select_policy(self.policies.open_group, item.name), "select policy")
            return True
        if key in ("esc", "backspace") and self.policies.open_group is not None:
            self.policies.leave_group()
            self.render()
            return True
        return False

    async def _after_input(self) -> None:
        try:
            if await self.dash.step(had_input=True):
                self.render()
        except Exception:
            log_throttled(logging.DEBUG, "tui_input_step_failed", "step after input failed", interval_s=5.0, exc_info=True)

    # search / grouping
    def clear_filter(self) -> bool:
        view = self.views[self.view_mode]
        if self.view_mode not in SEARCHABLE_VIEWS or not view.current_filter().active:
            return False
        view.set_filter(FilterSpec())
        self.render()
        self.set_status("Search cleared.")
        return True

    def toggle_grouped(self) -> None:
        view = self.views[self.view_mode]
        grouped = view.toggle_grouped()
        self.render()
        self.set_status("Grouped by application" if grouped else "Flat list")

    # overlays
    def confirm_kill(self) -> None:
        rec = self.connections.focused_item()
        if not isinstance(rec, RequestRecord):
            self.set_status("No focused connection.")
            return

        def _yes():
            self.hide_overlay()
            self._spawn(self.dash.kill_connection(rec), "kill connection")

        def _no():
            self.hide_overlay()
            self.set_status("Kill cancelled.")

        question = f"Kill connection {rec.id}?\n{rec.app_name} -> {rec.url or rec.remote_host or '?'}"
        dlg = ConfirmDialog("Kill connection", question, _yes, _no)
        self._overlay = urwid.Overlay(
            dlg, self.top,
            align="center", width=("relative", 60),
            valign="middle", height=8,
            min_width=40, min_height=8,
        )
        self.loop.widget = self._overlay

    def show_filter_dialog(self) -> None:
        view = self.views[self.view_mode]
        inside = self.view_mode == "policies" and self.policies.open_group is not None
        title = f"Search in {self.policies.open_group}" if inside else f"Search {self.view_mode}"

        def _apply(text: str):
            text = (text or "").strip()
            try:
                spec = parse_filter_expr(text)
            except ValueError as e:
                self.set_status(f"Bad search: {e}")
                # keep dialog open
                return
            view.set_filter(spec)
            self.hide_overlay()
            self.render()
            self.set_status(f"Search: {text}" if text else "Search cleared.")

        def _cancel():
            self.hide_overlay()
            self.set_status("Search cancelled.")

        dlg = FilterDialog(title, view.current_filter().raw, _apply, _cancel)
        self._overlay = urwid.Overlay(
            dlg, self.top,
            align="center", width=("relative", 70),
            valign="middle", height=8,
            min_width=40, min_height=8,
        )
        self.loop.widget = self._overlay

    def show_devtools(self) -> None:
        attrs = {"ERROR": "row_error", "CRITICAL": "row_error", "WARNING": "row_warn", "DEBUG": "muted"}
        items = [
            urwid.Text([("muted", fmt_ts(ts) + "  "), (attrs.get(level, "popup"), f"{level:<7} {msg}")])
            for ts, level, msg in self.devlog.records
        ] or [urwid.Text("No log records yet.")]
        walker = urwid.SimpleFocusListWalker(items)
        walker.set_focus(len(walker) - 1)
        self._overlay_message(f"DevTools: last {len(self.devlog.records)} log records", urwid.ListBox(walker))

    def show_help(self) -> None:
        txt = urwid.Text(
            "surge-tui\n\n"
            "Views:\n"
            "  1..5 / Tab  Overview, Policies, Requests, Connections, DNS\n\n"
            "Global:\n"
            "  Q           quit\n"
            "  R           reload profile (when the alert offers it), else refresh now\n"
            "  S           start Surge (when it is not running)\n"
            "  M           cycle outbound mode: direct -> proxy -> rule\n"
            "  N           notification history\n"
            "  `           DevTools: recent log records\n"
            "  H / ?       help\n\n"
            "Search (Policies, Requests, Connections, DNS):\n"
            "  /           search; inside an open group it searches the members\n"
            "  Esc         clear the search\n"
            "  syntax      word  key=value  key^=prefix  key~regex  key in (a,b*)  -negate\n"
            "  fields      app process url host method policy rule status failed id\n"
            "              domain address server path / name selected type group\n\n"
            "Overview:\n"
            "  I / C       toggle MITM / capture\n\n"
            "Policies:\n"
            "  Enter       open group / select the focused member\n"
            "  Esc         back to the group list\n"
            "  T           latency test for all policies (runs in background)\n"
            "  G           re-test the focused group (HTTP API)\n\n"
            "Requests / Connections:\n"
            "  G           group by application (app | rows | detail)\n"
            "  Left/Right  move between the columns\n"
            "  K           kill the focused connection (Connections, asks first)\n\n"
            "DNS:\n"
            "  F           flush the DNS cache\n\n"
            "Latency: cyan < 100ms, yellow < 300ms, red otherwise.\n"
            "Backends: HTTP API -> surge-cli -> process probe; the best one is\n"
            "re-checked every health interval.\n"
        )
        self._overlay_message("Help", urwid.ListBox(urwid.SimpleFocusListWalker([txt])))

    def show_notifications(self) -> None:
        attrs = {"error": "row_error", "warning": "row_warn", "success": "lat_good"}
        items = [
            urwid.Text([("muted", fmt_ts(n.created_at) + "  "), (attrs.get(n.level, "popup"), n.message)])
            for n in reversed(self.dash.notifications)
        ] or [urwid.Text("No notifications yet.")]
        self._overlay_message("Notifications", urwid.ListBox(urwid.SimpleFocusListWalker(items)))

    def hide_overlay(self) -> None:
        if self._overlay is not None:
            self.loop.widget = self.top
            self._overlay = None
        if getattr(self.loop, "unhandled_input", None) is not self.on_key:
            self.loop.unhandled_input = self.on_key

    def _overlay_message(self, title: str, body: urwid.Widget) -> None:
        header = urwid.AttrMap(urwid.Text(f" {title} "), "popup_title")
        frame = urwid.Frame(body=body, header=header)
        box = urwid.LineBox(frame)
        overlay = urwid.Overlay(
            urwid.AttrMap(box, "popup"),
            self.top,
            align="center", width=("relative", 80),
            valign="middle", height=("relative", 80),
        )
        self.loop.widget = overlay
        self._overlay = overlay
        self.loop.unhandled_input = self.on_key

    # loop
    async def _tick(self) -> None:
        try:
            if await self.dash.step():
                self.render()
        except Exception:
            log_throttled(
                logging.DEBUG,
                key="tui_tick_failed",
                msg="TUI tick failed",
                interval_s=5.0,
                exc_info=True,
            )
        self.loop.set_alarm_in(PUMP_INTERVAL, lambda loop, data: self._schedule_tick())

    def _schedule_tick(self) -> None:
        self._pump_task = self.aio_loop.create_task(self._tick())

    def run(self) -> None:
        self.render()
        self._schedule_tick()
        try:
            self.loop.run()
        finally:
            LOG.removeHandler(self.devlog)
            try:
                self.aio_loop.run_until_complete(self.dash.close())
            except Exception:
                LOG.error("Dashboard close failed during TUI shutdown", exc_info=True)

            pending = [t for t in asyncio.all_tasks(loop=self.aio_loop) if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                self.aio_loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


# CLI / Modes
async def run_headless(cfg: AppConfig, once: bool = False) -> int:
    """Poll and log status changes until SIGINT/SIGTERM (or once)."""
    dash = Dashboard.from_config(cfg)

    stop_ev = asyncio.Event()

    def _sig(*_):
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, _sig)
        except NotImplementedError:
            pass

    last_line = None
    try:
        await dash.start()
        last_line = status_line(dash)
        LOG.info("%s", last_line)
        print(last_line, flush=True)
        while True:
            changed = await dash.step()
            line = status_line(dash)
            if changed and line != last_line:
                LOG.info("%s", line)
                print(line, flush=True)
                last_line = line
            if once or stop_ev.is_set():
                break
            try:
                await asyncio.wait_for(stop_ev.wait(), timeout=PUMP_INTERVAL)
            except asyncio.TimeoutError:
                pass
    finally:
        await dash.close()
    return 0


def run_tui_sync(cfg: AppConfig, log_path: Optional[str] = None) -> None:
    import traceback

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # 1) Redirect stderr to a file while TUI is running (prevents screen corruption)
    try:
        log_dir = os.path.dirname(os.path.abspath(log_path)) if log_path else os.getcwd()
        os.makedirs(log_dir, exist_ok=True)
    except OSError:
        log_dir = os.getcwd()
    err_path = os.path.join(log_dir, "tui-stderr.log")
    old_stderr = sys.stderr
    sys.stderr = open(err_path, "a", encoding="utf-8")

    # 2) asyncio exception handler -> file (also prevents stderr spam)
    def _loop_exc_handler(_loop, context):
        try:
            msg = context.get("message", "asyncio exception")
            exc = context.get("exception")
            sys.stderr.write("\n[asyncio] " + msg + "\n")
            if exc:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
            else:
                sys.stderr.write(repr(context) + "\n")
            sys.stderr.flush()
        except Exception:
            pass

    loop.set_exception_handler(_loop_exc_handler)

    dash = Dashboard.from_config(cfg)
    try:
        loop.run_until_complete(dash.start())
        app = TuiApp(dash, loop=loop)
        app.run()
    finally:
        try:
            loop.close()
        finally:
            try:
                sys.stderr.close()
            except Exception:
                pass
            sys.stderr = old_stderr


def main():
    # Logs default to the current working directory; override with --log.
    default_log = os.path.join(os.getcwd(), "surge-tui.log")

    p = argparse.ArgumentParser(
        prog="surge-tui",
        description=(
            "Terminal dashboard for the Surge proxy.\n"
            "Talks to the HTTP API, falls back to surge-cli, then to a process probe.\n\n"
            "Default mode: TUI.\n"
            "Use --headless to log status changes without UI.\n"
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    p.add_argument("--config", default=None,
                   help="Path to config YAML (default: ./surge-tui.yaml, then ~/.config/surge-tui/)")
    p.add_argument("--log", default=default_log,
                   help=f"Path to log file (default: {default_log})")
    p.add_argument("--log-level", default="INFO",
                   help="Log level: DEBUG, INFO, WARNING, ERROR (default: INFO)")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    g = p.add_mutually_exclusive_group()
    g.add_argument("--headless", action="store_true", help="Run headless (no TUI).")
    g.add_argument("--check", action="store_true", help="Validate config and exit.")
    g.add_argument("--dump-example-config", action="store_true", help="Print example config and exit.")

    args = p.parse_args()

    try:
        setup_logging(args.log, args.log_level)
    except Exception as e:
        sys.stderr.write(f"[surge-tui] setup_logging failed: {e!r}\n")

    if args.dump_example_config:
        print(dump_example_config())
        return

    if args.check:
        raise SystemExit(cmd_check(args.config))

    try:
        cfg = load_config(args.config)
    except Exception as e:
        print(f"Config error: {e}", file=sys.stderr)
        raise SystemExit(2)
    if not cfg.surge.http_api_key:
        print(
            "surge.http_api_key is empty. Set it in the config file or SURGE_HTTP_API_KEY.\n"
            "Example config (--dump-example-config):\n",
            file=sys.stderr,
        )
        print(dump_example_config(), file=sys.stderr)
        raise SystemExit(2)

    if args.headless:
        raise SystemExit(asyncio.run(run_headless(cfg)))

    # DEFAULT: TUI
    run_tui_sync(cfg, log_path=args.log)


if __name__ == "__main__":
    main()
