"""Pure helpers for turning Docker payloads into mcpfleet values."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

from .errors import StatsParseError
from .models import LogLine


_STATE_MAP = {
    "running": "running",
    "exited": "stopped",
    "dead": "stopped",
    "restarting": "restarting",
}


def map_container_state(status: str) -> str:
    return _STATE_MAP.get(status, "error")


def parse_command_args(cmd: str) -> list[str]:
    """Split a command line on spaces, keeping quoted sections together.

    A single or double quote opens a quoted section that runs until the same
    quote character appears again. Quote characters are not kept.
    """
    args: list[str] = []
    current: list[str] = []
    quote = ""
    for ch in cmd or "":
        if not quote and ch in ("'", '"'):
            quote = ch
        elif quote and ch == quote:
            quote = ""
        elif not quote and ch == " ":
            if current:
                args.append("".join(current))
                current = []
        else:
            current.append(ch)
    if current:
        args.append("".join(current))
    return args


def parse_env(entries: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for entry in entries or []:
        key, sep, value = entry.partition("=")
        if sep:
            out[key] = value
    return out


def env_to_list(env: dict[str, str] | None) -> list[str]:
    return [f"{k}={v}" for k, v in (env or {}).items()]


def volumes_to_map(volumes: list[str] | None) -> dict[str, str]:
    """Turn ``source:destination`` strings back into a host -> container map."""
    out: dict[str, str] = {}
    for v in volumes or []:
        parts = v.split(":")
        if len(parts) >= 2:
            out[parts[0]] = parts[1]
    return out


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse Docker's RFC3339Nano timestamps (nanoseconds, trailing Z)."""
    if not raw or raw.startswith("0001-01-01"):
        return None
    s = raw.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # Python only keeps microseconds; trim any extra fraction digits.
    if "." in s:
        head, _, rest = s.partition(".")
        frac = ""
        i = 0
        while i < len(rest) and rest[i].isdigit():
            frac += rest[i]
            i += 1
        s = f"{head}.{frac[:6].ljust(6, '0')}{rest[i:]}"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_uptime(d: timedelta) -> str:
    total_minutes = max(0, int(d.total_seconds() // 60))
    days, rem = divmod(total_minutes, 60 * 24)
    hours, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def uptime_since(started_at: str | None, now: datetime | None = None) -> str:
    started = parse_timestamp(started_at)
    if started is None:
        return "0m"
    now = now or datetime.now(timezone.utc)
    return format_uptime(now - started)


def first_tcp_host_port(ports: dict[str, Any] | None) -> int:
    """Host port of the first TCP binding that carries one; 0 when none."""
    for container_port, bindings in (ports or {}).items():
        if "tcp" not in container_port or not bindings:
            continue
        host_port = bindings[0].get("HostPort") or ""
        if host_port:
            try:
                return int(host_port)
            except ValueError:
                continue
    return 0


def parse_container_stats(payload: Any) -> tuple[str, str]:
    """Compute (cpu, memory) strings from a one-shot stats payload.

    Accepts the decoded dict or the raw JSON bytes/str. Raises StatsParseError
    for anything that is not a stats object.
    """
    if isinstance(payload, (bytes, bytearray, str)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise StatsParseError(f"failed to parse stats JSON: {e}") from e
    if not isinstance(payload, dict):
        raise StatsParseError(f"unexpected stats payload: {type(payload).__name__}")

    try:
        cpu_stats = payload.get("cpu_stats") or {}
        pre_stats = payload.get("precpu_stats") or {}
        cpu_total = int((cpu_stats.get("cpu_usage") or {}).get("total_usage") or 0)
        pre_total = int((pre_stats.get("cpu_usage") or {}).get("total_usage") or 0)
        sys_total = int(cpu_stats.get("system_cpu_usage") or 0)
        pre_sys_total = int(pre_stats.get("system_cpu_usage") or 0)
        mem_usage = int((payload.get("memory_stats") or {}).get("usage") or 0)
    except (AttributeError, TypeError, ValueError) as e:
        raise StatsParseError(f"malformed stats payload: {e}") from e

    cpu_delta = cpu_total - pre_total
    system_delta = sys_total - pre_sys_total
    cpu_percent = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu_percent = (cpu_delta / system_delta) * 100.0

    memory_mb = mem_usage / (1024 * 1024)
    return f"{cpu_percent:.1f}%", f"{memory_mb:.0f}MB"


def parse_log_line(line: str) -> LogLine:
    """Split a ``<RFC3339Nano> <content>`` line produced with timestamps=True."""
    ts_raw, sep, content = line.partition(" ")
    if not sep or len(ts_raw) < 20:
        return LogLine(timestamp="", content=line)
    ts = parse_timestamp(ts_raw)
    if ts is None:
        return LogLine(timestamp="", content=line)
    return LogLine(timestamp=ts.strftime("%Y-%m-%dT%H:%M:%SZ"), content=content)


def render_log_lines(raw: str) -> str:
    lines = [parse_log_line(x) for x in raw.strip().split("\n") if x]
    # stable sort: lines without a timestamp keep their relative order up front
    lines.sort(key=lambda x: x.timestamp)
    out = []
    for x in lines:
        out.append(f"[{x.timestamp}] {x.content}" if x.timestamp else x.content)
    return "\n".join(out)
