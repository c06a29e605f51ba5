from __future__ import annotations

import time

import httpx


HEALTHY_STATUSES = {"healthy", "ok", "up"}


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call an MCP server's health endpoint.

    Any 2xx is healthy unless the body is a JSON object whose "status" says
    otherwise. Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data:
            if str(data["status"]).lower() in HEALTHY_STATUSES:
                return True, "Healthy", latency_ms
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def health_url(host: str, port: int, health_check: dict | None) -> str:
    path = str((health_check or {}).get("path") or "/health")
    if not path.startswith("/"):
        path = "/" + path
    return f"http://{host}:{int(port)}{path}"
