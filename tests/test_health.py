from __future__ import annotations

import httpx
import pytest

import mcpfleet.health as health


@pytest.fixture()
def respond(monkeypatch):
    """Route check_health through an httpx MockTransport using ``handler``."""
    real_client = httpx.Client

    def install(handler):
        def factory(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        monkeypatch.setattr(health.httpx, "Client", factory)

    return install


def test_healthy_json(respond):
    respond(lambda req: httpx.Response(200, json={"status": "ok"}))
    ok, msg, latency = health.check_health("http://127.0.0.1:8000/health")
    assert ok is True
    assert msg == "Healthy"
    assert latency is not None


def test_plain_2xx_is_healthy(respond):
    respond(lambda req: httpx.Response(204))
    assert health.check_health("http://x/health")[0] is True


def test_unhealthy_payload(respond):
    respond(lambda req: httpx.Response(200, json={"status": "degraded"}))
    ok, msg, _ = health.check_health("http://x/health")
    assert ok is False
    assert "degraded" in msg


def test_http_error_status(respond):
    respond(lambda req: httpx.Response(503))
    assert health.check_health("http://x/health")[:2] == (False, "HTTP 503")


def test_connection_refused(respond):
    def refuse(req):
        raise httpx.ConnectError("connection refused", request=req)

    respond(refuse)
    assert health.check_health("http://x/health")[:2] == (False, "No response")


def test_health_url():
    assert health.health_url("127.0.0.1", 8001, None) == "http://127.0.0.1:8001/health"
    assert health.health_url("127.0.0.1", 8001, {"path": "status"}) == "http://127.0.0.1:8001/status"
