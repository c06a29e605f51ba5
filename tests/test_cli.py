from __future__ import annotations

import json

import cli


class _Resp:
    def __init__(self, payload, ok: bool = True):
        self._payload = payload
        self.ok = ok
        self.text = json.dumps(payload)

    def json(self):
        return self._payload


def test_deploy_builds_payload(monkeypatch, capsys):
    sent = {}

    def fake_post(url, json=None, params=None, timeout=None):
        sent["url"] = url
        sent["json"] = json
        return _Resp({"id": "configured-1"})

    monkeypatch.setattr(cli.requests, "post", fake_post)
    rc = cli.main(["--api", "http://fleet:9000/", "deploy", "fs", "-e", "A=1", "-v", "/h:/c", "--port", "8100", "--no-start"])
    assert rc == 0
    assert sent["url"] == "http://fleet:9000/servers/deploy"
    assert sent["json"] == {
        "installed_server_id": "fs",
        "container_name": "",
        "port": 8100,
        "environment": {"A": "1"},
        "volumes": {"/h": "/c"},
        "start": False,
    }
    assert "configured-1" in capsys.readouterr().out


def test_defaults_merges_current_values(monkeypatch):
    current = {"auto_start": False, "default_port": 8000, "max_memory_mb": 512, "restart_on_failure": True}
    sent = {}

    monkeypatch.setattr(cli.requests, "get", lambda url, timeout=None: _Resp(current))

    def fake_put(url, json=None, timeout=None):
        sent["json"] = json
        return _Resp({"defaults": json, "recreated": True})

    monkeypatch.setattr(cli.requests, "put", fake_put)
    assert cli.main(["defaults", "--max-memory-mb", "1024", "--restart-on-failure", "false"]) == 0
    assert sent["json"] == {**current, "max_memory_mb": 1024, "restart_on_failure": False}


def test_error_response_returns_1(monkeypatch):
    monkeypatch.setattr(cli.requests, "post", lambda url, timeout=None: _Resp({"detail": "not found"}, ok=False))
    assert cli.main(["start", "deadbeef"]) == 1
