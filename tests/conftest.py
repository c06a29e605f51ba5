from __future__ import annotations

import hashlib
import itertools
import os
import sys
from dataclasses import replace

import pytest
from docker.errors import APIError, NotFound

# Ensure project root is importable (so `import main` works without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from mcpfleet.db import RecordStore  # noqa: E402
from mcpfleet.errors import ContainerNotFound, RuntimeUnavailable  # noqa: E402
from mcpfleet.events import EventLog  # noqa: E402
from mcpfleet.identity import ids_match  # noqa: E402
from mcpfleet.models import ContainerCreateConfig, ContainerInfo, RuntimeStatus  # noqa: E402

_seq = itertools.count(1)


def make_id(seed: str) -> str:
    """Unique 64-char hex container id."""
    return hashlib.sha256(f"{seed}-{next(_seq)}".encode()).hexdigest()


# --- fake docker SDK client (for ContainerRuntimeClient tests) --------------


class FakeContainer:
    def __init__(self, cid: str, attrs: dict, stats=None, logs: bytes = b""):
        self.id = cid
        self.attrs = attrs
        self._stats = stats if stats is not None else {}
        self._logs = logs
        self.calls: list[tuple] = []
        self.log_kwargs: dict = {}

    @property
    def status(self) -> str:
        return self.attrs["State"]["Status"]

    def _set_state(self, status: str) -> None:
        self.attrs["State"]["Status"] = status
        self.attrs["State"]["Running"] = status == "running"

    def start(self):
        self.calls.append(("start",))
        self._set_state("running")

    def stop(self, timeout=None):
        self.calls.append(("stop", timeout))
        self._set_state("exited")

    def restart(self, timeout=None):
        self.calls.append(("restart", timeout))
        self._set_state("running")

    def remove(self, force=False):
        self.calls.append(("remove", force))

    def stats(self, stream=True):
        assert stream is False
        return self._stats

    def logs(self, **kwargs):
        self.log_kwargs = kwargs
        return self._logs


def container_attrs(
    cid: str,
    name: str,
    status: str = "running",
    image: str = "img:1",
    env: list[str] | None = None,
    labels: dict | None = None,
    ports: dict | None = None,
    mounts: list[dict] | None = None,
    started_at: str = "2024-01-01T10:00:00.123456789Z",
) -> dict:
    return {
        "Id": cid,
        "Name": f"/{name}",
        "Created": "2024-01-01T09:59:59Z",
        "Config": {"Image": image, "Env": env or [], "Labels": labels if labels is not None else {"mcpfleet.managed-by": "true"}},
        "State": {"Status": status, "Running": status == "running", "StartedAt": started_at},
        "NetworkSettings": {"Ports": ports or {}},
        "Mounts": mounts or [],
    }


class FakeContainers:
    def __init__(self):
        self.items: dict[str, FakeContainer] = {}
        self.list_kwargs: dict = {}
        self.create_calls: list[tuple[str, dict]] = []
        self.create_error: Exception | None = None
        self.list_error: Exception | None = None
        self.drop_labels = False

    def add(self, cont: FakeContainer) -> FakeContainer:
        self.items[cont.id] = cont
        return cont

    def list(self, all=False, filters=None):
        self.list_kwargs = {"all": all, "filters": filters}
        if self.list_error:
            raise self.list_error
        return list(self.items.values())

    def get(self, cid):
        for full, cont in self.items.items():
            if full.startswith(cid):
                return cont
        raise NotFound(f"No such container: {cid}")

    def create(self, image, **kwargs):
        self.create_calls.append((image, kwargs))
        if self.create_error:
            raise self.create_error
        cid = make_id(kwargs.get("name") or image)
        labels = {} if self.drop_labels else dict(kwargs.get("labels") or {})
        attrs = container_attrs(cid, kwargs.get("name") or "", status="created", image=image, labels=labels)
        return self.add(FakeContainer(cid, attrs))


class FakeImages:
    def __init__(self):
        self.removed: list[tuple[str, bool]] = []

    def list(self):
        return []

    def remove(self, image, force=False):
        self.removed.append((image, force))


class FakeAPI:
    def __init__(self):
        self.pulls: list[tuple] = []
        self.chunks: list[dict] = [{"status": "Pulling fs layer"}, {"status": "Download complete"}]

    def pull(self, repo, tag=None, stream=False, decode=False):
        self.pulls.append((repo, tag, stream, decode))
        return iter(self.chunks)


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers()
        self.images = FakeImages()
        self.api = FakeAPI()
        self.closed = False

    def ping(self):
        return True

    def close(self):
        self.closed = True


# --- fake runtime (for Reconciler / monitor / API tests) ---------------------


class FakeRuntime:
    """In-memory stand-in for ContainerRuntimeClient.

    ``fail`` maps (operation, container id or "*") to an exception raised by
    that call. Every call is appended to ``calls``.
    """

    label_prefix = "mcpfleet"

    def __init__(self):
        self.containers: dict[str, ContainerInfo] = {}
        self.configs: dict[str, ContainerCreateConfig] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[tuple[str, str], Exception] = {}
        self.available = True
        self.short_ids = True
        self.pulled: list[str] = []
        self.removed_images: list[str] = []
        self.closed = False

    def _check(self, op: str, ref: str = "") -> None:
        self.calls.append((op, ref))
        if not self.available:
            raise RuntimeUnavailable("Docker is not available: down")
        exc = self.fail.get((op, ref)) or self.fail.get((op, "*"))
        if exc is not None:
            raise exc

    def _resolve(self, ref: str) -> str:
        for full in self.containers:
            if ids_match(full, ref):
                return full
        raise ContainerNotFound(f"container {ref} not found")

    def count(self, op: str) -> int:
        return sum(1 for o, _ in self.calls if o == op)

    def add(self, name: str, running: bool = True, image: str = "img:1", env=None, volumes=None, port: int = 0) -> str:
        cid = make_id(name)
        self.containers[cid] = ContainerInfo(
            id=cid,
            name=name,
            image=image,
            status="running" if running else "exited",
            state="running" if running else "stopped",
            port=port,
            environment=dict(env or {}),
            volumes=[f"{k}:{v}" for k, v in (volumes or {}).items()],
            labels={"mcpfleet.managed-by": "true"},
        )
        return cid

    def set_running(self, full: str, running: bool) -> None:
        info = self.containers[full]
        info.status = "running" if running else "exited"
        info.state = "running" if running else "stopped"

    def status(self) -> RuntimeStatus:
        return RuntimeStatus(is_running=self.available, is_installed=True)

    def list_managed(self) -> list[ContainerInfo]:
        self._check("list")
        out = []
        for full, info in self.containers.items():
            out.append(replace(info, id=full[:12] if self.short_ids else full))
        return out

    def create(self, config: ContainerCreateConfig) -> str:
        self._check("create", config.name)
        cid = make_id(config.name)
        self.containers[cid] = ContainerInfo(
            id=cid,
            name=config.name,
            image=config.image,
            status="created",
            state="stopped",
            port=config.port,
            environment=dict(config.environment),
            volumes=[f"{k}:{v}" for k, v in config.volumes.items()],
            labels={**config.labels, "mcpfleet.managed-by": "true"},
        )
        self.configs[cid] = config
        return cid

    def start(self, ref: str) -> None:
        self._check("start", ref)
        self.set_running(self._resolve(ref), True)

    def stop(self, ref: str) -> None:
        self._check("stop", ref)
        self.set_running(self._resolve(ref), False)

    def restart(self, ref: str) -> None:
        self._check("restart", ref)
        self.set_running(self._resolve(ref), True)

    def remove(self, ref: str, force: bool = False) -> None:
        self._check("remove", ref)
        full = self._resolve(ref)
        if self.containers[full].running and not force:
            raise APIError("container is running")
        del self.containers[full]

    def logs(self, ref: str, lines: int = 100) -> str:
        self._check("logs", ref)
        self._resolve(ref)
        return "[2024-01-01T10:00:00Z] ready"

    def pull_image(self, image: str) -> None:
        self._check("pull", image)
        self.pulled.append(image)

    def remove_image(self, image: str, force: bool = False) -> None:
        self._check("remove_image", image)
        self.removed_images.append(image)

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def events():
    return EventLog(size=100)


@pytest.fixture()
def store(tmp_path):
    return RecordStore(str(tmp_path / "fleet.db"))


@pytest.fixture()
def fake_docker():
    return FakeDockerClient()


@pytest.fixture()
def fake_runtime():
    return FakeRuntime()
