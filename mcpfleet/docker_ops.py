from __future__ import annotations

import shutil
from datetime import datetime, timezone
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.types import Mount
from requests.exceptions import RequestException

from .errors import ContainerNotFound, CreateFailed, ImagePullFailed, RuntimeUnavailable, StatsParseError
from .events import EventLog
from .models import ContainerCreateConfig, ContainerInfo, RuntimeStatus
from .parsing import (
    env_to_list,
    first_tcp_host_port,
    map_container_state,
    parse_command_args,
    parse_container_stats,
    parse_env,
    render_log_lines,
    uptime_since,
)
from .settings import settings


# Host ports are published on loopback only.
LOOPBACK_HOST = "127.0.0.1"

# Grace period for stop and restart before Docker kills the container.
STOP_TIMEOUT_S = 30


def _rfc3339_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_transport_error(e: Exception) -> bool:
    # APIError is also a requests HTTPError, but the daemon did answer.
    if isinstance(e, APIError):
        return False
    if isinstance(e, RequestException):
        return True
    return isinstance(e, DockerException) and isinstance(e.__context__, RequestException)


class ContainerRuntimeClient:
    """Docker wrapper that applies the mcpfleet container conventions.

    Every container we create carries the ownership labels, so managed
    containers can be rediscovered after restarts. Single-target calls raise
    the first error they hit; nothing here retries.
    """

    def __init__(
        self,
        events: EventLog,
        client: Any | None = None,
        label_prefix: str | None = None,
    ) -> None:
        self.events = events
        self.label_prefix = label_prefix or settings.label_prefix
        self.client = client
        self.init_error: str | None = None
        if self.client is None:
            self.client = self._connect()

    def _connect(self) -> Any | None:
        try:
            if settings.docker_base_url:
                c = docker.DockerClient(base_url=settings.docker_base_url, timeout=settings.docker_timeout_s)
            else:
                c = docker.from_env(timeout=settings.docker_timeout_s)
            self.events.info("Docker client initialized")
            return c
        except DockerException as e:
            # Keep going without Docker; every call reports RuntimeUnavailable.
            self.init_error = str(e)
            self.events.warn("Failed to initialize Docker client: %s", e)
            return None

    # --- ownership convention -------------------------------------------

    @property
    def managed_label(self) -> str:
        return f"{self.label_prefix}.managed-by"

    @property
    def created_label(self) -> str:
        return f"{self.label_prefix}.created-at"

    def ownership_labels(self) -> dict[str, str]:
        return {self.managed_label: "true", self.created_label: _rfc3339_now()}

    def owner_label_filter(self) -> dict[str, Any]:
        return {"label": [f"{self.managed_label}=true"]}

    # --- helpers ----------------------------------------------------------

    def _require(self) -> Any:
        if self.client is None:
            raise RuntimeUnavailable(f"Docker is not available: {self.init_error or 'client not initialized'}")
        return self.client

    def _get(self, container_id: str) -> Any:
        c = self._require()
        try:
            return c.containers.get(container_id)
        except NotFound as e:
            raise ContainerNotFound(f"container {container_id} not found") from e
        except DockerException as e:
            if _is_transport_error(e):
                raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e
            raise
        except RequestException as e:
            raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e

    # --- queries ----------------------------------------------------------

    def ping(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(self.client.ping())
        except (DockerException, RequestException):
            return False

    def status(self) -> RuntimeStatus:
        return RuntimeStatus(is_running=self.ping(), is_installed=shutil.which("docker") is not None)

    def list_managed(self) -> list[ContainerInfo]:
        """All containers (stopped included) carrying the ownership label."""
        c = self._require()
        try:
            containers = c.containers.list(all=True, filters=self.owner_label_filter())
        except (DockerException, RequestException) as e:
            self.events.error("Failed to list containers: %s", e)
            raise RuntimeUnavailable(f"failed to list containers: {e}") from e

        out: list[ContainerInfo] = []
        for cont in containers:
            try:
                out.append(self.get_info(cont.id))
            except Exception as e:
                self.events.warn("Failed to get info for container %s: %s", cont.id, e)
        return out

    def get_info(self, container_id: str) -> ContainerInfo:
        cont = self._get(container_id)
        attrs = cont.attrs
        config = attrs.get("Config") or {}
        state = attrs.get("State") or {}
        running = bool(state.get("Running"))

        volumes = [f"{m.get('Source', '')}:{m.get('Destination', '')}" for m in attrs.get("Mounts") or []]

        cpu, memory = "0%", "0MB"
        if running:
            try:
                cpu, memory = self.stats(container_id)
            except Exception as e:
                self.events.debug("Stats unavailable for %s: %s", container_id, e)

        status = state.get("Status", "")
        return ContainerInfo(
            id=attrs.get("Id", container_id)[:12],
            name=(attrs.get("Name") or "").lstrip("/"),
            image=config.get("Image", ""),
            status=status,
            state=map_container_state(status),
            uptime=uptime_since(state.get("StartedAt")) if running else "0h",
            cpu=cpu,
            memory=memory,
            port=first_tcp_host_port((attrs.get("NetworkSettings") or {}).get("Ports")),
            environment=parse_env(config.get("Env")),
            volumes=volumes,
            created_at=attrs.get("Created", ""),
            started_at=state.get("StartedAt", ""),
            labels=dict(config.get("Labels") or {}),
        )

    def stats(self, container_id: str) -> tuple[str, str]:
        """One-shot (non-streaming) CPU / memory snapshot."""
        cont = self._get(container_id)
        try:
            payload = cont.stats(stream=False)
        except DockerException as e:
            raise StatsParseError(f"failed to get container stats: {e}") from e
        return parse_container_stats(payload)

    def logs(self, container_id: str, lines: int = 100) -> str:
        cont = self._get(container_id)
        raw = cont.logs(stdout=True, stderr=True, tail=max(1, int(lines)), timestamps=True)
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        return render_log_lines(text)

    def list_images(self) -> list[dict[str, Any]]:
        c = self._require()
        return [{"id": img.id, "tags": list(img.tags)} for img in c.images.list()]

    # --- mutations --------------------------------------------------------

    def create(self, config: ContainerCreateConfig) -> str:
        """Create (not start) a container and return its full identifier."""
        c = self._require()
        labels = dict(config.labels or {})
        labels.update(self.ownership_labels())

        kwargs: dict[str, Any] = {
            "name": config.name or None,
            "environment": env_to_list(config.environment),
            "labels": labels,
            "mounts": [Mount(target=dst, source=src, type="bind") for src, dst in (config.volumes or {}).items()],
            "network_mode": "bridge",
            "auto_remove": False,
        }
        if config.docker_command:
            kwargs["command"] = parse_command_args(config.docker_command)
            self.events.debug("Setting container CMD to: %s", kwargs["command"])
        if config.memory_limit_mb > 0:
            kwargs["mem_limit"] = int(config.memory_limit_mb) * 1024 * 1024
        if config.restart_policy:
            kwargs["restart_policy"] = {"Name": config.restart_policy}
        if config.port > 0:
            container_port = config.effective_container_port
            kwargs["ports"] = {f"{container_port}/tcp": (LOOPBACK_HOST, int(config.port))}
            self.events.debug("Port mapping configured: host %s -> container %s", config.port, container_port)

        self.events.debug("Creating container %s from image %s", config.name, config.image)
        try:
            cont = c.containers.create(config.image, **kwargs)
        except (DockerException, RequestException) as e:
            self.events.error("Failed to create container %s: %s", config.name, e)
            raise CreateFailed(f"failed to create container: {e}") from e

        self._verify_labels(cont.id)
        self.events.info("Created container %s (%s) from image %s", config.name, cont.id[:12], config.image)
        return cont.id

    def _verify_labels(self, container_id: str) -> None:
        try:
            attrs = self._get(container_id).attrs
        except Exception as e:
            self.events.error("Failed to inspect newly created container %s: %s", container_id, e)
            return
        labels = (attrs.get("Config") or {}).get("Labels") or {}
        if self.managed_label not in labels:
            self.events.warn("Container %s is missing %s label!", container_id, self.managed_label)

    def start(self, container_id: str) -> None:
        cont = self._get(container_id)
        self.events.debug("Starting container %s (state %s)", container_id, cont.status)
        cont.start()
        self.events.info("Started container %s", container_id)

    def stop(self, container_id: str) -> None:
        self._get(container_id).stop(timeout=STOP_TIMEOUT_S)
        self.events.info("Stopped container %s", container_id)

    def restart(self, container_id: str) -> None:
        self._get(container_id).restart(timeout=STOP_TIMEOUT_S)
        self.events.info("Restarted container %s", container_id)

    def remove(self, container_id: str, force: bool = False) -> None:
        self._get(container_id).remove(force=force)
        self.events.info("Removed container %s", container_id)

    def pull_image(self, image: str) -> None:
        """Pull an image, blocking until the progress stream is drained."""
        c = self._require()
        repo, tag = _split_image(image)
        self.events.info("Pulling image %s", image)
        try:
            for chunk in c.api.pull(repo, tag=tag, stream=True, decode=True):
                if isinstance(chunk, dict) and chunk.get("error"):
                    raise ImagePullFailed(f"failed to pull image {image}: {chunk['error']}")
        except APIError as e:
            raise ImagePullFailed(f"failed to pull image {image}: {e}") from e
        except RequestException as e:
            raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e
        self.events.info("Pulled image %s", image)

    def remove_image(self, image_id: str, force: bool = False) -> None:
        c = self._require()
        c.images.remove(image_id, force=force)
        self.events.info("Removed image %s", image_id)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()


def _split_image(image: str) -> tuple[str, str | None]:
    """Split ``repo[:tag]`` without confusing a registry port for a tag."""
    if "@" in image:
        return image, None
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        repo, _, tag = image.rpartition(":")
        return repo, tag
    return image, "latest"
