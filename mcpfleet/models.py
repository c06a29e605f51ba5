from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


# recreate_state values for ConfiguredServer
RECREATE_IDLE = ""
RECREATE_IN_PROGRESS = "recreating"
RECREATE_DANGLING = "dangling"


@dataclass(frozen=True)
class InstalledServer:
    """Catalog entry: the image has been pulled and can be instantiated."""

    id: str
    name: str
    docker_image: str
    version: str = ""
    description: str = ""
    tags: list[str] = field(default_factory=list)
    health_check: dict[str, Any] = field(default_factory=dict)
    resource_requirements: dict[str, Any] = field(default_factory=dict)
    ports: dict[str, Any] = field(default_factory=dict)
    docker_command: str = ""
    environment_variables: dict[str, Any] = field(default_factory=dict)
    volumes: list[Any] = field(default_factory=list)
    install_date: str = ""
    last_updated: str = ""
    source_registry: str = ""
    is_official: bool = False

    def mcp_port(self) -> int:
        """Container-internal MCP port declared under ports["mcp"], 0 if absent."""
        raw = (self.ports or {}).get("mcp")
        if isinstance(raw, bool):
            return 0
        if isinstance(raw, (int, float)):
            return int(raw)
        if isinstance(raw, str):
            try:
                return int(raw)
            except ValueError:
                return 0
        return 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConfiguredServer:
    """Desired state: one InstalledServer materialized as a container."""

    id: str
    name: str
    container_name: str
    container_id: str = ""
    installed_server_id: str = ""
    docker_image: str = ""
    docker_command: str = ""
    version: str = ""
    port: int = 0
    container_port: int = 0
    environment: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)
    created_date: str = ""
    last_started: str = ""
    auto_start: bool = False
    recreate_state: str = RECREATE_IDLE

    @property
    def linked(self) -> bool:
        return bool(self.container_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ContainerInfo:
    """Observed state of one container, rebuilt on every query."""

    id: str
    name: str
    image: str
    status: str
    state: str
    uptime: str = "0h"
    cpu: str = "0%"
    memory: str = "0MB"
    port: int = 0
    display_name: str = ""
    version: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    created_at: str = ""
    started_at: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ContainerCreateConfig:
    name: str
    image: str
    port: int = 0  # host port
    container_port: int = 0  # falls back to port when 0
    environment: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, str] = field(default_factory=dict)  # host path -> container path
    labels: dict[str, str] = field(default_factory=dict)
    docker_command: str = ""
    memory_limit_mb: int = 0
    restart_policy: str = ""  # no|always|on-failure|unless-stopped

    @property
    def effective_container_port(self) -> int:
        return self.container_port or self.port


@dataclass(frozen=True)
class ServerDefaults:
    auto_start: bool = False
    default_port: int = 8000
    max_memory_mb: int = 512
    restart_on_failure: bool = True

    @property
    def restart_policy(self) -> str:
        return "on-failure" if self.restart_on_failure else "no"

    def affects_containers(self, other: "ServerDefaults") -> bool:
        """True when switching from self to other requires container recreation."""
        return (
            self.default_port != other.default_port
            or self.max_memory_mb != other.max_memory_mb
            or self.restart_on_failure != other.restart_on_failure
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LogLine:
    timestamp: str  # RFC3339, "" when the line carried none
    content: str


@dataclass(frozen=True)
class RuntimeStatus:
    is_running: bool
    is_installed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
