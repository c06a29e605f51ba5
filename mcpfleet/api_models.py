from __future__ import annotations

from pydantic import BaseModel, Field


class CreateContainerRequest(BaseModel):
    name: str = Field(..., description="Container name")
    image: str = Field(..., description="Docker image (name:tag)")
    port: int = Field(0, ge=0, le=65535, description="Host port, 0 for none")
    container_port: int = Field(0, ge=0, le=65535, description="Container port; defaults to the host port")
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, str] = Field(default_factory=dict, description="host path -> container path")
    labels: dict[str, str] = Field(default_factory=dict)
    docker_command: str = ""
    memory_limit_mb: int = Field(0, ge=0)
    restart_policy: str = Field("", description="no|always|on-failure|unless-stopped")


class PullImageRequest(BaseModel):
    image: str


class DefaultsRequest(BaseModel):
    auto_start: bool = False
    default_port: int = Field(8000, ge=1, le=65535)
    max_memory_mb: int = Field(512, ge=0)
    restart_on_failure: bool = True


class ReallocateRequest(BaseModel):
    base_port: int = Field(..., ge=1, le=65535)


class InstallRequest(BaseModel):
    name: str
    docker_image: str
    id: str = ""
    version: str = ""
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    health_check: dict = Field(default_factory=dict)
    resource_requirements: dict = Field(default_factory=dict)
    ports: dict = Field(default_factory=dict, description='Declared ports, e.g. {"mcp": 8080}')
    docker_command: str = ""
    environment_variables: dict = Field(default_factory=dict)
    volumes: list = Field(default_factory=list)
    source_registry: str = ""
    is_official: bool = False


class DeployRequest(BaseModel):
    installed_server_id: str
    container_name: str = ""
    environment: dict[str, str] = Field(default_factory=dict)
    volumes: dict[str, str] = Field(default_factory=dict)
    port: int = Field(0, ge=0, le=65535, description="Host port, 0 to allocate")
    start: bool | None = Field(None, description="Start after create; defaults to auto_start")


class DebugRequest(BaseModel):
    enabled: bool
