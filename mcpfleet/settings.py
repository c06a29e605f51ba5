from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("MCPFLEET_DB_PATH", "mcpfleet.db")
    docker_base_url: str = os.getenv("MCPFLEET_DOCKER_URL", "")
    docker_timeout_s: int = _env_int("MCPFLEET_DOCKER_TIMEOUT_S", 60)

    # Container conventions
    label_prefix: str = os.getenv("MCPFLEET_LABEL_PREFIX", "mcpfleet")

    # Runtime monitor
    monitor_interval_s: int = _env_int("MCPFLEET_MONITOR_INTERVAL_S", 15)
    monitor_initial_delay_s: int = _env_int("MCPFLEET_MONITOR_INITIAL_DELAY_S", 1)

    # Logging
    log_buffer_size: int = _env_int("MCPFLEET_LOG_BUFFER_SIZE", 100)
    debug: bool = _env_bool("MCPFLEET_DEBUG", False)

    health_timeout_s: int = _env_int("MCPFLEET_HEALTH_TIMEOUT_S", 2)

    # API server
    api_host: str = os.getenv("MCPFLEET_API_HOST", "127.0.0.1")
    api_port: int = _env_int("MCPFLEET_API_PORT", 8000)


settings = Settings()
