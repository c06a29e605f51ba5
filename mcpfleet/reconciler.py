from __future__ import annotations

import re
import secrets
import time
from dataclasses import asdict, dataclass, field, replace
from threading import RLock
from typing import Any

from docker.errors import DockerException

from .db import RecordStore, utc_now
from .docker_ops import LOOPBACK_HOST, ContainerRuntimeClient
from .errors import (
    DanglingRecord,
    FleetError,
    PartialFailure,
    PortInUse,
    PortRangeExhausted,
    RecordNotFound,
    RuntimeUnavailable,
)
from .events import EventLog
from .health import check_health, health_url
from .identity import find_container, find_record, is_referenced
from .models import (
    RECREATE_DANGLING,
    RECREATE_IDLE,
    RECREATE_IN_PROGRESS,
    ConfiguredServer,
    ContainerCreateConfig,
    ContainerInfo,
    InstalledServer,
    ServerDefaults,
)
from .parsing import volumes_to_map
from .ports import next_free_port
from .settings import settings


# Errors a single item of a bulk operation may raise without stopping the rest.
_ITEM_ERRORS = (FleetError, DockerException)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _slug(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-") or "server"


@dataclass
class BulkResult:
    """Per-item outcome of a continue-on-error operation."""

    succeeded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self, what: str = "bulk operation") -> None:
        if self.failed:
            raise PartialFailure(f"{what}: {len(self.failed)} item(s) failed", self.failed)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["ok"] = self.ok
        return d


def _template_defaults(template: dict[str, Any] | None) -> dict[str, str]:
    """Default values from a catalog environment template.

    Entries are either plain values or objects with a "default" key.
    """
    out: dict[str, str] = {}
    for key, entry in (template or {}).items():
        if isinstance(entry, dict):
            if entry.get("default") is not None:
                out[key] = str(entry["default"])
        elif entry is not None:
            out[key] = str(entry)
    return out


class Reconciler:
    """Keeps configured-server records and managed containers in agreement.

    All mutating operations run under one lock per record store, so port
    reallocation and settings propagation never interleave.
    """

    def __init__(self, runtime: ContainerRuntimeClient, store: RecordStore, events: EventLog) -> None:
        self.runtime = runtime
        self.store = store
        self.events = events
        self._lock = RLock()

    # --- reads ------------------------------------------------------------

    def managed_containers(self) -> list[ContainerInfo]:
        """Managed containers enriched with display name and version."""
        with self._lock:
            try:
                self.cleanup_orphans()
            except FleetError as e:
                self.events.warn("Failed to cleanup orphaned containers: %s", e)

            containers = self.runtime.list_managed()
            records = self.store.list_configured()

        for c in containers:
            rec = find_record(records, c.id)
            c.version = rec.version if rec and rec.version else "unknown"
            c.display_name = rec.name if rec and rec.name else c.name
        return containers

    def detect_orphans(self, configured: list[ConfiguredServer] | None = None) -> list[ContainerInfo]:
        """Managed containers that no configured server references."""
        records = self.store.list_configured() if configured is None else configured
        return [c for c in self.runtime.list_managed() if not is_referenced(c.id, records)]

    def dangling_records(self) -> list[ConfiguredServer]:
        records = self.store.list_configured()
        try:
            containers = self.runtime.list_managed()
        except RuntimeUnavailable as e:
            self.events.warn("Cannot resolve container references: %s", e)
            return [r for r in records if r.recreate_state == RECREATE_DANGLING]
        return [
            r
            for r in records
            if r.recreate_state == RECREATE_DANGLING
            or (r.container_id and find_container(containers, r.container_id) is None)
        ]

    def health(self, server_id: str) -> dict[str, Any]:
        rec = self._require_configured(server_id)
        installed = self.store.get_installed(rec.installed_server_id) if rec.installed_server_id else None
        url = health_url(LOOPBACK_HOST, rec.port, installed.health_check if installed else None)
        ok, msg, latency = check_health(url, timeout_s=settings.health_timeout_s)
        return {"server_id": rec.id, "url": url, "healthy": ok, "message": msg, "latency_ms": latency}

    # --- single-target operations -----------------------------------------

    def start(self, container_id: str) -> None:
        with self._lock:
            self.runtime.start(container_id)
            rec = find_record(self.store.list_configured(), container_id)
            if rec:
                self.store.upsert_configured(replace(rec, last_started=utc_now()))

    def stop(self, container_id: str) -> None:
        with self._lock:
            self.runtime.stop(container_id)

    def restart(self, container_id: str) -> None:
        with self._lock:
            self.runtime.restart(container_id)

    def logs(self, container_id: str, lines: int = 100) -> str:
        return self.runtime.logs(container_id, lines)

    def pull_image(self, image: str) -> None:
        self.runtime.pull_image(image)

    def create(self, config: ContainerCreateConfig) -> str:
        with self._lock:
            return self.runtime.create(config)

    def remove_container_and_record(self, container_id: str, force: bool = False) -> None:
        """Remove a container, then the configured server pointing at it (if any)."""
        with self._lock:
            self.runtime.remove(container_id, force=force)
            rec = find_record(self.store.list_configured(), container_id)
            if rec is None:
                return
            try:
                self.store.remove_configured(rec.id)
                self.events.info("Removed configured server entry for container %s", container_id)
            except RecordNotFound as e:
                self.events.warn("Failed to remove configured server entry for container %s: %s", container_id, e)

    def remove_server(self, server_id: str) -> None:
        """Delete a configured server; its container is removed best-effort."""
        with self._lock:
            rec = self._require_configured(server_id)
            if rec.container_id:
                try:
                    self.runtime.remove(rec.container_id, force=True)
                except _ITEM_ERRORS as e:
                    self.events.warn("Failed to remove container %s for %s: %s", rec.container_id, rec.name, e)
            self.store.remove_configured(rec.id)
            self.events.info("Removed configured server %s", rec.name)

    # --- orphans ------------------------------------------------------------

    def cleanup_orphans(self, configured: list[ConfiguredServer] | None = None) -> BulkResult:
        """Stop and force-remove every orphaned managed container."""
        result = BulkResult()
        with self._lock:
            orphans = self.detect_orphans(configured)
            if not orphans:
                return result

            self.events.info("Found %d orphaned containers, cleaning up...", len(orphans))
            for c in orphans:
                self.events.info("Cleaning up orphaned container: %s (%s)", c.id, c.name)
                if c.running:
                    try:
                        self.runtime.stop(c.id)
                    except _ITEM_ERRORS as e:
                        # removal is forced, so keep going
                        self.events.warn("Failed to stop orphaned container %s: %s", c.id, e)
                try:
                    self.runtime.remove(c.id, force=True)
                except _ITEM_ERRORS as e:
                    self.events.error("Failed to remove orphaned container %s: %s", c.id, e)
                    result.failed[c.id] = str(e)
                    continue
                result.succeeded.append(c.id)
        return result

    # --- recreation ---------------------------------------------------------

    def recreate(
        self,
        existing: ConfiguredServer,
        info: ContainerInfo,
        desired_port: int,
        defaults: ServerDefaults,
    ) -> ConfiguredServer:
        """Apply port / memory / restart settings by replacing the container.

        Sequence: stop -> remove -> create -> persist new id -> start. Stopped
        containers are left alone; the settings apply on their next start.
        A failure once the old container is gone marks the record dangling
        and raises DanglingRecord.
        """
        with self._lock:
            if not info.running:
                self.events.info(
                    "Container %s is not running (%s), settings will apply on next start", info.id, info.state
                )
                return existing

            old_id = existing.container_id
            self.events.info("Recreating container %s for %s (port %d)", old_id, existing.name, desired_port)
            marked = replace(existing, recreate_state=RECREATE_IN_PROGRESS)
            self.store.upsert_configured(marked)

            try:
                self.runtime.stop(old_id)
                self.runtime.remove(old_id, force=True)
            except _ITEM_ERRORS:
                # The old container still exists; the record stays valid.
                self.store.upsert_configured(replace(marked, recreate_state=RECREATE_IDLE))
                raise

            config = self._recreate_config(existing, info, desired_port, defaults)
            self.events.info(
                "Creating new container: Memory=%dMB, RestartPolicy=%s, HostPort=%d, ContainerPort=%d",
                config.memory_limit_mb,
                config.restart_policy,
                config.port,
                config.effective_container_port,
            )
            try:
                new_id = self.runtime.create(config)
            except _ITEM_ERRORS as e:
                self._mark_dangling(marked)
                raise DanglingRecord(existing.id, f"container for {existing.name} removed but not recreated: {e}") from e

            linked = replace(marked, container_id=new_id, port=desired_port)
            self.store.upsert_configured(linked)

            try:
                self.runtime.start(new_id)
            except _ITEM_ERRORS as e:
                self._mark_dangling(linked)
                raise DanglingRecord(existing.id, f"container for {existing.name} recreated but not started: {e}") from e

            done = replace(linked, recreate_state=RECREATE_IDLE, last_started=utc_now())
            self.store.upsert_configured(done)
            self.events.info("Successfully recreated container: %s -> %s", old_id, new_id)
            return done

    def _recreate_config(
        self,
        existing: ConfiguredServer,
        info: ContainerInfo,
        desired_port: int,
        defaults: ServerDefaults,
    ) -> ContainerCreateConfig:
        return ContainerCreateConfig(
            name=info.name or existing.container_name,
            image=info.image or existing.docker_image,
            port=desired_port,
            container_port=existing.container_port,
            environment=dict(existing.environment or info.environment),
            volumes=volumes_to_map(info.volumes) or dict(existing.volumes),
            labels=dict(info.labels),
            docker_command=existing.docker_command,
            memory_limit_mb=defaults.max_memory_mb,
            restart_policy=defaults.restart_policy,
        )

    def _mark_dangling(self, rec: ConfiguredServer) -> None:
        self.store.upsert_configured(replace(rec, recreate_state=RECREATE_DANGLING))
        self.events.error("Configured server %s is dangling (container %s)", rec.name, rec.container_id)

    # --- bulk reconciliation -----------------------------------------------

    def _managed_snapshot(self) -> list[ContainerInfo]:
        try:
            return self.runtime.list_managed()
        except RuntimeUnavailable as e:
            self.events.warn("Docker unavailable, only records will be updated: %s", e)
            return []

    def reallocate_ports(self, new_base: int) -> BulkResult:
        """Reassign host ports from ``new_base`` in stored record order.

        Records are persisted one by one; running containers whose port
        changed are recreated. Raises PortRangeExhausted past 65535, keeping
        the assignments already made.
        """
        result = BulkResult()
        with self._lock:
            records = self.store.list_configured()
            if not records:
                return result
            defaults = self.store.get_server_defaults()
            containers = self._managed_snapshot()

            used: set[int] = set()
            next_port = new_base
            for rec in records:
                port = next_free_port(next_port, used)
                used.add(port)
                next_port = port + 1

                updated = replace(rec, port=port)
                self.store.upsert_configured(updated)
                self.events.info("Reallocated port for server %s: %d -> %d", rec.name, rec.port, port)

                if not rec.container_id or rec.port == port:
                    result.skipped.append(rec.id)
                    continue
                info = find_container(containers, rec.container_id)
                if info is None:
                    self.events.warn("Container %s for %s not found, port applies on next create", rec.container_id, rec.name)
                    result.skipped.append(rec.id)
                    continue
                try:
                    after = self.recreate(updated, info, port, defaults)
                except _ITEM_ERRORS as e:
                    self.events.warn("Failed to update container port for %s: %s", rec.container_id, e)
                    result.failed[rec.id] = str(e)
                    continue
                if after.container_id != updated.container_id:
                    result.succeeded.append(rec.id)
                else:
                    result.skipped.append(rec.id)
        return result

    def apply_settings_to_existing(
        self,
        defaults: ServerDefaults | None = None,
        skip_ids: set[str] | None = None,
    ) -> BulkResult:
        """Recreate every linked running container with the given defaults."""
        result = BulkResult()
        with self._lock:
            defaults = defaults or self.store.get_server_defaults()
            records = [r for r in self.store.list_configured() if r.container_id and r.id not in (skip_ids or set())]
            if not records:
                return result
            try:
                containers = self.runtime.list_managed()
            except RuntimeUnavailable as e:
                self.events.warn("Failed to apply settings, Docker unavailable: %s", e)
                result.failed.update({r.id: str(e) for r in records})
                return result

            for rec in records:
                info = find_container(containers, rec.container_id)
                if info is None:
                    self.events.warn("Container %s (%s) not found, treated as not running", rec.container_id, rec.name)
                    result.skipped.append(rec.id)
                    continue
                try:
                    after = self.recreate(rec, info, rec.port, defaults)
                except _ITEM_ERRORS as e:
                    self.events.warn("Failed to update settings for container %s (%s): %s", rec.container_id, rec.name, e)
                    result.failed[rec.id] = str(e)
                    continue
                if after.container_id != rec.container_id:
                    self.events.info("Updated settings for container %s (%s)", rec.container_id, rec.name)
                    result.succeeded.append(rec.id)
                else:
                    result.skipped.append(rec.id)
        return result

    def update_server_defaults(self, new: ServerDefaults) -> bool:
        """Persist new defaults and propagate them; True if containers were recreated."""
        with self._lock:
            old = self.store.get_server_defaults()
            needed = old.affects_containers(new)
            self.store.save_server_defaults(new)

            recreated: set[str] = set()
            if old.default_port != new.default_port:
                try:
                    realloc = self.reallocate_ports(new.default_port)
                    recreated.update(realloc.succeeded)
                except PortRangeExhausted as e:
                    self.events.warn("Failed to reallocate ports: %s", e)

            if not needed:
                self.events.info("No container recreation needed, only auto-start changed")
                return False

            changes = []
            if old.max_memory_mb != new.max_memory_mb:
                changes.append(f"memory limit ({old.max_memory_mb} -> {new.max_memory_mb} MB)")
            if old.restart_on_failure != new.restart_on_failure:
                changes.append(f"restart policy ({old.restart_policy} -> {new.restart_policy})")
            if old.default_port != new.default_port:
                changes.append(f"default port ({old.default_port} -> {new.default_port})")
            self.events.info("Container recreation needed due to changes in: %s", ", ".join(changes))

            if old.max_memory_mb != new.max_memory_mb or old.restart_on_failure != new.restart_on_failure:
                res = self.apply_settings_to_existing(new, skip_ids=recreated)
                if not res.ok:
                    self.events.warn("Failed to apply settings to %d container(s)", len(res.failed))
            return True

    # --- install / configure ------------------------------------------------

    def install_server(self, entry: InstalledServer) -> InstalledServer:
        """Pull the entry's image and record it as installed."""
        self.runtime.pull_image(entry.docker_image)
        with self._lock:
            existing = next((s for s in self.store.list_installed() if s.docker_image == entry.docker_image), None)
            now = utc_now()
            if entry.id:
                server_id = entry.id
            elif existing:
                server_id = existing.id
            else:
                server_id = f"{_slug(entry.name)}-{int(time.time())}"
            server = replace(
                entry,
                id=server_id,
                install_date=existing.install_date if existing and existing.install_date else now,
                last_updated=now,
            )
            self.store.upsert_installed(server)
            self.events.info("Installed %s (%s)", server.name, server.docker_image)
            return server

    def create_configured_server(
        self,
        installed_server_id: str,
        container_name: str,
        container_id: str,
        port: int,
        environment: dict[str, str] | None = None,
        volumes: dict[str, str] | None = None,
    ) -> ConfiguredServer:
        with self._lock:
            installed = self.store.get_installed(installed_server_id)
            if installed is None:
                raise RecordNotFound(f"installed server with ID {installed_server_id} not found")
            self._check_port_free(port)

            rec = ConfiguredServer(
                id=f"configured-{int(time.time())}-{secrets.token_hex(3)}",
                name=installed.name,
                version=installed.version,
                container_name=container_name,
                container_id=container_id,
                installed_server_id=installed.id,
                docker_image=installed.docker_image,
                docker_command=installed.docker_command,
                port=port,
                container_port=installed.mcp_port(),
                environment=dict(environment or {}),
                volumes=dict(volumes or {}),
                created_date=utc_now(),
            )
            self.store.upsert_configured(rec)
            return rec

    def _check_port_free(self, port: int, ignore_id: str = "") -> None:
        if port <= 0:
            return
        for other in self.store.list_configured():
            if other.port == port and other.id != ignore_id:
                raise PortInUse(f"port {port} is already assigned to {other.name}")

    def deploy_server(
        self,
        installed_server_id: str,
        container_name: str = "",
        environment: dict[str, str] | None = None,
        volumes: dict[str, str] | None = None,
        port: int = 0,
        start: bool | None = None,
    ) -> ConfiguredServer:
        """Create a container for an installed server and record it."""
        with self._lock:
            installed = self.store.get_installed(installed_server_id)
            if installed is None:
                raise RecordNotFound(f"installed server with ID {installed_server_id} not found")
            defaults = self.store.get_server_defaults()

            if not port:
                used = {r.port for r in self.store.list_configured() if r.port}
                port = next_free_port(defaults.default_port, used)
            self._check_port_free(port)

            env = _template_defaults(installed.environment_variables)
            env.update(environment or {})
            name = container_name or f"{self.runtime.label_prefix}-{_slug(installed.name)}-{secrets.token_hex(3)}"

            container_id = self.runtime.create(
                ContainerCreateConfig(
                    name=name,
                    image=installed.docker_image,
                    port=port,
                    container_port=installed.mcp_port(),
                    environment=env,
                    volumes=dict(volumes or {}),
                    docker_command=installed.docker_command,
                    memory_limit_mb=defaults.max_memory_mb,
                    restart_policy=defaults.restart_policy,
                )
            )
            try:
                rec = self.create_configured_server(installed.id, name, container_id, port, env, volumes)
            except Exception:
                # undo the container so it does not turn into an orphan
                try:
                    self.runtime.remove(container_id, force=True)
                except _ITEM_ERRORS as e:
                    self.events.warn("Failed to remove container %s after failed deploy: %s", container_id, e)
                raise

            if defaults.auto_start if start is None else start:
                self.start(container_id)
                rec = self.store.get_configured(rec.id) or rec
            return rec

    def remove_installed_server(self, server_id: str, remove_image: bool = False) -> None:
        """Uninstall, cascading to dependent configured servers and containers."""
        with self._lock:
            installed = self.store.get_installed(server_id)
            if installed is None:
                raise RecordNotFound(f"installed server with ID {server_id} not found")

            for rec in self.store.list_configured():
                if rec.installed_server_id != server_id:
                    continue
                if rec.container_id:
                    try:
                        self.runtime.remove(rec.container_id, force=True)
                    except _ITEM_ERRORS as e:
                        self.events.warn("Failed to remove container %s: %s", rec.container_id, e)
                self.store.remove_configured(rec.id)

            if remove_image:
                try:
                    self.runtime.remove_image(installed.docker_image, force=False)
                except _ITEM_ERRORS as e:
                    self.events.warn("Failed to remove Docker image %s: %s", installed.docker_image, e)

            self.store.remove_installed(server_id)
            self.events.info("Uninstalled %s", installed.name)

    # --- repair -------------------------------------------------------------

    def recover_interrupted(self) -> list[str]:
        """Resolve records left mid-recreation by a crash.

        Records whose container still exists go back to idle; the rest are
        marked dangling. Returns the ids marked dangling.
        """
        marked: list[str] = []
        with self._lock:
            pending = [r for r in self.store.list_configured() if r.recreate_state == RECREATE_IN_PROGRESS]
            if not pending:
                return marked
            try:
                containers = self.runtime.list_managed()
            except RuntimeUnavailable as e:
                self.events.warn("Cannot check %d interrupted recreation(s), Docker unavailable: %s", len(pending), e)
                return marked
            for rec in pending:
                if find_container(containers, rec.container_id) is not None:
                    self.store.upsert_configured(replace(rec, recreate_state=RECREATE_IDLE))
                    continue
                self._mark_dangling(rec)
                marked.append(rec.id)
        return marked

    def repair_dangling(self, server_id: str, start: bool = True) -> ConfiguredServer:
        """Relink a dangling record, creating a fresh container if needed."""
        with self._lock:
            rec = self._require_configured(server_id)
            defaults = self.store.get_server_defaults()
            containers = self.runtime.list_managed()
            info = find_container(containers, rec.container_id) if rec.container_id else None

            if info is None:
                new_id = self.runtime.create(
                    ContainerCreateConfig(
                        name=rec.container_name,
                        image=rec.docker_image,
                        port=rec.port,
                        container_port=rec.container_port,
                        environment=dict(rec.environment),
                        volumes=dict(rec.volumes),
                        docker_command=rec.docker_command,
                        memory_limit_mb=defaults.max_memory_mb,
                        restart_policy=defaults.restart_policy,
                    )
                )
                self.events.info("Recreated container for %s: %s", rec.name, new_id)
                rec = replace(rec, container_id=new_id)

            rec = replace(rec, recreate_state=RECREATE_IDLE)
            self.store.upsert_configured(rec)

            if start and not (info and info.running):
                self.runtime.start(rec.container_id)
                rec = replace(rec, last_started=utc_now())
                self.store.upsert_configured(rec)
            return rec

    def _require_configured(self, server_id: str) -> ConfiguredServer:
        rec = self.store.get_configured(server_id)
        if rec is None:
            raise RecordNotFound(f"configured server with ID {server_id} not found")
        return rec
