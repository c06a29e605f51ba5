from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from docker.errors import DockerException
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from mcpfleet.api_models import (
    CreateContainerRequest,
    DebugRequest,
    DefaultsRequest,
    DeployRequest,
    InstallRequest,
    PullImageRequest,
    ReallocateRequest,
)
from mcpfleet.db import RecordStore
from mcpfleet.docker_ops import ContainerRuntimeClient
from mcpfleet.errors import DanglingRecord, FleetError, NotFoundError, PartialFailure, PortInUse, PortRangeExhausted, RuntimeUnavailable
from mcpfleet.events import EventLog
from mcpfleet.models import ContainerCreateConfig, InstalledServer, ServerDefaults
from mcpfleet.monitor import RuntimeMonitor
from mcpfleet.reconciler import Reconciler
from mcpfleet.settings import settings


@dataclass
class Fleet:
    """Components wired together by the application root."""

    events: EventLog
    store: RecordStore
    runtime: ContainerRuntimeClient
    reconciler: Reconciler
    monitor: RuntimeMonitor


def build_fleet() -> Fleet:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = RecordStore()
    events = EventLog(size=settings.log_buffer_size, debug_mode=settings.debug, sink=store.log_event)
    runtime = ContainerRuntimeClient(events)
    return Fleet(
        events=events,
        store=store,
        runtime=runtime,
        reconciler=Reconciler(runtime, store, events),
        monitor=RuntimeMonitor(runtime),
    )


_STATUS_BY_ERROR: list[tuple[type[Exception], int]] = [
    (NotFoundError, 404),
    (RuntimeUnavailable, 503),
    (PortRangeExhausted, 409),
    (PortInUse, 409),
    (DanglingRecord, 409),
]


def _error_response(e: Exception) -> JSONResponse:
    status = 500
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            status = code
            break
    body: dict[str, Any] = {"detail": str(e)}
    if isinstance(e, DanglingRecord):
        body["server_id"] = e.server_id
    if isinstance(e, PartialFailure):
        body["failures"] = e.failures
    return JSONResponse(status_code=status, content=body)


def create_app(fleet: Fleet | None = None) -> FastAPI:
    """Build the API; a prebuilt Fleet can be passed in (tests do this)."""
    app = FastAPI(title="mcpfleet", version="0.1.0")
    app.state.fleet = fleet

    def f() -> Fleet:
        return app.state.fleet

    @app.on_event("startup")
    def startup() -> None:
        if app.state.fleet is None:
            app.state.fleet = build_fleet()
        fl = f()
        dangling = fl.reconciler.recover_interrupted()
        if dangling:
            fl.events.warn("%d configured server(s) need repair: %s", len(dangling), ", ".join(dangling))
        fl.monitor.start()
        fl.events.info("mcpfleet API started")

    @app.on_event("shutdown")
    def shutdown() -> None:
        fl = f()
        if fl is None:
            return
        fl.monitor.stop()
        fl.events.info("mcpfleet API stopped")
        fl.events.close()
        fl.runtime.close()

    @app.exception_handler(FleetError)
    async def fleet_error(_: Request, e: FleetError) -> JSONResponse:
        return _error_response(e)

    @app.exception_handler(DockerException)
    async def docker_error(_: Request, e: DockerException) -> JSONResponse:
        return _error_response(e)

    # --- containers ---------------------------------------------------------

    @app.get("/containers")
    def list_containers() -> list[dict[str, Any]]:
        return [c.to_dict() for c in f().reconciler.managed_containers()]

    @app.post("/containers")
    def create_container(req: CreateContainerRequest) -> dict[str, Any]:
        container_id = f().reconciler.create(ContainerCreateConfig(**req.model_dump()))
        return {"id": container_id}

    @app.post("/containers/{container_id}/start")
    def start_container(container_id: str) -> dict[str, Any]:
        f().reconciler.start(container_id)
        return {"ok": True}

    @app.post("/containers/{container_id}/stop")
    def stop_container(container_id: str) -> dict[str, Any]:
        f().reconciler.stop(container_id)
        return {"ok": True}

    @app.post("/containers/{container_id}/restart")
    def restart_container(container_id: str) -> dict[str, Any]:
        f().reconciler.restart(container_id)
        return {"ok": True}

    @app.delete("/containers/{container_id}")
    def remove_container(container_id: str, force: bool = False) -> dict[str, Any]:
        f().reconciler.remove_container_and_record(container_id, force=force)
        return {"ok": True}

    @app.get("/containers/{container_id}/logs")
    def container_logs(container_id: str, lines: int = 100) -> dict[str, Any]:
        return {"id": container_id, "logs": f().reconciler.logs(container_id, lines)}

    @app.post("/images/pull")
    def pull_image(req: PullImageRequest) -> dict[str, Any]:
        f().reconciler.pull_image(req.image)
        return {"ok": True, "image": req.image}

    # --- defaults / reconciliation -----------------------------------------

    @app.get("/defaults")
    def get_defaults() -> dict[str, Any]:
        return f().store.get_server_defaults().to_dict()

    @app.put("/defaults")
    def put_defaults(req: DefaultsRequest) -> dict[str, Any]:
        recreated = f().reconciler.update_server_defaults(ServerDefaults(**req.model_dump()))
        return {"defaults": f().store.get_server_defaults().to_dict(), "recreated": recreated}

    @app.post("/ports/reallocate")
    def reallocate_ports(req: ReallocateRequest) -> dict[str, Any]:
        return f().reconciler.reallocate_ports(req.base_port).to_dict()

    @app.post("/settings/apply")
    def apply_settings() -> dict[str, Any]:
        return f().reconciler.apply_settings_to_existing().to_dict()

    @app.get("/orphans")
    def list_orphans() -> list[dict[str, Any]]:
        return [c.to_dict() for c in f().reconciler.detect_orphans()]

    @app.post("/orphans/cleanup")
    def cleanup_orphans() -> dict[str, Any]:
        return f().reconciler.cleanup_orphans().to_dict()

    # --- servers ------------------------------------------------------------

    @app.get("/servers/installed")
    def list_installed() -> list[dict[str, Any]]:
        return [s.to_dict() for s in f().store.list_installed()]

    @app.post("/servers/install")
    def install_server(req: InstallRequest) -> dict[str, Any]:
        return f().reconciler.install_server(InstalledServer(**req.model_dump())).to_dict()

    @app.delete("/servers/installed/{server_id}")
    def remove_installed(server_id: str, remove_image: bool = False) -> dict[str, Any]:
        f().reconciler.remove_installed_server(server_id, remove_image=remove_image)
        return {"ok": True}

    @app.get("/servers/configured")
    def list_configured() -> list[dict[str, Any]]:
        return [s.to_dict() for s in f().store.list_configured()]

    @app.delete("/servers/configured/{server_id}")
    def remove_configured(server_id: str) -> dict[str, Any]:
        f().reconciler.remove_server(server_id)
        return {"ok": True}

    @app.post("/servers/deploy")
    def deploy_server(req: DeployRequest) -> dict[str, Any]:
        return f().reconciler.deploy_server(**req.model_dump()).to_dict()

    @app.get("/servers/dangling")
    def list_dangling() -> list[dict[str, Any]]:
        return [s.to_dict() for s in f().reconciler.dangling_records()]

    @app.post("/servers/{server_id}/repair")
    def repair_server(server_id: str, start: bool = True) -> dict[str, Any]:
        return f().reconciler.repair_dangling(server_id, start=start).to_dict()

    @app.get("/servers/{server_id}/health")
    def server_health(server_id: str) -> dict[str, Any]:
        return f().reconciler.health(server_id)

    # --- observability ------------------------------------------------------

    @app.get("/events")
    def events(limit: int = 100, persisted: bool = False) -> list[dict[str, Any]]:
        if persisted:
            return f().store.latest_events(limit)
        return [e.to_dict() for e in f().events.recent(limit)]

    @app.put("/debug")
    def set_debug(req: DebugRequest) -> dict[str, Any]:
        f().events.set_debug_mode(req.enabled)
        return {"debug": req.enabled}

    @app.get("/runtime")
    def runtime_status() -> dict[str, Any]:
        latest = f().monitor.latest()
        return {
            "status": f().runtime.status().to_dict(),
            "last_event": latest.to_dict() if latest else None,
        }

    return app


app = create_app()


def serve() -> None:
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, log_level="debug" if settings.debug else "info")
