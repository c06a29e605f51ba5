from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _kv(items: list[str] | None, sep: str = "=") -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items or []:
        key, _, value = item.partition(sep)
        out[key] = value
    return out


def _done(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="mcpfleet CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("containers", help="List managed containers")

    for action in ("start", "stop", "restart"):
        s = sub.add_parser(action, help=f"{action.capitalize()} a container")
        s.add_argument("container_id")

    s_rm = sub.add_parser("rm", help="Remove a container and its configured server")
    s_rm.add_argument("container_id")
    s_rm.add_argument("--force", action="store_true")

    s_logs = sub.add_parser("logs", help="Show container logs")
    s_logs.add_argument("container_id")
    s_logs.add_argument("--lines", type=int, default=100)

    s_pull = sub.add_parser("pull", help="Pull an image")
    s_pull.add_argument("image")

    s_def = sub.add_parser("defaults", help="Show or update server defaults")
    s_def.add_argument("--default-port", type=int)
    s_def.add_argument("--max-memory-mb", type=int)
    s_def.add_argument("--auto-start", choices=["true", "false"])
    s_def.add_argument("--restart-on-failure", choices=["true", "false"])

    s_ports = sub.add_parser("reallocate", help="Reassign host ports from a new base")
    s_ports.add_argument("base_port", type=int)

    sub.add_parser("apply-settings", help="Recreate running containers with current defaults")

    s_orph = sub.add_parser("orphans", help="List orphaned containers")
    s_orph.add_argument("--cleanup", action="store_true", help="Stop and remove them")

    sub.add_parser("installed", help="List installed servers")

    s_inst = sub.add_parser("install", help="Pull an image and record it as installed")
    s_inst.add_argument("--name", required=True)
    s_inst.add_argument("--image", required=True)
    s_inst.add_argument("--version", default="")
    s_inst.add_argument("--mcp-port", type=int, default=0, help="Port the server listens on inside the container")
    s_inst.add_argument("--command", default="", help="Container command line")

    s_uninst = sub.add_parser("uninstall", help="Remove an installed server and everything built from it")
    s_uninst.add_argument("server_id")
    s_uninst.add_argument("--remove-image", action="store_true")

    sub.add_parser("configured", help="List configured servers")

    s_dep = sub.add_parser("deploy", help="Create a container for an installed server")
    s_dep.add_argument("installed_server_id")
    s_dep.add_argument("--name", default="")
    s_dep.add_argument("--port", type=int, default=0)
    s_dep.add_argument("-e", "--env", action="append", help="KEY=VALUE")
    s_dep.add_argument("-v", "--volume", action="append", help="HOST:CONTAINER")
    mode = s_dep.add_mutually_exclusive_group()
    mode.add_argument("--start", dest="start", action="store_true", default=None)
    mode.add_argument("--no-start", dest="start", action="store_false")

    sub.add_parser("dangling", help="List configured servers whose container is missing")

    s_rep = sub.add_parser("repair", help="Relink a dangling configured server")
    s_rep.add_argument("server_id")
    s_rep.add_argument("--no-start", action="store_true")

    s_health = sub.add_parser("health", help="Check a configured server's health endpoint")
    s_health.add_argument("server_id")

    s_ev = sub.add_parser("events", help="Show recent log entries")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--persisted", action="store_true", help="Read from the database instead of memory")

    sub.add_parser("runtime", help="Show Docker availability")

    args = p.parse_args(argv)
    base = args.api.rstrip("/")

    if args.cmd == "containers":
        return _done(requests.get(f"{base}/containers", timeout=30))

    if args.cmd in ("start", "stop", "restart"):
        return _done(requests.post(f"{base}/containers/{args.container_id}/{args.cmd}", timeout=60))

    if args.cmd == "rm":
        return _done(requests.delete(f"{base}/containers/{args.container_id}", params={"force": args.force}, timeout=60))

    if args.cmd == "logs":
        r = requests.get(f"{base}/containers/{args.container_id}/logs", params={"lines": args.lines}, timeout=30)
        if r.ok:
            print(r.json()["logs"])
            return 0
        return _done(r)

    if args.cmd == "pull":
        return _done(requests.post(f"{base}/images/pull", json={"image": args.image}, timeout=600))

    if args.cmd == "defaults":
        current = requests.get(f"{base}/defaults", timeout=10)
        changes = {
            "default_port": args.default_port,
            "max_memory_mb": args.max_memory_mb,
            "auto_start": None if args.auto_start is None else args.auto_start == "true",
            "restart_on_failure": None if args.restart_on_failure is None else args.restart_on_failure == "true",
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes or not current.ok:
            return _done(current)
        payload = {**current.json(), **changes}
        return _done(requests.put(f"{base}/defaults", json=payload, timeout=600))

    if args.cmd == "reallocate":
        return _done(requests.post(f"{base}/ports/reallocate", json={"base_port": args.base_port}, timeout=600))

    if args.cmd == "apply-settings":
        return _done(requests.post(f"{base}/settings/apply", timeout=600))

    if args.cmd == "orphans":
        if args.cleanup:
            return _done(requests.post(f"{base}/orphans/cleanup", timeout=600))
        return _done(requests.get(f"{base}/orphans", timeout=30))

    if args.cmd == "installed":
        return _done(requests.get(f"{base}/servers/installed", timeout=10))

    if args.cmd == "install":
        payload = {
            "name": args.name,
            "docker_image": args.image,
            "version": args.version,
            "ports": {"mcp": args.mcp_port} if args.mcp_port else {},
            "docker_command": args.command,
        }
        return _done(requests.post(f"{base}/servers/install", json=payload, timeout=600))

    if args.cmd == "uninstall":
        params = {"remove_image": args.remove_image}
        return _done(requests.delete(f"{base}/servers/installed/{args.server_id}", params=params, timeout=120))

    if args.cmd == "configured":
        return _done(requests.get(f"{base}/servers/configured", timeout=10))

    if args.cmd == "deploy":
        payload = {
            "installed_server_id": args.installed_server_id,
            "container_name": args.name,
            "port": args.port,
            "environment": _kv(args.env),
            "volumes": _kv(args.volume, sep=":"),
            "start": args.start,
        }
        return _done(requests.post(f"{base}/servers/deploy", json=payload, timeout=120))

    if args.cmd == "dangling":
        return _done(requests.get(f"{base}/servers/dangling", timeout=30))

    if args.cmd == "repair":
        params = {"start": not args.no_start}
        return _done(requests.post(f"{base}/servers/{args.server_id}/repair", params=params, timeout=120))

    if args.cmd == "health":
        return _done(requests.get(f"{base}/servers/{args.server_id}/health", timeout=30))

    if args.cmd == "events":
        params = {"limit": args.limit, "persisted": args.persisted}
        return _done(requests.get(f"{base}/events", params=params, timeout=10))

    if args.cmd == "runtime":
        return _done(requests.get(f"{base}/runtime", timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
