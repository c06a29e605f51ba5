from __future__ import annotations

import logging
import queue
from dataclasses import asdict, dataclass, field
from threading import Event, Lock, Thread
from typing import Any, Callable

from .events import utc_now
from .models import RuntimeStatus
from .settings import settings


log = logging.getLogger(__name__)

DOCKER_RUNNING = "docker_running"
DOCKER_NOT_RUNNING = "docker_not_running"
DOCKER_NOT_INSTALLED = "docker_not_installed"


@dataclass(frozen=True)
class RuntimeStatusEvent:
    type: str
    status: RuntimeStatus
    ts: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def classify(status: RuntimeStatus) -> str:
    if status.is_running:
        return DOCKER_RUNNING
    if status.is_installed:
        return DOCKER_NOT_RUNNING
    return DOCKER_NOT_INSTALLED


class RuntimeMonitor:
    """Polls Docker availability and publishes status events.

    Runs on its own daemon thread and only talks to the runtime client, so it
    never waits on reconciler work.
    """

    def __init__(
        self,
        runtime: Any,
        interval_s: float | None = None,
        initial_delay_s: float | None = None,
        maxsize: int = 100,
    ) -> None:
        self.runtime = runtime
        self.interval_s = settings.monitor_interval_s if interval_s is None else float(interval_s)
        self.initial_delay_s = settings.monitor_initial_delay_s if initial_delay_s is None else float(initial_delay_s)
        self.events: queue.Queue[RuntimeStatusEvent] = queue.Queue(maxsize=maxsize)
        self._subscribers: list[Callable[[RuntimeStatusEvent], None]] = []
        self._latest: RuntimeStatusEvent | None = None
        self._lock = Lock()
        self._stop = Event()
        self._thr: Thread | None = None

    def subscribe(self, fn: Callable[[RuntimeStatusEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def latest(self) -> RuntimeStatusEvent | None:
        with self._lock:
            return self._latest

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="runtime-monitor", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout)
            self._thr = None

    @property
    def running(self) -> bool:
        return self._thr is not None and self._thr.is_alive()

    def _loop(self) -> None:
        if self._stop.wait(self.initial_delay_s):
            return
        while True:
            try:
                self.check_once()
            except Exception as e:
                log.warning("runtime status check failed: %s: %s", type(e).__name__, e)
            if self._stop.wait(self.interval_s):
                return

    def check_once(self) -> RuntimeStatusEvent:
        """Probe the runtime once and publish the result."""
        status = self.runtime.status()
        ev = RuntimeStatusEvent(type=classify(status), status=status)
        with self._lock:
            self._latest = ev
            subscribers = list(self._subscribers)

        try:
            self.events.put_nowait(ev)
        except queue.Full:
            # drop the oldest so consumers always see the newest status
            try:
                self.events.get_nowait()
            except queue.Empty:
                pass
            self.events.put_nowait(ev)

        for fn in subscribers:
            try:
                fn(ev)
            except Exception as e:
                log.warning("runtime status subscriber failed: %s: %s", type(e).__name__, e)
        return ev
