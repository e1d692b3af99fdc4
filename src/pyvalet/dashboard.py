"""Dashboard snapshot computation and push fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Any

from pyvalet._mqtt import DashboardMqttRuntime
from pyvalet.models.car import CarStatus
from pyvalet.models.dashboard import DashboardSnapshot, DashboardStats
from pyvalet.models.driver import DriverStatus
from pyvalet.store import CommitInfo, ResourceStore, StoreView

_logger = logging.getLogger(__name__)


def build_snapshot(view: StoreView, *, log_limit: int = 20) -> DashboardSnapshot:
    """Aggregate one consistent store generation into a dashboard snapshot."""
    slots = view.slots()
    cars = view.cars()
    drivers = view.drivers()
    logs = view.logs()
    recent = list(reversed(logs[-log_limit:])) if log_limit > 0 else []
    stats = DashboardStats(
        total_slots=len(slots),
        available_slots=sum(1 for slot in slots if not slot.occupied),
        busy_drivers=sum(1 for driver in drivers if driver.status is DriverStatus.BUSY),
        pending_checkins=sum(1 for car in cars if car.status is CarStatus.PENDING),
        awaiting_retrieval=sum(1 for car in cars if car.status is CarStatus.AWAITING_RETRIEVAL),
    )
    return DashboardSnapshot(stats=stats, slots=slots, cars=cars, drivers=drivers, logs=recent)


class DashboardPublisher:
    """Push a fresh snapshot to every subscriber after each resource commit.

    Commits may happen on any thread; publishing is hopped onto the
    attached event loop and coalesced, so a burst of commits produces one
    push computed from the latest state.
    """

    def __init__(
        self,
        store: ResourceStore,
        *,
        log_limit: int = 20,
        mqtt_runtime: DashboardMqttRuntime | None = None,
        queue_size: int = 8,
    ) -> None:
        self._store = store
        self._log_limit = log_limit
        self._mqtt = mqtt_runtime
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._detach: Any = None
        self._pending = False
        self._pending_lock = threading.Lock()

    def snapshot(self) -> DashboardSnapshot:
        return build_snapshot(self._store.view(), log_limit=self._log_limit)

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start listening for commits, publishing on *loop*."""
        self.detach()
        self._loop = loop
        self._detach = self._store.add_commit_listener(self._on_commit)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        self._loop = None

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        """A queue receiving wire-format snapshots; starts with the current one."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        queue.put_nowait(self.snapshot().to_wire())
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _on_commit(self, info: CommitInfo) -> None:
        if not info.touches_resources:
            return
        loop = self._loop
        if loop is None:
            return
        with self._pending_lock:
            if self._pending:
                return
            self._pending = True
        try:
            loop.call_soon_threadsafe(self.publish)
        except RuntimeError:
            # Event loop already closed during shutdown.
            with self._pending_lock:
                self._pending = False
            _logger.debug("Dropped dashboard push; event loop is closed")

    def publish(self) -> dict[str, Any]:
        """Compute the current snapshot and deliver it to every subscriber."""
        with self._pending_lock:
            self._pending = False
        payload = self.snapshot().to_wire()
        for queue in list(self._subscribers):
            if queue.full():
                # Slow consumer: only the newest snapshot matters.
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(payload)
        if self._mqtt is not None and self._mqtt.is_running:
            self._mqtt.publish(payload)
        return payload
