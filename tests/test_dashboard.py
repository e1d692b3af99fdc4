from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fakes import intake

from pyvalet.allocator import Allocator
from pyvalet.dashboard import DashboardPublisher, build_snapshot
from pyvalet.models.session import ConversationSession
from pyvalet.results import Ok
from pyvalet.store import ResourceStore


class FakeMqttRuntime:
    def __init__(self) -> None:
        self.is_running = True
        self.published: list[dict[str, Any]] = []

    def publish(self, payload: dict[str, Any]) -> bool:
        self.published.append(payload)
        return True


def test_snapshot_stats(allocator: Allocator, store: ResourceStore) -> None:
    assert isinstance(allocator.register_driver("Ravi", "919000000001"), Ok)
    first = allocator.register_intake(intake("KA01AA0001", "919000000101"))
    assert isinstance(allocator.register_intake(intake("KA01AA0002", "919000000102")), Ok)
    assert isinstance(first, Ok)
    assert isinstance(allocator.try_check_in(first.value.car.id, first.value.token.token), Ok)

    snapshot = build_snapshot(store.view(), log_limit=2)

    assert snapshot.stats.total_slots == 15
    assert snapshot.stats.available_slots == 14
    assert snapshot.stats.busy_drivers == 1
    assert snapshot.stats.pending_checkins == 1
    assert snapshot.stats.awaiting_retrieval == 0
    assert len(snapshot.logs) == 2
    assert snapshot.logs[0].id > snapshot.logs[1].id

    wire = snapshot.to_wire()
    assert wire["stats"]["availableSlots"] == 14
    assert wire["cars"][0]["numberPlate"] in {"KA01AA0001", "KA01AA0002"}


@pytest.mark.asyncio
async def test_subscriber_starts_with_current_snapshot(store: ResourceStore) -> None:
    publisher = DashboardPublisher(store)

    queue = publisher.subscribe()

    first = queue.get_nowait()
    assert first["stats"]["totalSlots"] == 15
    assert publisher.subscriber_count == 1
    publisher.unsubscribe(queue)
    assert publisher.subscriber_count == 0


@pytest.mark.asyncio
async def test_commits_are_pushed_and_coalesced(allocator: Allocator, store: ResourceStore) -> None:
    publisher = DashboardPublisher(store)
    publisher.attach(asyncio.get_running_loop())
    queue = publisher.subscribe()
    queue.get_nowait()

    assert isinstance(allocator.register_driver("Ravi", "919000000001"), Ok)
    assert isinstance(allocator.register_driver("Meena", "919000000002"), Ok)
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert queue.qsize() == 1
    pushed = queue.get_nowait()
    assert [driver["name"] for driver in pushed["drivers"]] == ["Ravi", "Meena"]
    publisher.detach()


@pytest.mark.asyncio
async def test_session_only_commits_are_not_pushed(store: ResourceStore) -> None:
    publisher = DashboardPublisher(store)
    publisher.attach(asyncio.get_running_loop())
    queue = publisher.subscribe()
    queue.get_nowait()

    with store.transaction() as tx:
        tx.put_session(ConversationSession(phone_number="919000000100"))
    await asyncio.sleep(0)

    assert queue.empty()
    publisher.detach()


@pytest.mark.asyncio
async def test_commit_from_worker_thread_is_pushed(allocator: Allocator, store: ResourceStore) -> None:
    publisher = DashboardPublisher(store)
    publisher.attach(asyncio.get_running_loop())
    queue = publisher.subscribe()
    queue.get_nowait()

    await asyncio.to_thread(allocator.register_driver, "Ravi", "919000000001")
    pushed = await asyncio.wait_for(queue.get(), timeout=1)

    assert pushed["drivers"][0]["phone"] == "919000000001"
    publisher.detach()


def test_slow_subscriber_keeps_only_newest(allocator: Allocator, store: ResourceStore) -> None:
    publisher = DashboardPublisher(store, queue_size=1)
    queue = publisher.subscribe()
    assert isinstance(allocator.register_driver("Ravi", "919000000001"), Ok)

    publisher.publish()

    assert queue.qsize() == 1
    assert len(queue.get_nowait()["logs"]) == 1


def test_publish_forwards_to_mqtt(store: ResourceStore) -> None:
    runtime = FakeMqttRuntime()
    publisher = DashboardPublisher(store, mqtt_runtime=runtime)  # type: ignore[arg-type]

    payload = publisher.publish()

    assert runtime.published == [payload]
