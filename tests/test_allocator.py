from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from fakes import FakeClock, intake

from pyvalet.allocator import Allocator, IntakeResult
from pyvalet.events import EventLog
from pyvalet.ledger import TokenLedger
from pyvalet.models.car import CarStatus
from pyvalet.models.driver import Driver, DriverStatus
from pyvalet.models.log import LogAction
from pyvalet.models.slot import slot_id_for
from pyvalet.results import Err, FailureReason, Ok, Result
from pyvalet.store import ResourceStore

OWNER = "919000000100"


def _driver(allocator: Allocator, name: str = "Ravi", phone: str = "919000000001") -> Driver:
    outcome = allocator.register_driver(name, phone)
    assert isinstance(outcome, Ok)
    return outcome.value


def _intake(allocator: Allocator, plate: str = "KA01AB1234", contact: str = OWNER) -> IntakeResult:
    outcome = allocator.register_intake(intake(plate, contact), contact)
    assert isinstance(outcome, Ok)
    return outcome.value


def _check_in(allocator: Allocator, registered: IntakeResult, driver_id: str | None = None) -> Result:
    return allocator.try_check_in(
        registered.car.id,
        registered.token.token,
        owner_id=registered.car.owner_phone,
        scanning_driver_id=driver_id,
    )


def _reason(outcome: Result) -> FailureReason:
    assert isinstance(outcome, Err)
    return outcome.reason


def test_full_lifecycle_releases_all_resources(allocator: Allocator, store: ResourceStore) -> None:
    driver = _driver(allocator)
    registered = _intake(allocator)
    assert registered.car.status is CarStatus.PENDING

    checked_in = _check_in(allocator, registered, driver.id)
    assert isinstance(checked_in, Ok)
    assert checked_in.value.slot_number == 1
    assert checked_in.value.driver.id == driver.id
    assert store.view().get_driver(driver.id).status is DriverStatus.BUSY  # type: ignore[union-attr]

    parked = allocator.try_park(driver.id, "https://img.example.test/p.jpg")
    assert isinstance(parked, Ok)
    assert parked.value.car.status is CarStatus.PARKED
    assert parked.value.car.photo_url == "https://img.example.test/p.jpg"
    assert parked.value.driver.status is DriverStatus.FREE

    requested = allocator.request_retrieval("+91 90000 00100")
    assert isinstance(requested, Ok)
    assert requested.value.car.status is CarStatus.AWAITING_RETRIEVAL
    assert requested.value.driver.id == driver.id
    assert requested.value.slot.slot_number == 1

    retrieved = allocator.try_retrieve(
        requested.value.token.token, registered.car.id, OWNER, driver.id
    )
    assert isinstance(retrieved, Ok)

    view = store.view()
    car = view.get_car(registered.car.id)
    assert car is not None
    assert car.status is CarStatus.RETRIEVED
    assert car.retrieval_time is not None
    assert view.get_slot(slot_id_for(1)).occupied is False  # type: ignore[union-attr]
    assert view.get_driver(driver.id).status is DriverStatus.FREE  # type: ignore[union-attr]
    assert store.check_invariants() == []

    events = EventLog(store)
    assert events.car_timeline(car.id) == [
        CarStatus.PENDING,
        CarStatus.CHECKED_IN,
        CarStatus.PARKED,
        CarStatus.AWAITING_RETRIEVAL,
        CarStatus.RETRIEVED,
    ]
    assert events.timeline_is_monotonic(car.id)


def test_check_in_picks_lowest_free_slot(allocator: Allocator) -> None:
    _driver(allocator, "Ravi", "919000000001")
    _driver(allocator, "Meena", "919000000002")
    first = _check_in(allocator, _intake(allocator, "KA01AA0001", "919000000101"))
    second = _check_in(allocator, _intake(allocator, "KA01AA0002", "919000000102"))

    assert isinstance(first, Ok) and isinstance(second, Ok)
    assert (first.value.slot_number, second.value.slot_number) == (1, 2)


def test_check_in_prefers_scanning_driver(allocator: Allocator) -> None:
    _driver(allocator, "Ravi", "919000000001")
    meena = _driver(allocator, "Meena", "919000000002")

    outcome = _check_in(allocator, _intake(allocator), meena.id)

    assert isinstance(outcome, Ok)
    assert outcome.value.driver.id == meena.id


def test_check_in_falls_back_to_earliest_registered_driver(allocator: Allocator, clock: FakeClock) -> None:
    ravi = _driver(allocator, "Ravi", "919000000001")
    clock.advance(5)
    meena = _driver(allocator, "Meena", "919000000002")
    assert isinstance(allocator.set_driver_availability(meena.id, False), Ok)

    outcome = _check_in(allocator, _intake(allocator), meena.id)

    assert isinstance(outcome, Ok)
    assert outcome.value.driver.id == ravi.id


def test_no_free_driver_keeps_car_pending_and_token_unused(allocator: Allocator, store: ResourceStore) -> None:
    driver = _driver(allocator)
    assert isinstance(_check_in(allocator, _intake(allocator, "KA01AA0001", "919000000101")), Ok)
    waiting = _intake(allocator, "KA01AA0002", "919000000102")

    assert _reason(_check_in(allocator, waiting)) is FailureReason.NO_FREE_DRIVER
    view = store.view()
    assert view.get_car(waiting.car.id).status is CarStatus.PENDING  # type: ignore[union-attr]
    assert view.get_token(waiting.token.token).used is False  # type: ignore[union-attr]
    assert sum(1 for slot in view.slots() if slot.occupied) == 1

    # Once the driver parks the first car, the same QR can be scanned again.
    assert isinstance(allocator.try_park(driver.id, None), Ok)
    assert isinstance(_check_in(allocator, waiting), Ok)


def test_no_free_slot(clock: FakeClock) -> None:
    store = ResourceStore(clock=clock)
    store.initialize_slots(1)
    allocator = Allocator(store, TokenLedger(store))
    driver = _driver(allocator, "Ravi", "919000000001")
    _driver(allocator, "Meena", "919000000002")
    assert isinstance(_check_in(allocator, _intake(allocator, "KA01AA0001", "919000000101")), Ok)
    assert isinstance(allocator.try_park(driver.id, None), Ok)

    waiting = _intake(allocator, "KA01AA0002", "919000000102")
    assert _reason(_check_in(allocator, waiting)) is FailureReason.NO_FREE_SLOT
    assert store.view().get_token(waiting.token.token).used is False  # type: ignore[union-attr]


def test_replayed_check_in_scan_does_not_reassign(allocator: Allocator, store: ResourceStore) -> None:
    _driver(allocator, "Ravi", "919000000001")
    _driver(allocator, "Meena", "919000000002")
    registered = _intake(allocator)
    assert isinstance(_check_in(allocator, registered), Ok)
    before = store.view().get_car(registered.car.id)

    assert _reason(_check_in(allocator, registered)) is FailureReason.TOKEN_ALREADY_USED
    assert store.view().get_car(registered.car.id) == before


def test_expired_check_in_token(allocator: Allocator, clock: FakeClock, store: ResourceStore) -> None:
    _driver(allocator)
    registered = _intake(allocator)
    clock.advance(901)

    assert _reason(_check_in(allocator, registered)) is FailureReason.TOKEN_EXPIRED
    assert store.view().get_car(registered.car.id).status is CarStatus.PENDING  # type: ignore[union-attr]


def test_zero_ttl_check_in_token_expires(clock: FakeClock) -> None:
    store = ResourceStore(clock=clock)
    store.initialize_slots(15)
    allocator = Allocator(store, TokenLedger(store), checkin_token_ttl=0)
    _driver(allocator)
    registered = _intake(allocator)
    clock.advance(1)

    assert _reason(_check_in(allocator, registered)) is FailureReason.TOKEN_EXPIRED
    assert all(not slot.occupied for slot in store.view().slots())


def test_unknown_car_and_mismatched_token(allocator: Allocator) -> None:
    _driver(allocator)
    first = _intake(allocator, "KA01AA0001", "919000000101")
    second = _intake(allocator, "KA01AA0002", "919000000102")

    assert _reason(allocator.try_check_in("deadbeef", first.token.token)) is FailureReason.UNKNOWN_CAR
    assert _reason(allocator.try_check_in(second.car.id, first.token.token)) is FailureReason.TOKEN_MISMATCH


def test_register_intake_duplicate_plate(allocator: Allocator) -> None:
    _driver(allocator)
    registered = _intake(allocator)
    assert isinstance(_check_in(allocator, registered), Ok)

    outcome = allocator.register_intake(intake(), OWNER)

    assert _reason(outcome) is FailureReason.DUPLICATE_PLATE


def test_register_intake_reissues_token_for_pending_plate(allocator: Allocator, store: ResourceStore) -> None:
    first = _intake(allocator)
    again = allocator.register_intake(intake(), OWNER)

    assert isinstance(again, Ok)
    assert again.value.reissued is True
    assert again.value.car.id == first.car.id
    assert again.value.token.token != first.token.token
    assert len(store.view().cars()) == 1


def test_park_without_assigned_car(allocator: Allocator) -> None:
    driver = _driver(allocator)

    assert _reason(allocator.try_park(driver.id, None)) is FailureReason.NO_ASSIGNED_CAR
    assert _reason(allocator.try_park("driver-9999", None)) is FailureReason.UNKNOWN_DRIVER


def test_retrieval_requires_parked_car(allocator: Allocator) -> None:
    driver = _driver(allocator)
    registered = _intake(allocator)

    assert _reason(allocator.request_retrieval(OWNER)) is FailureReason.NO_PARKED_CAR
    assert isinstance(_check_in(allocator, registered, driver.id), Ok)
    assert _reason(allocator.request_retrieval(OWNER)) is FailureReason.NO_PARKED_CAR


def test_retrieval_without_free_driver(allocator: Allocator) -> None:
    driver = _driver(allocator)
    assert isinstance(_check_in(allocator, _intake(allocator)), Ok)
    assert isinstance(allocator.try_park(driver.id, None), Ok)
    assert isinstance(allocator.set_driver_availability(driver.id, False), Ok)

    assert _reason(allocator.request_retrieval(OWNER)) is FailureReason.NO_FREE_DRIVER


def test_repeated_retrieval_request_resends_live_token(allocator: Allocator, clock: FakeClock) -> None:
    driver = _driver(allocator)
    assert isinstance(_check_in(allocator, _intake(allocator)), Ok)
    assert isinstance(allocator.try_park(driver.id, None), Ok)

    first = allocator.request_retrieval(OWNER)
    again = allocator.request_retrieval(OWNER)
    assert isinstance(first, Ok) and isinstance(again, Ok)
    assert again.value.reissued is True
    assert again.value.token.token == first.value.token.token

    clock.advance(1801)
    renewed = allocator.request_retrieval(OWNER)
    assert isinstance(renewed, Ok)
    assert renewed.value.token.token != first.value.token.token
    assert renewed.value.driver.id == driver.id


def test_retrieve_by_other_driver_is_rejected_without_mutation(allocator: Allocator, store: ResourceStore) -> None:
    ravi = _driver(allocator, "Ravi", "919000000001")
    meena = _driver(allocator, "Meena", "919000000002")
    registered = _intake(allocator)
    assert isinstance(_check_in(allocator, registered, ravi.id), Ok)
    assert isinstance(allocator.try_park(ravi.id, None), Ok)
    requested = allocator.request_retrieval(OWNER)
    assert isinstance(requested, Ok)
    assigned = requested.value.driver.id
    other = meena.id if assigned == ravi.id else ravi.id
    before = store.view()

    outcome = allocator.try_retrieve(requested.value.token.token, registered.car.id, OWNER, other)

    assert _reason(outcome) is FailureReason.DRIVER_MISMATCH
    after = store.view()
    assert after.get_car(registered.car.id) == before.get_car(registered.car.id)
    assert after.get_token(requested.value.token.token).used is False  # type: ignore[union-attr]
    assert after.slots() == before.slots()
    assert after.drivers() == before.drivers()
    assert after.logs() == before.logs()


def test_check_in_token_cannot_retrieve(allocator: Allocator) -> None:
    driver = _driver(allocator)
    registered = _intake(allocator)

    outcome = allocator.try_retrieve(registered.token.token, registered.car.id, OWNER, driver.id)

    assert _reason(outcome) is FailureReason.TOKEN_MISMATCH


def test_concurrent_check_ins_for_last_driver(allocator: Allocator, store: ResourceStore) -> None:
    driver = _driver(allocator)
    cars = [
        _intake(allocator, "KA01AA0001", "919000000101"),
        _intake(allocator, "KA01AA0002", "919000000102"),
    ]
    barrier = threading.Barrier(len(cars))

    def _scan(registered: IntakeResult) -> Result:
        barrier.wait()
        return _check_in(allocator, registered)

    with ThreadPoolExecutor(max_workers=len(cars)) as pool:
        outcomes = list(pool.map(_scan, cars))

    winners = [o for o in outcomes if isinstance(o, Ok)]
    losers = [o for o in outcomes if isinstance(o, Err)]
    assert len(winners) == 1 and len(losers) == 1
    assert winners[0].value.slot_number == 1
    assert winners[0].value.driver.id == driver.id
    assert losers[0].reason is FailureReason.NO_FREE_DRIVER
    assert store.check_invariants() == []
    assert sum(1 for slot in store.view().slots() if slot.occupied) == 1


def test_many_concurrent_check_ins_never_share_resources(clock: FakeClock) -> None:
    store = ResourceStore(clock=clock)
    store.initialize_slots(5)
    allocator = Allocator(store, TokenLedger(store))
    for n in range(3):
        _driver(allocator, f"Driver {n}", f"91900000000{n}")
    cars = [_intake(allocator, f"KA01AA00{n:02d}", f"9190000001{n:02d}") for n in range(10)]
    barrier = threading.Barrier(len(cars))

    def _scan(registered: IntakeResult) -> Result:
        barrier.wait()
        return _check_in(allocator, registered)

    with ThreadPoolExecutor(max_workers=len(cars)) as pool:
        outcomes = list(pool.map(_scan, cars))

    winners = [o.value for o in outcomes if isinstance(o, Ok)]
    assert len(winners) == 3
    assert len({w.slot.id for w in winners}) == 3
    assert len({w.driver.id for w in winners}) == 3
    assert all(_reason(o) is FailureReason.NO_FREE_DRIVER for o in outcomes if isinstance(o, Err))
    assert store.check_invariants() == []


def test_register_driver_rejects_duplicate_phone(allocator: Allocator) -> None:
    _driver(allocator, "Ravi", "+91 90000 00001")

    assert _reason(allocator.register_driver("Ravi Again", "919000000001")) is FailureReason.DUPLICATE_PHONE
    with pytest.raises(ValueError):
        allocator.register_driver(" ", "919000000003")


def test_abandon_pending_removes_car_and_tokens(allocator: Allocator, store: ResourceStore) -> None:
    registered = _intake(allocator)

    outcome = allocator.abandon_pending(registered.car.id)

    assert isinstance(outcome, Ok)
    view = store.view()
    assert view.get_car(registered.car.id) is None
    assert view.get_token(registered.token.token) is None
    assert view.logs()[-1].action is LogAction.INTAKE_ABANDONED
    assert _reason(allocator.abandon_pending(registered.car.id)) is FailureReason.UNKNOWN_CAR


def test_abandon_rejects_checked_in_car(allocator: Allocator) -> None:
    _driver(allocator)
    registered = _intake(allocator)
    assert isinstance(_check_in(allocator, registered), Ok)

    assert _reason(allocator.abandon_pending(registered.car.id)) is FailureReason.WRONG_STATE


def test_availability_toggle_logs_only_changes(allocator: Allocator, store: ResourceStore) -> None:
    driver = _driver(allocator)
    log_count = len(store.view().logs())

    assert isinstance(allocator.set_driver_availability(driver.id, True), Ok)
    assert len(store.view().logs()) == log_count
    off = allocator.set_driver_availability(driver.id, False)
    assert isinstance(off, Ok) and off.value.available is False
    assert store.view().logs()[-1].action is LogAction.DRIVER_AVAILABILITY
    assert _reason(allocator.set_driver_availability("driver-9999", True)) is FailureReason.UNKNOWN_DRIVER


def test_reset_clears_history_and_frees_resources(allocator: Allocator, store: ResourceStore) -> None:
    driver = _driver(allocator)
    assert isinstance(_check_in(allocator, _intake(allocator)), Ok)

    allocator.reset()

    view = store.view()
    assert view.cars() == []
    assert view.tokens() == []
    assert all(not slot.occupied for slot in view.slots())
    assert view.get_driver(driver.id).status is DriverStatus.FREE  # type: ignore[union-attr]
    assert [entry.action for entry in view.logs()] == [LogAction.RESET]
    assert store.check_invariants() == []


def test_failed_snapshot_write_is_a_typed_failure(
    tmp_path: Path, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    store = ResourceStore(clock=clock, path=tmp_path / "valet.json")
    store.initialize_slots(3)
    allocator = Allocator(store, TokenLedger(store))
    driver = _driver(allocator)
    registered = _intake(allocator)

    def _disk_full(_path: Path, _tables: object) -> None:
        raise OSError("disk full")

    with monkeypatch.context() as patched:
        patched.setattr(store, "_save", _disk_full)
        outcome = _check_in(allocator, registered)

    assert _reason(outcome) is FailureReason.STORE_UNAVAILABLE
    assert FailureReason.STORE_UNAVAILABLE.is_retryable
    view = store.view()
    assert view.get_car(registered.car.id).status is CarStatus.PENDING  # type: ignore[union-attr]
    assert view.get_driver(driver.id).status is DriverStatus.FREE  # type: ignore[union-attr]
    assert view.get_token(registered.token.token).used is False  # type: ignore[union-attr]

    assert isinstance(_check_in(allocator, registered), Ok)


def test_pending_plate_of_another_owner_is_a_duplicate(allocator: Allocator, store: ResourceStore) -> None:
    first = _intake(allocator, contact=OWNER)

    outcome = allocator.register_intake(intake(contact="919999999999"), "919999999999")

    assert _reason(outcome) is FailureReason.DUPLICATE_PLATE
    assert [car.id for car in store.view().cars()] == [first.car.id]
    live = [t for t in store.view().tokens() if t.car_id == first.car.id]
    assert [t.token for t in live] == [first.token.token]


def test_expired_retrieval_falls_through_to_other_parked_car(allocator: Allocator, clock: FakeClock) -> None:
    first_driver = _driver(allocator)
    second_driver = _driver(allocator, "Meena", "919000000002")
    first = _intake(allocator, "KA01AB1234")
    assert isinstance(_check_in(allocator, first, first_driver.id), Ok)
    assert isinstance(allocator.try_park(first_driver.id, None), Ok)
    clock.advance(1)
    second = _intake(allocator, "KA01AB9999")
    assert isinstance(_check_in(allocator, second, second_driver.id), Ok)
    assert isinstance(allocator.try_park(second_driver.id, None), Ok)

    requested = allocator.request_retrieval(OWNER)
    assert isinstance(requested, Ok)
    assert requested.value.car.id == second.car.id
    resent = allocator.request_retrieval(OWNER)
    assert isinstance(resent, Ok)
    assert resent.value.car.id == second.car.id
    assert resent.value.reissued is True

    clock.advance(1801)
    other = allocator.request_retrieval(OWNER)
    assert isinstance(other, Ok)
    assert other.value.car.id == first.car.id
    assert other.value.reissued is False

    # Both drivers are now busy, so the expired request only gets a new token.
    clock.advance(1801)
    renewed = allocator.request_retrieval(OWNER)
    assert isinstance(renewed, Ok)
    assert renewed.value.reissued is True
    assert renewed.value.token.token not in (requested.value.token.token, other.value.token.token)
