from __future__ import annotations

import pytest
from fakes import FakeClock

from pyvalet.allocator import Allocator
from pyvalet.ledger import TokenLedger
from pyvalet.store import ResourceStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> ResourceStore:
    store = ResourceStore(clock=clock)
    store.initialize_slots(15)
    return store


@pytest.fixture
def ledger(store: ResourceStore) -> TokenLedger:
    return TokenLedger(store, business_number="15550001111")


@pytest.fixture
def allocator(store: ResourceStore, ledger: TokenLedger) -> Allocator:
    return Allocator(store, ledger, checkin_token_ttl=900, retrieval_token_ttl=1800)
