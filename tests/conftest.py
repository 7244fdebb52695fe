from __future__ import annotations

import random

import pytest

from squares_pool.application.orchestrator import PurchaseOrchestrator
from squares_pool.application.pool_service import PoolService
from squares_pool.domain.models import FungibleAsset, NativeAsset
from squares_pool.domain.selection import SelectionManager
from squares_pool.infrastructure.database import DatabaseManager
from squares_pool.infrastructure.ledger.memory import InMemoryPoolLedger

USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
OTHER_BUYER = "0x" + "c0ffee".rjust(40, "0")


@pytest.fixture
def native_ledger() -> InMemoryPoolLedger:
    return InMemoryPoolLedger(unit_price=100)


@pytest.fixture
def token_ledger() -> InMemoryPoolLedger:
    return InMemoryPoolLedger(unit_price=5_000_000, asset_address=USDC, auto_confirm=False)


@pytest.fixture
def db(tmp_path) -> DatabaseManager:
    return DatabaseManager(str(tmp_path / "squares.db"))


def build_orchestrator(ledger: InMemoryPoolLedger, asset, db: DatabaseManager | None = None) -> PurchaseOrchestrator:
    pool = PoolService(ledger, ttl=60, refetch_delay=0)
    selection = SelectionManager(ledger.grid, rng=random.Random(7))
    return PurchaseOrchestrator(ledger, selection, asset, pool=pool, db=db)


@pytest.fixture
def native_orchestrator(native_ledger, db) -> PurchaseOrchestrator:
    return build_orchestrator(native_ledger, NativeAsset(), db)


@pytest.fixture
def token_orchestrator(token_ledger, db) -> PurchaseOrchestrator:
    return build_orchestrator(token_ledger, FungibleAsset(address=USDC, symbol="USDC", decimals=6), db)
