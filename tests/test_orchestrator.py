from __future__ import annotations

import asyncio

import pytest

from conftest import OTHER_BUYER, build_orchestrator
from squares_pool.application.orchestrator import PurchaseOrchestrator
from squares_pool.application.token_registry import TokenRegistry
from squares_pool.domain.errors import (
    AllowanceError,
    GuardSuppression,
    TransactionFailed,
    TransactionRejected,
    ValidationError,
)
from squares_pool.domain.models import (
    FungibleAsset,
    NativeAsset,
    PoolState,
    PurchaseStep as Step,
    TransactionHandle,
    TransactionReceipt,
    TxOperation,
    TxStatus,
)
from squares_pool.infrastructure.ledger.memory import InMemoryPoolLedger

FUNGIBLE_PATH = [
    Step.IDLE,
    Step.CHECKING_ALLOWANCE,
    Step.APPROVAL_SUBMITTING,
    Step.APPROVAL_CONFIRMING,
    Step.PURCHASE_SUBMITTING,
    Step.PURCHASE_CONFIRMING,
    Step.COMPLETE,
]


async def wait_until(predicate, attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


async def wait_for_step(orchestrator, step: Step) -> None:
    await wait_until(lambda: orchestrator.step == step)


def calls_named(ledger, name: str) -> list[tuple]:
    return [call for call in ledger.calls if call[0] == name]


# ---- 原生币路径 ----


@pytest.mark.asyncio
async def test_native_purchase_runs_straight_through(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    await orchestrator.refresh()
    for position in (3, 47, 99):
        orchestrator.selection.toggle(position)
    assert orchestrator.selection.cost(100) == 300

    seen: list[Step] = []
    orchestrator.subscribe(lambda session: seen.append(session.step))
    session = await orchestrator.submit()

    assert orchestrator.history == [Step.IDLE, Step.SUBMITTING, Step.CONFIRMING, Step.COMPLETE]
    assert seen == [Step.SUBMITTING, Step.CONFIRMING, Step.COMPLETE]
    assert len(orchestrator.selection) == 0
    info = await native_ledger.get_pool_info()
    assert info.sold_count == 3
    assert info.total_pot == 300
    assert native_ledger.calls == [("purchase", [3, 47, 99], 300)]

    receipt = orchestrator.last_receipt
    assert receipt is not None
    assert (receipt.count, receipt.total_cost) == (3, 300)
    assert receipt.tx_hash == session.purchase_handle.tx_hash
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_native_rejection_returns_to_idle_and_keeps_selection(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(5)
    native_ledger.reject_next = True

    with pytest.raises(TransactionRejected):
        await orchestrator.submit()

    assert orchestrator.step == Step.IDLE
    assert orchestrator.history == [Step.IDLE, Step.SUBMITTING, Step.ERROR, Step.IDLE]
    assert orchestrator.selection.positions == (5,)
    assert orchestrator.last_receipt is None
    assert native_ledger.calls == []


@pytest.mark.asyncio
async def test_native_revert_surfaces_failure_without_retry(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(8)
    native_ledger.fail_next = "execution reverted: boom"

    with pytest.raises(TransactionFailed, match="boom"):
        await orchestrator.submit()

    assert orchestrator.step == Step.IDLE
    assert orchestrator.session.last_error == "execution reverted: boom"
    assert orchestrator.selection.positions == (8,)
    assert len(calls_named(native_ledger, "purchase")) == 1
    assert (await native_ledger.get_pool_info()).sold_count == 0


@pytest.mark.asyncio
async def test_recheck_leaves_pending_purchase_in_place(native_orchestrator, native_ledger) -> None:
    native_ledger.auto_confirm = False
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(1)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.CONFIRMING)

    receipt = await orchestrator.recheck()
    assert receipt.status == TxStatus.PENDING
    assert orchestrator.step == Step.CONFIRMING

    native_ledger.confirm(native_ledger.pending_hashes()[0])
    await task
    assert orchestrator.step == Step.COMPLETE
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_receipt_from_previous_session_is_ignored(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(1)
    first = await orchestrator.submit()
    old_receipt = await native_ledger.get_transaction_status(first.purchase_handle)

    orchestrator.reset()
    native_ledger.auto_confirm = False
    orchestrator.selection.toggle(2)
    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.CONFIRMING)

    assert old_receipt.status == TxStatus.CONFIRMED
    assert await orchestrator.on_transaction_update(old_receipt) is False
    assert orchestrator.step == Step.CONFIRMING
    assert orchestrator.selection.positions == (2,)

    native_ledger.confirm(native_ledger.pending_hashes()[0])
    await task
    assert orchestrator.step == Step.COMPLETE
    await orchestrator.pool.close()


# ---- 本地校验 ----


@pytest.mark.asyncio
async def test_empty_selection_is_rejected_before_ledger(native_orchestrator, native_ledger) -> None:
    with pytest.raises(ValidationError):
        await native_orchestrator.submit()
    assert native_ledger.calls == []
    assert native_orchestrator.session is None


@pytest.mark.asyncio
async def test_square_sold_elsewhere_is_caught_at_submission(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(10)
    orchestrator.selection.toggle(11)
    native_ledger.set_owner(11, OTHER_BUYER)

    with pytest.raises(ValidationError, match="already sold"):
        await orchestrator.submit()
    assert native_ledger.calls == []


@pytest.mark.asyncio
async def test_quota_is_rechecked_against_ledger(native_ledger) -> None:
    native_ledger.max_per_user = 2
    orchestrator = build_orchestrator(native_ledger, NativeAsset())
    for position in (1, 2, 3):
        orchestrator.selection.toggle(position)

    with pytest.raises(ValidationError, match="remaining allowance"):
        await orchestrator.submit()
    assert native_ledger.calls == []


@pytest.mark.asyncio
async def test_closed_pool_refuses_submission(native_orchestrator, native_ledger) -> None:
    native_ledger.info = native_ledger.info.model_copy(update={"state": PoolState.CLOSED})
    native_orchestrator.selection.toggle(1)
    with pytest.raises(ValidationError, match="Closed"):
        await native_orchestrator.submit()


@pytest.mark.asyncio
async def test_private_pool_needs_password(native_ledger) -> None:
    native_ledger.password = "secret"
    orchestrator = build_orchestrator(native_ledger, NativeAsset())
    orchestrator.selection.toggle(4)

    with pytest.raises(ValidationError, match="password"):
        await orchestrator.submit()
    await orchestrator.submit(password="secret")
    assert orchestrator.step == Step.COMPLETE
    assert native_ledger.grid[4] == native_ledger.account
    await orchestrator.pool.close()


# ---- 代币路径 ----


@pytest.mark.asyncio
async def test_token_purchase_approves_then_buys(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    await orchestrator.refresh()
    orchestrator.selection.toggle(1)
    orchestrator.selection.toggle(2)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    assert calls_named(token_ledger, "purchase") == []

    [approval] = token_ledger.pending_hashes(TxOperation.APPROVAL)
    token_ledger.confirm(approval)
    await wait_for_step(orchestrator, Step.PURCHASE_CONFIRMING)
    [purchase] = token_ledger.pending_hashes(TxOperation.PURCHASE)
    token_ledger.confirm(purchase)
    await task

    assert orchestrator.history == FUNGIBLE_PATH
    assert calls_named(token_ledger, "approve") == [("approve", token_ledger.pool_address, 10_000_000)]
    assert orchestrator.last_receipt.total_cost == 10_000_000
    assert len(orchestrator.selection) == 0
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_existing_allowance_skips_approval(token_orchestrator, token_ledger) -> None:
    token_ledger.auto_confirm = True
    token_ledger.allowances[token_ledger.pool_address] = 10**12
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(9)

    await orchestrator.submit()

    assert orchestrator.history == [
        Step.IDLE,
        Step.CHECKING_ALLOWANCE,
        Step.PURCHASE_SUBMITTING,
        Step.PURCHASE_CONFIRMING,
        Step.COMPLETE,
    ]
    assert calls_named(token_ledger, "approve") == []
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_clearing_selection_suppresses_auto_purchase(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(1)
    orchestrator.selection.toggle(2)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    orchestrator.selection.clear()
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])
    session = await task

    assert orchestrator.step == Step.APPROVAL_CONFIRMING
    assert session.awaiting_purchase
    assert calls_named(token_ledger, "purchase") == []

    # 手动再点一次：跳过授权直接买
    token_ledger.auto_confirm = True
    orchestrator.selection.toggle(1)
    orchestrator.selection.toggle(2)
    await orchestrator.submit()

    assert orchestrator.step == Step.COMPLETE
    assert len(calls_named(token_ledger, "approve")) == 1
    assert orchestrator.history == FUNGIBLE_PATH
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_unknown_unit_price_suppresses_auto_purchase(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(3)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    orchestrator.pool.invalidate()
    assert orchestrator.unit_price is None
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])
    await task

    assert orchestrator.step == Step.APPROVAL_CONFIRMING
    assert orchestrator.session.awaiting_purchase
    assert calls_named(token_ledger, "purchase") == []


@pytest.mark.asyncio
async def test_foreign_approval_signal_cannot_trigger_purchase(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(7)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    [approval] = token_ledger.pending_hashes(TxOperation.APPROVAL)
    stale = TransactionReceipt(
        handle=TransactionHandle(tx_hash=approval, operation=TxOperation.APPROVAL, session_id="unrelated"),
        status=TxStatus.CONFIRMED,
    )

    with pytest.raises(GuardSuppression):
        orchestrator.check_continuation(stale)
    assert await orchestrator.on_transaction_update(stale) is False
    assert orchestrator.step == Step.APPROVAL_CONFIRMING
    assert not orchestrator.session.approval_confirmed
    assert calls_named(token_ledger, "purchase") == []

    token_ledger.auto_confirm = True
    token_ledger.confirm(approval)
    await task
    assert orchestrator.step == Step.COMPLETE
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_second_submit_while_approving_is_refused(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(1)

    first = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    first_session = orchestrator.session

    with pytest.raises(ValidationError, match="already in flight"):
        await orchestrator.submit()
    assert orchestrator.session is first_session
    assert len(token_ledger.pending_hashes(TxOperation.APPROVAL)) == 1

    # 显式复位之后才能另起会话；旧授权的确认推不动新会话
    orchestrator.reset()
    second = asyncio.create_task(orchestrator.submit())
    await wait_until(lambda: len(token_ledger.pending_hashes(TxOperation.APPROVAL)) == 2)
    assert orchestrator.session.session_id != first_session.session_id

    old_approval, new_approval = token_ledger.pending_hashes(TxOperation.APPROVAL)
    token_ledger.confirm(old_approval)
    assert await first is first_session
    assert calls_named(token_ledger, "purchase") == []
    assert orchestrator.step == Step.APPROVAL_CONFIRMING

    token_ledger.auto_confirm = True
    token_ledger.confirm(new_approval)
    await second
    assert orchestrator.step == Step.COMPLETE
    assert len(calls_named(token_ledger, "purchase")) == 1
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_double_submit_while_confirming_buys_once(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    native_ledger.auto_confirm = False
    orchestrator.selection.toggle(5)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.CONFIRMING)
    with pytest.raises(ValidationError, match="already in flight"):
        await orchestrator.submit()
    assert orchestrator.step == Step.CONFIRMING

    [purchase] = native_ledger.pending_hashes(TxOperation.PURCHASE)
    native_ledger.confirm(purchase)
    session = await task

    assert session.step == Step.COMPLETE
    assert len(calls_named(native_ledger, "purchase")) == 1
    assert native_ledger.info.sold_count == 1
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_overlapping_submits_broadcast_one_purchase(native_orchestrator, native_ledger) -> None:
    orchestrator = native_orchestrator
    native_ledger.auto_confirm = False
    orchestrator.selection.toggle(8)

    tasks = [asyncio.create_task(orchestrator.submit()) for _ in range(2)]
    await wait_until(lambda: any(t.done() for t in tasks) and native_ledger.pending_hashes())
    native_ledger.confirm(native_ledger.pending_hashes()[0])
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert sum(isinstance(r, ValidationError) for r in results) == 1
    assert len(calls_named(native_ledger, "purchase")) == 1
    assert orchestrator.step == Step.COMPLETE
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_double_manual_continue_buys_once(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(4)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    orchestrator.selection.clear()
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])
    await task
    assert orchestrator.session.awaiting_purchase

    orchestrator.selection.toggle(4)
    tasks = [asyncio.create_task(orchestrator.submit()) for _ in range(2)]
    await wait_until(lambda: any(t.done() for t in tasks) and token_ledger.pending_hashes(TxOperation.PURCHASE))
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.PURCHASE)[0])
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert sum(isinstance(r, ValidationError) for r in results) == 1
    assert len(calls_named(token_ledger, "purchase")) == 1
    assert orchestrator.step == Step.COMPLETE
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_native_asset_cannot_pay_token_pool(token_ledger) -> None:
    orchestrator = build_orchestrator(token_ledger, NativeAsset())
    orchestrator.selection.toggle(1)

    with pytest.raises(ValidationError, match="does not match pool asset"):
        await orchestrator.submit()
    assert token_ledger.calls == []
    assert orchestrator.session is None


@pytest.mark.asyncio
async def test_token_asset_must_match_pool_token(token_ledger) -> None:
    other = FungibleAsset(address="0x" + "d0d0".rjust(40, "0"), symbol="DAI")
    orchestrator = build_orchestrator(token_ledger, other)
    orchestrator.selection.toggle(1)

    with pytest.raises(ValidationError, match="does not match pool asset"):
        await orchestrator.submit()
    assert token_ledger.calls == []


@pytest.mark.asyncio
async def test_revoked_allowance_returns_to_checking(token_orchestrator, token_ledger, monkeypatch) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(6)

    async def stale_allowance(spender: str) -> int:
        return 10**30

    monkeypatch.setattr(token_ledger, "get_allowance", stale_allowance)
    with pytest.raises(AllowanceError):
        await orchestrator.submit()

    assert orchestrator.step == Step.CHECKING_ALLOWANCE
    assert orchestrator.history[-3:] == [Step.PURCHASE_SUBMITTING, Step.ERROR, Step.CHECKING_ALLOWANCE]
    assert orchestrator.selection.positions == (6,)


@pytest.mark.asyncio
async def test_allowance_revoked_while_waiting_to_buy(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(6)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    orchestrator.selection.clear()
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])
    await task

    token_ledger.revoke_allowance(token_ledger.pool_address)
    orchestrator.selection.toggle(6)
    with pytest.raises(AllowanceError):
        await orchestrator.submit()
    assert orchestrator.step == Step.CHECKING_ALLOWANCE
    assert not orchestrator.session.approval_confirmed


@pytest.mark.asyncio
async def test_failed_approval_is_not_retried(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(2)
    token_ledger.fail_next = "execution reverted: token paused"

    with pytest.raises(TransactionFailed):
        await orchestrator.submit()

    assert orchestrator.step == Step.IDLE
    assert len(calls_named(token_ledger, "approve")) == 1
    assert calls_named(token_ledger, "purchase") == []
    assert orchestrator.selection.positions == (2,)


# ---- 复位 / 续跑 ----


@pytest.mark.asyncio
async def test_reset_drops_latched_success(native_orchestrator) -> None:
    orchestrator = native_orchestrator
    orchestrator.selection.toggle(1)
    await orchestrator.submit()
    assert orchestrator.last_receipt is not None

    orchestrator.reset()
    assert orchestrator.step == Step.IDLE
    assert orchestrator.session is None
    assert orchestrator.last_receipt is None
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_reset_during_approval_ignores_its_confirmation(token_orchestrator, token_ledger) -> None:
    orchestrator = token_orchestrator
    orchestrator.selection.toggle(1)

    task = asyncio.create_task(orchestrator.submit())
    await wait_for_step(orchestrator, Step.APPROVAL_CONFIRMING)
    orchestrator.reset()
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])
    await task

    assert orchestrator.session is None
    assert calls_named(token_ledger, "purchase") == []
    assert orchestrator.selection.positions == (1,)


@pytest.mark.asyncio
async def test_resume_after_restart_skips_second_approval(token_ledger, db) -> None:
    before = build_orchestrator(token_ledger, FungibleAsset(address=token_ledger.info.asset_address, decimals=6), db)
    before.selection.toggle(1)
    before.selection.toggle(2)

    task = asyncio.create_task(before.submit())
    await wait_for_step(before, Step.APPROVAL_CONFIRMING)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    token_ledger.confirm(token_ledger.pending_hashes(TxOperation.APPROVAL)[0])

    after = build_orchestrator(token_ledger, FungibleAsset(address=token_ledger.info.asset_address, decimals=6), db)
    session = await after.resume()
    assert session is not None
    assert session.session_id == before.session.session_id
    assert session.awaiting_purchase
    assert after.step == Step.APPROVAL_CONFIRMING

    token_ledger.auto_confirm = True
    await after.refresh()
    after.selection.toggle(1)
    after.selection.toggle(2)
    await after.submit()

    assert after.step == Step.COMPLETE
    assert len(calls_named(token_ledger, "approve")) == 1
    assert db.load_session(token_ledger.pool_address, token_ledger.account) is None
    [receipt] = db.get_receipts(token_ledger.pool_address)
    assert receipt.positions == [1, 2]
    await after.pool.close()


@pytest.mark.asyncio
async def test_resume_without_saved_session(native_orchestrator) -> None:
    assert await native_orchestrator.resume() is None
    assert native_orchestrator.step == Step.IDLE


# ---- 组装 ----


@pytest.mark.asyncio
async def test_create_resolves_asset_from_pool(token_ledger, db, tmp_path) -> None:
    token_ledger.set_owner(0, OTHER_BUYER)
    registry = TokenRegistry(chain_id=11155111, path=str(tmp_path / "missing.json"))
    orchestrator = await PurchaseOrchestrator.create(ledger=token_ledger, db=db, registry=registry)

    assert isinstance(orchestrator.asset, FungibleAsset)
    assert (orchestrator.asset.symbol, orchestrator.asset.decimals) == ("USDC", 6)
    assert orchestrator.db is db
    assert 0 not in orchestrator.selection.available_positions()
    assert orchestrator.unit_price == 5_000_000
    await orchestrator.pool.close()


@pytest.mark.asyncio
async def test_create_without_pool_address_uses_demo_pool(db, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr("squares_pool.application.orchestrator.settings.POOL_ADDRESS", None)
    monkeypatch.setattr("squares_pool.application.token_registry.settings.TOKEN_LIST_PATH", str(tmp_path / "none.json"))
    monkeypatch.setattr("squares_pool.application.token_registry.settings.TOKEN_LIST_URL", None)
    orchestrator = await PurchaseOrchestrator.create(db=db)

    assert isinstance(orchestrator.ledger, InMemoryPoolLedger)
    assert isinstance(orchestrator.asset, NativeAsset)
    orchestrator.selection.toggle(12)
    session = await orchestrator.submit()
    assert session.step == Step.COMPLETE
    await orchestrator.pool.close()
