import uuid
from typing import Callable, List, Optional
from loguru import logger
from squares_pool.application.pool_service import PoolService
from squares_pool.application.token_registry import TokenRegistry
from squares_pool.config import settings
from squares_pool.domain.errors import (
    AllowanceError, GuardSuppression, SquaresPoolError, TransactionFailed, TransactionRejected, ValidationError,
)
from squares_pool.domain.models import (
    Approving, NoPending, PaymentAsset, PoolInfo, PoolState, PurchaseReceipt, PurchaseSession, PurchaseStep, Purchasing,
    TransactionHandle, TransactionReceipt, TxOperation, TxStatus, is_real_address,
)
from squares_pool.domain.selection import SelectionManager
from squares_pool.domain.units import format_amount
from squares_pool.infrastructure.database import DatabaseManager
from squares_pool.infrastructure.ledger.base import BaseLedgerClient
from squares_pool.infrastructure.ledger.memory import InMemoryPoolLedger
from squares_pool.infrastructure.ledger.web3_ledger import Web3LedgerClient

Step = PurchaseStep
Listener = Callable[[PurchaseSession], None]

# 已经（或正要）广播交易的步骤：这时再 submit 会重复付款
IN_FLIGHT_STEPS = frozenset({
    Step.SUBMITTING, Step.CONFIRMING, Step.APPROVAL_SUBMITTING, Step.APPROVAL_CONFIRMING,
    Step.PURCHASE_SUBMITTING, Step.PURCHASE_CONFIRMING,
})

class PurchaseOrchestrator:
    """买格子的状态机。

    原生币：IDLE -> SUBMITTING -> CONFIRMING -> COMPLETE
    代币：  IDLE -> CHECKING_ALLOWANCE -> APPROVAL_SUBMITTING -> APPROVAL_CONFIRMING
                 -> PURCHASE_SUBMITTING -> PURCHASE_CONFIRMING -> COMPLETE

    每个会话都有新铸的 session_id，确认回执必须带着它才能推进，任何"上一次成功"
    的残留信号都推不动当前会话。
    """

    def __init__(self, ledger: BaseLedgerClient, selection: SelectionManager, asset: PaymentAsset,
                 pool: Optional[PoolService] = None, db: Optional[DatabaseManager] = None):
        self.ledger = ledger
        self.selection = selection
        self.asset = asset
        self.pool = pool or PoolService(ledger)
        self.db = db
        self.session: Optional[PurchaseSession] = None
        self.last_receipt: Optional[PurchaseReceipt] = None
        self._snapshot: Optional[PurchaseReceipt] = None
        self._password = ""
        self._listeners: List[Listener] = []

    @classmethod
    async def create(cls, ledger: Optional[BaseLedgerClient] = None, db: Optional[DatabaseManager] = None,
                     registry: Optional[TokenRegistry] = None) -> "PurchaseOrchestrator":
        """按配置组装：配了 POOL_ADDRESS 走链上，否则用内存演示池"""
        if ledger is None:
            ledger = Web3LedgerClient() if settings.POOL_ADDRESS else InMemoryPoolLedger()
        logger.info("Using {} ledger for pool {}", ledger.name, ledger.pool_address)

        pool = PoolService(ledger)
        info = await pool.get_pool_info()
        if registry is None:
            registry = TokenRegistry()
            await registry.load_remote()
        asset = registry.resolve(info.asset_address)
        selection = SelectionManager(await pool.get_grid(), await pool.get_remaining_allowance())
        return cls(ledger, selection, asset, pool=pool, db=db or DatabaseManager())

    # ---- 状态查询 ----

    @property
    def step(self) -> PurchaseStep:
        return self.session.step if self.session else Step.IDLE

    @property
    def history(self) -> List[PurchaseStep]:
        return list(self.session.history) if self.session else [Step.IDLE]

    @property
    def unit_price(self) -> Optional[int]:
        info = self.pool.peek_pool_info()
        return info.unit_price if info else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ---- 对外动作 ----

    async def refresh(self):
        """把最新的 grid / 限购额度灌进选区管理器"""
        info = await self.pool.get_pool_info(force_refresh=True)
        self.selection.update_grid(await self.pool.get_grid(force_refresh=True))
        self.selection.update_allowance(await self.pool.get_remaining_allowance(force_refresh=True))
        return info

    async def submit(self, password: str = "") -> PurchaseSession:
        session = self.session
        if session and session.step == Step.APPROVAL_CONFIRMING and session.awaiting_purchase:
            # 已授权未购买：直接下单，不再重复要授权
            self._password = password or self._password
            return await self._continue_purchase(session)
        self._ensure_not_in_flight()

        if not len(self.selection):
            raise ValidationError("no squares selected")
        info = await self.pool.get_pool_info(force_refresh=True)
        if info.state != PoolState.OPEN:
            raise ValidationError(f"pool is {info.state.label}, purchases are closed")
        self._check_asset(info)
        await self._revalidate(password)

        # 上面的 await 期间可能有另一个 submit 已经发出交易
        self._ensure_not_in_flight()
        if self.session is not None:
            logger.debug("Replacing purchase session {} at step {}", self.session.session_id, self.session.step.value)
        session = PurchaseSession(
            session_id=uuid.uuid4().hex, pool_address=self.ledger.pool_address,
            positions=list(self.selection.positions), unit_price=info.unit_price,
            total_cost=self.selection.cost(info.unit_price),
        )
        self.session = session
        self._password = password
        self._take_snapshot(session)
        logger.info("Purchase session {} started: {} squares for {} {}", session.session_id, len(session.positions),
                    format_amount(session.total_cost, self.asset.decimals), self.asset.symbol)

        if self.asset.is_native:
            return await self._submit_purchase(session, Step.SUBMITTING, Step.CONFIRMING)

        self._advance(session, Step.CHECKING_ALLOWANCE)
        allowance = await self.ledger.get_allowance(self.ledger.pool_address)
        if self.session is not session:
            logger.debug("Session {} replaced while checking allowance", session.session_id)
            return session
        if not self.asset.needs_approval(allowance, session.total_cost):
            return await self._submit_purchase(session, Step.PURCHASE_SUBMITTING, Step.PURCHASE_CONFIRMING)
        return await self._submit_approval(session)

    async def on_transaction_update(self, receipt: TransactionReceipt) -> bool:
        """交易追踪器的回调入口。返回当前会话是否因此推进"""
        session = self.session
        if session is None or receipt.status == TxStatus.PENDING:
            return False

        if receipt.operation == TxOperation.APPROVAL:
            if not self._owns(receipt, Approving):
                logger.debug("Ignoring approval receipt {} not owned by the current session", receipt.handle.tx_hash)
                return False
            if receipt.status == TxStatus.FAILED:
                raise self._fail(session, TransactionFailed(receipt.error or "approval reverted", receipt.handle.tx_hash), Step.IDLE)
            session.approval_confirmed = True
            try:
                self.check_continuation(receipt)
            except GuardSuppression as e:
                # 回执已消费：之后只能手动再点一次购买
                session.pending = NoPending()
                self._persist(session)
                logger.debug("Auto-continue suppressed for session {}: {}", session.session_id, e)
                return False
            session.pending = NoPending()
            await self._continue_purchase(session)
            return True

        if not self._owns(receipt, Purchasing):
            logger.debug("Ignoring purchase receipt {} not owned by the current session", receipt.handle.tx_hash)
            return False
        if receipt.status == TxStatus.FAILED:
            raise self._fail(session, TransactionFailed(receipt.error or "purchase reverted", receipt.handle.tx_hash), Step.IDLE)
        self._complete(session)
        return True

    def check_continuation(self, receipt: TransactionReceipt) -> PurchaseSession:
        """授权确认后能否自动接着买：会话对得上、选区非空、单价已知，缺一不可"""
        session = self.session
        if session is None or not self._owns(receipt, Approving) or session.step != Step.APPROVAL_CONFIRMING:
            raise GuardSuppression("confirmation does not belong to the approving session")
        if not len(self.selection):
            raise GuardSuppression("selection is empty")
        if self.unit_price is None:
            raise GuardSuppression("unit price is unknown")
        return session

    async def recheck(self) -> Optional[TransactionReceipt]:
        """手动再查一次在途交易；还在 pending 就原地不动"""
        handle = self._pending_handle()
        if handle is None:
            return None
        receipt = await self.ledger.get_transaction_status(handle)
        if receipt.status != TxStatus.PENDING:
            await self.on_transaction_update(receipt)
        return receipt

    async def resume(self, password: str = "") -> Optional[PurchaseSession]:
        """进程重启/页面刷新后，从硬盘捡回在途会话并核对交易状态"""
        if self.db is None or not self.ledger.account:
            return None
        session = self.db.load_session(self.ledger.pool_address, self.ledger.account)
        if session is None:
            return None
        self.session = session
        self._password = password
        self._take_snapshot(session)
        if session.purchase_handle:
            self._snapshot.tx_hash = session.purchase_handle.tx_hash
        logger.info("Resumed purchase session {} at step {}", session.session_id, session.step.value)
        await self.recheck()
        return self.session

    def reset(self, clear_selection: bool = False):
        """与界面生命周期无关的显式复位"""
        if self.session and self.db and self.ledger.account:
            self.db.delete_session(self.session.pool_address, self.ledger.account)
        self.session = None
        self.last_receipt = None
        self._snapshot = None
        self._password = ""
        self.pool.cancel_scheduled()
        if clear_selection:
            self.selection.clear()

    # ---- 内部流程 ----

    async def _revalidate(self, password: str):
        """下单前按链上最新状态再校验一遍，本地的乐观判断可能已经过期"""
        self.selection.update_grid(await self.pool.get_grid(force_refresh=True))
        taken = self.selection.conflicts()
        if taken:
            raise ValidationError(f"squares already sold: {taken}")
        remaining = await self.pool.get_remaining_allowance(force_refresh=True)
        self.selection.update_allowance(remaining)
        if remaining is not None and len(self.selection) > remaining:
            raise ValidationError(f"selection of {len(self.selection)} exceeds remaining allowance of {remaining}")
        if not password and await self.ledger.is_private():
            raise ValidationError("pool password required")

    def _ensure_not_in_flight(self):
        session = self.session
        if session and session.step in IN_FLIGHT_STEPS:
            raise ValidationError(f"purchase already in flight (session {session.session_id} at {session.step.value}); "
                                  "recheck() or reset() first")

    def _check_asset(self, info: PoolInfo):
        pool_native = not is_real_address(info.asset_address)
        if pool_native != self.asset.is_native or (
                not pool_native and self.asset.address.lower() != info.asset_address.lower()):
            raise ValidationError(f"payment asset {self.asset.symbol} does not match pool asset {info.asset_address}")

    async def _submit_approval(self, session: PurchaseSession) -> PurchaseSession:
        self._advance(session, Step.APPROVAL_SUBMITTING)
        try:
            handle = await self.ledger.approve(self.ledger.pool_address, session.total_cost)
        except Exception as e:
            raise self._fail(session, e, Step.IDLE) from e
        handle = handle.model_copy(update={"session_id": session.session_id})
        session.approval_handle = handle
        session.pending = Approving(session_id=session.session_id, tx_hash=handle.tx_hash)
        self._advance(session, Step.APPROVAL_CONFIRMING)
        return await self._await_confirmation(session, handle)

    async def _continue_purchase(self, session: PurchaseSession) -> PurchaseSession:
        if not len(self.selection):
            raise ValidationError("no squares selected")
        unit_price = self.unit_price
        if unit_price is None:
            unit_price = (await self.pool.get_pool_info(force_refresh=True)).unit_price
        await self._revalidate(self._password)
        positions = list(self.selection.positions)
        total_cost = self.selection.cost(unit_price)

        allowance = await self.ledger.get_allowance(self.ledger.pool_address)
        if self.session is not session:
            return session
        if session.step != Step.APPROVAL_CONFIRMING:
            raise ValidationError(f"purchase already in flight for session {session.session_id}")
        session.positions = positions
        session.unit_price = unit_price
        session.total_cost = total_cost
        self._take_snapshot(session)
        if self.asset.needs_approval(allowance, total_cost):
            session.approval_confirmed = False
            raise self._fail(session, AllowanceError(
                f"allowance {allowance} below required {total_cost}", allowance, total_cost),
                Step.CHECKING_ALLOWANCE)
        return await self._submit_purchase(session, Step.PURCHASE_SUBMITTING, Step.PURCHASE_CONFIRMING)

    async def _submit_purchase(self, session: PurchaseSession, submitting: PurchaseStep, confirming: PurchaseStep) -> PurchaseSession:
        self._advance(session, submitting)
        try:
            handle = await self.ledger.purchase(session.positions, session.total_cost, self._password)
        except AllowanceError as e:
            session.approval_confirmed = False
            raise self._fail(session, e, Step.CHECKING_ALLOWANCE) from e
        except Exception as e:
            raise self._fail(session, e, Step.IDLE) from e
        handle = handle.model_copy(update={"session_id": session.session_id})
        session.purchase_handle = handle
        session.pending = Purchasing(session_id=session.session_id, tx_hash=handle.tx_hash)
        self._snapshot.tx_hash = handle.tx_hash
        self._advance(session, confirming)
        return await self._await_confirmation(session, handle)

    async def _await_confirmation(self, session: PurchaseSession, handle: TransactionHandle) -> PurchaseSession:
        try:
            receipt = await self.ledger.wait_for_transaction(handle)
        except Exception as e:
            # 交易已广播，结果未知：停在确认中，等 recheck()
            session.last_error = str(e)
            logger.warning("Waiting on {} {} failed: {}", handle.operation.value, handle.tx_hash, e)
            return session
        if receipt.status == TxStatus.PENDING:
            logger.info("{} {} still pending, call recheck() later", handle.operation.value, handle.tx_hash)
            return session
        await self.on_transaction_update(receipt)
        return session

    def _complete(self, session: PurchaseSession):
        session.pending = NoPending()
        self._advance(session, Step.COMPLETE)
        self.last_receipt = self._snapshot
        self.selection.clear()
        self.pool.schedule_refetch()
        if self.db and self.ledger.account and self.last_receipt:
            self.db.save_receipt(session.pool_address, self.ledger.account, self.last_receipt)
        logger.info("Purchase session {} complete: {} squares for {} {}", session.session_id, len(session.positions),
                    format_amount(session.total_cost, self.asset.decimals), self.asset.symbol)

    def _fail(self, session: PurchaseSession, exc: Exception, back_to: PurchaseStep) -> SquaresPoolError:
        error = exc if isinstance(exc, SquaresPoolError) else TransactionFailed(str(exc))
        session.pending = NoPending()
        session.last_error = str(error)
        if isinstance(error, TransactionRejected):
            logger.info("Session {} rejected by signer at {}", session.session_id, session.step.value)
        else:
            logger.warning("Session {} failed at {}: {}", session.session_id, session.step.value, error)
        self._advance(session, Step.ERROR)
        self._advance(session, back_to)
        return error

    def _owns(self, receipt: TransactionReceipt, tag) -> bool:
        pending = self.session.pending if self.session else NoPending()
        return (isinstance(pending, tag)
                and receipt.handle.session_id == pending.session_id
                and receipt.handle.tx_hash == pending.tx_hash)

    def _pending_handle(self) -> Optional[TransactionHandle]:
        session = self.session
        if session is None:
            return None
        if isinstance(session.pending, Approving):
            return session.approval_handle
        if isinstance(session.pending, Purchasing):
            return session.purchase_handle
        return None

    def _take_snapshot(self, session: PurchaseSession):
        self._snapshot = PurchaseReceipt(session_id=session.session_id, positions=list(session.positions),
                                         count=len(session.positions), total_cost=session.total_cost)

    def _advance(self, session: PurchaseSession, step: PurchaseStep):
        session.step = step
        session.history.append(step)
        self._persist(session)
        for listener in list(self._listeners):
            listener(session)

    def _persist(self, session: PurchaseSession):
        if self.db is None or not self.ledger.account:
            return
        if session.step in (Step.IDLE, Step.COMPLETE):
            self.db.delete_session(session.pool_address, self.ledger.account)
        else:
            self.db.save_session(self.ledger.account, session)
