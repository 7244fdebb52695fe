import asyncio
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple
from squares_pool.domain.errors import AllowanceError, SquaresPoolError, TransactionFailed, TransactionRejected
from squares_pool.domain.models import (
    GRID_SIZE, ZERO_ADDRESS, Checkpoint, DistributionShare, PoolInfo, PoolState, QuarterRecord, TransactionHandle,
    TransactionReceipt, TxOperation, TxStatus, UnclaimedInfo, WinnerRecord,
)
from squares_pool.infrastructure.ledger.base import BaseLedgerClient

DEMO_POOL = "0x" + "a1".rjust(40, "0")
DEMO_ACCOUNT = "0x" + "b0b".rjust(40, "0")
DEMO_PRICE = 10**16

class _PendingTx:
    def __init__(self, handle: TransactionHandle, effect: Callable[[], None]):
        self.handle = handle
        self.effect = effect
        self.status = TxStatus.PENDING
        self.error: Optional[str] = None
        self.done = asyncio.Event()

class InMemoryPoolLedger(BaseLedgerClient):
    """内存版池子合约：演示和测试用。

    交易先"广播"（返回 handle），确认时才真正改账本。auto_confirm=False 时
    wait_for_transaction 会一直挂着，直到外部调用 confirm()/fail()。
    """

    def __init__(self, pool_address: str = DEMO_POOL, account: str = DEMO_ACCOUNT,
                 unit_price: int = DEMO_PRICE, asset_address: str = ZERO_ADDRESS, max_per_user: int = 0,
                 percentages: Sequence[int] = (20, 20, 20, 40), password: str = "", auto_confirm: bool = True, latency: float = 0.0):
        super().__init__(pool_address, account)
        self.info = PoolInfo(name="Demo Pool", state=PoolState.OPEN, unit_price=unit_price, asset_address=asset_address,
                             team_a_name="Team A", team_b_name="Team B")
        self.grid: List[Optional[str]] = [None] * GRID_SIZE
        self.scores: Dict[Checkpoint, QuarterRecord] = {cp: QuarterRecord(checkpoint=cp) for cp in Checkpoint}
        self.winners: Dict[Checkpoint, WinnerRecord] = {cp: WinnerRecord(checkpoint=cp) for cp in Checkpoint}
        self.allowances: Dict[str, int] = {}
        self.max_per_user = max_per_user
        self.percentages = list(percentages)
        self.password = password
        self.unclaimed = UnclaimedInfo()
        self.row_numbers: List[int] = []
        self.col_numbers: List[int] = []
        self.distribution_shares: Dict[str, DistributionShare] = {}
        self.claims: Set[Tuple[str, Checkpoint]] = set()
        self.auto_confirm = auto_confirm
        self.latency = latency

        self.transactions: Dict[str, _PendingTx] = {}
        self.calls: List[tuple] = []
        self.reject_next = False
        self.fail_next: Optional[str] = None

    @property
    def name(self) -> str: return "InMemory"

    @property
    def is_native(self) -> bool:
        return int(self.info.asset_address, 16) == 0

    async def _tick(self):
        await asyncio.sleep(self.latency)

    # ---- 读 ----

    async def get_pool_info(self) -> PoolInfo:
        await self._tick()
        return self.info.model_copy()

    async def get_grid(self) -> List[Optional[str]]:
        await self._tick()
        return list(self.grid)

    async def get_quarter_score(self, checkpoint: Checkpoint) -> QuarterRecord:
        await self._tick()
        return self.scores[checkpoint]

    async def get_quarter_winner(self, checkpoint: Checkpoint) -> WinnerRecord:
        await self._tick()
        return self.winners[checkpoint]

    async def get_allowance(self, spender: str) -> int:
        await self._tick()
        return self.allowances.get(spender, 0)

    async def get_user_square_count(self) -> int:
        await self._tick()
        return sum(1 for owner in self.grid if owner == self.account)

    async def get_max_squares_per_user(self) -> int:
        return self.max_per_user

    async def get_payout_percentages(self) -> List[int]:
        return list(self.percentages)

    async def get_unclaimed_info(self) -> UnclaimedInfo:
        return self.unclaimed

    async def is_private(self) -> bool:
        return bool(self.password)

    async def get_numbers(self) -> Tuple[List[int], List[int]]:
        await self._tick()
        return list(self.row_numbers), list(self.col_numbers)

    async def get_distribution_share(self, account: str) -> DistributionShare:
        await self._tick()
        return self.distribution_shares.get(account.lower(), DistributionShare())

    async def has_claimed(self, account: str, checkpoint: Checkpoint) -> bool:
        return (account.lower(), checkpoint) in self.claims

    # ---- 写：先做 gas 预估式的检查，通过才"广播" ----

    async def purchase(self, positions: Sequence[int], total_cost: int, password: str = "") -> TransactionHandle:
        await self._tick()
        self._check_signature()
        positions = list(positions)
        self.calls.append(("purchase", positions, total_cost))

        if self.info.state != PoolState.OPEN:
            raise TransactionFailed("execution reverted: pool not open")
        if self.password and password != self.password:
            raise TransactionFailed("execution reverted: invalid password")
        if total_cost != self.info.unit_price * len(positions):
            raise TransactionFailed("execution reverted: incorrect payment")
        self._check_purchase(positions, total_cost)

        def effect():
            # 出块时按当时的账本再核一遍：两笔在途交易抢同一个格子，后到的回滚
            self._check_purchase(positions, total_cost)
            for p in positions:
                self.grid[p] = self.account
            if not self.is_native:
                self.allowances[self.pool_address] -= total_cost
            self.info = self.info.model_copy(update={
                "sold_count": self.info.sold_count + len(positions),
                "total_pot": self.info.total_pot + total_cost,
            })
        return self._broadcast(TxOperation.PURCHASE, effect)

    async def approve(self, spender: str, amount: int) -> TransactionHandle:
        await self._tick()
        self._check_signature()
        self.calls.append(("approve", spender, amount))

        def effect():
            self.allowances[spender] = amount
        return self._broadcast(TxOperation.APPROVAL, effect)

    def _check_purchase(self, positions: List[int], total_cost: int):
        if any(self.grid[p] is not None for p in positions):
            raise TransactionFailed("execution reverted: square already owned")
        owned = sum(1 for owner in self.grid if owner == self.account)
        if self.max_per_user and owned + len(positions) > self.max_per_user:
            raise TransactionFailed("execution reverted: exceeds max squares per user")
        if not self.is_native and self.allowances.get(self.pool_address, 0) < total_cost:
            raise AllowanceError("execution reverted: ERC20: insufficient allowance",
                                 allowance=self.allowances.get(self.pool_address, 0), required=total_cost)

    def _check_signature(self):
        if self.reject_next:
            self.reject_next = False
            raise TransactionRejected("User rejected the request.")

    def _broadcast(self, operation: TxOperation, effect: Callable[[], None]) -> TransactionHandle:
        handle = TransactionHandle(tx_hash="0x" + uuid.uuid4().hex + uuid.uuid4().hex, operation=operation)
        tx = _PendingTx(handle, effect)
        self.transactions[handle.tx_hash] = tx
        if self.fail_next is not None:
            self.fail(handle.tx_hash, self.fail_next)
            self.fail_next = None
        elif self.auto_confirm:
            self.confirm(handle.tx_hash)
        return handle

    # ---- 出块：测试里手动推进 ----

    def confirm(self, tx_hash: str):
        tx = self.transactions[tx_hash]
        if tx.status != TxStatus.PENDING:
            return
        try:
            tx.effect()
        except SquaresPoolError as e:
            self.fail(tx_hash, str(e))
            return
        tx.status = TxStatus.CONFIRMED
        tx.done.set()

    def fail(self, tx_hash: str, reason: str = "execution reverted"):
        tx = self.transactions[tx_hash]
        if tx.status != TxStatus.PENDING:
            return
        tx.status = TxStatus.FAILED
        tx.error = reason
        tx.done.set()

    def pending_hashes(self, operation: Optional[TxOperation] = None) -> List[str]:
        return [h for h, tx in self.transactions.items()
                if tx.status == TxStatus.PENDING and (operation is None or tx.handle.operation == operation)]

    async def get_transaction_status(self, handle: TransactionHandle) -> TransactionReceipt:
        tx = self.transactions[handle.tx_hash]
        return TransactionReceipt(handle=handle, status=tx.status, error=tx.error)

    async def wait_for_transaction(self, handle: TransactionHandle) -> TransactionReceipt:
        await self.transactions[handle.tx_hash].done.wait()
        return await self.get_transaction_status(handle)

    # ---- 场外操作：别人买格子、外部撤销授权、开奖 ----

    def set_owner(self, position: int, owner: str):
        self.grid[position] = owner
        self.info = self.info.model_copy(update={"sold_count": self.info.sold_count + 1,
                                                 "total_pot": self.info.total_pot + self.info.unit_price})

    def assign_numbers(self, row_numbers: Sequence[int], col_numbers: Sequence[int]):
        self.row_numbers = list(row_numbers)
        self.col_numbers = list(col_numbers)
        self.info = self.info.model_copy(update={"state": PoolState.NUMBERS_ASSIGNED})

    def revoke_allowance(self, spender: str):
        self.allowances[spender] = 0

    def settle(self, checkpoint: Checkpoint, team_a: int, team_b: int, winner: Optional[str], base_payout: int):
        self.scores[checkpoint] = QuarterRecord(checkpoint=checkpoint, team_a_score=team_a, team_b_score=team_b,
                                                submitted=True, settled=True)
        self.winners[checkpoint] = WinnerRecord(checkpoint=checkpoint, winner=winner or ZERO_ADDRESS, base_payout=base_payout)
