from enum import Enum, IntEnum
from typing import List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
GRID_SIDE = 10
GRID_SIZE = GRID_SIDE * GRID_SIDE

def is_real_address(address: Optional[str]) -> bool:
    """空地址哨兵 (None / 0x000...0) 永远不算收款人"""
    return bool(address) and int(address, 16) != 0

class PoolState(IntEnum):
    OPEN = 0
    CLOSED = 1
    NUMBERS_ASSIGNED = 2
    Q1_SCORED = 3
    Q2_SCORED = 4
    Q3_SCORED = 5
    FINAL_SCORED = 6

    @property
    def label(self) -> str:
        return POOL_STATE_LABELS[self]

POOL_STATE_LABELS = {
    PoolState.OPEN: "Open",
    PoolState.CLOSED: "Closed",
    PoolState.NUMBERS_ASSIGNED: "Numbers Assigned",
    PoolState.Q1_SCORED: "Q1 Scored",
    PoolState.Q2_SCORED: "Q2 Scored",
    PoolState.Q3_SCORED: "Q3 Scored",
    PoolState.FINAL_SCORED: "Final",
}

class Checkpoint(IntEnum):
    Q1 = 0
    HALF = 1
    Q3 = 2
    FINAL = 3

    @property
    def label(self) -> str:
        return ("Q1", "Halftime", "Q3", "Final")[self]

CHECKPOINT_ORDER: Tuple[Checkpoint, ...] = (Checkpoint.Q1, Checkpoint.HALF, Checkpoint.Q3, Checkpoint.FINAL)

class PoolInfo(BaseModel):
    name: str = ""
    state: PoolState
    unit_price: int = Field(ge=0)
    asset_address: str = ZERO_ADDRESS
    total_pot: int = Field(default=0, ge=0)
    sold_count: int = Field(default=0, ge=0, le=GRID_SIZE)
    team_a_name: str = ""
    team_b_name: str = ""

class QuarterRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    checkpoint: Checkpoint
    team_a_score: int = 0
    team_b_score: int = 0
    submitted: bool = False
    settled: bool = False

class WinnerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    checkpoint: Checkpoint
    winner: Optional[str] = None
    base_payout: int = 0

    @property
    def has_winner(self) -> bool:
        return is_real_address(self.winner)

class SquareNumbers(BaseModel):
    """开号后某个格子对应的两队比分尾数"""
    model_config = ConfigDict(frozen=True)

    position: int = Field(ge=0, lt=GRID_SIZE)
    row_number: int
    col_number: int

class DistributionShare(BaseModel):
    amount: int = 0
    claimed: bool = False

class UnclaimedInfo(BaseModel):
    rolled_amount: int = 0
    distribution_pool: int = 0
    distribution_ready: bool = False

class CheckpointPayout(BaseModel):
    checkpoint: Checkpoint
    winner: Optional[str] = None
    base_payout: int
    actual_payout: int
    settled: bool = False
    rolled_forward: bool = False
    distributed_equally: bool = False

    @property
    def has_winner(self) -> bool:
        return is_real_address(self.winner)

    @property
    def credited(self) -> int:
        """这一节真正发出去的钱；滚存走的那一节记 0"""
        if self.has_winner or self.distributed_equally:
            return self.actual_payout
        return 0

class SettlementView(BaseModel):
    payouts: List[CheckpointPayout]
    carried_forward: int = 0

    def __getitem__(self, checkpoint: Checkpoint) -> CheckpointPayout:
        return self.payouts[int(checkpoint)]

    @property
    def actuals(self) -> List[int]:
        return [p.actual_payout for p in self.payouts]

    @property
    def total_credited(self) -> int:
        return sum(p.credited for p in self.payouts)

    @property
    def equal_distribution_amount(self) -> int:
        final = self.payouts[-1]
        return final.actual_payout if final.distributed_equally else 0

# ---- 支付资产：原生币 / 需要授权的代币 ----

class NativeAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["native"] = "native"
    symbol: str = "ETH"
    decimals: int = 18
    address: str = ZERO_ADDRESS

    @property
    def is_native(self) -> bool:
        return True

    def needs_approval(self, current_allowance: int, required: int) -> bool:
        return False

class FungibleAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["fungible"] = "fungible"
    address: str
    symbol: str = "TOKEN"
    decimals: int = 18

    @property
    def is_native(self) -> bool:
        return False

    def needs_approval(self, current_allowance: int, required: int) -> bool:
        return current_allowance < required

PaymentAsset = Union[NativeAsset, FungibleAsset]

# ---- 交易 ----

class TxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

class TxOperation(str, Enum):
    APPROVAL = "approval"
    PURCHASE = "purchase"

class TransactionHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    operation: TxOperation
    session_id: Optional[str] = None

class TransactionReceipt(BaseModel):
    handle: TransactionHandle
    status: TxStatus
    error: Optional[str] = None

    @property
    def operation(self) -> TxOperation:
        return self.handle.operation

# ---- 购买会话 ----

class PurchaseStep(str, Enum):
    IDLE = "idle"
    CHECKING_ALLOWANCE = "checking_allowance"
    APPROVAL_SUBMITTING = "approval_submitting"
    APPROVAL_CONFIRMING = "approval_confirming"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    PURCHASE_SUBMITTING = "purchase_submitting"
    PURCHASE_CONFIRMING = "purchase_confirming"
    COMPLETE = "complete"
    ERROR = "error"

class NoPending(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["none"] = "none"

class Approving(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["approving"] = "approving"
    session_id: str
    tx_hash: str

class Purchasing(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["purchasing"] = "purchasing"
    session_id: str
    tx_hash: str

PendingConfirmation = Union[NoPending, Approving, Purchasing]

class PurchaseReceipt(BaseModel):
    """提交前就拍下的快照：成功后选区会被清空，展示只能靠它"""
    session_id: str
    positions: List[int]
    count: int
    total_cost: int
    tx_hash: Optional[str] = None

class PurchaseSession(BaseModel):
    session_id: str
    pool_address: str
    positions: List[int]
    unit_price: int
    total_cost: int
    step: PurchaseStep = PurchaseStep.IDLE
    pending: PendingConfirmation = Field(default_factory=NoPending, discriminator="kind")
    approval_handle: Optional[TransactionHandle] = None
    purchase_handle: Optional[TransactionHandle] = None
    approval_confirmed: bool = False
    history: List[PurchaseStep] = Field(default_factory=lambda: [PurchaseStep.IDLE])
    last_error: Optional[str] = None

    @property
    def awaiting_purchase(self) -> bool:
        """已授权、尚未购买的中间态"""
        return self.approval_confirmed and self.purchase_handle is None
