from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple
from squares_pool.domain.models import (
    Checkpoint, DistributionShare, PoolInfo, QuarterRecord, TransactionHandle, TransactionReceipt, UnclaimedInfo,
    WinnerRecord,
)

class BaseLedgerClient(ABC):
    """外部账本（池子合约 + 支付代币）的最小读写契约，全部异步"""

    def __init__(self, pool_address: str, account: Optional[str] = None):
        self.pool_address = pool_address
        self.account = account

    @property
    @abstractmethod
    def name(self) -> str: pass

    # ---- 读 ----
    @abstractmethod
    async def get_pool_info(self) -> PoolInfo: pass
    @abstractmethod
    async def get_grid(self) -> List[Optional[str]]: pass
    @abstractmethod
    async def get_quarter_score(self, checkpoint: Checkpoint) -> QuarterRecord: pass
    @abstractmethod
    async def get_quarter_winner(self, checkpoint: Checkpoint) -> WinnerRecord: pass
    @abstractmethod
    async def get_allowance(self, spender: str) -> int: pass
    @abstractmethod
    async def get_user_square_count(self) -> int: pass
    @abstractmethod
    async def get_max_squares_per_user(self) -> int: pass
    @abstractmethod
    async def get_payout_percentages(self) -> List[int]: pass
    @abstractmethod
    async def get_unclaimed_info(self) -> UnclaimedInfo: pass
    @abstractmethod
    async def is_private(self) -> bool: pass
    @abstractmethod
    async def get_numbers(self) -> Tuple[List[int], List[int]]: pass
    @abstractmethod
    async def get_distribution_share(self, account: str) -> DistributionShare: pass
    @abstractmethod
    async def has_claimed(self, account: str, checkpoint: Checkpoint) -> bool: pass

    # ---- 写 ----
    @abstractmethod
    async def purchase(self, positions: Sequence[int], total_cost: int, password: str = "") -> TransactionHandle: pass
    @abstractmethod
    async def approve(self, spender: str, amount: int) -> TransactionHandle: pass

    # ---- 交易状态 ----
    @abstractmethod
    async def get_transaction_status(self, handle: TransactionHandle) -> TransactionReceipt: pass
    @abstractmethod
    async def wait_for_transaction(self, handle: TransactionHandle) -> TransactionReceipt: pass
