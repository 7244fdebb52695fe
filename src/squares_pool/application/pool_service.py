import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
from loguru import logger
from squares_pool.config import settings
from squares_pool.domain.models import (
    CHECKPOINT_ORDER, Checkpoint, DistributionShare, PoolInfo, PoolState, QuarterRecord, SettlementView, SquareNumbers,
    WinnerRecord,
)
from squares_pool.domain.selection import assigned_numbers, remaining_allowance
from squares_pool.domain.settlement import SettlementReconstructor, projected_base_payouts
from squares_pool.infrastructure.ledger.base import BaseLedgerClient

class PoolService:
    """账本读缓存：TTL 内重复读直接走内存；每笔确认后失效并按计划回补"""

    def __init__(self, ledger: BaseLedgerClient, ttl: Optional[float] = None, refetch_delay: Optional[float] = None):
        self.ledger = ledger
        self.ttl = settings.POOL_CACHE_TTL if ttl is None else ttl
        self.refetch_delay = settings.REFETCH_DELAY if refetch_delay is None else refetch_delay
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._scheduled: Set[asyncio.Task] = set()

    async def _cached(self, key: str, loader: Callable[[], Awaitable[Any]], force_refresh: bool = False):
        hit = self._cache.get(key)
        if not force_refresh and hit and time.monotonic() - hit[0] <= self.ttl:
            return hit[1]
        value = await loader()
        self._cache[key] = (time.monotonic(), value)
        return value

    async def get_pool_info(self, force_refresh=False) -> PoolInfo:
        return await self._cached("pool_info", self.ledger.get_pool_info, force_refresh)

    def peek_pool_info(self) -> Optional[PoolInfo]:
        """只看缓存，不打账本；失效后返回 None"""
        hit = self._cache.get("pool_info")
        return hit[1] if hit else None

    async def get_grid(self, force_refresh=False) -> List[Optional[str]]:
        return await self._cached("grid", self.ledger.get_grid, force_refresh)

    async def get_quarters(self, force_refresh=False) -> List[QuarterRecord]:
        async def load():
            return list(await asyncio.gather(*(self.ledger.get_quarter_score(cp) for cp in CHECKPOINT_ORDER)))
        return await self._cached("quarters", load, force_refresh)

    async def get_winners(self, force_refresh=False) -> List[WinnerRecord]:
        async def load():
            return list(await asyncio.gather(*(self.ledger.get_quarter_winner(cp) for cp in CHECKPOINT_ORDER)))
        return await self._cached("winners", load, force_refresh)

    async def get_remaining_allowance(self, force_refresh=False) -> Optional[int]:
        max_per_user = await self._cached("max_per_user", self.ledger.get_max_squares_per_user, force_refresh)
        owned = await self._cached("user_count", self.ledger.get_user_square_count, force_refresh)
        return remaining_allowance(max_per_user, owned)

    async def get_projected_payouts(self, force_refresh=False) -> List[int]:
        info = await self.get_pool_info(force_refresh)
        percentages = await self._cached("percentages", self.ledger.get_payout_percentages, force_refresh)
        return projected_base_payouts(info.total_pot, percentages)

    async def get_numbers(self, force_refresh=False) -> Tuple[List[int], List[int]]:
        return await self._cached("numbers", self.ledger.get_numbers, force_refresh)

    async def get_user_numbers(self, account: Optional[str] = None, force_refresh=False) -> List[SquareNumbers]:
        """开号之后才有意义；之前一律返回空"""
        account = account or self.ledger.account
        info = await self.get_pool_info(force_refresh)
        if not account or info.state < PoolState.NUMBERS_ASSIGNED:
            return []
        rows, cols = await self.get_numbers(force_refresh)
        return assigned_numbers(await self.get_grid(force_refresh), account, rows, cols)

    async def get_distribution_share(self, account: Optional[str] = None) -> DistributionShare:
        account = account or self.ledger.account
        if not account:
            return DistributionShare()
        return await self.ledger.get_distribution_share(account)

    async def get_claimed(self, account: Optional[str] = None, force_refresh=False) -> Dict[Checkpoint, bool]:
        """账户赢下的每一节是否已领奖"""
        account = account or self.ledger.account
        if not account:
            return {}
        won = [w.checkpoint for w in await self.get_winners(force_refresh)
               if w.has_winner and w.winner.lower() == account.lower()]
        flags = await asyncio.gather(*(self.ledger.has_claimed(account, cp) for cp in won))
        return dict(zip(won, flags))

    async def get_settlement(self, force_refresh=False) -> SettlementView:
        """任一输入变了就整体重算，纯函数，不缓存结果"""
        winners, quarters = await asyncio.gather(self.get_winners(force_refresh), self.get_quarters(force_refresh))
        view = SettlementReconstructor.reconstruct(winners, quarters)

        if view.equal_distribution_amount:
            unclaimed = await self.ledger.get_unclaimed_info()
            if unclaimed.distribution_ready and unclaimed.distribution_pool != view.equal_distribution_amount:
                logger.warning("Equal distribution mismatch for {}: reconstructed {} vs ledger {}",
                               self.ledger.pool_address, view.equal_distribution_amount, unclaimed.distribution_pool)
        info = self._cache.get("pool_info")
        if info and view.total_credited > info[1].total_pot:
            logger.warning("Reconstructed payouts {} exceed total pot {}", view.total_credited, info[1].total_pot)
        return view

    # ---- 失效 / 回补 ----

    def invalidate(self, *keys: str):
        if not keys:
            self._cache.clear()
            return
        for key in keys:
            self._cache.pop(key, None)

    def schedule_refetch(self, delay: Optional[float] = None) -> asyncio.Task:
        """链上索引有延迟：确认后先失效，隔一会儿再回补；会话拆除时可取消"""
        delay = self.refetch_delay if delay is None else delay
        self.invalidate("grid", "pool_info", "user_count")

        async def refetch():
            await asyncio.sleep(delay)
            await asyncio.gather(self.get_grid(True), self.get_pool_info(True), self.get_remaining_allowance(True))

        task = asyncio.get_running_loop().create_task(refetch())
        self._scheduled.add(task)
        task.add_done_callback(self._on_refetch_done)
        return task

    def _on_refetch_done(self, task: asyncio.Task):
        self._scheduled.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Scheduled refetch for {} failed: {}", self.ledger.pool_address, task.exception())

    def cancel_scheduled(self) -> int:
        pending = [t for t in self._scheduled if not t.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    async def close(self):
        self.cancel_scheduled()
        if self._scheduled:
            await asyncio.gather(*self._scheduled, return_exceptions=True)
        self._scheduled.clear()
