import random
from typing import List, Optional, Sequence, Tuple
from squares_pool.domain.errors import ValidationError
from squares_pool.domain.models import GRID_SIDE, GRID_SIZE, SquareNumbers, is_real_address

def remaining_allowance(max_per_user: int, owned_count: int) -> Optional[int]:
    """每人限购额度还剩多少；合约里 0 表示不限购，返回 None"""
    if not max_per_user:
        return None
    return max(0, max_per_user - owned_count)

class SelectionManager:
    """本次会话想买的格子（只在客户端，不落盘）。

    所有变更都在当下的 grid / 限购额度上校验；外部并发买走格子造成的陈旧，
    交给下单时的再校验处理。
    """

    def __init__(self, grid: Sequence[Optional[str]] = (), remaining: Optional[int] = None, rng: Optional[random.Random] = None):
        self._selected: List[int] = []
        self._owned = set()
        self.remaining = remaining
        self.rng = rng or random.SystemRandom()
        self.update_grid(grid)

    # ---- 外部状态 ----

    def update_grid(self, grid: Sequence[Optional[str]]):
        if len(grid) > GRID_SIZE:
            raise ValidationError(f"grid has {len(grid)} cells, expected at most {GRID_SIZE}")
        self._owned = {i for i, owner in enumerate(grid) if is_real_address(owner)}

    def update_allowance(self, remaining: Optional[int]):
        self.remaining = remaining

    # ---- 查询 ----

    @property
    def positions(self) -> Tuple[int, ...]:
        return tuple(self._selected)

    def __len__(self) -> int:
        return len(self._selected)

    def __contains__(self, position: int) -> bool:
        return position in self._selected

    def is_owned(self, position: int) -> bool:
        return position in self._owned

    def available_positions(self) -> List[int]:
        return [p for p in range(GRID_SIZE) if p not in self._owned]

    @property
    def max_selectable(self) -> int:
        available = GRID_SIZE - len(self._owned)
        return available if self.remaining is None else min(self.remaining, available)

    def conflicts(self) -> List[int]:
        """已选但现在已经被别人买走的格子"""
        return [p for p in self._selected if p in self._owned]

    def cost(self, unit_price: int) -> int:
        return unit_price * len(self._selected)

    # ---- 变更 ----

    def toggle(self, position: int) -> bool:
        """返回选区是否发生了变化"""
        self._check_position(position)
        if position in self._selected:
            self._selected.remove(position)
            return True
        if position in self._owned:
            return False
        if self.remaining is not None and len(self._selected) >= self.remaining:
            return False
        self._selected.append(position)
        return True

    def random_select(self, count: int) -> List[int]:
        """快选：整体替换当前选区，而不是叠加"""
        if count <= 0:
            raise ValidationError(f"random pick count must be positive, got {count}")
        available = self.available_positions()
        cap = min(count, len(available))
        if self.remaining is not None:
            cap = min(cap, self.remaining)
        if cap <= 0:
            return []
        self._selected = self.rng.sample(available, cap)
        return list(self._selected)

    def clear(self):
        self._selected.clear()

    def _check_position(self, position: int):
        if not isinstance(position, int) or not 0 <= position < GRID_SIZE:
            raise ValidationError(f"position must be in 0..{GRID_SIZE - 1}, got {position!r}")


def assigned_numbers(grid: Sequence[Optional[str]], account: Optional[str],
                     row_numbers: Sequence[int], col_numbers: Sequence[int]) -> List[SquareNumbers]:
    """账户名下每个格子开出来的行/列尾数；还没开号时为空"""
    if not account or not row_numbers or not col_numbers:
        return []
    if len(row_numbers) != GRID_SIDE or len(col_numbers) != GRID_SIDE:
        raise ValidationError(f"expected {GRID_SIDE} row and column numbers, got {len(row_numbers)}/{len(col_numbers)}")
    account = account.lower()
    return [
        SquareNumbers(position=p, row_number=row_numbers[p // GRID_SIDE], col_number=col_numbers[p % GRID_SIDE])
        for p, owner in enumerate(grid)
        if owner and owner.lower() == account
    ]
