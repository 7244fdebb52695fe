from typing import List, Sequence
from squares_pool.domain.errors import ValidationError
from squares_pool.domain.models import (
    CHECKPOINT_ORDER, CheckpointPayout, QuarterRecord, SettlementView, WinnerRecord,
)

class SettlementReconstructor:
    """把链上每节"非累计"的基础奖金，还原成实际到手金额（含滚存与终场均分）"""

    @staticmethod
    def reconstruct(winners: Sequence[WinnerRecord], quarters: Sequence[QuarterRecord]) -> SettlementView:
        SettlementReconstructor._check_order(winners, quarters)

        accumulated = 0
        payouts: List[CheckpointPayout] = []
        last = len(CHECKPOINT_ORDER) - 1
        for index, (winner, quarter) in enumerate(zip(winners, quarters)):
            base = winner.base_payout
            row = CheckpointPayout(
                checkpoint=winner.checkpoint, winner=winner.winner,
                base_payout=base, actual_payout=base, settled=quarter.settled,
            )
            if winner.has_winner:
                row.actual_payout = base + accumulated
                accumulated = 0
            elif quarter.settled:
                if index == last:
                    # 终场无人中：剩下的全部进入均分池
                    row.actual_payout = base + accumulated
                    row.distributed_equally = True
                    accumulated = 0
                else:
                    accumulated += base
                    row.rolled_forward = True
            payouts.append(row)

        return SettlementView(payouts=payouts, carried_forward=accumulated)

    @staticmethod
    def _check_order(winners: Sequence[WinnerRecord], quarters: Sequence[QuarterRecord]):
        if len(winners) != len(CHECKPOINT_ORDER) or len(quarters) != len(CHECKPOINT_ORDER):
            raise ValidationError(f"expected {len(CHECKPOINT_ORDER)} checkpoints, got {len(winners)} winners / {len(quarters)} scores")
        for expected, winner, quarter in zip(CHECKPOINT_ORDER, winners, quarters):
            if winner.checkpoint != expected or quarter.checkpoint != expected:
                raise ValidationError(f"checkpoint out of order at {expected.label}")
            if winner.base_payout < 0:
                raise ValidationError(f"negative base payout at {expected.label}: {winner.base_payout}")

def projected_base_payouts(total_pot: int, percentages: Sequence[int]) -> List[int]:
    """开奖前按比例预估每节奖金（向下取整，零头留在合约里）"""
    if len(percentages) != len(CHECKPOINT_ORDER):
        raise ValidationError("payout percentages must cover all four checkpoints")
    if any(p < 0 for p in percentages) or sum(percentages) > 100:
        raise ValidationError(f"invalid payout percentages: {list(percentages)}")
    return [total_pot * p // 100 for p in percentages]
