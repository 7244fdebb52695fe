import argparse
import asyncio
import sys
from typing import List, Optional
from loguru import logger
from squares_pool.application.orchestrator import PurchaseOrchestrator
from squares_pool.domain.errors import SquaresPoolError
from squares_pool.domain.models import CHECKPOINT_ORDER, GRID_SIZE, PoolState, PurchaseStep
from squares_pool.domain.units import format_amount, parse_amount
from squares_pool.infrastructure.ledger.memory import InMemoryPoolLedger

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="squares-pool", description="Football squares pool: status and purchases")
    parser.add_argument("--demo", action="store_true", help="Use the in-memory demo pool instead of POOL_ADDRESS")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Pool info, payouts and your squares")

    buy = sub.add_parser("buy", help="Buy squares by position (0-99)")
    buy.add_argument("positions", nargs="*", type=int, help="Grid positions, row * 10 + column")
    buy.add_argument("--random", type=int, default=0, metavar="N", help="Pick N random unowned squares instead")
    buy.add_argument("--password", default="", help="Password for private pools")
    buy.add_argument("--max-cost", default=None, metavar="AMOUNT",
                     help="Refuse if the total exceeds AMOUNT (in whole units, e.g. 25.5)")

    sub.add_parser("resume", help="Pick up an interrupted purchase and re-check its transaction")
    return parser.parse_args(argv)

def _money(orchestrator: PurchaseOrchestrator, amount: int) -> str:
    return f"{format_amount(amount, orchestrator.asset.decimals)} {orchestrator.asset.symbol}"

async def _status(orchestrator: PurchaseOrchestrator):
    pool = orchestrator.pool
    info = await pool.get_pool_info()
    print(f"{info.name} | {info.team_a_name} vs {info.team_b_name} | {info.state.label}")
    print(f"price {_money(orchestrator, info.unit_price)} | sold {info.sold_count}/{GRID_SIZE} | pot {_money(orchestrator, info.total_pot)}")

    if info.state < PoolState.Q1_SCORED:
        for checkpoint, amount in zip(CHECKPOINT_ORDER, await pool.get_projected_payouts()):
            print(f"  {checkpoint.label:<9} {_money(orchestrator, amount)} (projected)")
    else:
        view = await pool.get_settlement()
        for payout in view.payouts:
            if payout.has_winner:
                note = f"won by {payout.winner}"
            elif payout.distributed_equally:
                note = "split across all squares"
            elif payout.rolled_forward:
                note = "rolled forward"
            else:
                note = "pending"
            print(f"  {payout.checkpoint.label:<9} {_money(orchestrator, payout.actual_payout)} {note}")

    account = orchestrator.ledger.account
    if not account:
        return
    for square in await pool.get_user_numbers():
        print(f"  square {square.position:>2}: row {square.row_number} / col {square.col_number}")
    for checkpoint, claimed in (await pool.get_claimed()).items():
        print(f"  {checkpoint.label} winnings {'claimed' if claimed else 'unclaimed'}")
    share = await pool.get_distribution_share()
    if share.amount:
        print(f"  final distribution share {_money(orchestrator, share.amount)}{' (claimed)' if share.claimed else ''}")

async def _buy(orchestrator: PurchaseOrchestrator, args: argparse.Namespace) -> int:
    if not args.demo:
        # 上次授权完没买成的会话接着用，免得再授权一次
        await orchestrator.resume(args.password)
    info = await orchestrator.refresh()

    if args.random:
        orchestrator.selection.random_select(args.random)
    else:
        for position in args.positions:
            orchestrator.selection.toggle(position)
    total = orchestrator.selection.cost(info.unit_price)
    if args.max_cost is not None and total > parse_amount(args.max_cost, orchestrator.asset.decimals):
        print(f"total {_money(orchestrator, total)} exceeds --max-cost {args.max_cost}", file=sys.stderr)
        return 1

    session = await orchestrator.submit(args.password)
    receipt = orchestrator.last_receipt
    if session.step == PurchaseStep.COMPLETE and receipt:
        print(f"bought {receipt.count} squares {receipt.positions} for {_money(orchestrator, receipt.total_cost)}")
        print(f"tx {receipt.tx_hash}")
        return 0
    print(f"purchase {session.session_id} is at {session.step.value}; run `squares-pool resume` to check again")
    return 0

async def _resume(orchestrator: PurchaseOrchestrator) -> int:
    session = await orchestrator.resume()
    if session is None:
        print("no purchase in progress")
        return 0
    print(f"purchase {session.session_id} is at {session.step.value}")
    if session.awaiting_purchase:
        print("approval confirmed, run `squares-pool buy` with the same squares to finish")
    return 0

async def run(args: argparse.Namespace) -> int:
    orchestrator = await PurchaseOrchestrator.create(ledger=InMemoryPoolLedger() if args.demo else None)
    try:
        if args.command == "status":
            await _status(orchestrator)
            return 0
        if args.command == "buy":
            return await _buy(orchestrator, args)
        return await _resume(orchestrator)
    except SquaresPoolError as e:
        logger.debug("{} failed: {!r}", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await orchestrator.pool.close()

def main(argv: Optional[List[str]] = None):
    sys.exit(asyncio.run(run(_parse_args(argv))))

if __name__ == "__main__":
    main()
