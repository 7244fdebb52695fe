from typing import List, Optional, Sequence, Tuple
from eth_account import Account
from loguru import logger
from tenacity import retry, stop_after_attempt, wait_exponential
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError
from squares_pool.config import settings
from squares_pool.domain.errors import AllowanceError, SquaresPoolError, TransactionFailed, TransactionRejected
from squares_pool.domain.models import (
    Checkpoint, DistributionShare, PoolInfo, PoolState, QuarterRecord, TransactionHandle, TransactionReceipt, TxOperation, TxStatus,
    UnclaimedInfo, WinnerRecord, is_real_address,
)
from squares_pool.infrastructure.ledger.base import BaseLedgerClient

# 只保留核心用到的片段
SQUARES_POOL_ABI = [
    {"type": "function", "name": "buySquares", "stateMutability": "payable", "outputs": [],
     "inputs": [{"name": "positions", "type": "uint8[]"}, {"name": "password", "type": "string"}]},
    {"type": "function", "name": "getGrid", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address[100]"}]},
    {"type": "function", "name": "getWinner", "stateMutability": "view",
     "inputs": [{"name": "quarter", "type": "uint8"}],
     "outputs": [{"name": "winner", "type": "address"}, {"name": "payout", "type": "uint256"}]},
    {"type": "function", "name": "getPoolInfo", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "name", "type": "string"}, {"name": "state", "type": "uint8"},
                 {"name": "squarePrice", "type": "uint256"}, {"name": "paymentToken", "type": "address"},
                 {"name": "totalPot", "type": "uint256"}, {"name": "squaresSold", "type": "uint256"},
                 {"name": "teamAName", "type": "string"}, {"name": "teamBName", "type": "string"}]},
    {"type": "function", "name": "getScore", "stateMutability": "view",
     "inputs": [{"name": "quarter", "type": "uint8"}],
     "outputs": [{"name": "", "type": "tuple", "components": [
         {"name": "teamAScore", "type": "uint8"}, {"name": "teamBScore", "type": "uint8"},
         {"name": "submitted", "type": "bool"}, {"name": "settled", "type": "bool"},
         {"name": "requestId", "type": "bytes32"}]}]},
    {"type": "function", "name": "getPayoutPercentages", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint8[4]"}]},
    {"type": "function", "name": "getUnclaimedInfo", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "rolledAmount", "type": "uint256"}, {"name": "distributionPool", "type": "uint256"},
                 {"name": "distributionReady", "type": "bool"}]},
    {"type": "function", "name": "userSquareCount", "stateMutability": "view",
     "inputs": [{"name": "user", "type": "address"}], "outputs": [{"name": "", "type": "uint8"}]},
    {"type": "function", "name": "maxSquaresPerUser", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint8"}]},
    {"type": "function", "name": "isPrivate", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "getNumbers", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "rows", "type": "uint8[10]"}, {"name": "cols", "type": "uint8[10]"}]},
    {"type": "function", "name": "getFinalDistributionShare", "stateMutability": "view",
     "inputs": [{"name": "user", "type": "address"}],
     "outputs": [{"name": "share", "type": "uint256"}, {"name": "claimed", "type": "bool"}]},
    {"type": "function", "name": "hasClaimed", "stateMutability": "view",
     "inputs": [{"name": "user", "type": "address"}, {"name": "quarter", "type": "uint8"}],
     "outputs": [{"name": "", "type": "bool"}]},
]

ERC20_ABI = [
    {"type": "function", "name": "approve", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"type": "function", "name": "allowance", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
]

USER_REJECTED_CODE = 4001

def map_web3_error(exc: Exception, tx_hash: Optional[str] = None) -> SquaresPoolError:
    """把 web3 / 钱包的异常映射进本项目的错误分类"""
    message = str(exc)
    code = None
    if isinstance(exc, Web3RPCError) and isinstance(exc.rpc_response, dict):
        code = (exc.rpc_response.get("error") or {}).get("code")
    if code == USER_REJECTED_CODE or "user rejected" in message.lower() or "user denied" in message.lower():
        return TransactionRejected(message)
    if isinstance(exc, ContractLogicError) and "allowance" in message.lower():
        return AllowanceError(message)
    return TransactionFailed(message, tx_hash)

class Web3LedgerClient(BaseLedgerClient):
    def __init__(self, pool_address: Optional[str] = None, account: Optional[str] = None, rpc_url: Optional[str] = None,
                 private_key: Optional[str] = None, chain_id: Optional[int] = None):
        self.private_key = private_key or settings.PRIVATE_KEY
        if self.private_key and not account:
            account = Account.from_key(self.private_key).address
        super().__init__(pool_address or settings.POOL_ADDRESS, account or settings.ACCOUNT_ADDRESS)
        if not self.pool_address:
            raise ValueError("POOL_ADDRESS is required")

        self.chain_id = chain_id or settings.CHAIN_ID
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or settings.RPC_URL,
                                                        request_kwargs={"timeout": settings.REQUEST_TIMEOUT}))
        self.pool = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(self.pool_address), abi=SQUARES_POOL_ABI)
        self._token = None

    @property
    def name(self) -> str: return "Web3"

    @retry(wait=wait_exponential(multiplier=1, min=2, max=10), stop=stop_after_attempt(3), reraise=True)
    async def _call(self, fn):
        return await fn.call()

    def _require_account(self) -> str:
        if not self.account:
            raise SquaresPoolError("ACCOUNT_ADDRESS (or PRIVATE_KEY) is required")
        return AsyncWeb3.to_checksum_address(self.account)

    async def _token_contract(self):
        if self._token is None:
            info = await self.get_pool_info()
            if not is_real_address(info.asset_address):
                raise SquaresPoolError("pool is paid in the native asset, no token contract")
            self._token = self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(info.asset_address), abi=ERC20_ABI)
        return self._token

    # ---- 读 ----

    async def get_pool_info(self) -> PoolInfo:
        name, state, price, token, pot, sold, team_a, team_b = await self._call(self.pool.functions.getPoolInfo())
        return PoolInfo(name=name, state=PoolState(state), unit_price=price, asset_address=token,
                        total_pot=pot, sold_count=sold, team_a_name=team_a, team_b_name=team_b)

    async def get_grid(self) -> List[Optional[str]]:
        grid = await self._call(self.pool.functions.getGrid())
        return [owner if is_real_address(owner) else None for owner in grid]

    async def get_quarter_score(self, checkpoint: Checkpoint) -> QuarterRecord:
        team_a, team_b, submitted, settled, _request_id = await self._call(self.pool.functions.getScore(int(checkpoint)))
        return QuarterRecord(checkpoint=checkpoint, team_a_score=team_a, team_b_score=team_b,
                             submitted=submitted, settled=settled)

    async def get_quarter_winner(self, checkpoint: Checkpoint) -> WinnerRecord:
        winner, payout = await self._call(self.pool.functions.getWinner(int(checkpoint)))
        return WinnerRecord(checkpoint=checkpoint, winner=winner, base_payout=payout)

    async def get_allowance(self, spender: str) -> int:
        token = await self._token_contract()
        return await self._call(token.functions.allowance(self._require_account(), AsyncWeb3.to_checksum_address(spender)))

    async def get_user_square_count(self) -> int:
        if not self.account:
            return 0
        return await self._call(self.pool.functions.userSquareCount(self._require_account()))

    async def get_max_squares_per_user(self) -> int:
        return await self._call(self.pool.functions.maxSquaresPerUser())

    async def get_payout_percentages(self) -> List[int]:
        return list(await self._call(self.pool.functions.getPayoutPercentages()))

    async def get_unclaimed_info(self) -> UnclaimedInfo:
        rolled, distribution, ready = await self._call(self.pool.functions.getUnclaimedInfo())
        return UnclaimedInfo(rolled_amount=rolled, distribution_pool=distribution, distribution_ready=ready)

    async def is_private(self) -> bool:
        return await self._call(self.pool.functions.isPrivate())

    async def get_numbers(self) -> Tuple[List[int], List[int]]:
        rows, cols = await self._call(self.pool.functions.getNumbers())
        return list(rows), list(cols)

    async def get_distribution_share(self, account: str) -> DistributionShare:
        share, claimed = await self._call(
            self.pool.functions.getFinalDistributionShare(AsyncWeb3.to_checksum_address(account)))
        return DistributionShare(amount=share, claimed=claimed)

    async def has_claimed(self, account: str, checkpoint: Checkpoint) -> bool:
        return await self._call(self.pool.functions.hasClaimed(AsyncWeb3.to_checksum_address(account), int(checkpoint)))

    # ---- 写 ----

    async def purchase(self, positions: Sequence[int], total_cost: int, password: str = "") -> TransactionHandle:
        info = await self.get_pool_info()
        # 原生币随交易附带 value；代币走 transferFrom，value 为 0
        value = 0 if is_real_address(info.asset_address) else total_cost
        fn = self.pool.functions.buySquares(list(positions), password)
        return await self._send(fn, TxOperation.PURCHASE, value)

    async def approve(self, spender: str, amount: int) -> TransactionHandle:
        token = await self._token_contract()
        fn = token.functions.approve(AsyncWeb3.to_checksum_address(spender), amount)
        return await self._send(fn, TxOperation.APPROVAL)

    async def _send(self, fn, operation: TxOperation, value: int = 0) -> TransactionHandle:
        sender = self._require_account()
        try:
            if self.private_key:
                tx = await fn.build_transaction({
                    "from": sender, "value": value, "chainId": self.chain_id,
                    "nonce": await self.w3.eth.get_transaction_count(sender),
                })
                signed = Account.sign_transaction(tx, self.private_key)
                tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = await fn.transact({"from": sender, "value": value})
        except SquaresPoolError:
            raise
        except Exception as e:
            raise map_web3_error(e) from e
        logger.info("Broadcast {} tx {}", operation.value, tx_hash.to_0x_hex())
        return TransactionHandle(tx_hash=tx_hash.to_0x_hex(), operation=operation)

    # ---- 交易状态 ----

    def _to_receipt(self, handle: TransactionHandle, receipt) -> TransactionReceipt:
        if receipt["status"] == 1:
            return TransactionReceipt(handle=handle, status=TxStatus.CONFIRMED)
        return TransactionReceipt(handle=handle, status=TxStatus.FAILED, error=f"transaction {handle.tx_hash} reverted")

    async def get_transaction_status(self, handle: TransactionHandle) -> TransactionReceipt:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(handle.tx_hash)
        except TransactionNotFound:
            return TransactionReceipt(handle=handle, status=TxStatus.PENDING)
        return self._to_receipt(handle, receipt)

    async def wait_for_transaction(self, handle: TransactionHandle) -> TransactionReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(handle.tx_hash, timeout=settings.CONFIRMATION_TIMEOUT)
        except TimeExhausted:
            return TransactionReceipt(handle=handle, status=TxStatus.PENDING)
        return self._to_receipt(handle, receipt)
