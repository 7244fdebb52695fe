import json
import os
from typing import Dict, Iterable, Optional
from loguru import logger
from squares_pool.config import settings
from squares_pool.domain.models import FungibleAsset, NativeAsset, PaymentAsset, is_real_address
from squares_pool.infrastructure.network import AsyncNetworkEngine

# 合约里原生币用零地址表示；每条链只内置 USDC
BUILTIN_TOKENS = {
    1: {"0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": ("USDC", 6)},
    8453: {"0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": ("USDC", 6)},
    42161: {"0xaf88d065e77c8cc2239327c5edb3a432268e5831": ("USDC", 6)},
    11155111: {"0x1c7d4b196cb0c7b01d743fbc6116a902379c7238": ("USDC", 6)},
    84532: {"0x036cbd53842c5426634e7929541ec2318f3dcf7e": ("USDC", 6)},
    421614: {"0x75faf114eafb1bdbe2f0316df893fd58ce46aa4d": ("USDC", 6)},
}

class TokenRegistry:
    """防腐层：把池子的支付地址洗成 NativeAsset / FungibleAsset"""

    def __init__(self, chain_id: int = None, path: Optional[str] = None):
        self.chain_id = chain_id or settings.CHAIN_ID
        self.tokens: Dict[str, FungibleAsset] = {}
        for address, (symbol, decimals) in BUILTIN_TOKENS.get(self.chain_id, {}).items():
            self.register(FungibleAsset(address=address, symbol=symbol, decimals=decimals))

        path = path or settings.TOKEN_LIST_PATH
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as f:
                self._merge(json.load(f))

    def register(self, asset: FungibleAsset):
        self.tokens[asset.address.lower()] = asset

    async def load_remote(self, url: Optional[str] = None, network: Optional[AsyncNetworkEngine] = None) -> int:
        url = url or settings.TOKEN_LIST_URL
        if not url:
            return 0
        data = await (network or AsyncNetworkEngine()).fetch_json(url)
        added = self._merge(data)
        logger.info("Loaded {} tokens for chain {} from {}", added, self.chain_id, url)
        return added

    def _merge(self, data) -> int:
        entries: Iterable[dict] = data.get("tokens", []) if isinstance(data, dict) else data
        added = 0
        for entry in entries:
            if entry.get("chainId", self.chain_id) != self.chain_id: continue
            if not is_real_address(entry.get("address")): continue
            self.register(FungibleAsset(address=entry["address"], symbol=entry.get("symbol", "TOKEN"),
                                        decimals=int(entry.get("decimals", 18))))
            added += 1
        return added

    def resolve(self, address: Optional[str]) -> PaymentAsset:
        if not is_real_address(address):
            return NativeAsset()
        known = self.tokens.get(address.lower())
        if known: return known
        # 列表外的代币：照样走授权流程，精度按 18 兜底
        return FungibleAsset(address=address)
