from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    RPC_URL: str = "https://ethereum-sepolia-rpc.publicnode.com"
    CHAIN_ID: int = 11155111
    POOL_ADDRESS: Optional[str] = None
    ACCOUNT_ADDRESS: Optional[str] = None
    # 留空则交给 RPC 节点自带的钱包签名 (eth_sendTransaction)
    PRIVATE_KEY: Optional[str] = None

    REQUEST_TIMEOUT: int = 15
    CONFIRMATION_TIMEOUT: int = 180
    POOL_CACHE_TTL: float = 15.0
    REFETCH_DELAY: float = 2.0

    TOKEN_LIST_PATH: str = "data/tokens.json"
    TOKEN_LIST_URL: Optional[str] = None
    DATABASE_PATH: str = "data/squares_pool.db"

    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

settings = Settings()
