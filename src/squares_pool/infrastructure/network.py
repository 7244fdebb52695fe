import httpx
from typing import Optional
from loguru import logger
from tenacity import retry, wait_exponential, stop_after_attempt
from squares_pool.config import settings

class AsyncNetworkEngine:
    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.transport = transport

    @retry(wait=wait_exponential(multiplier=1, min=2, max=10), stop=stop_after_attempt(3), reraise=True)
    async def fetch_json(self, url: str, headers: dict = None, params: dict = None):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(url, headers=headers, params=params)
            if response.is_error:
                logger.warning("GET {} returned {}", url, response.status_code)
            response.raise_for_status()
            return response.json()
