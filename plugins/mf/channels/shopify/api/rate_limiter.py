"""
Shopify Admin API 客户端侧限流
按操作类型（query / mutation）各自一个 aiolimiter.AsyncLimiter；服务端 THROTTLED 仍由 CatalogSync 退避重试。
"""
from typing import Dict, Optional

from aiolimiter import AsyncLimiter

from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_RATE = 2.0  # 每秒请求数


class RateLimiter:
    """每种操作一个令牌桶；未登记的操作共用 default 桶"""

    def __init__(self, rate_limit: Dict[str, float], burst: Optional[float] = None):
        rates = {"default": DEFAULT_RATE, **rate_limit}
        # 桶容量等于每秒速率，允许一秒内的突发
        self._limiters = {
            operation: AsyncLimiter(max_rate=burst or rate, time_period=(burst or rate) / rate)
            for operation, rate in rates.items()
        }

    def _limiter(self, operation: str) -> AsyncLimiter:
        return self._limiters.get(operation, self._limiters["default"])

    async def acquire(self, resource_type: str = "default", tokens: int = 1) -> None:
        limiter = self._limiter(resource_type)
        if not limiter.has_capacity(tokens):
            logger.debug("Shopify request throttled locally", operation=resource_type)
        await limiter.acquire(tokens)
