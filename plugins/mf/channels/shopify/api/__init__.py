"""Shopify API 客户端模块"""

from .client import ShopifyCatalogClient
from .rate_limiter import RateLimiter

__all__ = [
    "ShopifyCatalogClient",
    "RateLimiter"
]
