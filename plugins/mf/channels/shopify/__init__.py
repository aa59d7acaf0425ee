"""
MatFlow Shopify Channel Plugin
订单 Webhook 接入与库存可售标记同步
"""
from typing import Optional

from fastapi import APIRouter

from mf_core.config import Settings
from mf_core.services.catalog_sync import CatalogSync
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

# 插件版本
__version__ = "1.0.0"


def get_router() -> Optional[APIRouter]:
    """获取插件的 API 路由"""
    from .api.webhook_routes import router
    return router


def create_catalog_sync(settings: Settings) -> Optional[CatalogSync]:
    """按配置创建 Shopify 目录同步；未配置店铺或令牌时返回 None"""
    if not settings.shopify_shop_domain or not settings.shopify_access_token:
        logger.warning("Shopify credentials not configured, catalog sync disabled")
        return None

    from .api.client import ShopifyCatalogClient

    client = ShopifyCatalogClient(
        shop_domain=settings.shopify_shop_domain,
        access_token=settings.shopify_access_token,
        api_version=settings.shopify_api_version,
        rate_limit=settings.shopify_rate_limit,
        timeout=settings.shopify_timeout,
    )
    logger.info("Shopify catalog sync enabled", shop_domain=settings.shopify_shop_domain)
    return CatalogSync(client)
