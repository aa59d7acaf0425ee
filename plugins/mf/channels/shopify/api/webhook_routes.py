"""
Shopify Webhook 接收端点
验签通过后总是返回 200，避免平台重复投递
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from mf_core.api.models import ApiResponse
from mf_core.config import get_settings
from mf_core.services.catalog_sync import get_catalog_sync
from mf_core.services.event_dispatcher import EventDispatcher
from mf_core.services.reconciliation import ReconciliationService
from mf_core.utils.errors import BadRequestError, UnauthorizedError
from mf_core.utils.logger import get_logger
from ..webhooks.handler import ShopifyWebhookHandler, verify_hmac

router = APIRouter(prefix="/shopify", tags=["Shopify Webhooks"])
logger = get_logger(__name__)


async def get_webhook_handler() -> ShopifyWebhookHandler:
    """依赖注入：获取 Webhook 处理器"""
    reconciliation = ReconciliationService(catalog_sync=get_catalog_sync())
    return ShopifyWebhookHandler(EventDispatcher(reconciliation))


@router.post("/webhooks", response_model=ApiResponse[dict])
async def receive_webhook(
    request: Request,
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
    x_shopify_hmac_sha256: Optional[str] = Header(None, alias="X-Shopify-Hmac-Sha256"),
    handler: ShopifyWebhookHandler = Depends(get_webhook_handler),
):
    """接收 Shopify Webhook（订单生命周期与合规主题）"""
    raw_body = await request.body()
    settings = get_settings()

    if settings.shopify_webhook_secret:
        if not verify_hmac(raw_body, x_shopify_hmac_sha256, settings.shopify_webhook_secret):
            logger.warning(
                "Webhook signature mismatch",
                topic=x_shopify_topic,
                shop_domain=x_shopify_shop_domain,
                webhook_id=x_shopify_webhook_id,
            )
            raise UnauthorizedError(code="INVALID_WEBHOOK_SIGNATURE", detail="Invalid webhook signature")
    else:
        logger.debug("Webhook signature verification disabled (no secret configured)")

    try:
        payload = json.loads(raw_body) if raw_body else {}
    except ValueError as e:
        raise BadRequestError(code="INVALID_WEBHOOK_PAYLOAD", detail=f"Invalid JSON payload: {e}")
    if not isinstance(payload, dict):
        raise BadRequestError(code="INVALID_WEBHOOK_PAYLOAD", detail="Webhook payload must be a JSON object")

    shop_domain = x_shopify_shop_domain or payload.get("shop_domain") or settings.shopify_shop_domain
    if not shop_domain:
        raise BadRequestError(code="MISSING_SHOP_DOMAIN", detail="Cannot identify shop for webhook")

    result = await handler.handle_webhook(
        topic=x_shopify_topic,
        shop_domain=shop_domain,
        webhook_id=x_shopify_webhook_id,
        payload=payload,
    )
    return ApiResponse.success(result)
