"""
合规事件处理
shop/redact 删除店铺的全部数据；客户数据请求只记录（不保存客户数据）
"""
from typing import Any, Dict

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.models import Material, WebhookEvent
from mf_core.utils.errors import ValidationError
from .base import BaseService

CUSTOMERS_DATA_REQUEST = "customers/data_request"
CUSTOMERS_REDACT = "customers/redact"
SHOP_REDACT = "shop/redact"

COMPLIANCE_TOPICS = {CUSTOMERS_DATA_REQUEST, CUSTOMERS_REDACT, SHOP_REDACT}


class ComplianceService(BaseService):
    """合规服务"""

    async def handle(self, topic: str, shop_domain: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if topic == SHOP_REDACT:
            return await self.redact_shop(payload.get("shop_domain") or shop_domain)

        if topic in (CUSTOMERS_DATA_REQUEST, CUSTOMERS_REDACT):
            customer = payload.get("customer") or {}
            self.logger.info(
                "Customer compliance request received, no customer data stored",
                topic=topic,
                shop_domain=shop_domain,
                customer_id=customer.get("id"),
            )
            return {"topic": topic, "stored_customer_data": False}

        raise ValidationError(code="UNKNOWN_COMPLIANCE_TOPIC", detail=f"Unsupported compliance topic {topic}")

    async def redact_shop(self, shop_domain: str) -> Dict[str, Any]:
        """删除店铺的原料、关联、流水与 Webhook 记录"""
        if not shop_domain:
            raise ValidationError(code="MISSING_SHOP", detail="shop_domain is required for shop redaction")
        result = await self.execute_with_transaction(self._redact_tx, shop_domain)
        self.logger.info("Shop data redacted", shop_domain=shop_domain, **result)
        return result

    async def _redact_tx(self, session: AsyncSession, shop_domain: str) -> Dict[str, Any]:
        material_count = await session.scalar(
            select(func.count()).select_from(Material).where(Material.shop_domain == shop_domain)
        )
        # 关联与流水通过外键级联删除
        await session.execute(delete(Material).where(Material.shop_domain == shop_domain))
        # shop/redact 记录保留，用于投递去重
        events = await session.execute(
            delete(WebhookEvent).where(
                WebhookEvent.shop_domain == shop_domain,
                WebhookEvent.topic != SHOP_REDACT,
            )
        )
        return {"materials_deleted": material_count or 0, "webhook_events_deleted": events.rowcount}
