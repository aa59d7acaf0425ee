"""
Shopify Webhook 处理器
验签、主题映射、投递幂等，然后交给事件分发器或合规服务
"""
import base64
import hashlib
import hmac
from datetime import timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from mf_core.config import get_settings
from mf_core.database import DatabaseManager, get_db_manager
from mf_core.models import WebhookEvent
from mf_core.models.webhook_events import utcnow
from mf_core.services.compliance import COMPLIANCE_TOPICS, ComplianceService
from mf_core.services.event_dispatcher import EventDispatcher
from mf_core.utils.logger import LogContext, get_logger

logger = get_logger(__name__)

# 订单主题 -> 分发器入口
ORDER_TOPIC_HANDLERS = {
    "orders/fulfilled": "on_order_fulfilled",
    "orders/cancelled": "on_order_cancelled",
}


def verify_hmac(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """校验 X-Shopify-Hmac-Sha256（base64 编码的 HMAC-SHA256）"""
    if not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


def normalize_topic(topic: Optional[str]) -> str:
    """ORDERS_PAID / orders/paid 统一为小写斜杠格式"""
    if not topic:
        return "unknown"
    value = topic.strip().lower()
    if "/" not in value and "_" in value:
        value = value.replace("_", "/", 1)
    return value


class ShopifyWebhookHandler:
    """Shopify Webhook 处理器"""

    def __init__(
        self,
        dispatcher: EventDispatcher,
        compliance: Optional[ComplianceService] = None,
        commit_topic: Optional[str] = None,
        db_manager: Optional[DatabaseManager] = None,
        processing_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.dispatcher = dispatcher
        self.db_manager = db_manager or get_db_manager()
        self.compliance = compliance or ComplianceService(self.db_manager)
        self.topic_handlers = dict(ORDER_TOPIC_HANDLERS)
        self.topic_handlers[normalize_topic(commit_topic or settings.commit_topic)] = "on_order_paid"
        if processing_timeout is None:
            processing_timeout = settings.webhook_processing_timeout
        self.processing_timeout = timedelta(seconds=processing_timeout)

    def resolve(self, topic: str) -> Optional[str]:
        if topic in COMPLIANCE_TOPICS:
            return "compliance"
        return self.topic_handlers.get(topic)

    async def handle_webhook(
        self,
        topic: str,
        shop_domain: str,
        webhook_id: Optional[str],
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        """处理一次投递，返回处理摘要（调用方总是返回 200）"""
        topic = normalize_topic(topic)
        event_id = webhook_id or f"{topic}-{utcnow().timestamp()}"
        target = self.resolve(topic)

        with LogContext(shop_domain=shop_domain, event_id=event_id):
            if target is None:
                logger.info("Ignoring webhook topic", topic=topic)
                return {"success": True, "status": "ignored", "topic": topic, "event_id": event_id}

            webhook_event, duplicate = await self._claim(event_id, topic, shop_domain, payload)
            if duplicate:
                logger.info("Duplicate webhook delivery", topic=topic, status=webhook_event.status)
                return {
                    "success": True,
                    "status": "duplicate",
                    "event_id": event_id,
                    "result": webhook_event.result,
                }

            try:
                if target == "compliance":
                    result = await self.compliance.handle(topic, shop_domain, payload)
                else:
                    handler = getattr(self.dispatcher, target)
                    report = await handler(payload, event_id=event_id, shop_domain=shop_domain)
                    result = report.to_dict()
            except Exception as e:
                logger.error("Failed to process webhook event", topic=topic, exc_info=True)
                await self._finish(webhook_event.id, "failed", error_message=str(e)[:1000])
                return {"success": False, "status": "failed", "event_id": event_id, "error": str(e)}

            await self._finish(webhook_event.id, "processed", result=result)
            return {"success": True, "status": "processed", "event_id": event_id, "result": result}

    def _reclaimable(self, webhook_event: WebhookEvent) -> bool:
        """失败的投递，或 processing 超过租期（处理进程中途退出）的投递可以重新处理"""
        if webhook_event.status == "failed":
            return True
        if webhook_event.status != "processing":
            return False
        claimed_at = webhook_event.updated_at or webhook_event.created_at
        if claimed_at is None:
            return False
        if claimed_at.tzinfo is None:
            # SQLite 读回的时间不带时区
            claimed_at = claimed_at.replace(tzinfo=timezone.utc)
        return utcnow() - claimed_at >= self.processing_timeout

    async def _claim(
        self,
        event_id: str,
        topic: str,
        shop_domain: str,
        payload: Dict[str, Any],
    ):
        """登记事件；已处理或正在处理的投递返回 (记录, True)"""
        idempotency_key = f"{shop_domain}:{event_id}"
        async with self.db_manager.get_session() as session:
            existing = await session.scalar(
                select(WebhookEvent).where(WebhookEvent.idempotency_key == idempotency_key)
            )
            if existing is not None:
                if not self._reclaimable(existing):
                    return existing, True
                previous_status = existing.status
                retry_count = (existing.retry_count or 0) + 1
                # 以 status + retry_count 做比较写入，并发重投只有一个能认领
                claimed = await session.execute(
                    update(WebhookEvent)
                    .where(
                        WebhookEvent.id == existing.id,
                        WebhookEvent.status == previous_status,
                        WebhookEvent.retry_count == existing.retry_count,
                    )
                    .values(status="processing", retry_count=retry_count, error_message=None, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if claimed.rowcount != 1:
                    return existing, True
                if previous_status == "processing":
                    logger.warning("Reclaiming stalled webhook event", retry_count=retry_count)
                else:
                    logger.info("Retrying failed webhook event", retry_count=retry_count)
                return existing, False

            webhook_event = WebhookEvent(
                event_id=event_id,
                topic=topic,
                shop_domain=shop_domain,
                payload=payload,
                status="processing",
                idempotency_key=idempotency_key,
            )
            session.add(webhook_event)
            try:
                await session.commit()
            except IntegrityError:
                # 并发投递，另一个请求已登记
                await session.rollback()
                existing = await session.scalar(
                    select(WebhookEvent).where(WebhookEvent.idempotency_key == idempotency_key)
                )
                return existing, True
            return webhook_event, False

    async def _finish(
        self,
        webhook_event_id: int,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self.db_manager.get_session() as session:
            webhook_event = await session.get(WebhookEvent, webhook_event_id)
            if webhook_event is None:
                # 已被 shop/redact 删除
                return
            webhook_event.status = status
            webhook_event.processed_at = utcnow()
            webhook_event.result = result
            webhook_event.error_message = error_message
            await session.commit()
