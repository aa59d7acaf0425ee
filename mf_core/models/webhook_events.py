"""
Webhook 事件记录（投递幂等）
"""
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, Index

from .base import Base, BigIntPK


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEvent(Base):
    """Webhook 事件记录"""
    __tablename__ = "webhook_events"

    id = Column(BigIntPK, primary_key=True)

    # 事件信息
    event_id = Column(String(200), nullable=False)
    topic = Column(String(100), nullable=False)  # orders/paid, orders/fulfilled ...
    shop_domain = Column(String(255), nullable=False)

    payload = Column(JSON, nullable=False)

    # 处理状态
    status = Column(String(50), default="processing")  # processing/processed/failed/ignored
    processed_at = Column(DateTime(timezone=True))
    retry_count = Column(Integer, default=0)

    # 幂等性
    idempotency_key = Column(String(500), nullable=False, unique=True)

    # 处理结果摘要
    result = Column(JSON)
    error_message = Column(String(1000))

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_webhook_events_status", "status", "created_at"),
        Index("idx_webhook_events_shop", "shop_domain", "topic", "created_at"),
    )
