"""
事件分发
每种生命周期事件一个入口：解析订单行后逐行交给对账引擎。
"""
from typing import Any, Dict, Optional, Union

from mf_core.utils.logger import get_logger
from .events import (
    LifecycleEvent, ManualAdjustment, OrderCancelled, OrderFulfilled, OrderPaid,
    build_order_event
)
from .reconciliation import MaterialOutcome, ReconciliationReport, ReconciliationService, SkippedItem

logger = get_logger(__name__)


class EventDispatcher:
    """生命周期事件入口"""

    def __init__(self, reconciliation: ReconciliationService):
        self.reconciliation = reconciliation

    async def on_order_paid(
        self,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        shop_domain: Optional[str] = None,
    ) -> ReconciliationReport:
        return await self._dispatch_order(OrderPaid, payload, event_id, shop_domain)

    async def on_order_fulfilled(
        self,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        shop_domain: Optional[str] = None,
    ) -> ReconciliationReport:
        return await self._dispatch_order(OrderFulfilled, payload, event_id, shop_domain)

    async def on_order_cancelled(
        self,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        shop_domain: Optional[str] = None,
    ) -> ReconciliationReport:
        return await self._dispatch_order(OrderCancelled, payload, event_id, shop_domain)

    async def on_manual_adjustment(self, adjustment: ManualAdjustment) -> MaterialOutcome:
        return await self.reconciliation.adjust_material(adjustment)

    async def dispatch(self, event: LifecycleEvent) -> Union[ReconciliationReport, MaterialOutcome]:
        """按事件类型分派"""
        if isinstance(event, (OrderPaid, OrderFulfilled, OrderCancelled)):
            return await self.reconciliation.handle_event(event)
        if isinstance(event, ManualAdjustment):
            return await self.on_manual_adjustment(event)
        raise TypeError(f"Unsupported lifecycle event: {type(event).__name__}")

    async def _dispatch_order(
        self,
        event_type: type,
        payload: Dict[str, Any],
        event_id: Optional[str],
        shop_domain: Optional[str],
    ) -> ReconciliationReport:
        event, invalid = build_order_event(event_type, payload, event_id=event_id, shop_domain=shop_domain)
        report = await self.dispatch(event)

        for entry in invalid:
            logger.warning(
                "Invalid line item skipped",
                topic=event_type.topic,
                event_id=event_id,
                order_id=event.order_id,
                **entry,
            )
            report.skipped.append(SkippedItem(
                variant_id=entry["variant_id"],
                reason=entry["reason"],
                code="INVALID_LINE_ITEM",
            ))
        return report

