"""
订单生命周期事件
每种事件一个类型，按类型分派到对应的账本操作。
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from mf_core.models.materials import MovementKind
from mf_core.utils.errors import ValidationError


@dataclass(frozen=True)
class LineItem:
    """订单行"""
    variant_id: str
    quantity: int


@dataclass(frozen=True)
class OrderEvent:
    """订单事件基类"""
    order_id: Optional[str]
    line_items: Tuple[LineItem, ...]
    event_id: Optional[str] = None
    shop_domain: Optional[str] = None

    movement_kind: ClassVar[MovementKind]
    topic: ClassVar[str]


@dataclass(frozen=True)
class OrderPaid(OrderEvent):
    movement_kind: ClassVar[MovementKind] = MovementKind.ORDER_CREATED
    topic: ClassVar[str] = "order.paid"


@dataclass(frozen=True)
class OrderFulfilled(OrderEvent):
    movement_kind: ClassVar[MovementKind] = MovementKind.FULFILLMENT
    topic: ClassVar[str] = "order.fulfilled"


@dataclass(frozen=True)
class OrderCancelled(OrderEvent):
    movement_kind: ClassVar[MovementKind] = MovementKind.CANCELLED
    topic: ClassVar[str] = "order.cancelled"


@dataclass(frozen=True)
class ManualAdjustment:
    """运营手工调整（不来自事件源）"""
    material_id: int
    delta: Decimal
    note: Optional[str] = None

    movement_kind: ClassVar[MovementKind] = MovementKind.ADJUSTMENT
    topic: ClassVar[str] = "material.adjusted"


LifecycleEvent = Union[OrderPaid, OrderFulfilled, OrderCancelled, ManualAdjustment]


@dataclass
class ParsedLineItems:
    """解析结果：有效订单行 + 无法解析的行"""
    items: List[LineItem] = field(default_factory=list)
    invalid: List[Dict[str, Any]] = field(default_factory=list)


def parse_line_items(payload: Dict[str, Any]) -> ParsedLineItems:
    """从订单载荷中提取 {variant_id, quantity}

    没有 variant_id 的行（自定义商品）直接忽略。
    """
    parsed = ParsedLineItems()
    for index, raw in enumerate(payload.get("line_items") or []):
        variant_id = raw.get("variant_id")
        if variant_id in (None, ""):
            continue
        try:
            quantity = int(raw.get("quantity") or 0)
        except (TypeError, ValueError):
            parsed.invalid.append({
                "index": index,
                "variant_id": str(variant_id),
                "reason": f"invalid quantity: {raw.get('quantity')!r}",
            })
            continue
        if quantity < 0:
            parsed.invalid.append({
                "index": index,
                "variant_id": str(variant_id),
                "reason": f"negative quantity: {quantity}",
            })
            continue
        parsed.items.append(LineItem(variant_id=str(variant_id), quantity=quantity))
    return parsed


def extract_order_id(payload: Dict[str, Any]) -> Optional[str]:
    order_id = payload.get("order_id") or payload.get("id")
    return str(order_id) if order_id is not None else None


def build_order_event(
    event_type: type,
    payload: Dict[str, Any],
    event_id: Optional[str] = None,
    shop_domain: Optional[str] = None,
) -> Tuple[OrderEvent, List[Dict[str, Any]]]:
    """构造订单事件，同时返回无法解析的订单行"""
    if event_type not in (OrderPaid, OrderFulfilled, OrderCancelled):
        raise ValidationError(code="UNKNOWN_ORDER_EVENT", detail=f"Unsupported order event {event_type!r}")
    parsed = parse_line_items(payload)
    event = event_type(
        order_id=extract_order_id(payload),
        line_items=tuple(parsed.items),
        event_id=event_id,
        shop_domain=shop_domain,
    )
    return event, parsed.invalid
