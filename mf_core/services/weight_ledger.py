"""
重量账本
原料计数器的纯函数状态迁移，不做任何 I/O。

不变量：0 <= weight_committed <= total_weight
- commit   承诺（付款）：weight_committed += delta，超出总量时返回 OUT_OF_STOCK 零效果迁移
- release  发货：weight_committed -= delta，total_weight -= delta
- restore  取消：weight_committed -= delta，出现负数视为上游记账错误
- adjust   手工调整：total_weight += delta（可为负），不能低于已承诺重量
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Union

from mf_core.models.materials import MovementKind
from mf_core.utils.errors import DataIntegrityError, InvariantViolation, ValidationError

ZERO = Decimal("0")

Weight = Union[Decimal, int, float, str]


def to_weight(value: Weight) -> Decimal:
    # float 先转字符串，避免二进制误差进入账本
    if isinstance(value, float):
        value = str(value)
    return Decimal(value)


class HealthState(str, enum.Enum):
    """原料库存状态"""
    HEALTHY = "HEALTHY"
    LOW = "LOW"
    OUT_OF_STOCK = "OUT_OF_STOCK"


@dataclass(frozen=True)
class LedgerCounters:
    """原料计数器快照"""
    total_weight: Decimal
    weight_committed: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.total_weight - self.weight_committed

    def is_consistent(self) -> bool:
        return ZERO <= self.weight_committed <= self.total_weight


@dataclass(frozen=True)
class LedgerTransition:
    """一次账本迁移的结果，对应一条库存流水"""
    kind: MovementKind
    before: LedgerCounters
    after: LedgerCounters
    quantity_change: Decimal

    @property
    def accepted(self) -> bool:
        return self.kind is not MovementKind.OUT_OF_STOCK

    @property
    def remaining_stock(self) -> Decimal:
        return self.after.available


def _require_non_negative(delta: Decimal, operation: str) -> Decimal:
    delta = to_weight(delta)
    if delta < ZERO:
        raise ValidationError(
            code="NEGATIVE_WEIGHT_DELTA",
            detail=f"{operation} requires a non-negative weight, got {delta}"
        )
    return delta


def commit(counters: LedgerCounters, delta: Weight) -> LedgerTransition:
    """为已付款订单占用重量；容量不足时计数器不变并返回 OUT_OF_STOCK 标记"""
    delta = _require_non_negative(delta, "commit")
    new_committed = counters.weight_committed + delta
    if new_committed > counters.total_weight:
        return LedgerTransition(
            kind=MovementKind.OUT_OF_STOCK,
            before=counters,
            after=counters,
            quantity_change=ZERO,
        )
    return LedgerTransition(
        kind=MovementKind.ORDER_CREATED,
        before=counters,
        after=LedgerCounters(counters.total_weight, new_committed),
        quantity_change=delta,
    )


def release(counters: LedgerCounters, delta: Weight) -> LedgerTransition:
    """发货：同时从已承诺和实际总量中扣除"""
    delta = _require_non_negative(delta, "release")
    new_committed = counters.weight_committed - delta
    new_total = counters.total_weight - delta
    if new_committed < ZERO or new_total < ZERO:
        raise InvariantViolation(
            f"cannot release {delta}: only {counters.weight_committed} committed",
            weight_committed=str(counters.weight_committed),
            total_weight=str(counters.total_weight),
        )
    return LedgerTransition(
        kind=MovementKind.FULFILLMENT,
        before=counters,
        after=LedgerCounters(new_total, new_committed),
        quantity_change=-delta,
    )


def restore(counters: LedgerCounters, delta: Weight) -> LedgerTransition:
    """取消：释放已承诺重量，不允许降到零以下"""
    delta = _require_non_negative(delta, "restore")
    new_committed = counters.weight_committed - delta
    if new_committed < ZERO:
        raise DataIntegrityError(
            f"cannot restore {delta}: only {counters.weight_committed} committed",
            weight_committed=str(counters.weight_committed),
        )
    return LedgerTransition(
        kind=MovementKind.CANCELLED,
        before=counters,
        after=LedgerCounters(counters.total_weight, new_committed),
        quantity_change=-delta,
    )


def adjust(counters: LedgerCounters, delta: Weight) -> LedgerTransition:
    """手工/供应商调整总重量"""
    delta = to_weight(delta)
    new_total = counters.total_weight + delta
    if new_total < counters.weight_committed:
        raise InvariantViolation(
            f"cannot reduce total weight below committed amount "
            f"({new_total} < {counters.weight_committed})",
            total_weight=str(counters.total_weight),
            weight_committed=str(counters.weight_committed),
        )
    return LedgerTransition(
        kind=MovementKind.ADJUSTMENT,
        before=counters,
        after=LedgerCounters(new_total, counters.weight_committed),
        quantity_change=delta,
    )


TRANSITIONS: Dict[MovementKind, Callable[[LedgerCounters, Weight], LedgerTransition]] = {
    MovementKind.ORDER_CREATED: commit,
    MovementKind.FULFILLMENT: release,
    MovementKind.CANCELLED: restore,
    MovementKind.ADJUSTMENT: adjust,
}


def apply(kind: MovementKind, counters: LedgerCounters, delta: Weight) -> LedgerTransition:
    """按流水类型执行迁移"""
    try:
        operation = TRANSITIONS[kind]
    except KeyError:
        raise ValueError(f"{kind} is not a ledger operation") from None
    return operation(counters, delta)


# 可售判定

def is_sellable(available: Decimal, requirement: Decimal) -> bool:
    """可用重量至少够再卖一件"""
    return available >= requirement


def is_low_stock(available: Decimal, threshold: Optional[Decimal]) -> bool:
    return threshold is not None and available <= threshold


def health_state(
    counters: LedgerCounters,
    threshold: Optional[Decimal],
    requirements: Iterable[Decimal] = (),
) -> HealthState:
    """根据可用重量重新计算原料状态，无隐藏状态"""
    available = counters.available
    requirements = list(requirements)
    if requirements:
        out_of_stock = not any(is_sellable(available, r) for r in requirements)
    else:
        out_of_stock = available <= ZERO
    if out_of_stock:
        return HealthState.OUT_OF_STOCK
    if is_low_stock(available, threshold):
        return HealthState.LOW
    return HealthState.HEALTHY
