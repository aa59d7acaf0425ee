"""
库存流水
只追加的审计记录，与账本迁移在同一事务中写入。
"""
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.models import StockMovement, MovementKind
from mf_core.utils.logger import get_logger
from .weight_ledger import LedgerCounters, LedgerTransition, ZERO

logger = get_logger(__name__)

# 每种流水影响的计数器
AFFECTS_TOTAL = {MovementKind.INITIAL, MovementKind.FULFILLMENT, MovementKind.ADJUSTMENT}
AFFECTS_COMMITTED = {MovementKind.ORDER_CREATED, MovementKind.FULFILLMENT, MovementKind.CANCELLED}


def record(
    session: AsyncSession,
    material_id: int,
    transition: LedgerTransition,
    variant_id: Optional[str] = None,
    order_id: Optional[str] = None,
    note: Optional[str] = None,
) -> StockMovement:
    """写入一条流水（随外层事务提交）"""
    movement = StockMovement(
        material_id=material_id,
        variant_id=variant_id,
        kind=transition.kind.value,
        quantity_change=transition.quantity_change,
        remaining_stock=transition.remaining_stock,
        order_id=order_id,
        note=note,
    )
    session.add(movement)
    return movement


def record_initial(session: AsyncSession, material_id: int, total_weight: Decimal) -> StockMovement:
    """原料登记时的初始流水"""
    movement = StockMovement(
        material_id=material_id,
        kind=MovementKind.INITIAL.value,
        quantity_change=total_weight,
        remaining_stock=total_weight,
    )
    session.add(movement)
    return movement


async def list_movements(
    session: AsyncSession,
    material_id: int,
    order_id: Optional[str] = None,
) -> List[StockMovement]:
    """按时间顺序返回原料流水"""
    stmt = select(StockMovement).where(StockMovement.material_id == material_id)
    if order_id:
        stmt = stmt.where(StockMovement.order_id == order_id)
    stmt = stmt.order_by(StockMovement.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def replay(movements: Iterable[StockMovement]) -> LedgerCounters:
    """从流水重建计数器

    FULFILLMENT 同时影响总量和已承诺量（quantity_change 为负），
    OUT_OF_STOCK 不影响任何计数器。
    """
    total = ZERO
    committed = ZERO
    for movement in movements:
        kind = MovementKind(movement.kind)
        change = Decimal(movement.quantity_change)
        if kind in AFFECTS_TOTAL:
            total += change
        if kind in AFFECTS_COMMITTED:
            committed += change
    return LedgerCounters(total_weight=total, weight_committed=committed)
