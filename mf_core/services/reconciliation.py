"""
库存对账引擎
把订单行转换为账本迁移 + 库存流水，并把受影响原料下所有变体的可售判定交给目录同步。

- 每个 (原料, 变体, 事件) 在独立事务中处理，事务内重新读取计数器并比较写入
- 单个订单行失败只影响该原料，其余订单行继续处理
- 目录同步在事务提交之后执行，失败不回滚账本
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.config import get_settings
from mf_core.database import DatabaseManager
from mf_core.models import Material, MaterialVariant, MovementKind
from mf_core.utils.errors import (
    ConcurrentLedgerUpdate, ConflictError, DataIntegrityError, MatFlowException,
    NotFoundError, problem_payload
)
from mf_core.utils.logger import LogContext
from mf_core.utils.weight_units import convert_weight
from . import movement_log, weight_ledger
from .base import BaseService, RepositoryMixin
from .catalog_sync import CatalogSync, SyncResult
from .events import LineItem, ManualAdjustment, OrderEvent
from .weight_ledger import HealthState, LedgerCounters, LedgerTransition

WEIGHT_QUANTUM = Decimal("0.0001")


def requirement_in_material_unit(link: MaterialVariant, material: Material) -> Decimal:
    """把变体的每件消耗量换算为原料单位"""
    requirement = convert_weight(link.consumption_requirement, link.requirement_unit, material.weight_unit)
    return requirement.quantize(WEIGHT_QUANTUM)


@dataclass
class VariantVerdict:
    """单个变体的可售判定"""
    variant_id: str
    sellable: bool
    requirement: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "sellable": self.sellable,
            "requirement": str(self.requirement),
        }


def compute_verdicts(
    material: Material,
    links: Sequence[MaterialVariant],
    counters: LedgerCounters,
) -> List[VariantVerdict]:
    """原料下所有变体的可售判定（不只是触发事件的那个变体）"""
    verdicts = []
    for link in links:
        requirement = requirement_in_material_unit(link, material)
        verdicts.append(VariantVerdict(
            variant_id=link.variant_id,
            sellable=weight_ledger.is_sellable(counters.available, requirement),
            requirement=requirement,
        ))
    return verdicts


@dataclass
class MaterialOutcome:
    """一次原料迁移的结果"""
    material_id: int
    variant_id: Optional[str]
    kind: MovementKind
    accepted: bool
    quantity_change: Decimal
    counters: LedgerCounters
    state: HealthState
    movement_id: int
    verdicts: List[VariantVerdict] = field(default_factory=list)
    sync_results: List[SyncResult] = field(default_factory=list)

    @property
    def sync_failures(self) -> List[SyncResult]:
        return [result for result in self.sync_results if not result.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "material_id": self.material_id,
            "variant_id": self.variant_id,
            "kind": self.kind.value,
            "accepted": self.accepted,
            "quantity_change": str(self.quantity_change),
            "total_weight": str(self.counters.total_weight),
            "weight_committed": str(self.counters.weight_committed),
            "available": str(self.counters.available),
            "state": self.state.value,
            "movement_id": self.movement_id,
            "verdicts": [verdict.to_dict() for verdict in self.verdicts],
            "sync": [result.to_dict() for result in self.sync_results],
        }


@dataclass
class SkippedItem:
    variant_id: str
    reason: str
    code: str
    material_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "material_id": self.material_id,
            "code": self.code,
            "reason": self.reason,
        }


@dataclass
class ReconciliationReport:
    """一个事件的处理汇总"""
    topic: str
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    processed: List[MaterialOutcome] = field(default_factory=list)
    skipped: List[SkippedItem] = field(default_factory=list)

    @property
    def sync_failures(self) -> List[SyncResult]:
        return [failure for outcome in self.processed for failure in outcome.sync_failures]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "event_id": self.event_id,
            "order_id": self.order_id,
            "processed": [outcome.to_dict() for outcome in self.processed],
            "skipped": [item.to_dict() for item in self.skipped],
            "sync_failures": [result.to_dict() for result in self.sync_failures],
        }


class ReconciliationService(BaseService, RepositoryMixin):
    """对账服务"""

    def __init__(
        self,
        catalog_sync: Optional[CatalogSync] = None,
        db_manager: Optional[DatabaseManager] = None,
        cas_retry_max: Optional[int] = None,
    ):
        super().__init__(db_manager)
        self.catalog_sync = catalog_sync
        self.cas_retry_max = cas_retry_max if cas_retry_max is not None else get_settings().ledger_cas_retry_max
        if self.cas_retry_max < 1:
            raise ValueError("cas_retry_max must be at least 1")

    async def handle_event(self, event: OrderEvent) -> ReconciliationReport:
        """处理一个订单事件的全部订单行"""
        report = ReconciliationReport(topic=event.topic, event_id=event.event_id, order_id=event.order_id)
        with LogContext(shop_domain=event.shop_domain, event_id=event.event_id):
            for item in event.line_items:
                await self.process_line_item(event, item, report)

            self.logger.info(
                "Order event reconciled",
                topic=event.topic,
                order_id=event.order_id,
                line_items=len(event.line_items),
                processed=len(report.processed),
                skipped=len(report.skipped),
                sync_failures=len(report.sync_failures),
            )
        return report

    async def process_line_item(
        self,
        event: OrderEvent,
        item: LineItem,
        report: ReconciliationReport,
    ) -> None:
        """处理一个订单行：对每个关联原料独立执行迁移"""
        if item.quantity == 0:
            return

        try:
            links = await self.execute_with_session(self._find_links, item.variant_id)
        except MatFlowException as e:
            self.logger.error("Material link lookup failed", variant_id=item.variant_id, **problem_payload(e))
            report.skipped.append(SkippedItem(item.variant_id, e.detail or e.title, e.code))
            return
        if not links:
            self.logger.debug("No material linked to variant", variant_id=item.variant_id)
            return

        for material_id in links:
            try:
                outcome = await self.apply_to_material(
                    material_id,
                    event.movement_kind,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    order_id=event.order_id,
                )
            except DataIntegrityError as e:
                self.logger.error(
                    "Ledger data integrity error, line item skipped",
                    material_id=material_id,
                    variant_id=item.variant_id,
                    order_id=event.order_id,
                    event_id=event.event_id,
                    **problem_payload(e),
                )
                report.skipped.append(SkippedItem(item.variant_id, e.detail, e.code, material_id))
                continue
            except MatFlowException as e:
                self.logger.warning(
                    "Line item skipped",
                    material_id=material_id,
                    variant_id=item.variant_id,
                    order_id=event.order_id,
                    event_id=event.event_id,
                    **problem_payload(e),
                )
                report.skipped.append(SkippedItem(item.variant_id, e.detail or e.title, e.code, material_id))
                continue

            outcome.sync_results = await self.push_verdicts(outcome)
            report.processed.append(outcome)

    async def adjust_material(
        self,
        adjustment: ManualAdjustment,
    ) -> MaterialOutcome:
        """手工调整总重量；被拒绝时同步抛出错误，不修改任何状态"""
        outcome = await self.apply_to_material(
            adjustment.material_id,
            MovementKind.ADJUSTMENT,
            weight_delta=Decimal(adjustment.delta),
            note=adjustment.note,
        )
        outcome.sync_results = await self.push_verdicts(outcome)
        return outcome

    async def edit_material(
        self,
        material_id: int,
        fields: Dict[str, Any],
        total_weight: Optional[Decimal] = None,
    ) -> List[VariantVerdict]:
        """编辑原料：字段修改与总重量 ADJUSTMENT 在同一事务内完成，被拒绝时不修改任何状态"""
        with LogContext(material_id=material_id):
            verdicts = await self.execute_with_retry(
                self._edit_tx,
                material_id, fields, total_weight,
                retry_on=(ConcurrentLedgerUpdate,),
                attempts=self.cas_retry_max,
                log_fields={"kind": MovementKind.ADJUSTMENT.value},
            )
        await self._push(material_id, verdicts)
        return verdicts

    async def apply_to_material(
        self,
        material_id: int,
        kind: MovementKind,
        variant_id: Optional[str] = None,
        quantity: int = 0,
        weight_delta: Optional[Decimal] = None,
        order_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> MaterialOutcome:
        """在原料范围的事务中执行迁移；比较写入失败时有界重试"""
        with LogContext(material_id=material_id):
            return await self.execute_with_retry(
                self._apply_tx,
                material_id, kind, variant_id, quantity, weight_delta, order_id, note,
                retry_on=(ConcurrentLedgerUpdate,),
                attempts=self.cas_retry_max,
                log_fields={"variant_id": variant_id, "kind": kind.value},
            )

    async def _find_links(self, session: AsyncSession, variant_id: str) -> List[int]:
        stmt = (
            select(MaterialVariant.material_id)
            .where(MaterialVariant.variant_id == variant_id)
            .order_by(MaterialVariant.material_id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def _apply_tx(
        self,
        session: AsyncSession,
        material_id: int,
        kind: MovementKind,
        variant_id: Optional[str],
        quantity: int,
        weight_delta: Optional[Decimal],
        order_id: Optional[str],
        note: Optional[str],
    ) -> MaterialOutcome:
        # 事务内重新读取计数器
        material = await self.get_by_id(session, Material, material_id, lock=True)
        if material is None:
            raise NotFoundError(code="MATERIAL_NOT_FOUND", resource=f"Material {material_id}")

        links = await self.get_many_by_field(session, MaterialVariant, "material_id", material_id)

        if weight_delta is None:
            link = next((candidate for candidate in links if candidate.variant_id == variant_id), None)
            if link is None:
                raise NotFoundError(
                    code="MATERIAL_VARIANT_NOT_FOUND",
                    resource=f"Variant {variant_id} link on material {material_id}",
                )
            weight_delta = requirement_in_material_unit(link, material) * quantity
        weight_delta = weight_delta.quantize(WEIGHT_QUANTUM)

        counters = LedgerCounters(material.total_weight, material.weight_committed)
        transition = weight_ledger.apply(kind, counters, weight_delta)

        if transition.accepted:
            await self._compare_and_write(session, material_id, transition)
        else:
            self.logger.warning(
                "Commit rejected, insufficient material",
                material_id=material_id,
                variant_id=variant_id,
                order_id=order_id,
                requested=str(weight_delta),
                available=str(counters.available),
            )

        movement = movement_log.record(
            session, material_id, transition,
            variant_id=variant_id, order_id=order_id, note=note,
        )
        await session.flush()

        requirements = [requirement_in_material_unit(link, material) for link in links]
        state = weight_ledger.health_state(transition.after, material.threshold, requirements)
        if state is not HealthState.HEALTHY:
            self.logger.warning(
                "Material stock low",
                material_id=material_id,
                state=state.value,
                available=str(transition.after.available),
                threshold=str(material.threshold) if material.threshold is not None else None,
            )

        verdicts = compute_verdicts(material, links, transition.after)
        if not transition.accepted:
            # 承诺被拒绝的变体直接标记缺货
            for verdict in verdicts:
                if verdict.variant_id == variant_id:
                    verdict.sellable = False

        return MaterialOutcome(
            material_id=material_id,
            variant_id=variant_id,
            kind=transition.kind,
            accepted=transition.accepted,
            quantity_change=transition.quantity_change,
            counters=transition.after,
            state=state,
            movement_id=movement.id,
            verdicts=verdicts,
        )

    async def _edit_tx(
        self,
        session: AsyncSession,
        material_id: int,
        fields: Dict[str, Any],
        total_weight: Optional[Decimal],
    ) -> List[VariantVerdict]:
        material = await self.get_by_id(session, Material, material_id, lock=True)
        if material is None:
            raise NotFoundError(code="MATERIAL_NOT_FOUND", resource=f"Material {material_id}")

        # 流水以登记时的单位记账
        unit = fields.get("weight_unit")
        if unit is not None and unit != material.weight_unit:
            raise ConflictError(
                code="WEIGHT_UNIT_LOCKED",
                detail=f"Material {material_id} is booked in {material.weight_unit}, cannot switch to {unit}",
            )

        counters = LedgerCounters(material.total_weight, material.weight_committed)
        if total_weight is not None:
            delta = (total_weight - counters.total_weight).quantize(WEIGHT_QUANTUM)
            if delta != 0:
                transition = weight_ledger.adjust(counters, delta)
                await self._compare_and_write(session, material_id, transition)
                movement_log.record(session, material_id, transition, note="material edit")
                counters = transition.after

        for key, value in fields.items():
            setattr(material, key, value)
        await session.flush()

        links = await self.get_many_by_field(session, MaterialVariant, "material_id", material_id)
        return compute_verdicts(material, links, counters)

    async def _compare_and_write(
        self,
        session: AsyncSession,
        material_id: int,
        transition: LedgerTransition,
    ) -> None:
        """只有计数器仍等于读取值时才写入"""
        stmt = (
            update(Material)
            .where(
                Material.id == material_id,
                Material.total_weight == transition.before.total_weight,
                Material.weight_committed == transition.before.weight_committed,
            )
            .values(
                total_weight=transition.after.total_weight,
                weight_committed=transition.after.weight_committed,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrentLedgerUpdate(material_id)

    async def push_verdicts(self, outcome: MaterialOutcome) -> List[SyncResult]:
        """事务提交后推送可售判定（尽力而为）"""
        return await self._push(outcome.material_id, outcome.verdicts)

    async def _push(self, material_id: int, verdicts: Sequence[VariantVerdict]) -> List[SyncResult]:
        if self.catalog_sync is None or not verdicts:
            return []
        results = await self.catalog_sync.push(
            (verdict.variant_id, verdict.sellable) for verdict in verdicts
        )
        for result in results:
            if not result.ok:
                self.logger.error(
                    "Catalog out of sync with ledger",
                    material_id=material_id,
                    variant_id=result.variant_id,
                    sellable=result.sellable,
                    state=result.state.value,
                    error=result.error,
                )
        return results
