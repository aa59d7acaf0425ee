"""
原料管理服务
原料登记、编辑、变体关联、查询与审计
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mf_core.database import DatabaseManager
from mf_core.models import Material, MaterialVariant
from mf_core.utils.errors import ConflictError, NotFoundError, ValidationError
from mf_core.utils.weight_units import estimate_quantity, format_weight, normalize_unit
from . import movement_log, weight_ledger
from .base import BaseService, RepositoryMixin, ServiceResult
from .catalog_sync import CatalogSync
from .events import ManualAdjustment
from .reconciliation import (
    MaterialOutcome, ReconciliationService, compute_verdicts, requirement_in_material_unit
)
from .weight_ledger import LedgerCounters, ZERO


def _to_decimal(value: Any, field_name: str, allow_negative: bool = False) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(code="INVALID_WEIGHT", detail=f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(code="INVALID_WEIGHT", detail=f"{field_name} must be finite")
    if not allow_negative and result < ZERO:
        raise ValidationError(code="NEGATIVE_WEIGHT", detail=f"{field_name} cannot be negative: {result}")
    return result


def _to_unit(value: Optional[str], field_name: str) -> str:
    try:
        return normalize_unit(value or "kg")
    except ValueError as e:
        raise ValidationError(code="INVALID_WEIGHT_UNIT", detail=f"{field_name}: {e}")


class MaterialService(BaseService, RepositoryMixin):
    """原料服务"""

    def __init__(
        self,
        catalog_sync: Optional[CatalogSync] = None,
        db_manager: Optional[DatabaseManager] = None,
        reconciliation: Optional[ReconciliationService] = None,
    ):
        super().__init__(db_manager)
        self.catalog_sync = catalog_sync
        self.reconciliation = reconciliation or ReconciliationService(
            catalog_sync=catalog_sync, db_manager=self.db_manager
        )

    # 写操作

    async def create_material(
        self,
        shop_domain: str,
        name: str,
        total_weight: Any,
        weight_unit: str = "kg",
        threshold: Any = None,
        variants: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """登记原料并写入 INITIAL 流水"""
        if not shop_domain:
            raise ValidationError(code="MISSING_SHOP", detail="shop_domain is required")
        if not name or not name.strip():
            raise ValidationError(code="MISSING_MATERIAL_NAME", detail="Material name is required")

        total = _to_decimal(total_weight, "total_weight")
        unit = _to_unit(weight_unit, "weight_unit")
        threshold_value = _to_decimal(threshold, "threshold") if threshold is not None else None
        links = await self._validate_variants(variants or [])

        material_id = await self.execute_with_transaction(
            self._create_material_tx, shop_domain, name.strip(), total, unit, threshold_value, links
        )
        self.logger.info(
            "Material registered",
            material_id=material_id,
            shop_domain=shop_domain,
            total_weight=str(total),
            variants=len(links),
        )
        await self._sync_material(material_id)
        return await self.material_summary(material_id)

    async def update_material(
        self,
        material_id: int,
        name: Optional[str] = None,
        weight_unit: Optional[str] = None,
        threshold: Any = None,
        clear_threshold: bool = False,
        total_weight: Any = None,
    ) -> Dict[str, Any]:
        """编辑原料；总重量变化按 ADJUSTMENT 记账，单位登记后不可更改"""
        fields: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError(code="MISSING_MATERIAL_NAME", detail="Material name cannot be empty")
            fields["name"] = name.strip()
        if weight_unit is not None:
            fields["weight_unit"] = _to_unit(weight_unit, "weight_unit")
        if clear_threshold:
            fields["threshold"] = None
        elif threshold is not None:
            fields["threshold"] = _to_decimal(threshold, "threshold")

        new_total = _to_decimal(total_weight, "total_weight") if total_weight is not None else None

        await self.reconciliation.edit_material(material_id, fields, total_weight=new_total)
        self.logger.info(
            "Material edited",
            material_id=material_id,
            fields=sorted(fields),
            total_weight=str(new_total) if new_total is not None else None,
        )
        return await self.material_summary(material_id)

    async def adjust_weight(self, material_id: int, delta: Any, note: Optional[str] = None) -> MaterialOutcome:
        """手工调整（供应商入库、盘点修正）"""
        value = _to_decimal(delta, "delta", allow_negative=True)
        if value == ZERO:
            raise ValidationError(code="ZERO_ADJUSTMENT", detail="Adjustment delta cannot be zero")
        return await self.reconciliation.adjust_material(
            ManualAdjustment(material_id=material_id, delta=value, note=note)
        )

    async def set_variant_links(self, material_id: int, variants: List[Dict[str, Any]]) -> Dict[str, Any]:
        """替换原料的变体关联：新增、更新、删除"""
        links = await self._validate_variants(variants)
        removed = await self.execute_with_transaction(self._set_links_tx, material_id, links)
        self.logger.info(
            "Material variant links updated",
            material_id=material_id,
            linked=len(links),
            removed=len(removed),
        )
        await self._sync_material(material_id)
        return await self.material_summary(material_id)

    # 读操作

    async def get_material(self, material_id: int) -> ServiceResult[Dict[str, Any]]:
        try:
            return ServiceResult.ok(await self.material_summary(material_id))
        except NotFoundError as e:
            return ServiceResult.fail(error=e.detail, error_code=e.code)

    async def list_materials(self, shop_domain: str) -> List[Dict[str, Any]]:
        materials = await self.execute_with_session(self._list_materials_query, shop_domain)
        return [self._summarize(material) for material in materials]

    async def list_movements(self, material_id: int, order_id: Optional[str] = None) -> List[Dict[str, Any]]:
        await self._get_material(material_id)
        movements = await self.execute_with_session(movement_log.list_movements, material_id, order_id)
        return [movement.to_dict() for movement in movements]

    async def material_summary(self, material_id: int) -> Dict[str, Any]:
        return self._summarize(await self._get_material(material_id))

    async def audit_material(self, material_id: int) -> Dict[str, Any]:
        """用流水重放计数器并与存储值比较"""
        material = await self._get_material(material_id)
        movements = await self.execute_with_session(movement_log.list_movements, material_id)
        replayed = movement_log.replay(movements)
        stored = LedgerCounters(material.total_weight, material.weight_committed)
        consistent = (
            replayed.total_weight == stored.total_weight
            and replayed.weight_committed == stored.weight_committed
        )
        if not consistent:
            self.logger.error(
                "Material counters drifted from movement log",
                material_id=material_id,
                stored_total=str(stored.total_weight),
                replayed_total=str(replayed.total_weight),
                stored_committed=str(stored.weight_committed),
                replayed_committed=str(replayed.weight_committed),
            )
        return {
            "material_id": material_id,
            "consistent": consistent,
            "movements": len(movements),
            "stored": {
                "total_weight": str(stored.total_weight),
                "weight_committed": str(stored.weight_committed),
            },
            "replayed": {
                "total_weight": str(replayed.total_weight),
                "weight_committed": str(replayed.weight_committed),
            },
        }

    # 内部实现

    async def _validate_variants(self, variants: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        validated = []
        seen = set()
        for i, variant in enumerate(variants):
            variant_id = str(variant.get("variant_id") or "").strip()
            if not variant_id:
                raise ValidationError(code="MISSING_VARIANT_ID", detail=f"variant_id is required for item {i}")
            if variant_id in seen:
                raise ValidationError(code="DUPLICATE_VARIANT", detail=f"Variant {variant_id} listed twice")
            seen.add(variant_id)

            requirement = variant.get("consumption_requirement")
            if requirement is None:
                raise ValidationError(
                    code="MISSING_CONSUMPTION_REQUIREMENT",
                    detail=f"consumption_requirement is required for variant {variant_id}"
                )
            name = variant.get("variant_name") or await self._fetch_variant_title(variant_id) or variant_id
            validated.append({
                "variant_id": variant_id,
                "variant_name": name,
                "consumption_requirement": _to_decimal(requirement, "consumption_requirement"),
                "requirement_unit": _to_unit(variant.get("requirement_unit"), "requirement_unit"),
            })
        return validated

    async def _fetch_variant_title(self, variant_id: str) -> Optional[str]:
        """从商品目录读取变体名称（尽力而为）"""
        if self.catalog_sync is None:
            return None
        try:
            return await self.catalog_sync.client.fetch_variant_title(variant_id)
        except Exception as e:
            self.logger.warning("Variant title lookup failed", variant_id=variant_id, error=str(e))
            return None

    async def _ensure_variants_unclaimed(
        self,
        session: AsyncSession,
        variant_ids: List[str],
        material_id: Optional[int],
    ) -> None:
        if not variant_ids:
            return
        stmt = select(MaterialVariant).where(MaterialVariant.variant_id.in_(variant_ids))
        if material_id is not None:
            stmt = stmt.where(MaterialVariant.material_id != material_id)
        claimed = (await session.execute(stmt)).scalars().first()
        if claimed is not None:
            raise ConflictError(
                code="VARIANT_ALREADY_LINKED",
                detail=f"Variant {claimed.variant_id} is already linked to material {claimed.material_id}",
            )

    async def _create_material_tx(
        self,
        session: AsyncSession,
        shop_domain: str,
        name: str,
        total: Decimal,
        unit: str,
        threshold: Optional[Decimal],
        links: List[Dict[str, Any]],
    ) -> int:
        await self._ensure_variants_unclaimed(session, [link["variant_id"] for link in links], None)

        material = Material(
            shop_domain=shop_domain,
            name=name,
            weight_unit=unit,
            total_weight=total,
            weight_committed=ZERO,
            threshold=threshold,
        )
        session.add(material)
        await session.flush()

        for link in links:
            session.add(MaterialVariant(material_id=material.id, **link))

        movement_log.record_initial(session, material.id, total)
        await session.flush()
        return material.id

    async def _set_links_tx(
        self,
        session: AsyncSession,
        material_id: int,
        links: List[Dict[str, Any]],
    ) -> List[str]:
        material = await self.get_by_id(session, Material, material_id)
        if material is None:
            raise NotFoundError(code="MATERIAL_NOT_FOUND", resource=f"Material {material_id}")

        await self._ensure_variants_unclaimed(session, [link["variant_id"] for link in links], material_id)

        existing = {
            link.variant_id: link
            for link in await self.get_many_by_field(session, MaterialVariant, "material_id", material_id)
        }
        wanted = {link["variant_id"]: link for link in links}

        removed = [variant_id for variant_id in existing if variant_id not in wanted]
        for variant_id in removed:
            await session.delete(existing[variant_id])

        for variant_id, data in wanted.items():
            current = existing.get(variant_id)
            if current is None:
                session.add(MaterialVariant(material_id=material_id, **data))
            else:
                current.variant_name = data["variant_name"]
                current.consumption_requirement = data["consumption_requirement"]
                current.requirement_unit = data["requirement_unit"]

        await session.flush()
        return removed

    async def _get_material(self, material_id: int) -> Material:
        material = await self.execute_with_session(self._get_material_query, material_id)
        if material is None:
            raise NotFoundError(code="MATERIAL_NOT_FOUND", resource=f"Material {material_id}")
        return material

    async def _get_material_query(self, session: AsyncSession, material_id: int) -> Optional[Material]:
        stmt = (
            select(Material)
            .where(Material.id == material_id)
            .options(selectinload(Material.variants))
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _list_materials_query(self, session: AsyncSession, shop_domain: str) -> List[Material]:
        stmt = (
            select(Material)
            .where(Material.shop_domain == shop_domain)
            .options(selectinload(Material.variants))
            .order_by(Material.id.desc())
        )
        return list((await session.execute(stmt)).scalars().all())

    async def _sync_material(self, material_id: int) -> None:
        """关联或阈值变化后，把所有变体的判定推送到目录"""
        if self.catalog_sync is None:
            return
        material = await self._get_material(material_id)
        counters = LedgerCounters(material.total_weight, material.weight_committed)
        verdicts = compute_verdicts(material, material.variants, counters)
        await self.catalog_sync.push((verdict.variant_id, verdict.sellable) for verdict in verdicts)

    def _summarize(self, material: Material) -> Dict[str, Any]:
        counters = LedgerCounters(material.total_weight, material.weight_committed)
        requirements = [requirement_in_material_unit(link, material) for link in material.variants]
        verdicts = compute_verdicts(material, material.variants, counters)
        return {
            "id": material.id,
            "shop_domain": material.shop_domain,
            "name": material.name,
            "weight_unit": material.weight_unit,
            "total_weight": str(material.total_weight),
            "weight_committed": str(material.weight_committed),
            "available_weight": str(counters.available),
            "available_display": format_weight(counters.available, material.weight_unit),
            "threshold": str(material.threshold) if material.threshold is not None else None,
            "low_stock": weight_ledger.is_low_stock(counters.available, material.threshold),
            "state": weight_ledger.health_state(counters, material.threshold, requirements).value,
            "variants": [
                {
                    "variant_id": link.variant_id,
                    "variant_name": link.variant_name,
                    "consumption_requirement": str(link.consumption_requirement),
                    "requirement_unit": link.requirement_unit,
                    "sellable": verdict.sellable,
                    "estimated_units": estimate_quantity(
                        counters.available, material.weight_unit,
                        link.consumption_requirement, link.requirement_unit,
                    ),
                }
                for link, verdict in zip(material.variants, verdicts)
            ],
        }
