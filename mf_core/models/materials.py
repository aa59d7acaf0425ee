"""
原料库存数据模型
Material 拥有其变体关联与库存流水（级联删除）
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    BigInteger, String, Numeric, DateTime, ForeignKey,
    CheckConstraint, Index, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK

WEIGHT = Numeric(18, 4)


class MovementKind(str, enum.Enum):
    """库存流水类型"""
    INITIAL = "INITIAL"
    ORDER_CREATED = "ORDER_CREATED"  # 承诺
    FULFILLMENT = "FULFILLMENT"  # 发货扣减
    CANCELLED = "CANCELLED"  # 取消释放承诺
    ADJUSTMENT = "ADJUSTMENT"  # 手工调整
    OUT_OF_STOCK = "OUT_OF_STOCK"  # 承诺被拒绝的零效果标记


class Material(Base):
    """原料池"""
    __tablename__ = "materials"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    shop_domain: Mapped[str] = mapped_column(String(255), nullable=False, comment="所属店铺域名")
    name: Mapped[str] = mapped_column(String(200), nullable=False, comment="原料名称")
    weight_unit: Mapped[str] = mapped_column(String(8), nullable=False, default="kg", comment="重量单位")

    total_weight: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False, comment="实际持有总重量")
    weight_committed: Mapped[Decimal] = mapped_column(
        WEIGHT,
        nullable=False,
        default=Decimal("0"),
        comment="已付款未发货订单占用的重量"
    )
    threshold: Mapped[Optional[Decimal]] = mapped_column(WEIGHT, nullable=True, comment="低库存阈值（可用重量）")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="创建时间"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="最后更新时间"
    )

    variants: Mapped[List["MaterialVariant"]] = relationship(
        back_populates="material",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MaterialVariant.id",
    )
    movements: Mapped[List["StockMovement"]] = relationship(
        back_populates="material",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StockMovement.id",
    )

    __table_args__ = (
        CheckConstraint("weight_committed >= 0", name="ck_materials_committed_non_negative"),
        CheckConstraint("weight_committed <= total_weight", name="ck_materials_committed_within_total"),
        CheckConstraint("threshold IS NULL OR threshold >= 0", name="ck_materials_threshold_non_negative"),
        Index("ix_materials_shop", "shop_domain"),
    )

    @property
    def available_weight(self) -> Decimal:
        return self.total_weight - self.weight_committed


class MaterialVariant(Base):
    """商品变体与原料的关联（每件消耗量）"""
    __tablename__ = "material_variants"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    material_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("materials.id", ondelete="CASCADE"),
        nullable=False,
        comment="所属原料ID"
    )
    variant_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
        comment="外部商品变体ID"
    )
    variant_name: Mapped[str] = mapped_column(String(500), nullable=False, default="", comment="变体名称（缓存自商品目录）")
    consumption_requirement: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False, comment="每件消耗重量")
    requirement_unit: Mapped[str] = mapped_column(String(8), nullable=False, default="kg", comment="消耗量单位")

    material: Mapped["Material"] = relationship(back_populates="variants")

    __table_args__ = (
        CheckConstraint("consumption_requirement >= 0", name="ck_material_variants_requirement_non_negative"),
        Index("ix_material_variants_material", "material_id"),
    )


class StockMovement(Base):
    """库存流水（只追加）"""
    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    material_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("materials.id", ondelete="CASCADE"),
        nullable=False,
        comment="所属原料ID"
    )
    variant_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="触发的商品变体ID")
    kind: Mapped[str] = mapped_column(String(32), nullable=False, comment="流水类型")
    quantity_change: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False, comment="带符号的重量变化")
    remaining_stock: Mapped[Decimal] = mapped_column(WEIGHT, nullable=False, comment="变化后的可用重量快照")
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="来源订单ID")
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True, comment="备注")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="创建时间"
    )

    material: Mapped["Material"] = relationship(back_populates="movements")

    __table_args__ = (
        CheckConstraint(
            "kind IN ('INITIAL', 'ORDER_CREATED', 'FULFILLMENT', 'CANCELLED', 'ADJUSTMENT', 'OUT_OF_STOCK')",
            name="ck_stock_movements_kind"
        ),
        Index("ix_stock_movements_material", "material_id", "id"),
        Index("ix_stock_movements_order", "order_id"),
    )
