"""Create material inventory tables

Revision ID: create_material_inventory
Revises:
Create Date: 2025-03-01 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_material_inventory'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create materials, material_variants, stock_movements and webhook_events"""

    op.create_table('materials',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('shop_domain', sa.String(length=255), nullable=False, comment='所属店铺域名'),
        sa.Column('name', sa.String(length=200), nullable=False, comment='原料名称'),
        sa.Column('weight_unit', sa.String(length=8), nullable=False, comment='重量单位'),
        sa.Column('total_weight', sa.Numeric(precision=18, scale=4), nullable=False, comment='实际持有总重量'),
        sa.Column('weight_committed', sa.Numeric(precision=18, scale=4), nullable=False, comment='已付款未发货订单占用的重量'),
        sa.Column('threshold', sa.Numeric(precision=18, scale=4), nullable=True, comment='低库存阈值（可用重量）'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='最后更新时间'),
        sa.CheckConstraint('weight_committed >= 0', name='ck_materials_committed_non_negative'),
        sa.CheckConstraint('weight_committed <= total_weight', name='ck_materials_committed_within_total'),
        sa.CheckConstraint('threshold IS NULL OR threshold >= 0', name='ck_materials_threshold_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_materials_shop', 'materials', ['shop_domain'], unique=False)

    op.create_table('material_variants',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('material_id', sa.BigInteger(), nullable=False, comment='所属原料ID'),
        sa.Column('variant_id', sa.String(length=100), nullable=False, comment='外部商品变体ID'),
        sa.Column('variant_name', sa.String(length=500), nullable=False, comment='变体名称（缓存自商品目录）'),
        sa.Column('consumption_requirement', sa.Numeric(precision=18, scale=4), nullable=False, comment='每件消耗重量'),
        sa.Column('requirement_unit', sa.String(length=8), nullable=False, comment='消耗量单位'),
        sa.CheckConstraint('consumption_requirement >= 0', name='ck_material_variants_requirement_non_negative'),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('variant_id')
    )
    op.create_index('ix_material_variants_material', 'material_variants', ['material_id'], unique=False)

    op.create_table('stock_movements',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('material_id', sa.BigInteger(), nullable=False, comment='所属原料ID'),
        sa.Column('variant_id', sa.String(length=100), nullable=True, comment='触发的商品变体ID'),
        sa.Column('kind', sa.String(length=32), nullable=False, comment='流水类型'),
        sa.Column('quantity_change', sa.Numeric(precision=18, scale=4), nullable=False, comment='带符号的重量变化'),
        sa.Column('remaining_stock', sa.Numeric(precision=18, scale=4), nullable=False, comment='变化后的可用重量快照'),
        sa.Column('order_id', sa.String(length=100), nullable=True, comment='来源订单ID'),
        sa.Column('note', sa.String(length=500), nullable=True, comment='备注'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.CheckConstraint(
            "kind IN ('INITIAL', 'ORDER_CREATED', 'FULFILLMENT', 'CANCELLED', 'ADJUSTMENT', 'OUT_OF_STOCK')",
            name='ck_stock_movements_kind'
        ),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stock_movements_material', 'stock_movements', ['material_id', 'id'], unique=False)
    op.create_index('ix_stock_movements_order', 'stock_movements', ['order_id'], unique=False)

    op.create_table('webhook_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=200), nullable=False),
        sa.Column('topic', sa.String(length=100), nullable=False),
        sa.Column('shop_domain', sa.String(length=255), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=500), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.String(length=1000), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index('idx_webhook_events_status', 'webhook_events', ['status', 'created_at'], unique=False)
    op.create_index('idx_webhook_events_shop', 'webhook_events', ['shop_domain', 'topic', 'created_at'], unique=False)


def downgrade() -> None:
    """Drop material inventory tables"""
    op.drop_index('idx_webhook_events_shop', table_name='webhook_events')
    op.drop_index('idx_webhook_events_status', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_stock_movements_order', table_name='stock_movements')
    op.drop_index('ix_stock_movements_material', table_name='stock_movements')
    op.drop_table('stock_movements')

    op.drop_index('ix_material_variants_material', table_name='material_variants')
    op.drop_table('material_variants')

    op.drop_index('ix_materials_shop', table_name='materials')
    op.drop_table('materials')
