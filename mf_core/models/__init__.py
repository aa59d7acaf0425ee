"""
MatFlow 数据模型包
"""
from .base import Base
from .materials import Material, MaterialVariant, StockMovement, MovementKind
from .webhook_events import WebhookEvent

__all__ = [
    "Base",
    "Material",
    "MaterialVariant",
    "StockMovement",
    "MovementKind",
    "WebhookEvent",
]
