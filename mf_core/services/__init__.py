"""
MatFlow 核心服务模块
"""
from .base import BaseService, ServiceResult
from .catalog_sync import CatalogClient, CatalogSync, InventoryHandle, SyncResult, SyncState
from .compliance import ComplianceService
from .event_dispatcher import EventDispatcher
from .materials import MaterialService
from .reconciliation import MaterialOutcome, ReconciliationReport, ReconciliationService

__all__ = [
    "BaseService",
    "ServiceResult",
    "CatalogClient",
    "CatalogSync",
    "InventoryHandle",
    "SyncResult",
    "SyncState",
    "ComplianceService",
    "EventDispatcher",
    "MaterialService",
    "MaterialOutcome",
    "ReconciliationReport",
    "ReconciliationService",
]
