"""
Pytest 配置和 fixtures
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from mf_core.app import create_app
from mf_core.database import DatabaseManager, set_db_manager
from mf_core.services.catalog_sync import CatalogSync, InventoryHandle, set_catalog_sync
from mf_core.services.materials import MaterialService
from mf_core.services.reconciliation import ReconciliationService
from mf_core.utils.errors import CatalogConflictError, CatalogFatalError

LOCATION_ID = "gid://shopify/Location/1"


class FakeCatalogClient:
    """内存商品目录：按 compareQuantity 做比较写入"""

    def __init__(self):
        self.levels: Dict[Tuple[str, str], int] = {}
        self.titles: Dict[str, str] = {}
        self.fatal_variants = set()
        self.pending_conflicts = 0
        self.writes: List[Tuple[str, int]] = []
        self.activations: List[str] = []

    @staticmethod
    def item_for(variant_id: str) -> str:
        return f"gid://shopify/InventoryItem/{variant_id}"

    def level(self, variant_id: str) -> Optional[int]:
        return self.levels.get((self.item_for(variant_id), LOCATION_ID))

    async def resolve_inventory_handle(self, variant_id: str) -> InventoryHandle:
        if variant_id in self.fatal_variants:
            raise CatalogFatalError(f"No inventory item found for variant {variant_id}")
        return InventoryHandle(self.item_for(variant_id), (LOCATION_ID,))

    async def read_inventory_level(self, inventory_item_id: str, location_id: str) -> Optional[int]:
        return self.levels.get((inventory_item_id, location_id))

    async def activate_inventory_level(self, inventory_item_id: str, location_id: str) -> bool:
        self.activations.append(inventory_item_id)
        if (inventory_item_id, location_id) in self.levels:
            return False
        self.levels[(inventory_item_id, location_id)] = 0
        return True

    async def set_inventory_quantity(
        self,
        inventory_item_id: str,
        location_id: str,
        quantity: int,
        compare_quantity: int,
    ) -> None:
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            raise CatalogConflictError("The quantity was modified concurrently")
        if self.levels.get((inventory_item_id, location_id), 0) != compare_quantity:
            raise CatalogConflictError("compareQuantity does not match")
        self.levels[(inventory_item_id, location_id)] = quantity
        self.writes.append((inventory_item_id, quantity))

    async def fetch_variant_title(self, variant_id: str) -> Optional[str]:
        return self.titles.get(variant_id)


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    """每个测试一个临时 SQLite 数据库"""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'matflow_test.db'}")
    await manager.create_tables()
    set_db_manager(manager)

    yield manager

    set_db_manager(None)
    await manager.close()


@pytest.fixture
def catalog_client() -> FakeCatalogClient:
    return FakeCatalogClient()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def catalog_sync(catalog_client, sleeps) -> CatalogSync:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    sync = CatalogSync(catalog_client, max_attempts=3, backoff_base=2, sleep=record_sleep)
    set_catalog_sync(sync)
    yield sync
    set_catalog_sync(None)


@pytest.fixture
def reconciliation(db_manager, catalog_sync) -> ReconciliationService:
    return ReconciliationService(catalog_sync=catalog_sync, db_manager=db_manager)


@pytest.fixture
def material_service(db_manager, catalog_sync, reconciliation) -> MaterialService:
    return MaterialService(catalog_sync=catalog_sync, db_manager=db_manager, reconciliation=reconciliation)


@pytest.fixture
def make_material(material_service):
    """登记原料的快捷方式，variants 为 [(variant_id, 每件消耗量)]"""
    async def _make(
        total_weight="100",
        variants=(("1001", "5"),),
        threshold="10",
        unit="kg",
        shop_domain="test-shop.myshopify.com",
    ):
        return await material_service.create_material(
            shop_domain=shop_domain,
            name="Arabica beans",
            total_weight=Decimal(total_weight),
            weight_unit=unit,
            threshold=Decimal(threshold) if threshold is not None else None,
            variants=[
                {"variant_id": variant_id, "consumption_requirement": requirement, "requirement_unit": unit}
                for variant_id, requirement in variants
            ],
        )
    return _make


def build_order_payload(order_id: str, *line_items) -> dict:
    """构造订单载荷，line_items 为 (variant_id, quantity)"""
    return {
        "id": order_id,
        "line_items": [
            {"variant_id": variant_id, "quantity": quantity}
            for variant_id, quantity in line_items
        ],
    }


@pytest.fixture
def order_payload():
    return build_order_payload


@pytest_asyncio.fixture
async def api_client(db_manager, catalog_sync):
    """ASGI 测试客户端（不触发 lifespan，依赖由上面的 fixtures 注册）"""
    app = create_app()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
