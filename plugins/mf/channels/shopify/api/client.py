"""
Shopify Admin GraphQL 客户端
实现对账引擎需要的商品目录能力：库存项解析、库存级别读取/激活、比较写入、变体名称
"""
import json
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from mf_core.services.catalog_sync import InventoryHandle
from mf_core.utils.errors import (
    CatalogConflictError, CatalogFatalError, CatalogRateLimitError, CatalogTransientError
)
from mf_core.utils.logger import get_logger
from .rate_limiter import RateLimiter

logger = get_logger(__name__)

VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"

# 剩余额度低于最大额度的 10% 时告警
THROTTLE_WARNING_RATIO = 0.1

VARIANT_INVENTORY_QUERY = """
query getVariantInventory($id: ID!) {
  productVariant(id: $id) {
    id
    inventoryItem {
      id
    }
  }
  locations(first: 10) {
    edges {
      node {
        id
      }
    }
  }
}
"""

INVENTORY_LEVEL_QUERY = """
query inventoryLevel($inventoryItemId: ID!, $locationId: ID!) {
  inventoryItem(id: $inventoryItemId) {
    id
    inventoryLevel(locationId: $locationId) {
      id
      quantities(names: ["available"]) {
        name
        quantity
      }
    }
  }
}
"""

INVENTORY_ACTIVATE_MUTATION = """
mutation activateInventory($inventoryItemId: ID!, $locationId: ID!) {
  inventoryActivate(inventoryItemId: $inventoryItemId, locationId: $locationId) {
    inventoryLevel {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

INVENTORY_SET_MUTATION = """
mutation setInventoryQuantity($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup {
      id
    }
    userErrors {
      field
      message
      code
    }
  }
}
"""

VARIANT_TITLE_QUERY = """
query getVariant($id: ID!) {
  productVariant(id: $id) {
    id
    title
    product {
      title
    }
  }
}
"""


def to_variant_gid(variant_id: Any) -> str:
    """数字 ID 或 GID 统一为 gid://shopify/ProductVariant/<id>"""
    value = str(variant_id).strip()
    if value.startswith("gid://"):
        return value
    return f"{VARIANT_GID_PREFIX}{value}"


def _is_conflict(user_errors: List[Dict[str, Any]]) -> bool:
    for error in user_errors:
        message = str(error.get("message", "")).lower()
        code = str(error.get("code") or "").upper()
        if "concurrent" in message or "compare" in message or code == "COMPARE_QUANTITY_STALE":
            return True
    return False


def _is_already_active(user_errors: List[Dict[str, Any]]) -> bool:
    return any(
        "already exists" in str(error.get("message", "")).lower()
        or "already active" in str(error.get("message", "")).lower()
        for error in user_errors
    )


class ShopifyCatalogClient:
    """
    Shopify 商品目录客户端

    使用方式:
        async with ShopifyCatalogClient(shop_domain, access_token) as client:
            handle = await client.resolve_inventory_handle("123456")
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2025-01",
        rate_limit: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop_domain = shop_domain
        self.api_version = api_version
        self.client = httpx.AsyncClient(
            base_url=f"https://{shop_domain}/admin/api/{api_version}",
            headers={"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self.rate_limiter = RateLimiter(
            rate_limit={
                "query": rate_limit,
                "mutation": rate_limit,
                "default": rate_limit,
            }
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _graphql(
        self,
        operation: str,
        query: str,
        variables: Dict[str, Any],
        resource_type: str = "query",
    ) -> Dict[str, Any]:
        """发送 GraphQL 请求，返回 data；按错误类型抛出 Catalog*Error"""
        await self.rate_limiter.acquire(resource_type)

        request_id = str(uuid.uuid4())
        api_start = time.perf_counter()
        logger.info(
            "Shopify API request",
            direction="outbound",
            operation=operation,
            shop_domain=self.shop_domain,
            request_id=request_id,
            variables=json.dumps(variables, ensure_ascii=False)[:2000],
        )

        try:
            response = await self.client.post(
                "/graphql.json",
                json={"query": query, "variables": variables},
                headers={"X-Request-Id": request_id},
            )
        except httpx.TransportError as e:
            logger.warning(
                "Shopify API transport error",
                direction="outbound",
                operation=operation,
                request_id=request_id,
                error=str(e),
            )
            raise CatalogTransientError(f"{operation}: {e}") from e

        latency_ms = int((time.perf_counter() - api_start) * 1000)

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            logger.warning(
                "Shopify API rate limited",
                direction="outbound",
                operation=operation,
                retry_after=retry_after,
                request_id=request_id,
            )
            raise CatalogRateLimitError(f"{operation}: rate limited", retry_after=retry_after)

        if response.status_code >= 500:
            logger.warning(
                "Shopify API server error",
                direction="outbound",
                operation=operation,
                status_code=response.status_code,
                request_id=request_id,
            )
            raise CatalogTransientError(f"{operation}: HTTP {response.status_code}")

        if response.status_code >= 400:
            logger.error(
                "Shopify API request rejected",
                direction="outbound",
                operation=operation,
                status_code=response.status_code,
                request_id=request_id,
                response_body=response.text[:2000],
            )
            raise CatalogFatalError(f"{operation}: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise CatalogFatalError(f"{operation}: invalid JSON response") from e

        errors = body.get("errors") or []
        if errors:
            if any((error.get("extensions") or {}).get("code") == "THROTTLED" for error in errors):
                logger.warning("Shopify API throttled", operation=operation, request_id=request_id)
                raise CatalogRateLimitError(f"{operation}: throttled")
            logger.error(
                "Shopify GraphQL errors",
                operation=operation,
                request_id=request_id,
                errors=errors,
            )
            raise CatalogFatalError(f"{operation}: GraphQL errors", user_errors=errors)

        self._check_throttle(operation, body.get("extensions") or {})

        logger.info(
            "Shopify API response",
            direction="outbound",
            operation=operation,
            status_code=response.status_code,
            latency_ms=latency_ms,
            request_id=request_id,
        )
        return body.get("data") or {}

    def _check_throttle(self, operation: str, extensions: Dict[str, Any]) -> None:
        throttle = (extensions.get("cost") or {}).get("throttleStatus") or {}
        available = throttle.get("currentlyAvailable")
        maximum = throttle.get("maximumAvailable")
        if available is not None and maximum and available < maximum * THROTTLE_WARNING_RATIO:
            logger.warning(
                "Approaching Shopify rate limit",
                operation=operation,
                currently_available=available,
                maximum_available=maximum,
                restore_rate=throttle.get("restoreRate"),
            )

    # 商品目录能力

    async def resolve_inventory_handle(self, variant_id: str) -> InventoryHandle:
        gid = to_variant_gid(variant_id)
        data = await self._graphql("getVariantInventory", VARIANT_INVENTORY_QUERY, {"id": gid})

        item = ((data.get("productVariant") or {}).get("inventoryItem") or {}).get("id")
        if not item:
            raise CatalogFatalError(f"No inventory item found for variant {gid}")

        edges = (data.get("locations") or {}).get("edges") or []
        location_ids = tuple(edge["node"]["id"] for edge in edges if edge.get("node"))
        if not location_ids:
            raise CatalogFatalError("No location found for shop")

        return InventoryHandle(inventory_item_id=item, location_ids=location_ids)

    async def read_inventory_level(self, inventory_item_id: str, location_id: str) -> Optional[int]:
        """读取 available 数量；库存级别不存在时返回 None"""
        data = await self._graphql(
            "inventoryLevel",
            INVENTORY_LEVEL_QUERY,
            {"inventoryItemId": inventory_item_id, "locationId": location_id},
        )
        level = (data.get("inventoryItem") or {}).get("inventoryLevel")
        if not level:
            return None
        for quantity in level.get("quantities") or []:
            if quantity.get("name") == "available":
                return int(quantity.get("quantity") or 0)
        return 0

    async def activate_inventory_level(self, inventory_item_id: str, location_id: str) -> bool:
        data = await self._graphql(
            "inventoryActivate",
            INVENTORY_ACTIVATE_MUTATION,
            {"inventoryItemId": inventory_item_id, "locationId": location_id},
            resource_type="mutation",
        )
        user_errors = (data.get("inventoryActivate") or {}).get("userErrors") or []
        if not user_errors:
            return True
        if _is_already_active(user_errors):
            logger.info("Inventory level already active", inventory_item_id=inventory_item_id)
            return False
        raise CatalogFatalError("Failed to activate inventory", user_errors=user_errors)

    async def set_inventory_quantity(
        self,
        inventory_item_id: str,
        location_id: str,
        quantity: int,
        compare_quantity: int,
    ) -> None:
        if quantity < 0:
            raise CatalogFatalError("Cannot set negative inventory quantity")
        data = await self._graphql(
            "inventorySetQuantities",
            INVENTORY_SET_MUTATION,
            {
                "input": {
                    "name": "available",
                    "reason": "correction",
                    "quantities": [{
                        "inventoryItemId": inventory_item_id,
                        "locationId": location_id,
                        "quantity": quantity,
                        "compareQuantity": compare_quantity,
                    }],
                }
            },
            resource_type="mutation",
        )
        user_errors = (data.get("inventorySetQuantities") or {}).get("userErrors") or []
        if not user_errors:
            return
        if _is_conflict(user_errors):
            raise CatalogConflictError("Inventory quantity changed concurrently", user_errors=user_errors)
        raise CatalogFatalError("Failed to set quantity", user_errors=user_errors)

    async def fetch_variant_title(self, variant_id: str) -> Optional[str]:
        """返回 "商品 - 变体" 形式的显示名称"""
        data = await self._graphql("getVariant", VARIANT_TITLE_QUERY, {"id": to_variant_gid(variant_id)})
        variant = data.get("productVariant")
        if not variant:
            return None
        product_title = (variant.get("product") or {}).get("title")
        title = variant.get("title")
        if product_title and title and title != "Default Title":
            return f"{product_title} - {title}"
        return product_title or title


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
