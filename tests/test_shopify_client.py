"""
Shopify 商品目录客户端测试（httpx.MockTransport，无网络）
"""
import json

import httpx
import pytest

from mf_core.utils.errors import (
    CatalogConflictError, CatalogFatalError, CatalogRateLimitError, CatalogTransientError
)
from plugins.mf.channels.shopify.api.client import ShopifyCatalogClient, to_variant_gid

SHOP = "test-shop.myshopify.com"


def graphql_response(data=None, errors=None, status_code=200, headers=None) -> httpx.Response:
    body = {}
    if data is not None:
        body["data"] = data
    if errors is not None:
        body["errors"] = errors
    return httpx.Response(status_code, json=body, headers=headers)


def make_client(handler) -> ShopifyCatalogClient:
    return ShopifyCatalogClient(
        SHOP, "shpat_test", rate_limit=100, transport=httpx.MockTransport(handler)
    )


def test_variant_gid_normalisation():
    assert to_variant_gid(123) == "gid://shopify/ProductVariant/123"
    assert to_variant_gid(" 456 ") == "gid://shopify/ProductVariant/456"
    assert to_variant_gid("gid://shopify/ProductVariant/9") == "gid://shopify/ProductVariant/9"


async def test_resolve_inventory_handle_posts_graphql():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return graphql_response({
            "productVariant": {"id": "gid://shopify/ProductVariant/1", "inventoryItem": {"id": "gid://shopify/InventoryItem/7"}},
            "locations": {"edges": [{"node": {"id": "gid://shopify/Location/1"}}]},
        })

    async with make_client(handler) as client:
        handle = await client.resolve_inventory_handle("1")

    assert handle.inventory_item_id == "gid://shopify/InventoryItem/7"
    assert handle.location_id == "gid://shopify/Location/1"
    request = requests[0]
    assert request.url.path == "/admin/api/2025-01/graphql.json"
    assert request.headers["X-Shopify-Access-Token"] == "shpat_test"
    assert json.loads(request.content)["variables"] == {"id": "gid://shopify/ProductVariant/1"}


async def test_missing_inventory_item_is_fatal():
    def handler(request):
        return graphql_response({"productVariant": None, "locations": {"edges": []}})

    async with make_client(handler) as client:
        with pytest.raises(CatalogFatalError):
            await client.resolve_inventory_handle("1")


async def test_read_level_returns_none_without_level():
    levels = iter([
        {"inventoryItem": {"id": "i", "inventoryLevel": None}},
        {"inventoryItem": {"id": "i", "inventoryLevel": {"id": "l", "quantities": [{"name": "available", "quantity": 3}]}}},
    ])

    def handler(request):
        return graphql_response(next(levels))

    async with make_client(handler) as client:
        assert await client.read_inventory_level("i", "loc") is None
        assert await client.read_inventory_level("i", "loc") == 3


async def test_activation_already_active_is_not_an_error():
    def handler(request):
        return graphql_response({"inventoryActivate": {
            "inventoryLevel": None,
            "userErrors": [{"field": ["inventoryItemId"], "message": "Inventory level already exists"}],
        }})

    async with make_client(handler) as client:
        assert await client.activate_inventory_level("i", "loc") is False


async def test_set_quantity_sends_compare_quantity():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content)["variables"]["input"])
        return graphql_response({"inventorySetQuantities": {"inventoryAdjustmentGroup": {"id": "g"}, "userErrors": []}})

    async with make_client(handler) as client:
        await client.set_inventory_quantity("i", "loc", 1, 0)

    assert sent[0]["name"] == "available"
    assert sent[0]["quantities"] == [
        {"inventoryItemId": "i", "locationId": "loc", "quantity": 1, "compareQuantity": 0}
    ]


async def test_stale_compare_quantity_is_a_conflict():
    def handler(request):
        return graphql_response({"inventorySetQuantities": {
            "inventoryAdjustmentGroup": None,
            "userErrors": [{"field": ["input"], "message": "The compareQuantity value no longer matches", "code": "COMPARE_QUANTITY_STALE"}],
        }})

    async with make_client(handler) as client:
        with pytest.raises(CatalogConflictError):
            await client.set_inventory_quantity("i", "loc", 0, 1)


async def test_http_429_carries_retry_after():
    def handler(request):
        return httpx.Response(429, headers={"Retry-After": "4"})

    async with make_client(handler) as client:
        with pytest.raises(CatalogRateLimitError) as exc_info:
            await client.read_inventory_level("i", "loc")

    assert exc_info.value.retry_after == 4.0


async def test_throttled_graphql_error_is_rate_limited():
    def handler(request):
        return graphql_response(errors=[{"message": "Throttled", "extensions": {"code": "THROTTLED"}}])

    async with make_client(handler) as client:
        with pytest.raises(CatalogRateLimitError):
            await client.read_inventory_level("i", "loc")


@pytest.mark.parametrize("status_code, error_type", [
    (502, CatalogTransientError),
    (401, CatalogFatalError),
])
async def test_http_status_classification(status_code, error_type):
    def handler(request):
        return httpx.Response(status_code, text="error")

    async with make_client(handler) as client:
        with pytest.raises(error_type):
            await client.read_inventory_level("i", "loc")


async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with make_client(handler) as client:
        with pytest.raises(CatalogTransientError):
            await client.read_inventory_level("i", "loc")


async def test_variant_title_formatting():
    titles = iter([
        {"productVariant": {"id": "v", "title": "250g", "product": {"title": "Espresso Blend"}}},
        {"productVariant": {"id": "v", "title": "Default Title", "product": {"title": "Drip Bag"}}},
        {"productVariant": None},
    ])

    def handler(request):
        return graphql_response(next(titles))

    async with make_client(handler) as client:
        assert await client.fetch_variant_title("1") == "Espresso Blend - 250g"
        assert await client.fetch_variant_title("2") == "Drip Bag"
        assert await client.fetch_variant_title("3") is None
