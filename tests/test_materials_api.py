"""
原料 API 测试（ASGI 传输，临时 SQLite）
"""
from decimal import Decimal

MATERIALS_URL = "/api/mf/v1/materials"
SHOP = "test-shop.myshopify.com"


def material_body(**overrides) -> dict:
    body = {
        "shop_domain": SHOP,
        "name": "Arabica beans",
        "total_weight": "100",
        "weight_unit": "kg",
        "threshold": "10",
        "variants": [{"variant_id": "1001", "consumption_requirement": "5", "requirement_unit": "kg"}],
    }
    body.update(overrides)
    return body


async def create(api_client, **overrides) -> dict:
    response = await api_client.post(MATERIALS_URL, json=material_body(**overrides))
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def test_create_material_pushes_verdicts(api_client, catalog_client):
    catalog_client.titles["1001"] = "Espresso Blend - 250g"

    material = await create(api_client)

    assert Decimal(material["available_weight"]) == Decimal("100")
    assert material["state"] == "HEALTHY"
    assert material["available_display"] == "100.00 kg"
    variant = material["variants"][0]
    assert variant["variant_name"] == "Espresso Blend - 250g"
    assert variant["estimated_units"] == 20
    assert variant["sellable"] is True
    assert catalog_client.level("1001") == 1


async def test_create_rejects_negative_weight(api_client):
    response = await api_client.post(MATERIALS_URL, json=material_body(total_weight="-1"))

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_create_rejects_unknown_unit(api_client):
    response = await api_client.post(MATERIALS_URL, json=material_body(weight_unit="stone"))

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_WEIGHT_UNIT"


async def test_variant_cannot_be_linked_twice(api_client):
    await create(api_client)

    response = await api_client.post(MATERIALS_URL, json=material_body(name="Robusta"))

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "VARIANT_ALREADY_LINKED"


async def test_get_and_list(api_client):
    material = await create(api_client)
    await create(api_client, shop_domain="other.myshopify.com", variants=[])

    detail = await api_client.get(f"{MATERIALS_URL}/{material['id']}")
    assert detail.status_code == 200
    assert detail.json()["data"]["name"] == "Arabica beans"

    listing = await api_client.get(MATERIALS_URL, params={"shop_domain": SHOP})
    assert listing.json()["data"]["total"] == 1

    missing = await api_client.get(f"{MATERIALS_URL}/9999")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "MATERIAL_NOT_FOUND"


async def test_adjustments(api_client):
    material = await create(api_client)
    url = f"{MATERIALS_URL}/{material['id']}/adjustments"

    added = await api_client.post(url, json={"delta": "20", "note": "supplier delivery"})
    assert added.status_code == 200
    assert Decimal(added.json()["data"]["total_weight"]) == Decimal("120")
    assert added.json()["data"]["kind"] == "ADJUSTMENT"

    rejected = await api_client.post(url, json={"delta": "-200"})
    assert rejected.status_code == 409
    assert rejected.json()["error"]["code"] == "LEDGER_INVARIANT_VIOLATION"

    zero = await api_client.post(url, json={"delta": "0"})
    assert zero.status_code == 422
    assert zero.json()["error"]["code"] == "ZERO_ADJUSTMENT"


async def test_edit_total_weight_records_adjustment(api_client):
    material = await create(api_client)

    response = await api_client.patch(
        f"{MATERIALS_URL}/{material['id']}", json={"total_weight": "80", "name": "Arabica (washed)"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Arabica (washed)"
    assert Decimal(data["total_weight"]) == Decimal("80")

    movements = (await api_client.get(f"{MATERIALS_URL}/{material['id']}/movements")).json()["data"]
    assert [item["kind"] for item in movements["items"]] == ["INITIAL", "ADJUSTMENT"]
    assert Decimal(movements["items"][1]["quantity_change"]) == Decimal("-20")


async def test_clear_threshold(api_client):
    material = await create(api_client)

    response = await api_client.patch(f"{MATERIALS_URL}/{material['id']}", json={"clear_threshold": True})

    assert response.json()["data"]["threshold"] is None


async def test_replace_variant_links(api_client, catalog_client):
    material = await create(api_client)

    response = await api_client.put(
        f"{MATERIALS_URL}/{material['id']}/variants",
        json={"variants": [
            {"variant_id": "2002", "variant_name": "Large bag", "consumption_requirement": "500", "requirement_unit": "g"},
        ]},
    )

    assert response.status_code == 200
    variants = response.json()["data"]["variants"]
    assert [variant["variant_id"] for variant in variants] == ["2002"]
    assert variants[0]["estimated_units"] == 200
    assert catalog_client.level("2002") == 1


async def test_audit_endpoint(api_client):
    material = await create(api_client)
    await api_client.post(f"{MATERIALS_URL}/{material['id']}/adjustments", json={"delta": "-5"})

    response = await api_client.get(f"{MATERIALS_URL}/{material['id']}/audit")

    audit = response.json()["data"]
    assert audit["consistent"] is True
    assert audit["movements"] == 2


async def test_healthz(api_client):
    response = await api_client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": True, "catalog_sync": True}


async def test_trace_id_header_is_echoed(api_client):
    response = await api_client.get(MATERIALS_URL, params={"shop_domain": SHOP}, headers={"x-request-id": "trace-123"})

    assert response.headers["X-Trace-Id"] == "trace-123"
