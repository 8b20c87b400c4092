"""
HTTP インターフェース: ステータスコードとエラー本文

lifespan は起動しない (ASGITransport)。DB セッションと価格クライアントは
dependency_overrides でテスト用に差し替える。
"""

from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from services.inventory.app import main as inventory_main
from services.order.app import main as order_main
from services.order.app.pricing import InventoryPriceClient
from services.shared.errors import NotFoundError, PricingUnavailableError

pytestmark = pytest.mark.asyncio

P1 = uuid4()
P2 = uuid4()
PRICES = {str(P1): 10.0, str(P2): 2.5}


def _inventory_transport(request: httpx.Request) -> httpx.Response:
    product_id = request.url.path.rsplit("/", 1)[-1]
    if product_id not in PRICES:
        return httpx.Response(404, json={"message": "Product not found"})
    return httpx.Response(200, json={"id": product_id, "price": PRICES[product_id], "stock": 10})


@pytest_asyncio.fixture
async def order_client(order_db):
    price_client = InventoryPriceClient(
        "http://inventory.test", client=httpx.AsyncClient(transport=httpx.MockTransport(_inventory_transport))
    )

    async def get_session():
        async with order_db() as session:
            yield session

    order_main.app.dependency_overrides[order_main.get_session] = get_session
    order_main.app.dependency_overrides[order_main.get_price_client] = lambda: price_client
    transport = httpx.ASGITransport(app=order_main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://order.test") as client:
        yield client
    order_main.app.dependency_overrides.clear()
    await price_client.aclose()


@pytest_asyncio.fixture
async def inventory_client(inventory_db):
    async def get_session():
        async with inventory_db() as session:
            yield session

    inventory_main.app.dependency_overrides[inventory_main.get_session] = get_session
    transport = httpx.ASGITransport(app=inventory_main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://inventory.test") as client:
        yield client
    inventory_main.app.dependency_overrides.clear()


# ── Order Service ────────────────────────────────

async def test_create_order_returns_pending_snapshot(order_client):
    resp = await order_client.post(
        "/orders",
        json={"userId": "user-1", "products": [{"productId": str(P1), "quantity": 2}], "totalPrice": 20.0},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["totalPrice"] == 20.0
    assert body["products"] == [{"productId": str(P1), "quantity": 2, "unitPrice": 10.0}]

    fetched = await order_client.get(f"/orders/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]

    outbox = (await order_client.get("/outbox")).json()
    assert len(outbox) == 1
    assert outbox[0]["status"] == "pending"


async def test_create_order_with_empty_products_is_400(order_client):
    resp = await order_client.post("/orders", json={"userId": "user-1", "products": []})
    assert resp.status_code == 400
    assert "message" in resp.json()
    assert (await order_client.get("/orders")).json() == []


async def test_create_order_with_zero_quantity_is_400(order_client):
    resp = await order_client.post(
        "/orders", json={"userId": "user-1", "products": [{"productId": str(P1), "quantity": 0}]}
    )
    assert resp.status_code == 400


async def test_create_order_with_mismatching_total_is_400(order_client):
    resp = await order_client.post(
        "/orders",
        json={"userId": "user-1", "products": [{"productId": str(P2), "quantity": 2}], "totalPrice": 99.0},
    )
    assert resp.status_code == 400


async def test_create_order_with_missing_fields_is_400(order_client):
    resp = await order_client.post("/orders", json={"products": [{"productId": str(P1), "quantity": 1}]})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid request"


async def test_create_order_for_unknown_product_is_404(order_client):
    resp = await order_client.post(
        "/orders", json={"userId": "user-1", "products": [{"productId": str(uuid4()), "quantity": 1}]}
    )
    assert resp.status_code == 404


async def test_unknown_order_is_404(order_client):
    resp = await order_client.get(f"/orders/{uuid4()}")
    assert resp.status_code == 404
    assert resp.json() == {"message": "Order not found"}


async def test_order_health(order_client):
    resp = await order_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ── Inventory Service ────────────────────────────

async def _create_product(client, stock=5) -> dict:
    resp = await client.post("/products", json={"name": "Mug", "description": "", "price": 8.0, "stock": stock})
    assert resp.status_code == 201
    return resp.json()


async def test_create_and_get_product(inventory_client):
    product = await _create_product(inventory_client)
    resp = await inventory_client.get(f"/products/{product['id']}")
    assert resp.status_code == 200
    assert resp.json()["stock"] == 5
    assert resp.json()["price"] == 8.0


async def test_reduce_stock(inventory_client):
    product = await _create_product(inventory_client, stock=5)
    resp = await inventory_client.put(f"/products/{product['id']}/reduce-stock", json={"quantity": 2})
    assert resp.status_code == 200
    assert resp.json()["stock"] == 3


async def test_reduce_stock_beyond_available_is_400(inventory_client):
    product = await _create_product(inventory_client, stock=1)
    resp = await inventory_client.put(f"/products/{product['id']}/reduce-stock", json={"quantity": 2})
    assert resp.status_code == 400
    assert resp.json() == {"message": "Insufficient stock"}


async def test_reduce_stock_of_unknown_product_is_404(inventory_client):
    resp = await inventory_client.put(f"/products/{uuid4()}/reduce-stock", json={"quantity": 1})
    assert resp.status_code == 404
    assert resp.json() == {"message": "Product not found"}


async def test_reservation_endpoint_is_idempotent(inventory_client):
    product = await _create_product(inventory_client, stock=5)
    payload = {"orderId": str(uuid4()), "productId": product["id"], "quantity": 2}

    first = await inventory_client.post("/reservations", json=payload)
    second = await inventory_client.post("/reservations", json=payload)

    assert first.json()["replayed"] is False
    assert second.json()["replayed"] is True
    assert (await inventory_client.get(f"/products/{product['id']}")).json()["stock"] == 3

    reservations = await inventory_client.get(f"/orders/{payload['orderId']}/reservations")
    assert [r["status"] for r in reservations.json()] == ["reserved"]


# ── 価格クライアント ─────────────────────────────

async def test_price_client_reads_price():
    client = InventoryPriceClient(
        "http://inventory.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(_inventory_transport))
    )
    assert await client.unit_prices([P1, P2]) == {P1: 10.0, P2: 2.5}
    await client.aclose()


async def test_price_client_unknown_product():
    client = InventoryPriceClient(
        "http://inventory.test", client=httpx.AsyncClient(transport=httpx.MockTransport(_inventory_transport))
    )
    with pytest.raises(NotFoundError):
        await client.unit_price(uuid4())
    await client.aclose()


async def test_price_client_unreachable_inventory():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = InventoryPriceClient(
        "http://inventory.test", client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    )
    with pytest.raises(PricingUnavailableError):
        await client.unit_price(P1)
    await client.aclose()
