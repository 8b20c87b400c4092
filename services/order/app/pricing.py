"""
Order Service — 価格スナップショット

注文の合計金額は注文時点の単価で確定し、後から商品価格が変わっても再計算しない。
単価は Inventory Service から取得する (注文作成の前に 1 回だけ)。
"""

import asyncio
from uuid import UUID

import httpx

from services.shared.errors import NotFoundError, PricingUnavailableError


class InventoryPriceClient:
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def unit_price(self, product_id: UUID) -> float:
        try:
            resp = await self.client.get(f"{self.base_url}/products/{product_id}")
        except httpx.HTTPError as exc:
            raise PricingUnavailableError(f"Inventory service unreachable: {exc}") from exc
        if resp.status_code == 404:
            raise NotFoundError(f"Product {product_id} not found")
        if resp.is_error:
            raise PricingUnavailableError(
                f"Inventory service returned {resp.status_code} for product {product_id}"
            )
        return float(resp.json()["price"])

    async def unit_prices(self, product_ids: list[UUID]) -> dict[UUID, float]:
        """複数商品の単価を並列で取得する"""
        prices = await asyncio.gather(*(self.unit_price(pid) for pid in product_ids))
        return dict(zip(product_ids, prices))

    async def aclose(self) -> None:
        await self.client.aclose()
