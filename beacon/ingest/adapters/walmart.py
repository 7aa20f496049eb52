"""Walmart affiliate (Open API) adapter."""

import logging
from typing import Any, Optional

import httpx

from beacon.ingest.adapters.support import (
    AdapterHttpSupport,
    RequestOptions,
    TcgProductFilter,
    build_cart_url,
)
from beacon.ingest.base import (
    AvailabilityRequest,
    AvailabilityResult,
    HealthStatus,
    RetailerProfile,
    StoreLocation,
)
from beacon.ingest.errors import ErrorType, RetailerError

logger = logging.getLogger(__name__)

TRADING_CARDS_CATEGORY = "4171"

# Walmart availabilityStatus -> normalized status
AVAILABILITY_MAP = {
    "Available": "in_stock",
    "Limited Stock": "low_stock",
    "Pre-order": "pre_order",
}


class WalmartAdapter:
    """Lookup by UPC or item id, plus keyword search in the trading-card category."""

    def __init__(
        self,
        profile: RetailerProfile,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        product_filter: Optional[TcgProductFilter] = None,
        **http_kwargs,
    ):
        if not profile.api_key:
            raise ValueError("Walmart API key is required")
        self.profile = profile
        self.http = AdapterHttpSupport(profile, transport=transport, **http_kwargs)
        self.product_filter = product_filter or TcgProductFilter()

    async def close(self) -> None:
        await self.http.close()

    async def check_availability(self, request: AvailabilityRequest) -> AvailabilityResult:
        logger.info(f"Checking Walmart availability for product: {request.product_id}")
        if request.upc:
            item = await self._item_by_upc(request.upc)
        else:
            item = await self._item_by_id(request.sku or request.product_id)

        if not item:
            raise self.http.error(
                f"Product not found: {request.product_id}", ErrorType.NOT_FOUND, 404
            )

        stores: list[StoreLocation] = []
        if request.zip_code:
            stores = await self._stores_near(request.zip_code, request.radius_miles or 25)
        return self._to_result(item, request.product_id, stores)

    async def search_products(self, query: str) -> list[AvailabilityResult]:
        logger.info(f"Searching Walmart products for: {query}")
        data = await self.http.get_json("/search", RequestOptions(params={
            "query": f"{query} pokemon tcg",
            "format": "json",
            "categoryId": TRADING_CARDS_CATEGORY,
            "numItems": 25,
            "start": 1,
        }))
        results = []
        for item in data.get("items", []):
            extra = " ".join(
                item.get(k) or "" for k in ("categoryPath", "brandName", "shortDescription")
            )
            if self.product_filter.matches(item.get("name", ""), extra):
                results.append(self._to_result(item, str(item.get("itemId"))))
        logger.info(f"Walmart search found {len(results)} Pokemon TCG products")
        return results

    async def get_health_status(self) -> HealthStatus:
        return await self.http.health_status(
            lambda: self.http.get_json("/search", RequestOptions(params={
                "query": "pokemon", "format": "json", "numItems": 1,
            }))
        )

    async def _item_by_upc(self, upc: str) -> Optional[dict[str, Any]]:
        try:
            data = await self.http.get_json("/items", RequestOptions(params={"upc": upc, "format": "json"}))
        except RetailerError as e:
            if e.error_type == ErrorType.NOT_FOUND:
                return None
            raise
        items = data.get("items", [])
        return items[0] if items else None

    async def _item_by_id(self, item_id: str) -> Optional[dict[str, Any]]:
        try:
            data = await self.http.get_json(f"/items/{item_id}", RequestOptions(params={"format": "json"}))
        except RetailerError as e:
            if e.error_type == ErrorType.NOT_FOUND:
                return None
            raise
        return data or None

    async def _stores_near(self, zip_code: str, radius: int) -> list[StoreLocation]:
        try:
            data = await self.http.get_json("/stores", RequestOptions(params={
                "zip": zip_code,
                "radius": radius,
                "format": "json",
            }))
        except RetailerError as e:
            logger.warning(f"Walmart store lookup failed for ZIP {zip_code}: {e}")
            return []

        stores = (data.get("payload") or {}).get("stores", [])
        locations = []
        for store in stores:
            address = store.get("address") or {}
            locations.append(StoreLocation(
                store_id=str(store.get("id")),
                store_name=store.get("displayName", ""),
                address=address.get("address", ""),
                city=address.get("city", ""),
                state=address.get("state", ""),
                zip_code=address.get("postalCode", ""),
                phone=store.get("phone"),
                distance_miles=store.get("distance"),
                # Per-store inventory is not exposed by the locator
                in_stock=True,
            ))
        return locations

    def _to_result(
        self,
        item: dict[str, Any],
        product_id: str,
        stores: Optional[list[StoreLocation]] = None,
    ) -> AvailabilityResult:
        status_text = item.get("availabilityStatus")
        in_stock = status_text == "Available" or item.get("stock") == "Available"
        price = item.get("salePrice")
        msrp = item.get("msrp")
        product_url = item.get("productUrl", "")
        images = item.get("imageEntities") or [{}]
        return AvailabilityResult(
            product_id=product_id,
            retailer_id=self.profile.id,
            in_stock=in_stock,
            availability_status=AVAILABILITY_MAP.get(status_text, "out_of_stock"),
            product_url=product_url,
            price=price,
            original_price=msrp if msrp and msrp != price else None,
            cart_url=build_cart_url(product_url, self.profile.id),
            store_locations=stores or [],
            metadata={
                "item_id": item.get("itemId"),
                "name": item.get("name"),
                "upc": item.get("upc"),
                "brand_name": item.get("brandName"),
                "category_path": item.get("categoryPath"),
                "image": images[0].get("mediumImage"),
            },
        )
