"""Best Buy Products API adapter."""

import logging
from typing import Any, Optional

import httpx

from beacon.ingest.adapters.support import AdapterHttpSupport, RequestOptions, TcgProductFilter
from beacon.ingest.base import (
    AvailabilityRequest,
    AvailabilityResult,
    HealthStatus,
    RetailerProfile,
    StoreLocation,
)
from beacon.ingest.errors import ErrorType, RetailerError

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = (
    "sku,name,regularPrice,salePrice,onSale,url,addToCartUrl,"
    "inStoreAvailability,onlineAvailability,image,categoryPath"
)
STORE_FIELDS = "storeId,storeName,address,city,region,postalCode,phone,distance,lowStock,inStoreAvailability"


class BestBuyAdapter:
    """Availability and search through api.bestbuy.com (API key as query param)."""

    def __init__(
        self,
        profile: RetailerProfile,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        product_filter: Optional[TcgProductFilter] = None,
        **http_kwargs,
    ):
        if not profile.api_key:
            raise ValueError("Best Buy API key is required")
        self.profile = profile
        self.http = AdapterHttpSupport(profile, transport=transport, **http_kwargs)
        self.product_filter = product_filter or TcgProductFilter()

    async def close(self) -> None:
        await self.http.close()

    async def check_availability(self, request: AvailabilityRequest) -> AvailabilityResult:
        logger.info(f"Checking Best Buy availability for product: {request.product_id}")

        if request.sku:
            product = await self._product_by_sku(request.sku)
        elif request.upc:
            product = await self._product_by_upc(request.upc)
        elif request.product_id.isdigit():
            # Internal ids that are all digits are Best Buy SKUs
            product = await self._product_by_sku(request.product_id)
        else:
            product = None

        if not product:
            raise self.http.error(
                f"Product not found: {request.product_id}", ErrorType.NOT_FOUND, 404
            )

        stores: list[StoreLocation] = []
        if request.zip_code:
            stores = await self._store_availability(
                str(product["sku"]), request.zip_code, request.radius_miles or 25
            )
        return self._to_result(product, request.product_id, stores)

    async def search_products(self, query: str) -> list[AvailabilityResult]:
        logger.info(f"Searching Best Buy products for: {query}")
        data = await self.http.get_json("/products", RequestOptions(params={
            "q": query,
            "format": "json",
            "show": PRODUCT_FIELDS,
            "pageSize": 20,
        }))
        results = []
        for product in data.get("products", []):
            categories = " ".join(c.get("name", "") for c in product.get("categoryPath") or [])
            if self.product_filter.matches(product.get("name", ""), categories):
                results.append(self._to_result(product, str(product["sku"])))
        logger.info(f"Best Buy search found {len(results)} Pokemon TCG products")
        return results

    async def get_health_status(self) -> HealthStatus:
        return await self.http.health_status(
            lambda: self.http.get_json("/products", RequestOptions(params={"format": "json", "pageSize": 1}))
        )

    async def _product_by_sku(self, sku: str) -> Optional[dict[str, Any]]:
        try:
            data = await self.http.get_json(
                f"/products/{sku}.json", RequestOptions(params={"show": PRODUCT_FIELDS})
            )
        except RetailerError as e:
            if e.error_type == ErrorType.NOT_FOUND:
                return None
            raise
        return data or None

    async def _product_by_upc(self, upc: str) -> Optional[dict[str, Any]]:
        data = await self.http.get_json(f"/products(upc={upc})", RequestOptions(params={
            "format": "json",
            "show": PRODUCT_FIELDS,
            "pageSize": 1,
        }))
        products = data.get("products", [])
        return products[0] if products else None

    async def _store_availability(self, sku: str, zip_code: str, radius: int) -> list[StoreLocation]:
        try:
            data = await self.http.get_json(f"/products/{sku}/stores.json", RequestOptions(params={
                "postalCode": zip_code,
                "area": f"{zip_code},{radius}",
                "show": STORE_FIELDS,
            }))
        except RetailerError as e:
            # Store lookup is best effort; the online answer still stands
            logger.warning(f"Best Buy store availability failed for SKU {sku}: {e}")
            return []

        return [
            StoreLocation(
                store_id=str(store.get("storeId")),
                store_name=store.get("storeName", ""),
                address=store.get("address", ""),
                city=store.get("city", ""),
                state=store.get("region", ""),
                zip_code=store.get("postalCode", ""),
                phone=store.get("phone"),
                distance_miles=store.get("distance"),
                in_stock=bool(store.get("inStoreAvailability")),
                stock_level=1 if store.get("lowStock") else None,
            )
            for store in data.get("stores", [])
        ]

    def _to_result(
        self,
        product: dict[str, Any],
        product_id: str,
        stores: Optional[list[StoreLocation]] = None,
    ) -> AvailabilityResult:
        in_stock = bool(product.get("onlineAvailability") or product.get("inStoreAvailability"))
        regular = product.get("regularPrice")
        price = product.get("salePrice") or regular
        return AvailabilityResult(
            product_id=product_id,
            retailer_id=self.profile.id,
            in_stock=in_stock,
            availability_status="in_stock" if in_stock else "out_of_stock",
            product_url=product.get("url", ""),
            price=price,
            original_price=regular if regular is not None and regular != price else None,
            cart_url=product.get("addToCartUrl"),
            store_locations=stores or [],
            metadata={
                "sku": product.get("sku"),
                "name": product.get("name"),
                "on_sale": product.get("onSale"),
                "image": product.get("image"),
                "category_path": product.get("categoryPath"),
            },
        )
