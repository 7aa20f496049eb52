"""Search-page scraping shared by the warehouse club adapters (Costco, Sam's Club).

Both clubs expose no product API; availability comes from parsing product
tiles on the search results page. Each club supplies a ``TileLayout`` with its
search endpoint and CSS selectors.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urljoin

import httpx
from selectolax.parser import HTMLParser, Node

from beacon.ingest.adapters.support import (
    AdapterHttpSupport,
    RequestOptions,
    TcgProductFilter,
    build_cart_url,
    determine_availability_status,
    parse_price,
)
from beacon.ingest.base import AvailabilityRequest, AvailabilityResult, HealthStatus, RetailerProfile
from beacon.ingest.errors import ErrorType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TileLayout:
    search_path: str
    query_param: str
    extra_params: tuple[tuple[str, Any], ...]
    tile: str
    name: str
    price: str
    link: str
    image: str
    item_number_attr: str
    sale_marker: str
    member_price: Optional[str] = None


@dataclass
class ScrapedProduct:
    item_number: str
    name: str
    price: float
    url: str
    image_url: Optional[str] = None
    on_sale: bool = False
    member_price: Optional[float] = None


def _attr(node: Optional[Node], name: str) -> Optional[str]:
    if node is None:
        return None
    return node.attributes.get(name)


def parse_tiles(html: str, layout: TileLayout, base_url: str) -> list[ScrapedProduct]:
    """
    Parse search result tiles.

    Tiles without a name, link or positive price are skipped.
    """
    tree = HTMLParser(html)
    products = []
    for tile in tree.css(layout.tile):
        name_node = tile.css_first(layout.name)
        price_node = tile.css_first(layout.price)
        link = _attr(tile.css_first(layout.link), "href")
        name = name_node.text(strip=True) if name_node else ""
        price = parse_price(price_node.text(strip=True) if price_node else None)
        if not name or not link or not price:
            continue

        item_number = tile.attributes.get(layout.item_number_attr) or _attr(
            tile.css_first(f"[{layout.item_number_attr}]"), layout.item_number_attr
        )
        image_node = tile.css_first(layout.image)
        image = _attr(image_node, "src") or _attr(image_node, "data-src")
        member_price = None
        if layout.member_price:
            member_node = tile.css_first(layout.member_price)
            member_price = parse_price(member_node.text(strip=True) if member_node else None)

        products.append(ScrapedProduct(
            item_number=item_number or "",
            name=name,
            price=price,
            url=urljoin(base_url, link),
            image_url=urljoin(base_url, image) if image else None,
            on_sale=tile.css_first(layout.sale_marker) is not None,
            member_price=member_price,
        ))
    return products


class WarehouseClubAdapter:
    """Scraping adapter driven by a club-specific ``TileLayout``."""

    layout: TileLayout

    def __init__(
        self,
        profile: RetailerProfile,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        product_filter: Optional[TcgProductFilter] = None,
        **http_kwargs,
    ):
        self.profile = profile
        self.http = AdapterHttpSupport(profile, transport=transport, **http_kwargs)
        self.product_filter = product_filter or TcgProductFilter()

    async def close(self) -> None:
        await self.http.close()

    async def check_availability(self, request: AvailabilityRequest) -> AvailabilityResult:
        # No product mapping exists for these clubs; the item number is searched
        if not request.sku:
            raise self.http.error(
                f"Product not found: {request.product_id}", ErrorType.NOT_FOUND, 404
            )
        matches = await self._search(request.sku)
        exact = [p for p in matches if p.item_number == request.sku]
        products = exact or matches
        if not products:
            raise self.http.error(
                f"Product not found: {request.product_id}", ErrorType.NOT_FOUND, 404
            )
        return self._to_result(products[0], request.product_id)

    async def search_products(self, query: str) -> list[AvailabilityResult]:
        logger.info(f"Searching {self.profile.name} products for: {query}")
        results = [
            self._to_result(p, p.item_number or p.name)
            for p in await self._search(f"{query} pokemon tcg")
        ]
        logger.info(f"{self.profile.name} search found {len(results)} Pokemon TCG products")
        return results

    async def get_health_status(self) -> HealthStatus:
        return await self.http.health_status(lambda: self.http.get("/"))

    async def _search(self, query: str) -> list[ScrapedProduct]:
        params = {self.layout.query_param: query, **dict(self.layout.extra_params)}
        response = await self.http.get(self.layout.search_path, RequestOptions(params=params))
        products = parse_tiles(response.text, self.layout, self.profile.base_url)
        return [p for p in products if self.product_filter.matches(p.name)]

    def _to_result(self, product: ScrapedProduct, product_id: str) -> AvailabilityResult:
        # A listed tile is taken as available; tiles carry no stock detail
        in_stock = True
        price = product.member_price or product.price
        return AvailabilityResult(
            product_id=product_id,
            retailer_id=self.profile.id,
            in_stock=in_stock,
            availability_status=determine_availability_status(in_stock, "Available"),
            product_url=product.url,
            price=price,
            original_price=product.price if product.member_price else None,
            cart_url=build_cart_url(product.url, self.profile.id),
            metadata={
                "item_number": product.item_number,
                "name": product.name,
                "on_sale": product.on_sale,
                "image": product.image_url,
                "member_price": product.member_price,
            },
        )
