"""Costco search-page adapter."""

from beacon.ingest.adapters.warehouse import TileLayout, WarehouseClubAdapter

COSTCO_LAYOUT = TileLayout(
    search_path="/CatalogSearch",
    query_param="keyword",
    extra_params=(("dept", "All"), ("pageSize", 24)),
    tile=".product-tile",
    name=".description a",
    price=".price",
    link=".description a",
    image=".product-image img",
    item_number_attr="data-item-number",
    sale_marker=".sale-price",
)


class CostcoAdapter(WarehouseClubAdapter):
    layout = COSTCO_LAYOUT
