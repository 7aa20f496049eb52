"""Sam's Club search-page adapter."""

from beacon.ingest.adapters.warehouse import TileLayout, WarehouseClubAdapter

SAMS_CLUB_LAYOUT = TileLayout(
    search_path="/search",
    query_param="searchTerm",
    extra_params=(("offset", 0), ("limit", 24)),
    tile=".ProductTile, .sc-product-card",
    name=".sc-product-card-title, .ProductTile-title",
    price=".Price, .sc-price",
    link="a",
    image="img",
    item_number_attr="data-automation-id",
    sale_marker=".sc-price-was, .Price-was",
    member_price=".sc-member-price, .Price-member",
)


class SamsClubAdapter(WarehouseClubAdapter):
    """Member price, when shown, is reported as the price."""

    layout = SAMS_CLUB_LAYOUT
