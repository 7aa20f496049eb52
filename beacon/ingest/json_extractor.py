"""Extract structured product data (JSON-LD, embedded state) from HTML pages."""

import json
import logging
from typing import Any, Dict, List

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)

# Fields that make a Product object worth trusting as a real listing
PRODUCT_ID_FIELDS = ("sku", "gtin12", "gtin13")
OFFER_PRICE_FIELDS = ("price", "lowPrice", "highPrice")


def _parse_tree(html_or_tree) -> HTMLParser:
    if isinstance(html_or_tree, HTMLParser):
        return html_or_tree
    return HTMLParser(html_or_tree or "")


def extract_json_ld(html_or_tree) -> List[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of parsed JSON-LD documents found in the page; blocks that
    fail to parse are skipped.
    """
    results = []
    tree = _parse_tree(html_or_tree)
    for script in tree.css('script[type="application/ld+json"]'):
        text = (script.text() or "").strip()
        if not text:
            continue
        try:
            results.append(json.loads(text))
        except json.JSONDecodeError as e:
            logger.debug(f"Skipping malformed JSON-LD block: {e}")
    return results


def iter_json_ld_objects(documents: List[Any]) -> List[Dict[str, Any]]:
    """Flatten top-level arrays and ``@graph`` containers into plain objects."""
    objects: List[Dict[str, Any]] = []
    stack = list(documents)
    while stack:
        item = stack.pop(0)
        if isinstance(item, list):
            stack.extend(item)
        elif isinstance(item, dict):
            objects.append(item)
            graph = item.get("@graph")
            if isinstance(graph, list):
                stack.extend(graph)
    return objects


def _type_names(obj: Dict[str, Any]) -> str:
    raw = obj.get("@type") or obj.get("type") or ""
    if isinstance(raw, list):
        raw = " ".join(str(t) for t in raw)
    return str(raw).lower()


def find_product_objects(documents: List[Any]) -> List[Dict[str, Any]]:
    """Return every JSON-LD object typed as a Product."""
    return [obj for obj in iter_json_ld_objects(documents) if "product" in _type_names(obj)]


def _offers(obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    offers = obj.get("offers") or obj.get("offer") or {}
    if isinstance(offers, dict):
        return [offers]
    if isinstance(offers, list):
        return [o for o in offers if isinstance(o, dict)]
    return []


def has_price_or_identifier(product: Dict[str, Any]) -> bool:
    """True when a Product carries an offer price, a price, a SKU or a GTIN."""
    for offer in _offers(product):
        if any(offer.get(f) not in (None, "") for f in OFFER_PRICE_FIELDS):
            return True
    if product.get("price") not in (None, ""):
        return True
    return any(product.get(f) not in (None, "") for f in PRODUCT_ID_FIELDS)
