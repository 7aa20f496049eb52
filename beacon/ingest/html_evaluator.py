"""Evidence extraction for "is this a live, purchasable product page".

``evaluate_html`` is a pure function of (url, body): it parses its own copy of
the document and touches no shared state, so the same input always yields the
same ``Evidence``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional, Pattern, Tuple
from urllib.parse import urlparse

from selectolax.parser import HTMLParser

from beacon.ingest.json_extractor import (
    extract_json_ld,
    find_product_objects,
    has_price_or_identifier,
)

CTA_RE = re.compile(r"(add to cart|buy now|ship it|pickup|add to basket)", re.IGNORECASE)
IN_STOCK_RE = re.compile(r"(in stock|available|ready to ship)", re.IGNORECASE)
OUT_OF_STOCK_RE = re.compile(r"(out of stock|sold out|unavailable)", re.IGNORECASE)
PRICE_RE = re.compile(r"\$\s*\d{1,3}(?:,\d{3})*(?:\.\d{2})?")

# Product-page URL shapes per retailer host. Hosts match exactly or as a parent
# domain (www.target.com -> target.com).
PRODUCT_PAGE_SHAPES: Dict[str, Tuple[Pattern[str], ...]] = {
    "target.com": (re.compile(r"/p/"),),
    "bestbuy.com": (re.compile(r"/site/"), re.compile(r"\.p$")),
    "walmart.com": (re.compile(r"/ip/"),),
    "costco.com": (re.compile(r"product\.", re.IGNORECASE),),
    "samsclub.com": (re.compile(r"/p/"),),
}

# Evidence bits required for "live", per retailer slug
DEFAULT_LIVE_RULE = ("product_page", "cta", "price")
LIVE_RULES: Dict[str, Tuple[str, ...]] = {
    # Target renders add-to-cart client side; structured data stands in for it
    "target": ("product_page", "jsonld", "price"),
    "best-buy": DEFAULT_LIVE_RULE,
    "walmart": DEFAULT_LIVE_RULE,
    "costco": DEFAULT_LIVE_RULE,
    "sams-club": DEFAULT_LIVE_RULE,
}


@dataclass(frozen=True)
class Evidence:
    """Signals extracted from one fetched page."""

    product_page: bool
    cta: bool
    price: bool
    jsonld: bool
    product_signals: Tuple[str, ...] = ()

    def bits(self) -> str:
        return (
            f"pg={int(self.product_page)},cta={int(self.cta)},"
            f"price={int(self.price)},jsonld={int(self.jsonld)}"
        )


def _shape_for_host(host: str) -> Optional[Tuple[Pattern[str], ...]]:
    host = host.lower()
    for domain, patterns in PRODUCT_PAGE_SHAPES.items():
        if host == domain or host.endswith("." + domain):
            return patterns
    return None


def is_likely_product_page(url: str, has_jsonld_product: bool) -> bool:
    """
    Decide whether a URL looks like a product detail page.

    Known retailer hosts are judged purely by path shape; anything else falls
    back to the presence of a JSON-LD Product block.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    patterns = _shape_for_host(parsed.hostname or "")
    if patterns is not None:
        return all(p.search(parsed.path) for p in patterns)
    return has_jsonld_product


def _visible_text(tree: HTMLParser) -> str:
    tree.strip_tags(["script", "style", "noscript", "template"])
    node = tree.body or tree.root
    if node is None:
        return ""
    return node.text(separator=" ").lower()


def evaluate_html(url: str, html: str) -> Evidence:
    """
    Extract product-page evidence from a fetched body.

    Args:
        url: Candidate URL the body was fetched from
        html: Response body (HTML, or a JSON payload rendered as text)

    Returns:
        Evidence with product_page, cta, price and jsonld flags
    """
    tree = HTMLParser(html or "")
    products = find_product_objects(extract_json_ld(tree))
    jsonld = any(has_price_or_identifier(p) for p in products)

    text = _visible_text(tree)
    cta_text = bool(CTA_RE.search(text))
    in_stock_text = bool(IN_STOCK_RE.search(text)) and not OUT_OF_STOCK_RE.search(text)
    price = bool(PRICE_RE.search(text))

    signals = []
    if cta_text:
        signals.append("cta")
    if in_stock_text:
        signals.append("in_stock_text")
    if price:
        signals.append("price_seen")
    if jsonld:
        signals.append("jsonld_product")

    return Evidence(
        product_page=is_likely_product_page(url, bool(products)),
        cta=cta_text or in_stock_text,
        price=price,
        jsonld=jsonld,
        product_signals=tuple(signals),
    )


def live_rule_for(slug: Optional[str]) -> Tuple[str, ...]:
    if not slug:
        return DEFAULT_LIVE_RULE
    return LIVE_RULES.get(slug, DEFAULT_LIVE_RULE)


def is_live_allowed(slug: Optional[str], evidence: Evidence) -> bool:
    """Apply the retailer's live rule to the evidence."""
    return all(getattr(evidence, bit) for bit in live_rule_for(slug))


def build_reason(prefix: str, evidence: Evidence) -> str:
    """``live:pg=1,cta=1,price=1,jsonld=0`` style audit string."""
    return f"{prefix}:{evidence.bits()}"
