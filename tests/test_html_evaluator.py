"""Tests for product-page evidence extraction and block detection."""

from beacon.ingest.block_detection import detect_block
from beacon.ingest.html_evaluator import (
    build_reason,
    evaluate_html,
    is_likely_product_page,
    is_live_allowed,
)

BESTBUY_LIVE = """
<html><body>
  <h1>Pokemon TCG Elite Trainer Box</h1>
  <div class="price">$49.99</div>
  <button>Add to Cart</button>
</body></html>
"""

TARGET_JSONLD = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "BreadcrumbList"},
  {"@type": "Product", "name": "Booster Bundle", "sku": "12345",
   "offers": {"@type": "Offer", "price": "26.99"}}
]}
</script>
</head><body><div id="root">Booster Bundle $26.99</div></body></html>
"""


def test_live_bestbuy_page():
    url = "https://www.bestbuy.com/site/pokemon-etb/6543210.p"
    evidence = evaluate_html(url, BESTBUY_LIVE)
    assert evidence.product_page
    assert evidence.cta
    assert evidence.price
    assert not evidence.jsonld
    assert is_live_allowed("best-buy", evidence)
    assert build_reason("live", evidence) == "live:pg=1,cta=1,price=1,jsonld=0"


def test_evaluation_is_deterministic():
    url = "https://www.bestbuy.com/site/pokemon-etb/6543210.p"
    assert evaluate_html(url, BESTBUY_LIVE) == evaluate_html(url, BESTBUY_LIVE)


def test_target_structured_data_substitutes_for_cta():
    url = "https://www.target.com/p/booster-bundle/-/A-12345"
    evidence = evaluate_html(url, TARGET_JSONLD)
    assert evidence.product_page
    assert evidence.jsonld
    assert evidence.price
    assert not evidence.cta
    assert is_live_allowed("target", evidence)
    # Other retailers still insist on a call to action
    assert not is_live_allowed("walmart", evidence)


def test_script_text_is_not_visible_text():
    html = """
    <html><body>
      <script>var label = "Add to Cart $19.99";</script>
      <p>Coming soon</p>
    </body></html>
    """
    evidence = evaluate_html("https://www.walmart.com/ip/123", html)
    assert not evidence.cta
    assert not evidence.price


def test_out_of_stock_text_is_not_cta():
    html = "<html><body><p>Available soon. Currently out of stock.</p><p>$10.00</p></body></html>"
    evidence = evaluate_html("https://www.walmart.com/ip/123", html)
    assert not evidence.cta


def test_product_page_shapes():
    assert is_likely_product_page("https://www.walmart.com/ip/123", False)
    assert not is_likely_product_page("https://www.walmart.com/search?q=pokemon", True)
    assert not is_likely_product_page("https://www.bestbuy.com/site/searchpage.jsp", False)
    assert is_likely_product_page("https://www.costco.com/pokemon-bundle.product.100.html", False)
    # Unknown hosts fall back to structured data
    assert is_likely_product_page("https://shop.example.com/anything", True)
    assert not is_likely_product_page("https://shop.example.com/anything", False)


def test_malformed_jsonld_is_ignored():
    html = '<script type="application/ld+json">{not json</script><body>$5.00</body>'
    evidence = evaluate_html("https://shop.example.com/x", html)
    assert not evidence.jsonld
    assert not evidence.product_page


def test_detect_block():
    assert detect_block(200, "<title>Please complete the CAPTCHA</title>").block_type == "captcha"
    assert detect_block(200, "Incapsula incident ID").block_type == "incapsula"
    assert detect_block(403, "nothing here").block_type == "http_403"
    assert detect_block(200, "Are you a bot?").blocked
    # "bot" must be a whole word
    assert not detect_block(200, "Bottle of water, $5").blocked
    assert not detect_block(200, "<h1>Elite Trainer Box</h1>").blocked
