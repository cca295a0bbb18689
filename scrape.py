"""
Scrape fallback for listing pages.

Scraped data arrives two ways: pushed by a browser extension through the
/ingest endpoint (url + html and/or pre-extracted metadata), or fetched
server-side with a lightweight page request when FEATURE_SCRAPE_FALLBACK is
on. Either way the raw ScrapedData is cached under the URL hash for 6 hours
and parsed into a Listing on read.

Reading the cache never requires the feature flag; fetching fresh pages does.
"""

import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

import cache
from decode_trace import get_trace
from decoder_config import outbound_timeout, scrape_fallback_enabled
from errors import ConfigurationError, ValidationError
from hashing import url_hash
from listing import Listing, ListingFields, ListingSource, PROVIDER_SCRAPE
from normalize import is_full_address, parse_address

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

CAPTCHA_MARKERS = ("px-captcha", "Before we continue", "Press & Hold")

_PRICE_RE = re.compile(r"\$?\s*(\d[\d,]*(?:\.\d+)?)")
_BEDS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:bd|bds|beds?|bedrooms?)\b", re.IGNORECASE)
_BATHS_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:ba|baths?|bathrooms?)\b", re.IGNORECASE)
_SQFT_RE = re.compile(r"([\d,]+)\s*(?:sq\.?\s*ft|sqft|square\s+feet)", re.IGNORECASE)
_MONEY_RE = re.compile(r"\$\s*[\d,]{3,}(?:\s*/\s*(?:mo|month))?", re.IGNORECASE)


class ScrapeBlockedError(Exception):
    """The listing site served a CAPTCHA / bot wall instead of the page."""


@dataclass
class ScrapedData:
    url: str
    html: Optional[str] = None
    dom: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScrapedData":
        return cls(
            url=data.get("url") or "",
            html=data.get("html"),
            dom=data.get("dom") if isinstance(data.get("dom"), dict) else None,
            metadata=dict(data.get("metadata") or {}),
        )


# =============================================================================
# Parsing
# =============================================================================

def parse_price(text: Any) -> Tuple[Optional[float], Optional[str]]:
    """Price and price type ("rent" / "buy" / None) from free text like "$2,400/mo"."""
    if text is None:
        return None, None
    raw = str(text)
    match = _PRICE_RE.search(raw)
    if not match:
        return None, None
    try:
        price = float(match.group(1).replace(",", ""))
    except ValueError:
        return None, None
    lower = raw.lower()
    if any(marker in lower for marker in ("rent", "/month", "/mo", "per month")):
        price_type = "rent"
    elif any(marker in lower for marker in ("buy", "sale")):
        price_type = "buy"
    else:
        price_type = None
    return price, price_type


def _first_number(pattern: re.Pattern, text: Any) -> Optional[float]:
    if text is None:
        return None
    match = pattern.search(str(text))
    if not match:
        plain = re.search(r"(\d[\d,]*(?:\.\d+)?)", str(text))
        return float(plain.group(1).replace(",", "")) if plain else None
    return float(match.group(1).replace(",", ""))


def _jsonld_objects(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(tag.string or tag.get_text() or "")
        except (json.JSONDecodeError, TypeError):
            continue
        stack = [data]
        while stack:
            item = stack.pop()
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                out.append(item)
                if isinstance(item.get("@graph"), list):
                    stack.extend(item["@graph"])
    return out


def _jsonld_address(obj: Dict[str, Any]) -> Optional[str]:
    addr = obj.get("address")
    if not isinstance(addr, dict) or not addr.get("streetAddress"):
        return None
    parts = [addr.get("streetAddress"), addr.get("addressLocality")]
    region = addr.get("addressRegion") or ""
    postal = addr.get("postalCode") or ""
    tail = f"{region} {postal}".strip()
    return ", ".join(p for p in parts + [tail] if p)


def _meta(soup: BeautifulSoup, name: str) -> Optional[str]:
    tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
    content = tag.get("content") if tag else None
    return content.strip() if content else None


def extract_address_from_html(soup: BeautifulSoup) -> Optional[str]:
    """Address from JSON-LD, data-testid, itemprop microdata, then og: meta tags."""
    for obj in _jsonld_objects(soup):
        address = _jsonld_address(obj)
        if address:
            return address

    tag = soup.find(attrs={"data-testid": "property-address"})
    if tag and tag.get_text(strip=True):
        return re.sub(r"\s+", " ", tag.get_text(" ", strip=True))

    def _itemprop(name):
        t = soup.find(attrs={"itemprop": name})
        return t.get_text(strip=True) if t else ""

    street = _itemprop("streetAddress")
    if street:
        tail = f"{_itemprop('addressRegion')} {_itemprop('postalCode')}".strip()
        return ", ".join(p for p in (street, _itemprop("addressLocality"), tail) if p)

    street = _meta(soup, "og:street-address")
    if street:
        tail = f"{_meta(soup, 'og:region') or ''} {_meta(soup, 'og:postal-code') or ''}".strip()
        return ", ".join(p for p in (street, _meta(soup, "og:locality"), tail) if p)
    return None


def extract_metadata_from_html(html: str) -> Dict[str, Any]:
    """Pull listing metadata out of a page with BeautifulSoup."""
    soup = BeautifulSoup(html, "html.parser")
    meta: Dict[str, Any] = {}

    title = _meta(soup, "og:title") or (soup.title.get_text(strip=True) if soup.title else None)
    if title:
        meta["title"] = title
    description = _meta(soup, "og:description") or _meta(soup, "description")
    if description:
        meta["description"] = description

    address = extract_address_from_html(soup)
    if address:
        meta["address"] = address

    for obj in _jsonld_objects(soup):
        offers = obj.get("offers")
        if isinstance(offers, dict) and offers.get("price") and "price" not in meta:
            meta["price"] = f"${offers['price']}"
        if obj.get("numberOfBedrooms") and "beds" not in meta:
            meta["beds"] = str(obj["numberOfBedrooms"])
        baths = obj.get("numberOfBathroomsTotal") or obj.get("numberOfFullBathrooms")
        if baths and "baths" not in meta:
            meta["baths"] = str(baths)
        floor = obj.get("floorSize")
        if isinstance(floor, dict) and floor.get("value") and "sqft" not in meta:
            meta["sqft"] = str(floor["value"])

    price_tag = soup.find(attrs={"data-testid": "price"})
    text = soup.get_text(" ", strip=True)
    if "price" not in meta:
        if price_tag:
            meta["price"] = price_tag.get_text(" ", strip=True)
        else:
            money = _MONEY_RE.search(text)
            if money:
                meta["price"] = money.group(0)
    for name, pattern in (("beds", _BEDS_RE), ("baths", _BATHS_RE), ("sqft", _SQFT_RE)):
        if name not in meta:
            match = pattern.search(text)
            if match:
                meta[name] = match.group(0)

    features = [
        li.get_text(" ", strip=True)
        for li in soup.select("[data-testid='amenities'] li, .amenities li, .features li")
    ]
    if features:
        meta["features"] = [f for f in features if f][:30]
    return meta


def parse_scraped_data(scraped: ScrapedData) -> Listing:
    """Build a scrape-provider Listing from ScrapedData metadata (and HTML when present)."""
    meta = dict(scraped.metadata or {})
    if scraped.html:
        try:
            for key, value in extract_metadata_from_html(scraped.html).items():
                meta.setdefault(key, value)
        except Exception:
            logger.warning("Failed to parse scraped HTML for %s", scraped.url, exc_info=True)

    address = str(meta.get("address") or "").strip()
    price, price_type = parse_price(meta.get("price"))
    parts = parse_address(address) if address else None
    features = meta.get("features")

    return Listing(
        source=ListingSource(provider=PROVIDER_SCRAPE, url=scraped.url),
        fields=ListingFields(
            address=address,
            city=parts["city"] if parts else "",
            state=parts["state"] if parts else "",
            zip=parts["zip"] if parts else None,
            price=price,
            price_type=price_type,
            beds=_first_number(_BEDS_RE, meta.get("beds")),
            baths=_first_number(_BATHS_RE, meta.get("baths")),
            sqft=_first_number(_SQFT_RE, meta.get("sqft")),
            features=[str(f) for f in features if f] if isinstance(features, list) else [],
            description_raw=str(meta["description"]) if meta.get("description") else None,
        ),
    )


# =============================================================================
# Fetching + caching
# =============================================================================

def _scrape_key(url: str) -> str:
    return cache.cache_key(cache.PREFIXES.scrape, url_hash(url))


def fetch_listing_page(url: str) -> Optional[str]:
    """Lightweight server-side GET of a listing page. Returns HTML or None.

    Raises ScrapeBlockedError when the site answers with a bot challenge.
    """
    trace = get_trace()
    start = time.monotonic()
    session = requests.Session()
    session.trust_env = False
    try:
        resp = session.get(url, headers=BROWSER_HEADERS, timeout=outbound_timeout())
    except requests.exceptions.RequestException as e:
        if trace:
            trace.record_api_call(
                service="scrape",
                endpoint="listing_page",
                elapsed_ms=int((time.monotonic() - start) * 1000),
                status_code=0,
                provider_status="exception",
            )
        logger.warning("Listing page fetch failed for %s: %s", url, e)
        return None
    if trace:
        trace.record_api_call(
            service="scrape",
            endpoint="listing_page",
            elapsed_ms=int((time.monotonic() - start) * 1000),
            status_code=resp.status_code,
        )
    if resp.status_code >= 400:
        logger.warning("Listing page fetch for %s returned HTTP %d", url, resp.status_code)
        return None
    html = resp.text or ""
    if any(marker in html for marker in CAPTCHA_MARKERS):
        raise ScrapeBlockedError(f"CAPTCHA served for {url}")
    return html


def store_scraped_data(scraped: ScrapedData) -> Listing:
    """Cache raw ScrapedData under its URL hash and return the parsed Listing."""
    cache.set(_scrape_key(scraped.url), asdict(scraped), cache.TTL.scrape)
    return parse_scraped_data(scraped)


def get_cached_scrape(url: str) -> Optional[ScrapedData]:
    cached = cache.get(_scrape_key(url))
    if not isinstance(cached, dict):
        return None
    return ScrapedData.from_dict(cached)


def get_scraped_listing(url: str, scraped: Optional[ScrapedData] = None) -> Optional[Listing]:
    """Scrape listing for url.

    Provided data is cached and parsed regardless of the feature flag; a cache
    hit is always served; a fresh page fetch happens only when scraping is
    enabled. Returns None when nothing is available.
    """
    if not url:
        return None
    if scraped is not None:
        return store_scraped_data(scraped)

    cached = get_cached_scrape(url)
    if cached is not None:
        return parse_scraped_data(cached)

    if not scrape_fallback_enabled():
        return None
    try:
        html = fetch_listing_page(url)
    except ScrapeBlockedError:
        logger.warning("Scrape blocked by bot wall for %s", url)
        return None
    if not html:
        return None
    # Only the extracted metadata is cached; full pages are large.
    data = ScrapedData(url=url, metadata=extract_metadata_from_html(html))
    return store_scraped_data(data)


def extract_address_from_listing_url(url: str) -> Optional[str]:
    """Recover a full street address for a listing URL via the scrape path."""
    listing = get_scraped_listing(url)
    if listing and listing.fields.address and is_full_address(listing.fields.address):
        return listing.fields.address
    return None


def ingest_scraped_data(payload: Dict[str, Any]) -> Tuple[Listing, bool]:
    """Entry point for pushed scrape data. Returns (listing, was_already_cached)."""
    if not scrape_fallback_enabled():
        raise ConfigurationError(
            "Scrape ingestion requested while FEATURE_SCRAPE_FALLBACK is off",
            user_message="Scrape ingestion is not enabled on this server.",
        )
    url = (payload.get("url") or "").strip()
    if not url or not re.match(r"^https?://", url):
        raise ValidationError("A valid listing url is required", field="url")
    already_cached = get_cached_scrape(url) is not None
    scraped = ScrapedData.from_dict({**payload, "url": url})
    if scraped.html:
        # Store extracted metadata, not the raw page.
        merged = extract_metadata_from_html(scraped.html)
        merged.update(scraped.metadata)
        scraped = ScrapedData(url=url, dom=scraped.dom, metadata=merged)
    return store_scraped_data(scraped), already_cached
