"""
Listing resolution: primary provider first, scrape to fill gaps.

Resolution protocol for (address, source_url):
  1. Empty or partial address + URL -> try to recover a full street address
     from the scrape path. A core-complete scrape listing stands in directly
     when there is no address at all.
  2. Primary provider (RentCast) by address, cached 7 days.
  3. Primary result incomplete -> merge with the scrape listing (scraping
     data must already be cached or FEATURE_SCRAPE_FALLBACK enabled).
  4. No primary result -> scrape listing alone.
  5. Anything still incomplete -> DataQualityError naming the missing fields.

Returns None only when no source knows the property at all.
"""

import logging
from typing import Callable, List, Optional

from errors import DataQualityError
from listing import (
    Listing,
    has_core_fields,
    merge_listings,
    missing_core_fields,
    received_values,
)
from normalize import is_full_address, normalize_address_string
import rentcast
import scrape

logger = logging.getLogger(__name__)

PrimarySource = Callable[[str, Optional[str]], Optional[Listing]]
ScrapeSource = Callable[[str], Optional[Listing]]


class ListingResolver:
    def __init__(
        self,
        primary_sources: Optional[List[PrimarySource]] = None,
        scrape_source: Optional[ScrapeSource] = None,
        address_recovery: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.primary_sources = primary_sources or [rentcast.get_primary_listing]
        self.scrape_source = scrape_source or scrape.get_scraped_listing
        self.address_recovery = address_recovery or scrape.extract_address_from_listing_url

    def resolve(
        self,
        address: str,
        source_url: Optional[str] = None,
        on_step: Optional[Callable[[str], None]] = None,
    ) -> Optional[Listing]:
        def _step(name):
            if on_step:
                on_step(name)

        scraped: Optional[Listing] = None

        # 1. Recover an address from the listing page when the URL gave us little.
        if source_url and not is_full_address(address):
            _step("recover_address")
            recovered = self.address_recovery(source_url)
            if recovered:
                logger.info("Recovered street address from listing page")
                address = normalize_address_string(recovered)
            elif not address:
                scraped = self.scrape_source(source_url)
                if scraped and has_core_fields(scraped):
                    return scraped

        # 2. Primary provider chain.
        primary: Optional[Listing] = None
        if address:
            _step("primary")
            for source in self.primary_sources:
                primary = source(address, source_url)
                if primary is not None:
                    break

        if primary is not None and has_core_fields(primary):
            return primary

        # 3/4. Scrape fills gaps or stands in.
        if source_url and scraped is None:
            _step("scrape")
            scraped = self.scrape_source(source_url)

        if primary is not None and scraped is not None:
            _step("merge")
            candidate = merge_listings(primary, scraped)
        else:
            candidate = primary or scraped

        if candidate is None:
            return None
        if not has_core_fields(candidate):
            missing = missing_core_fields(candidate)
            raise DataQualityError(
                f"Listing is missing core fields: {', '.join(missing)}",
                missing_fields=missing,
                context={"received": received_values(candidate)},
                public_context={
                    "missingFields": missing,
                    "receivedFields": sorted(received_values(candidate)),
                },
            )
        return candidate


def resolve_listing(address: str, source_url: Optional[str] = None,
                    on_step: Optional[Callable[[str], None]] = None) -> Optional[Listing]:
    return ListingResolver().resolve(address, source_url, on_step=on_step)
