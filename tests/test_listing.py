"""Tests for listing.py — core-field checks and primary/scrape merging."""

from listing import (
    Listing,
    ListingFields,
    ListingSource,
    has_core_fields,
    merge_listings,
    missing_core_fields,
    received_values,
)


def _listing(provider="primary", url=None, **kwargs):
    return Listing(source=ListingSource(provider=provider, url=url), fields=ListingFields(**kwargs))


class TestCoreFields:
    def test_complete(self):
        listing = _listing(address="1 A St", city="Austin", state="TX", price=1800.0)
        assert has_core_fields(listing)
        assert missing_core_fields(listing) == []

    def test_one_detail_is_enough(self):
        assert has_core_fields(_listing(address="1 A St", city="Austin", state="TX", beds=2.0))

    def test_missing_location_and_details(self):
        listing = _listing(address="1 A St", city=" ")
        assert missing_core_fields(listing) == ["city", "state", "price|beds|baths"]

    def test_none_listing(self):
        assert missing_core_fields(None) == ["address", "city", "state", "price|beds|baths"]

    def test_received_values(self):
        listing = _listing(address="1 A St", city="Austin", beds=2.0)
        assert received_values(listing) == {"address": "1 A St", "city": "Austin", "beds": 2.0}


class TestMerge:
    def test_primary_wins_and_scrape_fills_gaps(self):
        primary = _listing(address="1 A St", city="Austin", state="TX", beds=2.0, price=None)
        scraped = _listing(
            provider="scrape", url="https://x/1",
            address="1 A Street", city="", state="TX", beds=3.0, price=1900.0, price_type="rent",
        )
        merged = merge_listings(primary, scraped)
        assert merged.source.provider == "merged"
        assert merged.source.url == "https://x/1"
        assert merged.fields.address == "1 A St"
        assert merged.fields.beds == 2.0
        assert merged.fields.price == 1900.0
        assert merged.fields.price_type == "rent"

    def test_blank_primary_string_is_filled(self):
        primary = _listing(address="1 A St", city="")
        scraped = _listing(provider="scrape", city="Austin")
        assert merge_listings(primary, scraped).fields.city == "Austin"

    def test_features_deduplicated_case_insensitively(self):
        primary = _listing(features=["Pool", "Garage"])
        scraped = _listing(provider="scrape", features=["pool", " Dishwasher "])
        assert merge_listings(primary, scraped).fields.features == ["Pool", "Garage", "Dishwasher"]


class TestSerialization:
    def test_round_trip(self):
        listing = _listing(url="https://x", address="1 A St", city="Austin", state="TX",
                           beds=2.0, features=["Pool"])
        data = listing.to_dict()
        assert set(data) == {"source", "listing"}
        restored = Listing.from_dict(data)
        assert restored.fields == listing.fields
        assert restored.source.provider == "primary"

    def test_from_dict_ignores_unknown_keys(self):
        restored = Listing.from_dict({
            "source": {"provider": "scrape", "extra": 1},
            "listing": {"address": "1 A St", "bogus": True},
        })
        assert restored.fields.address == "1 A St"
        assert restored.fields.features == []
