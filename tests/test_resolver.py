"""Tests for resolver.py — primary-first listing resolution with scrape fallback."""

from unittest.mock import MagicMock

import pytest

from errors import DataQualityError
from listing import Listing, ListingFields, ListingSource
from resolver import ListingResolver

URL = "https://www.zillow.com/homedetails/12345_zpid/"


def _listing(provider="primary", **kwargs):
    return Listing(source=ListingSource(provider=provider), fields=ListingFields(**kwargs))


COMPLETE = dict(address="1 A St", city="Austin", state="TX", price=1800.0)


def _resolver(primary=None, scraped=None, recovered=None):
    primary_source = MagicMock(return_value=primary)
    scrape_source = MagicMock(return_value=scraped)
    recovery = MagicMock(return_value=recovered)
    resolver = ListingResolver(
        primary_sources=[primary_source],
        scrape_source=scrape_source,
        address_recovery=recovery,
    )
    return resolver, primary_source, scrape_source, recovery


class TestResolve:
    def test_complete_primary_short_circuits(self):
        resolver, primary, scrape_source, _ = _resolver(primary=_listing(**COMPLETE))
        result = resolver.resolve("1 a street, austin, tx", URL)
        assert result.source.provider == "primary"
        primary.assert_called_once_with("1 a street, austin, tx", URL)
        scrape_source.assert_not_called()

    def test_incomplete_primary_merged_with_scrape(self):
        resolver, _, scrape_source, _ = _resolver(
            primary=_listing(address="1 A St", city="Austin", state="TX"),
            scraped=_listing(provider="scrape", beds=2.0),
        )
        result = resolver.resolve("1 a street, austin, tx", URL)
        assert result.source.provider == "merged"
        assert result.fields.beds == 2.0
        scrape_source.assert_called_once_with(URL)

    def test_scrape_stands_in_when_primary_has_nothing(self):
        resolver, _, _, _ = _resolver(primary=None, scraped=_listing(provider="scrape", **COMPLETE))
        assert resolver.resolve("1 a street, austin, tx", URL).source.provider == "scrape"

    def test_nothing_found(self):
        resolver, _, _, _ = _resolver()
        assert resolver.resolve("1 a street, austin, tx", URL) is None

    def test_no_url_no_scrape(self):
        resolver, _, scrape_source, _ = _resolver()
        assert resolver.resolve("1 a street, austin, tx") is None
        scrape_source.assert_not_called()

    def test_incomplete_raises_data_quality(self):
        resolver, _, _, _ = _resolver(primary=_listing(address="1 A St", city="Austin", state="TX"))
        with pytest.raises(DataQualityError) as exc_info:
            resolver.resolve("1 a street, austin, tx")
        assert exc_info.value.missing_fields == ["price|beds|baths"]
        assert exc_info.value.to_dict()["context"]["receivedFields"] == ["address", "city", "state"]


class TestAddressRecovery:
    def test_partial_address_recovered(self):
        resolver, primary, _, recovery = _resolver(
            primary=_listing(**COMPLETE), recovered="1 A St, Austin, TX",
        )
        resolver.resolve("austin, tx", URL)
        recovery.assert_called_once_with(URL)
        primary.assert_called_once_with("1 a street, austin, tx", URL)

    def test_full_address_skips_recovery(self):
        resolver, _, _, recovery = _resolver(primary=_listing(**COMPLETE))
        resolver.resolve("1 a street, austin, tx", URL)
        recovery.assert_not_called()

    def test_empty_address_uses_complete_scrape(self):
        resolver, primary, _, _ = _resolver(scraped=_listing(provider="scrape", **COMPLETE))
        result = resolver.resolve("", URL)
        assert result.source.provider == "scrape"
        primary.assert_not_called()

    def test_steps_reported(self):
        steps = []
        resolver, _, _, _ = _resolver(
            primary=_listing(address="1 A St", city="Austin", state="TX"),
            scraped=_listing(provider="scrape", beds=2.0),
        )
        resolver.resolve("1 a street, austin, tx", URL, on_step=steps.append)
        assert steps == ["primary", "scrape", "merge"]
