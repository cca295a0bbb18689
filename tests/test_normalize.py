"""Tests for normalize.py — address canonicalization and URL extraction."""

import pytest

from errors import ValidationError
from normalize import (
    extract_address_from_url,
    is_full_address,
    normalize_address_string,
    normalize_input,
    parse_address,
    validate_address,
)


# =========================================================================
# Address strings
# =========================================================================

class TestNormalizeAddress:
    def test_expands_street_type(self):
        assert (
            normalize_address_string("123 Main St, Los Angeles, CA 90001")
            == "123 main street, los angeles, ca 90001"
        )

    def test_expands_unit_and_strips_periods(self):
        assert (
            normalize_address_string("456 Oak Ave. Apt 4, Boston, MA")
            == "456 oak avenue apartment 4, boston, ma"
        )

    def test_drops_unit_word(self):
        assert normalize_address_string("12 Elm St Unit 4, Austin, TX") == "12 elm street 4, austin, tx"

    def test_city_named_like_street_type_kept(self):
        assert normalize_address_string("9 Oak Dr, St Louis, MO") == "9 oak drive, st louis, mo"

    def test_collapses_whitespace_and_commas(self):
        assert normalize_address_string("  1  Pine   Rd ,Denver ,  CO ") == "1 pine road, denver, co"

    @pytest.mark.parametrize("raw", [
        "123 Main St, Los Angeles, CA 90001",
        "Unit 4, 12 Elm St, Austin, TX",
        "456 Oak Ave. Apt 4, Boston, MA",
        "",
    ])
    def test_idempotent(self, raw):
        once = normalize_address_string(raw)
        assert normalize_address_string(once) == once


class TestAddressChecks:
    def test_full_address(self):
        assert is_full_address("123 Main St, Los Angeles, CA")

    def test_street_without_number(self):
        assert is_full_address("Main Street, Los Angeles, CA")

    def test_city_only_is_partial(self):
        assert not is_full_address("los angeles, ca")
        assert not is_full_address("")

    def test_validate_requires_city(self):
        assert validate_address("123 Main St, Los Angeles, CA")
        assert not validate_address("123 Main St")

    def test_parse_address(self):
        assert parse_address("123 Main St, Los Angeles, ca 90001") == {
            "street": "123 Main St",
            "city": "Los Angeles",
            "state": "CA",
            "zip": "90001",
        }

    def test_parse_address_without_zip(self):
        assert parse_address("1 A St, Austin, TX")["zip"] is None

    def test_parse_address_rejects_fragments(self):
        assert parse_address("somewhere") is None


# =========================================================================
# URL extraction
# =========================================================================

class TestExtractFromUrl:
    def test_zillow_homedetails(self):
        url = "https://www.zillow.com/homedetails/123-Main-St-Los-Angeles-CA-90001/12345_zpid/"
        assert extract_address_from_url(url) == "123 Main St Los Angeles CA 90001"

    def test_zillow_id_only(self):
        assert extract_address_from_url("https://www.zillow.com/homedetails/12345_zpid/") is None

    def test_zillow_apartments_partial(self):
        url = "https://www.zillow.com/apartments/los-angeles-ca/the-grand/5XkK/"
        assert extract_address_from_url(url) == "los angeles, ca"

    def test_redfin_skips_listing_id(self):
        url = "https://www.redfin.com/CA/Los-Angeles/123-Main-St-90001/home/12345"
        assert extract_address_from_url(url) == "123 Main St 90001"

    def test_redfin_without_address(self):
        assert extract_address_from_url("https://www.redfin.com/home/12345") is None

    def test_address_query_param(self):
        url = "https://example.com/listing?address=1%20A%20St%2C%20Austin%2C%20TX"
        assert extract_address_from_url(url) == "1 A St, Austin, TX"

    def test_unknown_site(self):
        assert extract_address_from_url("https://example.com/listing/1") is None


class TestNormalizeInput:
    def test_requires_url_or_address(self):
        with pytest.raises(ValidationError):
            normalize_input()
        with pytest.raises(ValidationError):
            normalize_input(url="  ", address="")

    def test_address_only(self):
        result = normalize_input(address="123 Main St, Los Angeles, CA 90001")
        assert result.address == "123 main street, los angeles, ca 90001"
        assert result.source_meta.input_type == "address"
        assert result.source_meta.url is None

    def test_url_parsed(self):
        url = "https://www.zillow.com/homedetails/123-Main-St-Los-Angeles-CA-90001/12345_zpid/"
        result = normalize_input(url=url)
        assert result.address == "123 main street los angeles ca 90001"
        assert result.source_meta.parsed_from_url is True
        assert result.source_meta.url == url

    def test_unparseable_url_falls_back_to_address(self):
        result = normalize_input(url="https://example.com/x", address="1 A St, Austin, TX")
        assert result.address == "1 a street, austin, tx"
        assert result.source_meta.input_type == "address"
        assert result.source_meta.url == "https://example.com/x"

    def test_unparseable_url_alone_leaves_address_empty(self):
        result = normalize_input(url="https://example.com/x")
        assert result.address == ""
        assert result.to_dict()["source_meta"]["parsed_from_url"] is False
