"""Tests for location_insights.py — registry counts, links, amenities, schools."""

from unittest.mock import patch, MagicMock

import pytest

from errors import APIError
from location_insights import (
    REGISTRY_NOTE,
    amenity_counts,
    compute_location_insights,
    nearby_schools,
    query_registry_count,
    registry_counts,
    registry_links,
    state_abbreviation,
)

ADDRESS = "123 main street, los angeles, ca 90001"
LAT, LON = 33.97, -118.24


def _place(name, dlat, types=None, rating=None):
    return {
        "name": name,
        "geometry": {"location": {"lat": LAT + dlat, "lng": LON}},
        "types": types or [],
        "rating": rating,
    }


class TestRegistryLinks:
    def test_state_abbreviation(self):
        assert state_abbreviation("California") == "CA"
        assert state_abbreviation("ca") == "CA"
        assert state_abbreviation("Narnia") is None
        assert state_abbreviation("") is None

    def test_known_state(self):
        links = registry_links("CA")
        assert links[0]["url"] == "https://www.nsopw.gov/"
        assert links[1]["url"] == "https://www.meganslaw.ca.gov/"

    def test_unknown_state_gets_search_link(self):
        links = registry_links("Ohio")
        assert links[1]["name"] == "OH registry search"
        assert links[1]["url"].startswith("https://www.google.com/search?q=OH+sex+offender+registry")

    def test_no_state(self):
        assert len(registry_links("")) == 1


class TestRegistryCounts:
    def test_skipped_without_key(self):
        assert registry_counts(ADDRESS, LAT, LON) == {}

    @patch("location_insights.query_registry_count")
    def test_counts_cached(self, mock_query, monkeypatch):
        monkeypatch.setenv("FAMILY_WATCHDOG_API_KEY", "k")
        mock_query.side_effect = lambda lat, lon, radius: {1: 3, 2: 11}[radius]
        assert registry_counts(ADDRESS, LAT, LON) == {"count_1mi": 3, "count_2mi": 11}
        assert registry_counts(ADDRESS, LAT, LON) == {"count_1mi": 3, "count_2mi": 11}
        assert mock_query.call_count == 2

    @patch("location_insights.query_registry_count")
    def test_one_radius_failing(self, mock_query, monkeypatch):
        monkeypatch.setenv("FAMILY_WATCHDOG_API_KEY", "k")

        def _query(lat, lon, radius):
            if radius == 2:
                raise APIError("family_watchdog", "boom")
            return 4

        mock_query.side_effect = _query
        assert registry_counts(ADDRESS, LAT, LON) == {"count_1mi": 4}

    def test_query_unsuccessful_raises(self, monkeypatch):
        monkeypatch.setenv("FAMILY_WATCHDOG_API_KEY", "k")
        http = MagicMock()
        http.get_json.return_value = {"success": False, "error": "bad key"}
        with pytest.raises(APIError) as exc_info:
            query_registry_count(LAT, LON, 1, http=http)
        assert "bad key" in exc_info.value.message


class TestPlaces:
    def test_amenity_counts(self):
        client = MagicMock()
        client.configured = True
        client.places_nearby.side_effect = lambda lat, lon, t, r: [_place("x", 0.001)] * (
            3 if t == "restaurant" else 1
        )
        counts = amenity_counts(ADDRESS, LAT, LON, client=client)
        assert counts["restaurants"] == 3
        assert counts["parks"] == 1
        assert set(counts) == {"grocery_stores", "restaurants", "parks", "schools", "transit_stations"}

    def test_amenity_counts_unconfigured(self):
        client = MagicMock()
        client.configured = False
        assert amenity_counts(ADDRESS, LAT, LON, client=client) is None

    def test_schools_sorted_by_distance(self):
        client = MagicMock()
        client.configured = True
        client.places_nearby.return_value = [
            _place("Far High", 0.01, ["secondary_school"], 4.1),
            _place("Near Elementary", 0.002, ["primary_school"], 4.6),
        ]
        schools = nearby_schools(ADDRESS, LAT, LON, client=client)
        assert [s["name"] for s in schools] == ["Near Elementary", "Far High"]
        assert schools[0]["type"] == "elementary"
        assert schools[1]["type"] == "secondary"
        assert 200 < schools[0]["distance_m"] < 250


class TestCompute:
    def test_without_keys_only_registry_links(self):
        insights = compute_location_insights(ADDRESS, LAT, LON, "CA")
        assert set(insights) == {"registry"}
        assert insights["registry"]["note"] == REGISTRY_NOTE
        assert len(insights["registry"]["registry_links"]) == 2
        assert "count_1mi" not in insights["registry"]

    @patch("location_insights.nearby_schools", return_value=[{"name": "S"}])
    @patch("location_insights.amenity_counts", return_value={"parks": 2, "transit_stations": 4})
    def test_with_places(self, _amenities, _schools):
        insights = compute_location_insights(ADDRESS, LAT, LON, "CA")
        assert insights["nearby_amenities"]["parks"] == 2
        assert insights["transit"] == {"stations_nearby": 4}
        assert insights["schools"] == [{"name": "S"}]
