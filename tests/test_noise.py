"""Tests for noise.py — motorway/airport proximity noise tiers."""

from unittest.mock import MagicMock

from noise import (
    NoiseLevel,
    classify_noise,
    distance_to_polyline_m,
    estimate_noise,
    parse_overpass_elements,
)

LAT, LON = 34.0, -118.0


class TestClassify:
    def test_high_near_motorway(self):
        assert classify_noise(250, None) == NoiseLevel.HIGH

    def test_high_near_airport(self):
        assert classify_noise(None, 2500) == NoiseLevel.HIGH

    def test_medium(self):
        assert classify_noise(600, None) == NoiseLevel.MEDIUM
        assert classify_noise(5000, 6000) == NoiseLevel.MEDIUM

    def test_low(self):
        assert classify_noise(None, None) == NoiseLevel.LOW
        assert classify_noise(1500, 9000) == NoiseLevel.LOW

    def test_thresholds_are_exclusive(self):
        assert classify_noise(300, None) == NoiseLevel.MEDIUM
        assert classify_noise(1000, None) == NoiseLevel.LOW


class TestGeometry:
    def test_point_on_line_is_zero(self):
        nodes = [(LAT, LON - 0.01), (LAT, LON + 0.01)]
        assert distance_to_polyline_m(LAT, LON, nodes) < 1

    def test_perpendicular_distance(self):
        # ~0.001 deg latitude north of an east-west road.
        nodes = [(LAT, LON - 0.01), (LAT, LON + 0.01)]
        d = distance_to_polyline_m(LAT + 0.001, LON, nodes)
        assert 100 < d < 120

    def test_parse_elements(self):
        elements = [
            {"type": "way", "tags": {"highway": "motorway"},
             "geometry": [{"lat": LAT + 0.002, "lon": LON - 0.01}, {"lat": LAT + 0.002, "lon": LON + 0.01}]},
            {"type": "way", "tags": {"aeroway": "aerodrome"}, "center": {"lat": LAT + 0.05, "lon": LON}},
        ]
        motorway, airport = parse_overpass_elements(LAT, LON, elements)
        assert 200 < motorway < 240
        assert 5400 < airport < 5700


class TestEstimate:
    def test_estimate(self):
        http = MagicMock()
        http.post_json.return_value = {"elements": [
            {"type": "node", "tags": {"aeroway": "aerodrome"}, "lat": LAT + 0.01, "lon": LON},
        ]}
        result = estimate_noise(LAT, LON, http=http)
        assert result.level == "high"
        assert result.motorway_distance_m is None
        assert 1100 < result.airport_distance_m < 1120
        assert "not a measured noise level" in result.to_dict()["method"]

    def test_nothing_nearby_is_low(self):
        http = MagicMock()
        http.post_json.return_value = {"elements": []}
        assert estimate_noise(LAT, LON, http=http).level == "low"

    def test_unusable_response(self):
        http = MagicMock()
        http.post_json.return_value = None
        assert estimate_noise(LAT, LON, http=http) is None
