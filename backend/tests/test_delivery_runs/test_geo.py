"""
Tests for checkpoint distance helpers.
"""

import pytest

from pharmadelivery.services.delivery_runs.geo import haversine_distance, path_distance


class TestHaversineDistance:
    """Tests for great-circle distance."""

    def test_same_point(self) -> None:
        assert haversine_distance(-23.55, -46.63, -23.55, -46.63) == 0.0

    def test_one_degree_of_longitude_on_equator(self) -> None:
        assert haversine_distance(0, 0, 0, 1) == pytest.approx(111194.9, rel=1e-4)

    def test_symmetric(self) -> None:
        forward = haversine_distance(-23.55, -46.63, -22.90, -43.17)
        backward = haversine_distance(-22.90, -43.17, -23.55, -46.63)

        assert forward == pytest.approx(backward)
        # Sao Paulo to Rio de Janeiro
        assert 355_000 < forward < 365_000


class TestPathDistance:
    """Tests for distance over a checkpoint trail."""

    def test_empty_and_single(self) -> None:
        assert path_distance([]) == 0.0
        assert path_distance([{"latitude": 1, "longitude": 1}]) == 0.0

    def test_sums_consecutive_legs(self) -> None:
        trail = [
            {"latitude": 0, "longitude": 0},
            {"latitude": 0, "longitude": 1},
            {"latitude": 0, "longitude": 2},
        ]

        assert path_distance(trail) == pytest.approx(2 * 111194.9, rel=1e-4)

    def test_accepts_short_keys_and_skips_incomplete_points(self) -> None:
        trail = [
            {"lat": 0, "lng": 0},
            {"timestamp": "2024-05-01T12:00:00+00:00"},
            {"latitude": 0, "longitude": 1},
        ]

        assert path_distance(trail) == pytest.approx(111194.9, rel=1e-4)
