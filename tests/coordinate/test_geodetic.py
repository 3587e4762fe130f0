#!/usr/bin/env python3
"""Test suite for geodesic helpers and angle formats"""

import unittest

import pytest

from geofusion.coordinate import (
    convert_angle,
    convert_distance,
    convert_speed,
    destination_point,
    format_angle,
    haversine_distance,
    in_bbox,
    initial_bearing,
    local_offset,
    midpoint,
    parse_angle,
)
from geofusion.core.data_structures import GeoPoint


class TestHaversine(unittest.TestCase):

    def test_paris_london(self):
        d = haversine_distance(GeoPoint(48.8566, 2.3522), GeoPoint(51.5074, -0.1278))
        self.assertAlmostEqual(d / 1000.0, 343.5, delta=1.0)

    def test_zero_distance(self):
        p = GeoPoint(10.0, 20.0)
        self.assertEqual(haversine_distance(p, p), 0.0)

    def test_elevation_only_with_both_altitudes(self):
        a, b = GeoPoint(0.0, 0.0, 0.0), GeoPoint(0.0, 0.0, 100.0)
        self.assertAlmostEqual(haversine_distance(a, b, include_elevation=True), 100.0)
        self.assertEqual(haversine_distance(GeoPoint(0.0, 0.0), b, include_elevation=True), 0.0)

    def test_bearing(self):
        origin = GeoPoint(0.0, 0.0)
        self.assertAlmostEqual(initial_bearing(origin, GeoPoint(1.0, 0.0)), 0.0)
        self.assertAlmostEqual(initial_bearing(origin, GeoPoint(0.0, 1.0)), 90.0)
        self.assertAlmostEqual(initial_bearing(origin, GeoPoint(0.0, -1.0)), 270.0)


class TestLocalOffsets(unittest.TestCase):

    def test_destination_and_offset_agree(self):
        origin = GeoPoint(45.0, 7.0, 200.0)
        p = destination_point(origin, east=30.0, north=-40.0, up=2.0)
        east, north = local_offset(origin, p)
        self.assertAlmostEqual(east, 30.0, delta=0.01)
        self.assertAlmostEqual(north, -40.0, delta=0.01)
        self.assertEqual(p.alt, 202.0)
        self.assertAlmostEqual(haversine_distance(origin, p), 50.0, delta=0.05)

    def test_antimeridian_wrap(self):
        p = destination_point(GeoPoint(0.0, 179.9999), east=100.0, north=0.0)
        self.assertLess(p.lon, 0.0)
        east, _ = local_offset(GeoPoint(0.0, 179.9999), p)
        self.assertAlmostEqual(east, 100.0, delta=0.01)

    def test_midpoint(self):
        m = midpoint(GeoPoint(0.0, 0.0, 10.0), GeoPoint(2.0, 4.0))
        self.assertEqual((m.lat, m.lon, m.alt), (1.0, 2.0, None))

    def test_bbox(self):
        self.assertTrue(in_bbox(45.0, 9.0, (6, 0, 12, 84)))
        self.assertFalse(in_bbox(45.0, 13.0, (6, 0, 12, 84)))


class TestAngleFormats:
    """DD / DMM / DMS notation"""

    def test_parse_dms(self):
        assert parse_angle("40° 26' 46\" N", 'DMS') == pytest.approx(40.446111, abs=1e-6)
        assert parse_angle("79° 58' 56\" W", 'DMS') == pytest.approx(-79.982222, abs=1e-6)

    def test_parse_dmm(self):
        assert parse_angle("48° 7.038' S", 'DMM') == pytest.approx(-48.1173, abs=1e-6)

    def test_parse_dd(self):
        assert parse_angle("12.5 W") == -12.5
        assert parse_angle("-33.25") == -33.25

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_angle("north", 'DMS')
        with pytest.raises(ValueError):
            parse_angle("1", 'XYZ')

    def test_format_round_trip(self):
        text = format_angle(-48.1173, 'DMS')
        assert text.endswith('S')
        assert parse_angle(text, 'DMS') == pytest.approx(-48.1173, abs=1e-5)

    def test_format_dmm_longitude(self):
        assert format_angle(11.5, 'DMM', is_longitude=True) == "11° 30.0000' E"

    def test_convert_angle(self):
        assert convert_angle("10.5", 'DD', 'DMM') == "10° 30.0000' N"

    def test_units(self):
        assert convert_speed(36.0, 'km/h', 'm/s') == pytest.approx(10.0)
        assert convert_distance(1.0, 'mi', 'm') == pytest.approx(1609.344)
        with pytest.raises(ValueError):
            convert_speed(1.0, 'furlong/fortnight', 'm/s')
