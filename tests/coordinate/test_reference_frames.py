#!/usr/bin/env python3
"""Test suite for the coordinate frame manager"""

import unittest

import pytest

from geofusion.coordinate import (
    WGS84,
    CoordinateFrameManager,
    CoordinateSystem,
    utm_epsg,
    utm_zone,
)
from geofusion.core.exceptions import UndefinedReferenceFrame


class TestUTMZone(unittest.TestCase):
    """UTM zone inference"""

    def test_regular_zones(self):
        self.assertEqual(utm_zone(-177.0, 10.0), 1)
        self.assertEqual(utm_zone(9.0, 45.0), 32)
        self.assertEqual(utm_zone(180.0, 0.0), 60)

    def test_norway_exception(self):
        self.assertEqual(utm_zone(5.0, 60.0), 32)
        self.assertEqual(utm_zone(5.0, 50.0), 31)

    def test_svalbard_exception(self):
        self.assertEqual(utm_zone(5.0, 78.0), 31)
        self.assertEqual(utm_zone(15.0, 78.0), 33)
        self.assertEqual(utm_zone(25.0, 78.0), 35)
        self.assertEqual(utm_zone(35.0, 78.0), 37)

    def test_epsg_hemisphere(self):
        self.assertEqual(utm_epsg(9.0, 45.0), 'EPSG:32632')
        self.assertEqual(utm_epsg(15.0, -20.0), 'EPSG:32733')

    def test_out_of_range(self):
        with self.assertRaises(ValueError):
            utm_zone(200.0, 0.0)


class TestCoordinateFrameManager(unittest.TestCase):

    def setUp(self):
        self.manager = CoordinateFrameManager()

    def test_round_trip_under_a_millimetre(self):
        x, y = self.manager.from_geodetic(45.4642, 9.19, 'EPSG:32632')
        p = self.manager.to_geodetic(x, y, 'EPSG:32632')
        x2, y2 = self.manager.from_geodetic(p.lat, p.lon, 'EPSG:32632')
        self.assertLess(abs(x2 - x), 1e-3)
        self.assertLess(abs(y2 - y), 1e-3)

    def test_direct_conversion_round_trip(self):
        x, y = self.manager.from_geodetic(46.5, 11.9, 'EPSG:32632')
        x33, y33 = self.manager.convert(x, y, 'EPSG:32632', 'EPSG:32633')
        xb, yb = self.manager.convert(x33, y33, 'EPSG:32633', 'EPSG:32632')
        self.assertLess(abs(xb - x), 1e-3)
        self.assertLess(abs(yb - y), 1e-3)

    def test_lambert_93(self):
        # Paris in Lambert-93 is roughly (652 km, 6862 km)
        x, y = self.manager.from_geodetic(48.8566, 2.3522, 'EPSG:2154')
        self.assertAlmostEqual(x / 1000.0, 652.0, delta=2.0)
        self.assertAlmostEqual(y / 1000.0, 6862.0, delta=2.0)

    def test_unregistered_system(self):
        with self.assertRaises(UndefinedReferenceFrame):
            self.manager.from_geodetic(0.0, 0.0, 'EPSG:99999')
        with self.assertRaises(UndefinedReferenceFrame):
            self.manager.get('LOCAL:GRID')

    def test_identity_conversion_checks_registration(self):
        self.assertEqual(self.manager.convert(1.0, 2.0, WGS84, WGS84), (1.0, 2.0))
        with self.assertRaises(UndefinedReferenceFrame):
            self.manager.convert(1.0, 2.0, 'NOPE', 'NOPE')

    def test_custom_projection(self):
        self.manager.add_custom_projection(
            'LOCAL:UTM31', '+proj=utm +zone=31 +datum=WGS84 +units=m +no_defs', (0, 0, 6, 84))
        x, y = self.manager.from_geodetic(45.0, 3.0, 'LOCAL:UTM31')
        self.assertAlmostEqual(x, 500000.0, delta=1e-3)
        info = self.manager.projection_info('LOCAL:UTM31')
        self.assertTrue(info['is_projected'])

    def test_invalid_definition(self):
        with self.assertRaises(ValueError):
            self.manager.register(CoordinateSystem('BAD', 'bad', '+proj=doesnotexist'))

    def test_unregister(self):
        self.manager.unregister('EPSG:2154')
        self.assertFalse(self.manager.is_registered('EPSG:2154'))

    def test_utm_system_registers_on_demand(self):
        code = self.manager.utm_system(-70.0, -33.0)
        self.assertEqual(code, 'EPSG:32719')
        self.assertTrue(self.manager.is_registered(code))
        self.assertTrue(self.manager.in_area_of_use(-33.0, -70.0, code))

    def test_bounding_box(self):
        self.assertTrue(self.manager.is_in_bounding_box(10.0, 45.0, (6, 0, 12, 84)))
        x, y = self.manager.from_geodetic(45.0, 9.0, 'EPSG:32632')
        self.assertTrue(self.manager.is_in_bounding_box(x, y, (6, 0, 12, 84), 'EPSG:32632'))
        self.assertFalse(self.manager.is_in_bounding_box(x, y, (12, 0, 18, 84), 'EPSG:32632'))


class TestProjectedDistance:

    def test_3d_distance(self):
        manager = CoordinateFrameManager()
        x, y = manager.from_geodetic(45.0, 9.0, 'EPSG:32632')
        d = manager.distance((x, y, 0.0), (x + 300.0, y + 400.0, 0.0), 'EPSG:32632')
        # UTM scale factor keeps this within a few decimetres of 500 m
        assert d == pytest.approx(500.0, abs=1.0)
        d3 = manager.distance((9.0, 45.0, 0.0), (9.0, 45.0, 30.0))
        assert d3 == pytest.approx(30.0)
