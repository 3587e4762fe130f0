#!/usr/bin/env python3
"""Tests for the public names of the geofusion package"""

import importlib
import types
import unittest

import geofusion

SUBPACKAGES = ['core', 'coordinate', 'gnss', 'io', 'corrections', 'fusion', 'calibration', 'audit']


class TestPublicNames(unittest.TestCase):

    def test_logger_is_the_logging_module(self):
        """Star imports must not replace geofusion.logger with a Logger instance"""
        self.assertIsInstance(geofusion.logger, types.ModuleType)
        self.assertTrue(callable(geofusion.logger.setup_logger))
        self.assertTrue(callable(geofusion.logger.setup_logger_from_config))

    def test_subpackages_export_only_declared_names(self):
        for name in SUBPACKAGES:
            with self.subTest(subpackage=name):
                module = importlib.import_module(f'geofusion.{name}')
                self.assertNotIn('logger', module.__all__)
                self.assertEqual(len(module.__all__), len(set(module.__all__)))
                for exported in module.__all__:
                    self.assertTrue(hasattr(module, exported), exported)
                    self.assertTrue(hasattr(geofusion, exported), exported)

    def test_top_level_entry_points(self):
        self.assertIs(geofusion.FusionEngine, importlib.import_module('geofusion.engine').FusionEngine)
        self.assertIs(geofusion.RinexObsReader, importlib.import_module('geofusion.io.rinex').RinexObsReader)
        self.assertEqual(geofusion.GRAVITY, 9.80665)
