#!/usr/bin/env python3
"""Test suite for engine configuration"""

import tempfile
import unittest
from pathlib import Path

from geofusion.config import (
    EngineConfig,
    FusionConfig,
    SolverConfig,
    StreamConfig,
    load_config,
    save_config,
)
from geofusion.core import constants as C


class TestEngineConfig(unittest.TestCase):

    def test_defaults_follow_constants(self):
        config = EngineConfig()
        self.assertEqual(config.solver.max_gdop, C.MAX_GDOP)
        self.assertEqual(config.fusion.max_gnss_age, 5.0)
        self.assertEqual(config.streams.max_reconnect_attempts, 5)
        self.assertEqual(config.audit.max_entries, 1000)

    def test_from_dict_partial(self):
        config = EngineConfig.from_dict({'fusion': {'max_imu_age': 2.0}})
        self.assertEqual(config.fusion.max_imu_age, 2.0)
        self.assertEqual(config.fusion.max_gnss_age, 5.0)

    def test_unknown_keys_rejected(self):
        with self.assertRaises(ValueError):
            EngineConfig.from_dict({'nonsense': {}})
        with self.assertRaises(ValueError):
            EngineConfig.from_dict({'solver': {'bogus': 1}})

    def test_section_validation(self):
        with self.assertRaises(ValueError):
            SolverConfig(min_satellites=3)
        with self.assertRaises(ValueError):
            FusionConfig(complementary_alpha=0.0)
        with self.assertRaises(ValueError):
            StreamConfig(max_reconnect_attempts=0)


class TestConfigFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_yaml_round_trip(self):
        config = EngineConfig.from_dict({'streams': {'reconnect_base_delay': 0.5}})
        path = self.dir / 'engine.yaml'
        save_config(config, path)
        loaded = load_config(path)
        self.assertEqual(loaded.streams.reconnect_base_delay, 0.5)
        self.assertEqual(loaded.to_dict(), config.to_dict())

    def test_json_round_trip(self):
        config = EngineConfig()
        path = self.dir / 'engine.json'
        save_config(config, path)
        self.assertEqual(load_config(path).to_dict(), config.to_dict())

    def test_unsupported_suffix(self):
        with self.assertRaises(ValueError):
            save_config(EngineConfig(), self.dir / 'engine.ini')
        with self.assertRaises(ValueError):
            load_config(self.dir / 'engine.ini')
