#!/usr/bin/env python3
"""End-to-end tests of the fusion engine wiring"""

import logging
import os
import tempfile
import unittest
from datetime import datetime, timezone

import numpy as np

from geofusion.config import EngineConfig, FusionConfig
from geofusion.coordinate.transforms import enu2ecef
from geofusion.core.data_structures import (
    CalibrationProfile,
    CalibrationSourceType,
    CorrectionData,
    CorrectionFormat,
    FusionStatus,
    GeoPoint,
    IMUData,
    SatelliteObservation,
)
from geofusion.core.events import CorrectionDataEvent
from geofusion.engine import FusionEngine
from geofusion.io import nmea_checksum

RECEIVER_LLH = np.array([np.radians(45.0), np.radians(7.5), 300.0])

SKY = [
    (90.0, 0.0, 21000000.0),
    (30.0, 0.0, 21050000.0),
    (30.0, 120.0, 21100000.0),
    (30.0, 240.0, 21150000.0),
    (55.0, 60.0, 20500000.0),
]

GGA = "GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,"


def sky_observations(sky=SKY):
    obs = []
    for i, (el, az, rng) in enumerate(sky):
        el, az = np.radians(el), np.radians(az)
        los = np.array([np.cos(el) * np.sin(az), np.cos(el) * np.cos(az), np.sin(el)])
        obs.append(SatelliteObservation(f'G{i + 1:02d}', enu2ecef(rng * los, RECEIVER_LLH), rng))
    return obs


def received_at():
    return datetime(2024, 5, 1, 12, 35, 20, tzinfo=timezone.utc).timestamp()


class TestEnginePipeline(unittest.IsolatedAsyncioTestCase):
    """Fixes flow through fusion and calibration into the audit log"""

    async def asyncSetUp(self):
        self.engine = FusionEngine()
        self.calibrated = []
        self.engine.subscribe(self.calibrated.append)
        await self.engine.start()

    async def asyncTearDown(self):
        await self.engine.stop()

    async def test_solved_fix_is_audited(self):
        outcome = self.engine.solve(sky_observations(), timestamp=100.0)
        self.assertTrue(outcome.ok)
        await self.engine.audit.flush()

        self.assertEqual(len(self.calibrated), 1)
        fused = self.calibrated[0]
        self.assertEqual(fused.sources, ('GNSS',))
        self.assertAlmostEqual(fused.position.lat, 45.0, places=6)
        self.assertAlmostEqual(fused.position.lon, 7.5, places=6)
        self.assertEqual(fused.timestamp, 100.0)

        entries = self.engine.audit_sink.get_logs()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].status, FusionStatus.RAW)
        self.assertTrue(self.engine.audit_sink.verify_integrity(entries[0]))
        self.assertIs(self.engine.last_solution, outcome)

    async def test_exact_fix_uses_default_accuracy(self):
        """Four satellites give no residual-based accuracy; dead reckoning must still degrade"""
        self.engine.solve(sky_observations(SKY[:4]), timestamp=1000.0)
        fixed = self.engine.fusion.last_position
        self.assertEqual(fixed.accuracy, self.engine.config.fusion.default_gnss_accuracy)

        drifted = self.engine.fusion.on_imu(IMUData((0.0, 0.0, 9.80665), (0.0, 0.0, 0.0), 1010.0))
        self.assertEqual(drifted.sources, ('IMU', 'deadReckoning'))
        self.assertGreater(drifted.accuracy, fixed.accuracy)
        self.assertAlmostEqual(drifted.accuracy, 10.0 * 1.1 ** 10)

    async def test_solver_failure_publishes_nothing(self):
        outcome = self.engine.solve(sky_observations()[:3], timestamp=100.0)
        self.assertFalse(outcome.ok)
        self.assertIsNotNone(outcome.error)
        await self.engine.audit.flush()
        self.assertEqual(self.calibrated, [])
        self.assertEqual(len(self.engine.audit_sink), 0)

    async def test_nmea_updates_stream_position(self):
        fixes = self.engine.ingest_nmea([f"${GGA}*{nmea_checksum(GGA)}"], received_at())
        self.assertEqual(len(fixes), 1)
        await self.engine.audit.flush()

        self.assertEqual(self.calibrated[0].sources, ('NMEA',))
        self.assertAlmostEqual(self.engine.streams.position.lat, 48.1173)
        self.assertEqual(len(self.engine.audit_sink), 1)

    async def test_best_match_profile_applied(self):
        self.engine.calibration.store.add(CalibrationProfile(
            name='site', position_bias=(1e-5, -2e-5, 0.5), source=CalibrationSourceType.MANUAL,
            confidence=0.9, reference=GeoPoint(45.0, 7.5, 300.0)))
        self.engine.solve(sky_observations(), timestamp=100.0)
        await self.engine.audit.flush()

        fused = self.calibrated[0]
        self.assertAlmostEqual(fused.position.lat, 45.0 + 1e-5, places=6)
        self.assertAlmostEqual(fused.position.lon, 7.5 - 2e-5, places=6)
        entry = self.engine.audit_sink.get_logs()[0]
        self.assertEqual(entry.status, FusionStatus.CALIBRATED)
        self.assertIsNotNone(entry.calibration_profile)

    async def test_pinned_profile(self):
        store = self.engine.calibration.store
        near = store.add(CalibrationProfile(name='near', position_bias=(0.0, 0.0, 1.0),
                                            source=CalibrationSourceType.MANUAL, confidence=0.9,
                                            reference=GeoPoint(45.0, 7.5)))
        far = store.add(CalibrationProfile(name='far', position_bias=(0.0, 0.0, 2.0),
                                           source=CalibrationSourceType.MANUAL, confidence=0.5,
                                           reference=GeoPoint(10.0, 10.0)))
        self.engine.use_profile(far.id)
        self.engine.solve(sky_observations(), timestamp=100.0)
        self.engine.use_profile(None)
        self.engine.solve(sky_observations(), timestamp=101.0)
        await self.engine.audit.flush()

        profiles = [e.calibration_profile for e in self.engine.audit_sink.get_logs()]
        self.assertEqual(profiles, [far.id, near.id])
        with self.assertRaises(KeyError):
            self.engine.use_profile('missing')

    async def test_correction_source_recorded(self):
        self.engine.events.publish(CorrectionDataEvent(
            CorrectionData('caster-1', 99.0, b'\xd3', CorrectionFormat.RTCM3)))
        self.engine.solve(sky_observations(), timestamp=100.0)
        await self.engine.audit.flush()

        self.assertEqual(self.engine.last_correction_source, 'caster-1')
        self.assertEqual(self.engine.audit_sink.get_logs()[0].correction_source, 'caster-1')

    async def test_handler_failure_does_not_block_audit(self):
        def broken(_):
            raise RuntimeError('display gone')

        self.engine.subscribe(broken)
        with self.assertLogs('geofusion.engine', level='ERROR'):
            self.engine.solve(sky_observations(), timestamp=100.0)
        await self.engine.audit.flush()
        self.assertEqual(len(self.engine.audit_sink), 1)
        self.assertEqual(len(self.calibrated), 1)


class TestEngineLifecycle(unittest.IsolatedAsyncioTestCase):

    async def test_offline_mode_status(self):
        engine = FusionEngine(EngineConfig(fusion=FusionConfig(offline_mode=True)))
        await engine.start()
        engine.solve(sky_observations(), timestamp=100.0)
        await engine.stop()
        self.assertEqual(engine.audit_sink.get_logs()[0].status, FusionStatus.OFFLINE)

    async def test_start_stop(self):
        engine = FusionEngine()
        await engine.start()
        await engine.start()
        self.assertTrue(engine.is_running)
        self.assertTrue(engine.fusion.is_running)
        self.assertTrue(engine.audit.is_running)

        await engine.stop()
        self.assertFalse(engine.is_running)
        self.assertFalse(engine.fusion.is_running)
        self.assertFalse(engine.audit.is_running)

    async def test_unsubscribe(self):
        engine = FusionEngine()
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        await engine.start()
        engine.solve(sky_observations(), timestamp=100.0)
        unsubscribe()
        engine.solve(sky_observations(), timestamp=101.0)
        await engine.stop()
        self.assertEqual(len(seen), 1)
        self.assertEqual(len(engine.audit_sink), 2)


class TestEngineFromConfig(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.addCleanup(self._reset_logging)

    @staticmethod
    def _reset_logging():
        root = logging.getLogger('geofusion')
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        root.setLevel(logging.NOTSET)
        root.propagate = True

    def test_yaml_config(self):
        path = os.path.join(self.temp_dir.name, 'engine.yaml')
        with open(path, 'w') as f:
            f.write(
                "solver:\n"
                "  max_gdop: 8.0\n"
                "fusion:\n"
                "  max_gnss_age: 3.0\n"
                "audit:\n"
                "  max_entries: 50\n"
                "logging:\n"
                "  default_level: WARNING\n"
                "  console: false\n"
            )
        engine = FusionEngine.from_config_file(path)
        self.assertEqual(engine.solver.config.max_gdop, 8.0)
        self.assertEqual(engine.fusion.config.max_gnss_age, 3.0)
        self.assertEqual(engine.config.audit.max_entries, 50)
        self.assertEqual(logging.getLogger('geofusion').level, logging.WARNING)

    def test_unknown_section(self):
        path = os.path.join(self.temp_dir.name, 'engine.yaml')
        with open(path, 'w') as f:
            f.write("radar:\n  range: 10\n")
        with self.assertRaises(ValueError):
            FusionEngine.from_config_file(path)
