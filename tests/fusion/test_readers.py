#!/usr/bin/env python3
"""Test suite for upstream readers driving the fusion loop"""

import asyncio
import unittest

from geofusion.core.data_structures import GeoPoint, GNSSData, IMUData, OCRAnchor
from geofusion.core.events import AnchorDetectionEvent, EventBus, GNSSReadingEvent
from geofusion.fusion import QueueReader, ReplayReader, SensorFusion, SensorReader


class TestReaders(unittest.IsolatedAsyncioTestCase):

    async def test_replay_drives_fusion(self):
        events = EventBus()
        fixes = [GNSSData(45.0, 7.0 + i * 1e-5, 100.0 + i, accuracy=3.0) for i in range(5)]
        reader = ReplayReader.for_kind('gnss', events, readings=fixes)
        fusion = SensorFusion(events=events, gnss_reader=reader)
        fused = []
        fusion.subscribe(fused.append)

        fusion.start()
        self.assertTrue(fusion.is_running)
        await reader.wait()
        fusion.stop()

        self.assertEqual(reader.published, 5)
        self.assertEqual(len(fused), 5)
        self.assertEqual(fused[-1].timestamp, 104.0)
        self.assertFalse(fusion.is_running)
        self.assertEqual(events.handler_count(GNSSReadingEvent), 0)

    async def test_queue_reader(self):
        events = EventBus()
        reader = QueueReader.for_kind('imu', events)
        fusion = SensorFusion(events=events, imu_reader=reader)
        fusion.on_gnss(GNSSData(45.0, 7.0, 100.0, accuracy=2.0))
        fusion.start()

        await reader.queue.put(IMUData((0.0, 0.0, 9.8), (0.0, 0.0, 0.0), 100.1))
        await asyncio.wait_for(reader.queue.join(), 1.0)
        self.assertEqual(fusion.last_position.sources, ('GNSS', 'IMU'))

        fusion.stop()
        await reader.wait()
        self.assertFalse(reader.is_running)

    async def test_anchor_items_wrapped(self):
        events = EventBus()
        seen = []
        events.subscribe(AnchorDetectionEvent, seen.append)
        anchor = OCRAnchor('B7', 'room', 0.7, GeoPoint(1.0, 2.0), 5.0)
        reader = ReplayReader.for_kind('anchors', events, readings=[anchor, [anchor, anchor]])
        reader.start()
        await reader.wait()
        self.assertEqual([len(e.anchors) for e in seen], [1, 2])

    async def test_start_is_idempotent(self):
        reader = QueueReader.for_kind('gnss', EventBus())
        reader.start()
        task = reader._task
        reader.start()
        self.assertIs(reader._task, task)
        reader.stop()
        await asyncio.sleep(0)
        self.assertFalse(reader.is_running)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            SensorReader.for_kind('lidar', EventBus())
