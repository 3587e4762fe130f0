#!/usr/bin/env python3
"""Test suite for the event bus"""

import asyncio
import unittest

from geofusion.core.events import (
    CalibrationEvent,
    EventBus,
    SourceErrorEvent,
    SourceTerminalErrorEvent,
)


class TestEventBus(unittest.TestCase):
    """Synchronous delivery"""

    def test_delivery_in_registration_order(self):
        bus = EventBus()
        calls = []
        bus.subscribe(CalibrationEvent, lambda e: calls.append(('a', e.profile_id)))
        bus.subscribe(CalibrationEvent, lambda e: calls.append(('b', e.profile_id)))
        self.assertEqual(bus.publish(CalibrationEvent('p1', 'added')), 2)
        self.assertEqual(calls, [('a', 'p1'), ('b', 'p1')])

    def test_subclass_reaches_base_subscribers(self):
        bus = EventBus()
        seen = []
        bus.subscribe(SourceErrorEvent, seen.append)
        bus.publish(SourceTerminalErrorEvent('s', 'boom', 5))
        self.assertEqual(len(seen), 1)
        self.assertIsInstance(seen[0], SourceTerminalErrorEvent)

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(CalibrationEvent, seen.append)
        unsubscribe()
        bus.publish(CalibrationEvent('p', 'added'))
        self.assertEqual(seen, [])
        self.assertEqual(bus.handler_count(), 0)

    def test_handler_error_does_not_reach_publisher(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("handler failure")

        bus.subscribe(CalibrationEvent, broken)
        bus.subscribe(CalibrationEvent, seen.append)
        with self.assertLogs('geofusion.core.events', level='ERROR'):
            bus.publish(CalibrationEvent('p', 'added'))
        self.assertEqual(len(seen), 1)

    def test_rejects_non_event_types(self):
        with self.assertRaises(TypeError):
            EventBus().subscribe(int, print)


class TestAsyncHandlers(unittest.IsolatedAsyncioTestCase):

    async def test_coroutine_handler_scheduled(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.profile_id)

        bus.subscribe(CalibrationEvent, handler)
        bus.publish(CalibrationEvent('p', 'added'))
        await bus.drain()
        self.assertEqual(seen, ['p'])
