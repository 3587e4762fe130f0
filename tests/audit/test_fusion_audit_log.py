#!/usr/bin/env python3
"""Test suite for the fusion audit trail"""

import asyncio
import io
import json
import unittest

import pandas as pd

from geofusion.audit import AuditDispatcher, AuditSink, FusionAuditLog, build_log_entry, sanitize
from geofusion.audit.fusion_audit_log import REDACTED
from geofusion.config import AuditConfig
from geofusion.core.data_structures import (
    CalibrationProfile,
    CalibrationSourceType,
    FusedPosition,
    FusionLogEntry,
    FusionStatus,
    GeoPoint,
    OCRAnchor,
)
from geofusion.core.events import AuditFailureEvent, EventBus
from geofusion.core.exceptions import AuditSinkError


def entry(t=100.0, accuracy=3.0, sources=('GNSS',), status=FusionStatus.RAW, **kwargs):
    return FusionLogEntry(position=GeoPoint(45.0, 7.0, 250.0), accuracy=accuracy, sources=sources,
                          status=status, timestamp=t, **kwargs)


def fused(metadata=None, anchors=()):
    return FusedPosition(GeoPoint(45.0, 7.0, 250.0), 3.0, 100.0, ('GNSS', 'IMU'),
                         anchors=anchors, metadata=metadata or {})


class TestBuildLogEntry(unittest.TestCase):

    def setUp(self):
        self.profile = CalibrationProfile('site', (0.0, 0.0, 0.0), CalibrationSourceType.MANUAL, 0.9)

    def test_status_rules(self):
        averaged = {'corrections': [{'type': 'anchor_average', 'value': 0.6, 'source': 'A1'}]}
        overridden = {'corrections': [{'type': 'anchor_override', 'value': 0.9, 'source': 'A1'}]}
        self.assertEqual(build_log_entry(fused()).status, FusionStatus.RAW)
        self.assertEqual(build_log_entry(fused(), self.profile).status, FusionStatus.CALIBRATED)
        self.assertEqual(build_log_entry(fused(averaged), self.profile).status, FusionStatus.CONFLICTED)
        self.assertEqual(build_log_entry(fused(overridden)).status, FusionStatus.RAW)
        self.assertEqual(build_log_entry(fused(averaged), self.profile, offline=True).status,
                         FusionStatus.OFFLINE)
        self.assertEqual(build_log_entry(fused(), status=FusionStatus.CONFLICTED).status,
                         FusionStatus.CONFLICTED)

    def test_provenance(self):
        anchors = (OCRAnchor('Exit 3', 'sign', 0.6, GeoPoint(45.0, 7.0), 99.0),
                   OCRAnchor('Gate 12', 'sign', 0.9, GeoPoint(45.0, 7.0), 99.5))
        metadata = {'gnss': {'hdop': 0.8}}
        source = fused(metadata, anchors)
        e = build_log_entry(source, self.profile, correction_source='src_1')

        self.assertEqual(e.calibration_profile, self.profile.id)
        self.assertEqual(e.correction_source, 'src_1')
        self.assertEqual(e.anchor, {'text': 'Gate 12', 'confidence': 0.9, 'classification': 'sign'})
        self.assertEqual(e.sources, ('GNSS', 'IMU'))
        self.assertEqual(e.timestamp, 100.0)
        metadata['gnss']['hdop'] = 9.9
        self.assertEqual(e.metadata['gnss']['hdop'], 0.8)


class TestSanitize(unittest.TestCase):

    def test_nested_keys_redacted(self):
        value = {'password': 'x', 'ok': 1,
                 'nested': {'Token': 'y', 'items': [{'api_key': 1, 'name': 'n'}], 'pair': (1, 2)}}
        clean = sanitize(value)
        self.assertEqual(clean['password'], REDACTED)
        self.assertEqual(clean['nested']['Token'], REDACTED)
        self.assertEqual(clean['nested']['items'][0], {'api_key': REDACTED, 'name': 'n'})
        self.assertEqual(clean['nested']['pair'], [1, 2])
        self.assertEqual(clean['ok'], 1)
        self.assertEqual(value['password'], 'x')


class TestFusionAuditLog(unittest.TestCase):

    def setUp(self):
        self.log = FusionAuditLog()

    def test_is_a_sink(self):
        self.assertIsInstance(self.log, AuditSink)

    def test_record_and_verify(self):
        original = entry(metadata={'source': {'username': 'bob', 'password': 'pw', 'url': 'u'}})
        entry_id = self.log.record(original)
        stored = self.log.get_log(entry_id)

        self.assertEqual(entry_id, original.id)
        self.assertIsNot(stored, original)
        self.assertEqual(len(stored.hash), 64)
        self.assertEqual(stored.metadata['source'], {'username': REDACTED, 'password': REDACTED, 'url': 'u'})
        self.assertEqual(original.metadata['source']['password'], 'pw')
        self.assertTrue(self.log.verify_integrity(stored))

        stored.accuracy = 0.1
        self.assertFalse(self.log.verify_integrity(stored))
        self.assertEqual(self.log.verify_all(), [entry_id])

    def test_unhashed_entry_fails_verification(self):
        self.assertFalse(self.log.verify_integrity(entry()))

    def test_hmac(self):
        keyed = FusionAuditLog(secret_key='k1')
        e = entry()
        keyed.record(e)
        self.log.record(e)
        signed, plain = keyed.get_log(e.id), self.log.get_log(e.id)
        self.assertNotEqual(signed.hash, plain.hash)
        self.assertTrue(keyed.verify_integrity(signed))
        self.assertFalse(FusionAuditLog(secret_key='k2').verify_integrity(signed))
        self.assertEqual(FusionAuditLog(AuditConfig(secret_key='k1')).secret_key, 'k1')

    def test_export_reference_outside_hash(self):
        entry_id = self.log.record(entry())
        self.assertTrue(self.log.add_export_reference(entry_id, 'gpx-1'))
        self.assertFalse(self.log.add_export_reference('missing', 'gpx-1'))
        self.assertEqual(self.log.get_log(entry_id).export_ids, ['gpx-1'])
        self.assertEqual(self.log.verify_all(), [])

    def test_rejects_other_objects(self):
        with self.assertRaises(AuditSinkError):
            self.log.record({'accuracy': 1.0})

    def test_capacity_and_paging(self):
        log = FusionAuditLog(AuditConfig(max_entries=3))
        ids = [log.record(entry(t=float(i))) for i in range(5)]
        self.assertEqual(len(log), 3)
        self.assertEqual([e.id for e in log.get_logs()], ids[:1:-1])
        self.assertEqual([e.id for e in log.get_logs(limit=1, offset=1)], [ids[3]])
        self.assertIsNone(log.get_log(ids[0]))

    def test_search(self):
        a = self.log.record(entry(t=10.0, accuracy=2.0, anchor={'text': 'Gate 12'}))
        b = self.log.record(entry(t=20.0, accuracy=8.0, sources=('IMU', 'deadReckoning'),
                                  status=FusionStatus.CALIBRATED, calibration_profile='cal_1'))
        c = self.log.record(entry(t=30.0, accuracy=4.0, metadata={'notes': 'near the GATE'}))

        def ids(**kw):
            return {e.id for e in self.log.search_logs(**kw)}

        self.assertEqual(ids(start_time=15.0), {b, c})
        self.assertEqual(ids(end_time=20.0), {a, b})
        self.assertEqual(ids(max_accuracy=4.0), {a, c})
        self.assertEqual(ids(status=FusionStatus.CALIBRATED), {b})
        self.assertEqual(ids(source='IMU'), {b})
        self.assertEqual(ids(calibration_profile='cal_1'), {b})
        self.assertEqual(ids(text='gate'), {a, c})
        self.assertEqual(len(self.log.search_logs(limit=2)), 2)

    def test_dataframe_and_stats(self):
        self.log.record(entry(accuracy=2.0, sources=('GNSS', 'IMU')))
        self.log.record(entry(accuracy=4.0, status=FusionStatus.CALIBRATED))
        df = self.log.to_dataframe()
        self.assertEqual(len(df), 2)
        self.assertIn('GNSS;IMU', set(df['sources']))

        stats = self.log.get_stats()
        self.assertEqual(stats['total'], 2)
        self.assertEqual(stats['by_status'], {'calibrated': 1, 'raw': 1, 'offline': 0, 'conflicted': 0})
        self.assertEqual(stats['by_source'], {'GNSS': 2, 'IMU': 1})
        self.assertEqual(stats['accuracy'], {'min': 2.0, 'max': 4.0, 'avg': 3.0})

    def test_empty_stats(self):
        stats = self.log.get_stats()
        self.assertEqual(stats['total'], 0)
        self.assertEqual(stats['by_source'], {})
        self.assertEqual(stats['accuracy']['avg'], 0.0)

    def test_export(self):
        self.log.record(entry(anchor={'text': 'Gate 12'}))
        records = json.loads(self.log.export('json'))
        self.assertEqual(records[0]['position'], {'lat': 45.0, 'lon': 7.0, 'alt': 250.0})
        self.assertEqual(len(records[0]['hash']), 64)

        df = pd.read_csv(io.StringIO(self.log.export('csv')))
        self.assertEqual(df.loc[0, 'anchor_text'], 'Gate 12')
        with self.assertRaises(ValueError):
            self.log.export('xml')

        self.log.clear()
        self.assertEqual(len(self.log), 0)


class FlakySink:
    """Fails the first ``failures`` writes"""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.entries = []

    async def write(self, entry):
        self.calls += 1
        if self.calls <= self.failures:
            raise AuditSinkError("storage unavailable")
        self.entries.append(entry)
        return f"receipt-{self.calls}"


class TestAuditDispatcher(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.events = EventBus()
        self.failures = []
        self.events.subscribe(AuditFailureEvent, self.failures.append)
        self.config = AuditConfig(retry_delay=0.001, max_retries=3)

    async def test_writes_in_background(self):
        log = FusionAuditLog()
        dispatcher = AuditDispatcher(log, self.config, self.events)
        entries = [entry(t=float(i)) for i in range(3)]
        for e in entries:
            dispatcher.submit(e)
        self.assertTrue(dispatcher.is_running)
        await dispatcher.flush()

        self.assertEqual(dispatcher.written, 3)
        self.assertEqual(len(log), 3)
        self.assertEqual(set(dispatcher.receipts), {e.id for e in entries})
        await dispatcher.stop()
        self.assertFalse(dispatcher.is_running)

    async def test_receipts_bounded(self):
        config = AuditConfig(max_entries=5, retry_delay=0.001, max_retries=3)
        dispatcher = AuditDispatcher(FusionAuditLog(config), config, self.events)
        entries = [entry(t=float(i)) for i in range(12)]
        for e in entries:
            dispatcher.submit(e)
        await dispatcher.stop()

        self.assertEqual(dispatcher.written, 12)
        self.assertEqual(len(dispatcher.receipts), 5)
        self.assertEqual(list(dispatcher.receipts), [e.id for e in entries[-5:]])

    async def test_retries_then_succeeds(self):
        sink = FlakySink(failures=2)
        dispatcher = AuditDispatcher(sink, self.config, self.events)
        e = entry()
        dispatcher.submit(e)
        await dispatcher.stop()

        self.assertEqual(sink.calls, 3)
        self.assertEqual(dispatcher.written, 1)
        self.assertEqual(dispatcher.receipts[e.id], 'receipt-3')
        self.assertEqual([f.attempts for f in self.failures], [1, 2])
        self.assertFalse(any(f.dropped for f in self.failures))

    async def test_gives_up_without_raising(self):
        sink = FlakySink(failures=99)
        dispatcher = AuditDispatcher(sink, self.config, self.events)
        e = entry()
        with self.assertLogs('geofusion.audit', 'ERROR'):
            dispatcher.submit(e)
            await dispatcher.flush()

        self.assertEqual(sink.calls, 3)
        self.assertEqual(dispatcher.dropped, 1)
        self.assertEqual(dispatcher.written, 0)
        self.assertEqual(self.failures[-1].entry_id, e.id)
        self.assertTrue(self.failures[-1].dropped)
        self.assertEqual(self.failures[-1].error, 'storage unavailable')

        # the writer keeps serving later entries
        sink.failures = 0
        dispatcher.submit(entry())
        await dispatcher.stop()
        self.assertEqual(dispatcher.written, 1)

    async def test_stop_without_flush(self):
        dispatcher = AuditDispatcher(FusionAuditLog(), self.config, self.events)
        dispatcher.start()
        await dispatcher.stop(flush=False)
        self.assertFalse(dispatcher.is_running)


class TestDispatcherWithoutLoop(unittest.TestCase):

    def test_submit_queues(self):
        dispatcher = AuditDispatcher(FusionAuditLog())
        with self.assertLogs('geofusion.audit', 'WARNING'):
            dispatcher.submit(entry())
        self.assertEqual(dispatcher.pending, 1)
        self.assertFalse(dispatcher.is_running)
