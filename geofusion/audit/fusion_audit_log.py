# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Audit trail of fused positions

``FusionAuditLog`` is an in-memory sink with integrity hashes.
``AuditDispatcher`` sits between the fusion loop and any sink: entries are
queued and written on a background task, failed writes are retried with
backoff and never reach the caller.
"""

import asyncio
import copy
import hashlib
import hmac
import json
import logging
from collections import OrderedDict
from typing import Optional, Protocol, runtime_checkable

import pandas as pd

from ..config import AuditConfig
from ..core.data_structures import (
    CalibrationProfile,
    FusedPosition,
    FusionLogEntry,
    FusionStatus,
)
from ..core.events import AuditFailureEvent, EventBus
from ..core.exceptions import AuditSinkError

logger = logging.getLogger(__name__)

REDACTED = '[REDACTED]'
SENSITIVE_KEYS = {'password', 'passwd', 'secret', 'token', 'api_key', 'apikey',
                  'authorization', 'credentials', 'username'}


@runtime_checkable
class AuditSink(Protocol):
    """Destination for fusion log entries; returns an opaque receipt id"""

    async def write(self, entry: FusionLogEntry) -> str:
        ...


def sanitize(value):
    """Copy of ``value`` with credential-like keys redacted at any depth"""
    if isinstance(value, dict):
        return {k: REDACTED if str(k).lower() in SENSITIVE_KEYS else sanitize(v)
                for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def build_log_entry(fused: FusedPosition,
                    profile: Optional[CalibrationProfile] = None,
                    correction_source: Optional[str] = None,
                    status: Optional[FusionStatus] = None,
                    offline: bool = False) -> FusionLogEntry:
    """Snapshot a fused position with its provenance

    Without an explicit ``status``: OFFLINE when ``offline`` is set,
    CONFLICTED when an anchor disagreed with the fix and had to be averaged
    in, CALIBRATED when a profile was applied, RAW otherwise.
    """
    corrections = fused.metadata.get('corrections', [])
    if status is None:
        if offline:
            status = FusionStatus.OFFLINE
        elif any(c.get('type') == 'anchor_average' for c in corrections):
            status = FusionStatus.CONFLICTED
        elif profile is not None:
            status = FusionStatus.CALIBRATED
        else:
            status = FusionStatus.RAW

    anchor = None
    if fused.anchors:
        best = max(fused.anchors, key=lambda a: a.confidence)
        anchor = {'text': best.text, 'confidence': best.confidence,
                  'classification': best.classification}

    return FusionLogEntry(
        position=fused.position,
        accuracy=fused.accuracy,
        sources=tuple(fused.sources),
        status=status,
        timestamp=fused.timestamp,
        calibration_profile=profile.id if profile is not None else None,
        correction_source=correction_source,
        anchor=anchor,
        orientation=fused.orientation,
        metadata=copy.deepcopy(fused.metadata),
    )


class FusionAuditLog:
    """In-memory audit sink

    Entries are kept newest first and capped at ``max_entries``. Each entry
    is hashed on write (HMAC-SHA256 with ``secret_key``, plain SHA-256
    otherwise); export references are not part of the hash.
    """

    def __init__(self, config: Optional[AuditConfig] = None, secret_key: Optional[str] = None):
        self.config = config or AuditConfig()
        self.secret_key = secret_key if secret_key is not None else self.config.secret_key
        self._entries: list = []

    def __len__(self):
        return len(self._entries)

    def _digest(self, entry: FusionLogEntry) -> str:
        data = entry.to_dict()
        data.pop('export_ids', None)
        message = json.dumps(data, sort_keys=True, default=str, separators=(',', ':')).encode()
        if self.secret_key:
            return hmac.new(self.secret_key.encode(), message, hashlib.sha256).hexdigest()
        return hashlib.sha256(message).hexdigest()

    async def write(self, entry: FusionLogEntry) -> str:
        return self.record(entry)

    def record(self, entry: FusionLogEntry) -> str:
        """Store a sanitised copy of ``entry``; returns its id"""
        if not isinstance(entry, FusionLogEntry):
            raise AuditSinkError(f"Not a fusion log entry: {type(entry).__name__}")
        stored = copy.deepcopy(entry)
        stored.metadata = sanitize(stored.metadata)
        stored.hash = self._digest(stored)
        self._entries.insert(0, stored)
        if len(self._entries) > self.config.max_entries:
            del self._entries[self.config.max_entries:]
        logger.debug(f"Audit entry {stored.id} ({stored.status.value})")
        return stored.id

    def verify_integrity(self, entry: FusionLogEntry) -> bool:
        return entry.hash is not None and hmac.compare_digest(entry.hash, self._digest(entry))

    def verify_all(self) -> list:
        """Ids of stored entries whose hash no longer matches"""
        return [e.id for e in self._entries if not self.verify_integrity(e)]

    def get_logs(self, limit: int = 100, offset: int = 0) -> list:
        return self._entries[offset:offset + limit]

    def get_log(self, entry_id: str) -> Optional[FusionLogEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def add_export_reference(self, entry_id: str, export_id: str) -> bool:
        entry = self.get_log(entry_id)
        if entry is None:
            return False
        entry.export_ids.append(export_id)
        return True

    def search_logs(self, start_time: Optional[float] = None, end_time: Optional[float] = None,
                    max_accuracy: Optional[float] = None, status: Optional[FusionStatus] = None,
                    source: Optional[str] = None, calibration_profile: Optional[str] = None,
                    text: Optional[str] = None, limit: int = 100, offset: int = 0) -> list:
        """Filter entries; ``text`` matches the anchor text or metadata notes"""
        needle = text.lower() if text else None

        def matches(e: FusionLogEntry) -> bool:
            if start_time is not None and e.timestamp < start_time:
                return False
            if end_time is not None and e.timestamp > end_time:
                return False
            if max_accuracy is not None and e.accuracy > max_accuracy:
                return False
            if status is not None and e.status != status:
                return False
            if source is not None and source not in e.sources:
                return False
            if calibration_profile is not None and e.calibration_profile != calibration_profile:
                return False
            if needle:
                anchor_text = (e.anchor or {}).get('text') or ''
                notes = str(e.metadata.get('notes') or '')
                if needle not in anchor_text.lower() and needle not in notes.lower():
                    return False
            return True

        return [e for e in self._entries if matches(e)][offset:offset + limit]

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for e in self._entries:
            rows.append({
                'id': e.id,
                'timestamp': e.timestamp,
                'lat': e.position.lat,
                'lon': e.position.lon,
                'alt': e.position.alt,
                'accuracy': e.accuracy,
                'sources': ';'.join(e.sources),
                'status': e.status.value,
                'calibration_profile': e.calibration_profile,
                'correction_source': e.correction_source,
                'anchor_text': (e.anchor or {}).get('text'),
                'hash': e.hash,
            })
        columns = ['id', 'timestamp', 'lat', 'lon', 'alt', 'accuracy', 'sources', 'status',
                   'calibration_profile', 'correction_source', 'anchor_text', 'hash']
        return pd.DataFrame(rows, columns=columns)

    def get_stats(self) -> dict:
        """Counts by status and source plus accuracy summary"""
        df = self.to_dataframe()
        by_status = {s.value: 0 for s in FusionStatus}
        by_status.update(df['status'].value_counts().to_dict())
        by_source = {}
        if len(df):
            sources = df['sources'].str.split(';').explode()
            by_source = sources[sources.astype(bool)].value_counts().to_dict()
            accuracy = {'min': float(df['accuracy'].min()), 'max': float(df['accuracy'].max()),
                        'avg': float(df['accuracy'].mean())}
        else:
            accuracy = {'min': 0.0, 'max': 0.0, 'avg': 0.0}
        return {'total': len(df), 'by_status': by_status,
                'by_source': {k: int(v) for k, v in by_source.items()},
                'accuracy': accuracy}

    def export(self, format: str = 'json') -> str:
        if format == 'json':
            return json.dumps([dict(e.to_dict(), hash=e.hash) for e in self._entries],
                              indent=2, default=str)
        if format == 'csv':
            return self.to_dataframe().to_csv(index=False)
        raise ValueError(f"Unsupported export format: {format}")

    def clear(self) -> None:
        self._entries.clear()


class AuditDispatcher:
    """Background writer in front of an ``AuditSink``

    Parameters
    ----------
    sink : AuditSink
        Destination of the entries
    config : AuditConfig, optional
        ``max_retries`` attempts per entry, ``retry_delay`` doubled per retry
    events : EventBus, optional
        Receives an ``AuditFailureEvent`` for every failed attempt

    Sink receipts of the latest ``max_entries`` writes are kept in
    ``receipts``, oldest first.
    """

    def __init__(self, sink: AuditSink, config: Optional[AuditConfig] = None,
                 events: Optional[EventBus] = None):
        self.sink = sink
        self.config = config or AuditConfig()
        self.events = events or EventBus()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.written = 0
        self.dropped = 0
        self.receipts: OrderedDict = OrderedDict()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if not self.is_running:
            self._task = asyncio.get_running_loop().create_task(self._run(), name='audit-dispatcher')

    async def stop(self, flush: bool = True) -> None:
        """Stop the writer, optionally after the queue has drained"""
        if flush and self.is_running:
            await self._queue.join()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def submit(self, entry: FusionLogEntry) -> None:
        """Queue ``entry``; returns immediately"""
        self._queue.put_nowait(entry)
        if not self.is_running:
            try:
                self.start()
            except RuntimeError:
                logger.warning(f"Audit entry {entry.id} queued without a running event loop")

    async def flush(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._deliver(entry)
            finally:
                self._queue.task_done()

    async def _deliver(self, entry: FusionLogEntry) -> None:
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                receipt = await self.sink.write(entry)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                final = attempt == attempts
                error = str(e) or type(e).__name__
                self.events.publish(AuditFailureEvent(entry.id, error, attempt, dropped=final))
                if final:
                    self.dropped += 1
                    logger.error(f"Dropping audit entry {entry.id} after {attempt} attempts: {error}")
                    return
                delay = self.config.retry_delay * 2 ** (attempt - 1)
                logger.warning(f"Audit write for {entry.id} failed (attempt {attempt}), "
                               f"retrying in {delay:.1f}s: {error}")
                await asyncio.sleep(delay)
            else:
                self.written += 1
                self.receipts[entry.id] = receipt
                while len(self.receipts) > self.config.max_entries:
                    self.receipts.popitem(last=False)
                return
