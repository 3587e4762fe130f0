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

"""Correction stream manager

Owns the registry of differential correction sources, their connections
and live statistics. Callers only ever receive copies of sources and
snapshots of statistics.
"""

import asyncio
import copy
import json
import logging
import time
from dataclasses import fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from ..config import StreamConfig
from ..coordinate.geodetic import haversine_distance
from ..core.data_structures import (
    CorrectionData,
    CorrectionFormat,
    CorrectionSource,
    CorrectionStats,
    GeoPoint,
    SourceStatus,
)
from ..core.events import (
    CorrectionDataEvent,
    EventBus,
    SourceAddedEvent,
    SourceErrorEvent,
    SourceRemovedEvent,
    SourceStatusEvent,
    SourceTerminalErrorEvent,
)
from ..core.exceptions import SourceNotFound, StreamConnectionError
from ..io.nmea import split_sentences, validate_nmea_checksum
from ..io.rtcm import RTCMStreamParser
from .scheduling import ReconnectScheduler
from .transports import CorrectionTransport, default_transport_factory

logger = logging.getLogger(__name__)

TransportFactory = Callable[[CorrectionSource, StreamConfig], CorrectionTransport]

CONNECT_ERRORS = (StreamConnectionError, OSError, asyncio.TimeoutError, ValueError)


class CorrectionStreamManager:
    """Registry, connection lifecycle and selection of correction sources

    Parameters
    ----------
    config : StreamConfig, optional
        Backoff, scoring and transport settings
    events : EventBus, optional
        Channel for data, status and error events
    transport_factory : callable, optional
        ``factory(source, config) -> CorrectionTransport``; replaced by
        in-memory fakes in tests
    clock : callable
        POSIX time source for statistics
    """

    def __init__(self, config: Optional[StreamConfig] = None,
                 events: Optional[EventBus] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or StreamConfig()
        self.events = events or EventBus()
        self.transport_factory = transport_factory or default_transport_factory
        self.clock = clock

        self._sources: dict = {}
        self._stats: dict = {}
        self._transports: dict = {}
        self._readers: dict = {}
        self._failures: dict = {}
        self._default_id: Optional[str] = None
        self._position: Optional[GeoPoint] = None
        self._scheduler = ReconnectScheduler(self.config.reconnect_base_delay,
                                             self.config.max_reconnect_attempts)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def initialize(self, sources: Optional[Iterable[CorrectionSource]] = None,
                         default_source_id: Optional[str] = None) -> int:
        """Register sources and connect the default one

        Without ``sources`` the file named by ``config.sources_file`` is
        loaded when it exists. Returns the number of registered sources.
        """
        if sources is not None:
            for source in sources:
                self.add_source(source)
        elif self.config.sources_file and Path(self.config.sources_file).exists():
            self.load_sources(self.config.sources_file)

        if default_source_id is not None:
            self.set_default_source(default_source_id)
        if self._default_id is not None:
            await self.connect(self._default_id)
        logger.info(f"Correction stream manager initialized with {len(self._sources)} sources")
        return len(self._sources)

    def add_source(self, source: CorrectionSource) -> str:
        if source.id in self._sources:
            raise ValueError(f"Source id already registered: {source.id}")
        stored = copy.deepcopy(source)
        stored.active = False
        stored.last_status = SourceStatus.DISCONNECTED
        self._sources[stored.id] = stored
        logger.info(f"Added correction source {stored.name} ({stored.id})")
        self.events.publish(SourceAddedEvent(stored.id, stored.name))
        return stored.id

    def update_source(self, source_id: str, **changes) -> CorrectionSource:
        """Replace fields of a registered source; returns a copy of the new value"""
        current = self._require(source_id)
        if 'id' in changes and changes['id'] != source_id:
            raise ValueError("Source id cannot be changed")
        names = {f.name for f in fields(CorrectionSource)}
        unknown = set(changes) - names
        if unknown:
            raise ValueError(f"Unknown source fields: {sorted(unknown)}")
        self._sources[source_id] = replace(current, **changes)
        logger.debug(f"Updated source {source_id}: {sorted(changes)}")
        return copy.deepcopy(self._sources[source_id])

    async def remove_source(self, source_id: str) -> bool:
        """Disconnect and forget a source; pending retries are cancelled"""
        if source_id not in self._sources:
            return False
        self._scheduler.cancel(source_id)
        await self._teardown(source_id)
        del self._sources[source_id]
        self._stats.pop(source_id, None)
        self._failures.pop(source_id, None)
        if self._default_id == source_id:
            self._default_id = None
        logger.info(f"Removed correction source {source_id}")
        self.events.publish(SourceRemovedEvent(source_id))
        return True

    def get_source(self, source_id: str) -> Optional[CorrectionSource]:
        source = self._sources.get(source_id)
        return copy.deepcopy(source) if source is not None else None

    def get_sources(self) -> list:
        return [copy.deepcopy(s) for s in self._sources.values()]

    def get_stats(self, source_id: str) -> Optional[CorrectionStats]:
        stats = self._stats.get(source_id)
        return stats.snapshot(self.clock()) if stats is not None else None

    def set_default_source(self, source_id: str) -> None:
        self._require(source_id)
        self._default_id = source_id

    def get_default_source(self) -> Optional[CorrectionSource]:
        return self.get_source(self._default_id) if self._default_id else None

    def is_connected(self, source_id: str) -> bool:
        task = self._readers.get(source_id)
        return task is not None and not task.done()

    def is_retry_pending(self, source_id: str) -> bool:
        return self._scheduler.is_pending(source_id)

    def _require(self, source_id: str) -> CorrectionSource:
        try:
            return self._sources[source_id]
        except KeyError:
            raise SourceNotFound(source_id) from None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def position(self) -> Optional[GeoPoint]:
        return self._position

    def update_position(self, lat: float, lon: float, alt: Optional[float] = None) -> None:
        """Receiver position used to gate sources by distance"""
        self._position = GeoPoint(lat, lon, alt)

    def distance_km(self, source: CorrectionSource,
                    position: Optional[GeoPoint] = None) -> Optional[float]:
        position = position or self._position
        if position is None or source.location is None:
            return None
        return haversine_distance(position, source.location) / 1000.0

    def is_usable(self, source: CorrectionSource, position: Optional[GeoPoint] = None) -> bool:
        """False when the source declares a range and the receiver is beyond it"""
        if source.max_distance_km is None:
            return True
        d = self.distance_km(source, position)
        return d is None or d <= source.max_distance_km

    def score(self, source: CorrectionSource, position: Optional[GeoPoint] = None) -> float:
        """Weighted blend of inverse distance and normalised priority"""
        d = self.distance_km(source, position)
        proximity = 0.0 if d is None else 1.0 / (1.0 + d)
        return (self.config.distance_weight * proximity
                + self.config.priority_weight * source.priority / self.config.priority_scale)

    def rank_sources(self, lat: float, lon: float, alt: Optional[float] = None,
                     exclude: Iterable[str] = ()) -> list:
        """Usable sources, best first"""
        position = GeoPoint(lat, lon, alt)
        excluded = set(exclude)
        candidates = [s for s in self._sources.values()
                      if s.id not in excluded and self.is_usable(s, position)]
        candidates.sort(key=lambda s: self.score(s, position), reverse=True)
        return [copy.deepcopy(s) for s in candidates]

    def find_best_source(self, lat: float, lon: float, alt: Optional[float] = None,
                         exclude: Iterable[str] = ()) -> Optional[CorrectionSource]:
        ranked = self.rank_sources(lat, lon, alt, exclude)
        return ranked[0] if ranked else None

    async def auto_connect(self, lat: float, lon: float,
                           alt: Optional[float] = None) -> Optional[CorrectionSource]:
        """Connect to the best usable source, falling through on failure

        Returns the connected source or None when every candidate failed.
        """
        self.update_position(lat, lon, alt)
        tried = []
        while True:
            candidate = self.find_best_source(lat, lon, alt, exclude=tried)
            if candidate is None:
                logger.warning(f"No usable correction source near {lat:.5f}, {lon:.5f}")
                return None
            tried.append(candidate.id)
            if await self.connect(candidate.id, retry=False):
                return self.get_source(candidate.id)
            logger.info(f"Falling back from {candidate.name} to next-best source")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, source_id: str, retry: bool = True) -> bool:
        """Open a source's stream

        On failure a retry is scheduled with exponential backoff unless
        ``retry`` is False. Returns True when the stream is open.
        """
        self._require(source_id)
        if self.is_connected(source_id):
            return True
        self._scheduler.cancel(source_id)
        self._failures[source_id] = 0
        return await self._attempt(source_id, retry)

    async def _attempt(self, source_id: str, retry: bool) -> bool:
        source = self._sources.get(source_id)
        if source is None:
            return False
        if not self.is_usable(source):
            d = self.distance_km(source)
            message = f"Receiver {d:.1f} km away, beyond {source.max_distance_km} km range"
            logger.warning(f"Not connecting {source.name}: {message}")
            self._set_status(source, SourceStatus.DISCONNECTED, message)
            self.events.publish(SourceErrorEvent(source_id, message, self._failures.get(source_id, 0)))
            return False

        attempt = self._failures.get(source_id, 0) + 1
        logger.info(f"Connecting to {source.name} (attempt {attempt}/{self.config.max_reconnect_attempts})")
        transport = None
        try:
            transport = self.transport_factory(copy.deepcopy(source), self.config)
            await transport.open()
        except CONNECT_ERRORS as e:
            if transport is not None:
                await self._close_transport(transport)
            self._on_failure(source_id, e, attempt, retry)
            return False

        if source_id not in self._sources:
            # removed while the connection was being opened
            await self._close_transport(transport)
            return False

        self._failures[source_id] = 0
        self._transports[source_id] = transport
        stats = self._stats.setdefault(source_id, CorrectionStats())
        stats.connected_since = self.clock()
        source.active = True
        source.last_used = datetime.now(timezone.utc)
        self._set_status(source, SourceStatus.CONNECTED, None)
        self._readers[source_id] = asyncio.get_running_loop().create_task(
            self._read_loop(source_id, transport), name=f"corrections-{source_id}")
        logger.info(f"Connected to correction source {source.name}")
        return True

    def _on_failure(self, source_id: str, error: Exception, attempt: int, retry: bool):
        source = self._sources.get(source_id)
        if source is None:
            return
        self._failures[source_id] = attempt
        stats = self._stats.setdefault(source_id, CorrectionStats())
        stats.errors += 1
        stats.last_error = str(error)
        self._set_status(source, SourceStatus.ERROR, str(error))

        if self._scheduler.exhausted(attempt):
            logger.error(f"Giving up on {source.name} after {attempt} attempts: {error}")
            self.events.publish(SourceTerminalErrorEvent(source_id, str(error), attempt))
            return

        logger.warning(f"Connection to {source.name} failed (attempt {attempt}): {error}")
        self.events.publish(SourceErrorEvent(source_id, str(error), attempt))
        if retry:
            delay = self._scheduler.delay_for(attempt)
            self._scheduler.schedule(source_id, delay, lambda: self._attempt(source_id, True))

    async def disconnect(self, source_id: str) -> bool:
        """Close a source's stream and cancel its pending retry"""
        self._require(source_id)
        self._scheduler.cancel(source_id)
        was_connected = await self._teardown(source_id)
        self._set_status(self._sources[source_id], SourceStatus.DISCONNECTED, None)
        if was_connected:
            logger.info(f"Disconnected from {self._sources[source_id].name}")
        return was_connected

    async def close(self) -> None:
        """Disconnect everything; no retry fires afterwards"""
        self._scheduler.cancel_all()
        for source_id in list(self._sources):
            await self.disconnect(source_id)

    async def _teardown(self, source_id: str) -> bool:
        task = self._readers.pop(source_id, None)
        transport = self._transports.pop(source_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await self._close_transport(transport)

        stats = self._stats.get(source_id)
        if stats is not None and stats.connected_since is not None:
            stats.uptime += max(0.0, self.clock() - stats.connected_since)
            stats.connected_since = None
        source = self._sources.get(source_id)
        if source is not None:
            source.active = False
        return transport is not None

    async def _close_transport(self, transport: CorrectionTransport):
        try:
            await transport.close()
        except CONNECT_ERRORS as e:
            logger.debug(f"Error closing {transport!r}: {e}")

    def _set_status(self, source: CorrectionSource, status: SourceStatus, error: Optional[str]):
        changed = source.last_status is not status
        source.last_status = status
        source.error = error
        if changed:
            self.events.publish(SourceStatusEvent(source.id, status))

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    async def _read_loop(self, source_id: str, transport: CorrectionTransport):
        fmt = self._sources[source_id].format
        framer = RTCMStreamParser() if fmt is CorrectionFormat.RTCM3 else None
        text = ''
        try:
            while True:
                chunk = await transport.read()
                if not chunk:
                    if transport.finite:
                        logger.info(f"Correction replay for {source_id} finished")
                        await self._teardown(source_id)
                        self._set_status(self._sources[source_id], SourceStatus.DISCONNECTED, None)
                        return
                    raise StreamConnectionError("Stream closed by remote end")

                stats = self._stats[source_id]
                stats.bytes_received += len(chunk)
                if framer is not None:
                    for frame in framer.feed(chunk):
                        self._deliver(source_id, frame.raw, fmt, (frame.message_type,),
                                      frame.crc_valid)
                elif fmt is CorrectionFormat.NMEA:
                    sentences, text = split_sentences(text + chunk.decode('ascii', errors='replace'))
                    for sentence in sentences:
                        key = sentence[1:6] if len(sentence) >= 6 else sentence
                        self._deliver(source_id, sentence.encode('ascii', errors='replace'), fmt,
                                      (key,), validate_nmea_checksum(sentence))
                else:
                    self._deliver(source_id, bytes(chunk), fmt, (), False)
        except CONNECT_ERRORS as e:
            logger.warning(f"Correction stream {source_id} dropped: {e}")
            await self._teardown(source_id)
            self._failures[source_id] = 0
            self._on_failure(source_id, e, 1, True)

    def _deliver(self, source_id, payload: bytes, fmt, message_types: tuple, valid: bool):
        now = self.clock()
        stats = self._stats[source_id]
        stats.messages_received += 1
        stats.last_message_time = now
        for mt in message_types:
            stats.message_types[mt] = stats.message_types.get(mt, 0) + 1
        data = CorrectionData(
            source_id=source_id,
            timestamp=now,
            payload=payload,
            format=fmt,
            message_types=message_types,
            size=len(payload),
            checksum_valid=valid,
        )
        logger.trace(f"{source_id}: {fmt.value} message {message_types} ({len(payload)} bytes)")
        self.events.publish(CorrectionDataEvent(data))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_sources(self, filepath: Union[str, Path]) -> None:
        """Write the registry as JSON; credentials are not stored"""
        data = {
            'default': self._default_id,
            'sources': [s.to_dict(include_credentials=False) for s in self._sources.values()],
        }
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)
        logger.info(f"Saved {len(self._sources)} correction sources to {filepath}")

    def load_sources(self, filepath: Union[str, Path]) -> int:
        """Register sources from a saved file; ids already known are skipped"""
        with open(filepath) as f:
            data = json.load(f)
        added = 0
        for item in data.get('sources', []):
            if item.get('id') in self._sources:
                continue
            self.add_source(CorrectionSource.from_dict(item))
            added += 1
        default = data.get('default')
        if default and default in self._sources and self._default_id is None:
            self._default_id = default
        logger.info(f"Loaded {added} correction sources from {filepath}")
        return added
