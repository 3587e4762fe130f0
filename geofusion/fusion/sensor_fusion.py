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

"""Temporal sensor fusion of GNSS fixes, inertial readings and anchors

Each new reading triggers one fusion pass over the freshest record of each
kind. Freshness and ordering use the records' own timestamps: "now" is the
injected clock when given, otherwise the newest timestamp seen so far.
"""

import logging
import math
from dataclasses import fields, replace
from typing import Callable, Iterable, Optional

from ..config import FusionConfig
from ..coordinate.geodetic import destination_point, local_offset
from ..core.data_structures import (
    FusedPosition,
    GeoPoint,
    GNSSData,
    IMUData,
    OCRAnchor,
)
from ..core.events import (
    AnchorDetectionEvent,
    EventBus,
    FusedPositionEvent,
    GNSSReadingEvent,
    IMUReadingEvent,
)
from .orientation import orientation_from_imu
from .readers import SensorReader

logger = logging.getLogger(__name__)

DEAD_RECKONING = 'deadReckoning'
ANCHOR_SOURCE = 'OCR'


def _is_replay(new, last) -> bool:
    """True when ``new`` is older than, or the same record as, ``last``"""
    if last is None:
        return False
    if new.timestamp < last.timestamp:
        return True
    return new.timestamp == last.timestamp and new.source == last.source


class SensorFusion:
    """Fusion loop

    Parameters
    ----------
    config : FusionConfig, optional
        Freshness windows and blending constants
    events : EventBus, optional
        Bus the readers publish on and fused positions are emitted to
    gnss_reader, imu_reader, anchor_detector : SensorReader, optional
        Upstream readers started and stopped with the loop
    clock : callable, optional
        POSIX time source; by default the newest record timestamp is "now"

    Examples
    --------
    >>> fusion = SensorFusion()
    >>> fused = fusion.on_gnss(GNSSData(48.85, 2.35, timestamp=100.0, accuracy=3.0))
    >>> fused.sources
    ('GNSS',)
    """

    def __init__(self, config: Optional[FusionConfig] = None,
                 events: Optional[EventBus] = None,
                 gnss_reader: Optional[SensorReader] = None,
                 imu_reader: Optional[SensorReader] = None,
                 anchor_detector: Optional[SensorReader] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.config = config or FusionConfig()
        self.events = events or EventBus()
        self.gnss_reader = gnss_reader
        self.imu_reader = imu_reader
        self.anchor_detector = anchor_detector
        self.clock = clock
        self._subscriptions = []
        self.reset()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def readers(self) -> list:
        return [r for r in (self.gnss_reader, self.imu_reader, self.anchor_detector) if r is not None]

    @property
    def is_running(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        """Subscribe to reading events and start every reader"""
        if self.is_running:
            return
        self._subscriptions = [
            self.events.subscribe(GNSSReadingEvent, lambda e: self.on_gnss(e.reading)),
            self.events.subscribe(IMUReadingEvent, lambda e: self.on_imu(e.reading)),
            self.events.subscribe(AnchorDetectionEvent, lambda e: self.on_anchors(e.anchors)),
        ]
        for reader in self.readers:
            reader.start()
        logger.info(f"Sensor fusion started with {len(self.readers)} readers")

    def stop(self) -> None:
        """Stop the GNSS reader, the inertial reader and the anchor detector"""
        for reader in self.readers:
            reader.stop()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        logger.info("Sensor fusion stopped")

    def reset(self) -> None:
        self._last_gnss: Optional[GNSSData] = None
        self._prev_gnss: Optional[GNSSData] = None
        self._last_imu: Optional[IMUData] = None
        self._anchors: dict = {}
        self._last_position: Optional[FusedPosition] = None
        self._latest_time: Optional[float] = None

    def update_config(self, **changes) -> FusionConfig:
        names = {f.name for f in fields(FusionConfig)}
        unknown = set(changes) - names
        if unknown:
            raise ValueError(f"Unknown fusion settings: {sorted(unknown)}")
        self.config = replace(self.config, **changes)
        return self.config

    def subscribe(self, handler: Callable[[FusedPosition], object]) -> Callable[[], None]:
        """Call ``handler`` with every fused position; returns an unsubscribe callable"""
        return self.events.subscribe(FusedPositionEvent, lambda e: handler(e.position))

    @property
    def last_position(self) -> Optional[FusedPosition]:
        return self._last_position

    @property
    def last_gnss(self) -> Optional[GNSSData]:
        return self._last_gnss

    @property
    def last_imu(self) -> Optional[IMUData]:
        return self._last_imu

    @property
    def anchors(self) -> tuple:
        return tuple(self._anchors.values())

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_gnss(self, reading: GNSSData) -> Optional[FusedPosition]:
        if _is_replay(reading, self._last_gnss):
            logger.debug(f"Ignoring GNSS reading at {reading.timestamp} (not newer)")
            return None
        self._prev_gnss, self._last_gnss = self._last_gnss, reading
        self._observe(reading.timestamp)
        return self._fuse()

    def on_imu(self, reading: IMUData) -> Optional[FusedPosition]:
        if _is_replay(reading, self._last_imu):
            return None
        self._last_imu = reading
        self._observe(reading.timestamp)
        return self._fuse()

    def on_anchors(self, anchors: Iterable[OCRAnchor]) -> Optional[FusedPosition]:
        changed = False
        for anchor in anchors:
            known = self._anchors.get(anchor.text)
            if known is not None and anchor.timestamp <= known.timestamp:
                continue
            self._anchors[anchor.text] = anchor
            self._observe(anchor.timestamp)
            changed = True
        if not changed:
            return None
        return self._fuse()

    def _observe(self, timestamp: float):
        if self._latest_time is None or timestamp > self._latest_time:
            self._latest_time = timestamp

    def _now(self) -> float:
        if self.clock is not None:
            return self.clock()
        return self._latest_time if self._latest_time is not None else 0.0

    # ------------------------------------------------------------------
    # Fusion pass
    # ------------------------------------------------------------------

    def fresh_inputs(self) -> tuple:
        """(gnss, imu, anchors) within their freshness windows"""
        now = self._now()
        cfg = self.config
        gnss = self._last_gnss
        if gnss is not None and now - gnss.timestamp > cfg.max_gnss_age:
            gnss = None
        imu = self._last_imu
        if imu is not None and now - imu.timestamp > cfg.max_imu_age:
            imu = None
        anchors = [a for a in self._anchors.values() if now - a.timestamp <= cfg.max_anchor_age]
        return gnss, imu, anchors

    def _fuse(self) -> Optional[FusedPosition]:
        gnss, imu, anchors = self.fresh_inputs()

        if gnss is not None:
            fused = self._fuse_gnss(gnss, imu)
        elif imu is not None and self._last_position is not None:
            fused = self._dead_reckon(self._last_position, imu)
        elif anchors:
            fused = self._position_from_anchor(self._best_anchor(anchors))
        else:
            logger.debug("No fresh inputs, fusion pass skipped")
            return None

        if anchors:
            fused = self._apply_anchors(fused, anchors)

        self._last_position = fused
        logger.trace(f"Fused {fused.sources} at {fused.timestamp}: "
                     f"{fused.position.lat:.7f}, {fused.position.lon:.7f} +/- {fused.accuracy:.2f} m")
        self.events.publish(FusedPositionEvent(fused))
        return fused

    def _gnss_velocity(self, gnss: GNSSData) -> Optional[tuple]:
        if gnss.speed is not None and gnss.course is not None:
            course = math.radians(gnss.course)
            return (gnss.speed * math.sin(course), gnss.speed * math.cos(course))
        prev = self._prev_gnss
        if prev is not None and gnss.timestamp > prev.timestamp:
            east, north = local_offset(prev.point, gnss.point)
            dt = gnss.timestamp - prev.timestamp
            return (east / dt, north / dt)
        return None

    def _fuse_gnss(self, gnss: GNSSData, imu: Optional[IMUData]) -> FusedPosition:
        accuracy = gnss.accuracy if gnss.accuracy is not None else self.config.default_gnss_accuracy
        position = gnss.point
        sources = [gnss.source]
        metadata = {'gnss': {k: v for k, v in (('accuracy', gnss.accuracy), ('hdop', gnss.hdop),
                                               ('satellites', gnss.satellites),
                                               ('fix_quality', gnss.fix_quality))
                             if v is not None}}
        orientation = None

        if imu is not None:
            previous_yaw = (self._last_position.orientation.yaw
                            if self._last_position is not None and self._last_position.orientation
                            else None)
            orientation = orientation_from_imu(imu, yaw=previous_yaw)
            prior = self._last_position
            if prior is not None:
                a = self.config.complementary_alpha
                alt = position.alt
                if gnss.altitude is not None and prior.position.alt is not None:
                    alt = a * gnss.altitude + (1 - a) * prior.position.alt
                position = GeoPoint(
                    a * gnss.latitude + (1 - a) * prior.position.lat,
                    a * gnss.longitude + (1 - a) * prior.position.lon,
                    alt,
                )
                sources.append('IMU')
                metadata['imu'] = {'timestamp': imu.timestamp}
                metadata['blend_alpha'] = a

        return FusedPosition(
            position=position,
            accuracy=accuracy,
            timestamp=gnss.timestamp,
            sources=tuple(sources),
            orientation=orientation,
            metadata=metadata,
            velocity=self._gnss_velocity(gnss),
        )

    def _dead_reckon(self, last: FusedPosition, imu: IMUData) -> FusedPosition:
        """Constant-velocity propagation of the last fused position"""
        dt = max(0.0, imu.timestamp - last.timestamp)
        position = last.position
        if last.velocity is not None and dt > 0:
            ve, vn = last.velocity
            position = destination_point(position, ve * dt, vn * dt)
        base = max(last.accuracy, self.config.dr_min_accuracy)
        accuracy = min(base * self.config.dr_growth_rate ** dt, self.config.dr_max_accuracy)
        previous_yaw = last.orientation.yaw if last.orientation is not None else None
        return FusedPosition(
            position=position,
            accuracy=max(accuracy, base),
            timestamp=imu.timestamp,
            sources=('IMU', DEAD_RECKONING),
            orientation=orientation_from_imu(imu, yaw=previous_yaw),
            metadata={'dead_reckoning': {'elapsed': dt, 'from': last.timestamp}},
            velocity=last.velocity,
        )

    @staticmethod
    def _best_anchor(anchors) -> OCRAnchor:
        return max(anchors, key=lambda a: a.confidence)

    def _position_from_anchor(self, anchor: OCRAnchor) -> FusedPosition:
        return FusedPosition(
            position=anchor.position,
            accuracy=self.config.anchor_seed_accuracy,
            timestamp=anchor.timestamp,
            sources=(ANCHOR_SOURCE,),
            anchors=(anchor,),
        )

    def _apply_anchors(self, fused: FusedPosition, anchors) -> FusedPosition:
        best = self._best_anchor(anchors)
        sources = fused.sources if ANCHOR_SOURCE in fused.sources else fused.sources + (ANCHOR_SOURCE,)
        corrections = list(fused.metadata.get('corrections', []))
        cfg = self.config

        if best.confidence > cfg.anchor_override_confidence:
            corrections.append({'type': 'anchor_override', 'value': best.confidence, 'source': best.text})
            return replace(fused, position=best.position, accuracy=cfg.anchor_override_accuracy,
                           anchors=(best,), sources=sources,
                           metadata={**fused.metadata, 'corrections': corrections})

        p, q = fused.position, best.position
        if p.alt is not None and q.alt is not None:
            alt = (p.alt + q.alt) / 2.0
        else:
            alt = p.alt if p.alt is not None else q.alt
        corrections.append({'type': 'anchor_average', 'value': best.confidence, 'source': best.text})
        return replace(fused,
                       position=GeoPoint((p.lat + q.lat) / 2.0, (p.lon + q.lon) / 2.0, alt),
                       accuracy=max(fused.accuracy, cfg.anchor_min_accuracy),
                       anchors=(best,), sources=sources,
                       metadata={**fused.metadata, 'corrections': corrections})
