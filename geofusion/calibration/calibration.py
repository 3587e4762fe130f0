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

"""Calibration profiles: capture, storage, selection and application

A profile holds the signed difference between a known reference and what
the sensors measured there. Applying a profile adds that difference;
removing it subtracts it again.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Iterable, Optional, Union

from ..config import CalibrationConfig
from ..coordinate.geodetic import haversine_distance
from ..core.data_structures import (
    CalibrationProfile,
    CalibrationSourceType,
    FusedPosition,
    GeoPoint,
    IMUData,
    Orientation,
)
from ..core.events import CalibrationEvent, EventBus, IMUReadingEvent
from ..core.exceptions import CalibrationError
from ..fusion.orientation import add_orientation
from ..io.imu_reader import stationary_bias

logger = logging.getLogger(__name__)

SOURCE_ALIASES = {'auto': CalibrationSourceType.AUTOMATIC}


@dataclass(frozen=True)
class CalibrationResult:
    """Profile produced by a calibration run with its quality metrics"""
    profile: CalibrationProfile
    position_error: float = 0.0      # meters between reference and measurement
    orientation_error: float = 0.0   # radians, largest attitude offset component
    samples: int = 0


@dataclass
class ImportReport:
    count: int = 0
    errors: list = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _source_type(value) -> CalibrationSourceType:
    if isinstance(value, CalibrationSourceType):
        return value
    if value in SOURCE_ALIASES:
        return SOURCE_ALIASES[value]
    return CalibrationSourceType(value)


def profile_from_dict(data: dict) -> CalibrationProfile:
    """Build a profile from its ``to_dict`` form

    The legacy ``bias: {lat, lon, alt}`` layout is accepted as well.
    """
    if 'position_bias' in data:
        bias = tuple(data['position_bias'])
    elif isinstance(data.get('bias'), dict):
        b = data['bias']
        if not isinstance(b.get('lat'), (int, float)) or not isinstance(b.get('lon'), (int, float)):
            raise ValueError("bias requires numeric lat and lon")
        bias = (b['lat'], b['lon'], b.get('alt') or 0.0)
    else:
        raise ValueError("missing position bias")

    offset = data.get('orientation_offset') or data.get('orientationOffset')
    reference = data.get('reference')
    kwargs = dict(
        name=data.get('name', 'Calibration'),
        position_bias=bias,
        source=_source_type(data.get('source', CalibrationSourceType.IMPORTED.value)),
        confidence=float(data.get('confidence', 0.5)),
        orientation_offset=Orientation(**offset) if offset else None,
        imu_bias=tuple(data['imu_bias']) if data.get('imu_bias') else None,
        reference=GeoPoint.from_dict(reference) if reference else None,
        metadata=dict(data.get('metadata') or {}),
    )
    if data.get('timestamp') is not None:
        kwargs['timestamp'] = float(data['timestamp'])
    if data.get('id'):
        kwargs['id'] = data['id']
    return CalibrationProfile(**kwargs)


class CalibrationStore:
    """Owned collection of calibration profiles

    Profiles are immutable; ``update`` stores a replacement. With ``path``
    the store is loaded from and saved to a JSON file on every change.
    """

    def __init__(self, events: Optional[EventBus] = None, path: Optional[Union[str, Path]] = None):
        self.events = events or EventBus()
        self.path = Path(path) if path is not None else None
        self._profiles: dict = {}
        if self.path is not None and self.path.exists():
            self._load()

    def __len__(self):
        return len(self._profiles)

    def __contains__(self, profile_id):
        return profile_id in self._profiles

    def add(self, profile: CalibrationProfile) -> CalibrationProfile:
        if profile.id in self._profiles:
            raise CalibrationError(f"Profile id already stored: {profile.id}")
        self._profiles[profile.id] = profile
        self._changed(profile.id, 'added')
        return profile

    def get(self, profile_id: str) -> Optional[CalibrationProfile]:
        return self._profiles.get(profile_id)

    def update(self, profile_id: str, **changes) -> CalibrationProfile:
        """Replace fields of a stored profile; returns the new profile"""
        current = self._profiles.get(profile_id)
        if current is None:
            raise CalibrationError(f"Unknown calibration profile: {profile_id}")
        if changes.get('id', profile_id) != profile_id:
            raise CalibrationError("Profile id cannot be changed")
        names = {f.name for f in fields(CalibrationProfile)}
        unknown = set(changes) - names
        if unknown:
            raise CalibrationError(f"Unknown profile fields: {sorted(unknown)}")
        updated = replace(current, **changes)
        self._profiles[profile_id] = updated
        self._changed(profile_id, 'updated')
        return updated

    def remove(self, profile_id: str) -> bool:
        if self._profiles.pop(profile_id, None) is None:
            return False
        self._changed(profile_id, 'removed')
        return True

    def clear(self) -> None:
        ids = list(self._profiles)
        self._profiles.clear()
        for profile_id in ids:
            self._changed(profile_id, 'removed')

    def list(self) -> list:
        """Profiles, newest first"""
        return sorted(self._profiles.values(), key=lambda p: p.timestamp, reverse=True)

    def get_best_match(self, location: Optional[GeoPoint] = None,
                       max_distance_m: Optional[float] = None) -> Optional[CalibrationProfile]:
        """Most relevant profile for a location

        Profiles whose reference lies within ``max_distance_m`` are ranked
        by ``confidence / (1 + distance_km)``. Without a location, or when
        no profile has a usable reference, the newest profile is returned.
        """
        if not self._profiles:
            return None
        if location is not None:
            best, best_score = None, float('-inf')
            for profile in self._profiles.values():
                if profile.reference is None:
                    continue
                d = haversine_distance(location, profile.reference)
                if max_distance_m is not None and d > max_distance_m:
                    continue
                score = profile.confidence / (1.0 + d / 1000.0)
                if score > best_score or (score == best_score and profile.timestamp > best.timestamp):
                    best, best_score = profile, score
            if best is not None:
                return best
            # TODO: replace recency with a site model once profiles carry a validity area
            logger.warning("No calibration profile with a reference near "
                           f"{location.lat:.5f}, {location.lon:.5f}; using the most recent one")
        else:
            logger.info("No location given; selecting the most recent calibration profile")
        return self.list()[0]

    def export_json(self) -> str:
        return json.dumps([p.to_dict() for p in self.list()], indent=2)

    def import_json(self, text: str) -> ImportReport:
        """Add profiles from ``export_json`` output

        Imported profiles get new ids, source IMPORTED and a confidence
        clamped to [0, 1]. Invalid entries are reported, not raised.
        """
        report = ImportReport()
        try:
            items = json.loads(text)
        except json.JSONDecodeError as e:
            report.errors.append(f"Invalid JSON: {e}")
            return report
        if not isinstance(items, list):
            report.errors.append("Invalid format: expected a list of profiles")
            return report

        for index, item in enumerate(items):
            try:
                if not isinstance(item, dict):
                    raise ValueError("not an object")
                data = dict(item)
                original_source = data.get('source')
                data.pop('id', None)
                data['source'] = CalibrationSourceType.IMPORTED.value
                data['confidence'] = min(1.0, max(0.0, float(data.get('confidence', 0.5))))
                data.setdefault('timestamp', time.time())
                profile = profile_from_dict(data)
                if original_source:
                    profile = replace(profile, metadata={**profile.metadata,
                                                         'original_source': original_source})
                self.add(profile)
                report.count += 1
            except (ValueError, TypeError, KeyError) as e:
                report.errors.append(f"Failed to import profile at index {index}: {e}")
        if report.errors:
            logger.warning(f"Imported {report.count} profiles with {len(report.errors)} errors")
        return report

    def _changed(self, profile_id: str, action: str):
        logger.debug(f"Calibration profile {profile_id} {action}")
        self.events.publish(CalibrationEvent(profile_id, action))
        if self.path is not None:
            self.save()

    def save(self, path: Optional[Union[str, Path]] = None) -> None:
        target = Path(path) if path is not None else self.path
        if target is None:
            raise CalibrationError("No path to save calibration profiles to")
        target.write_text(self.export_json())

    def _load(self):
        try:
            items = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load calibration profiles from {self.path}: {e}")
            return
        for item in items:
            try:
                profile = profile_from_dict(item)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping stored calibration profile: {e}")
                continue
            self._profiles[profile.id] = profile
        logger.info(f"Loaded {len(self._profiles)} calibration profiles from {self.path}")


class CalibrationManager:
    """Runs calibrations and applies profiles

    Parameters
    ----------
    store : CalibrationStore, optional
        Where produced profiles are kept
    config : CalibrationConfig, optional
        Confidences, auto-calibration window and match distance
    events : EventBus, optional
        Auto-calibration collects ``IMUReadingEvent`` readings from this bus
    """

    def __init__(self, store: Optional[CalibrationStore] = None,
                 config: Optional[CalibrationConfig] = None,
                 events: Optional[EventBus] = None):
        self.events = events or (store.events if store is not None else EventBus())
        self.store = store or CalibrationStore(self.events)
        self.config = config or CalibrationConfig()

    def manual_calibration(self, reference: GeoPoint, measured: GeoPoint,
                           orientation: Optional[Orientation] = None,
                           imu_bias: Optional[Iterable[float]] = None,
                           name: str = 'Manual Calibration') -> CalibrationResult:
        """Profile from a measurement taken at a surveyed reference point

        The attitude offset is the negated measured attitude, so a level,
        north-facing device reads zero after calibration.
        """
        bias = (
            reference.lat - measured.lat,
            reference.lon - measured.lon,
            (reference.alt or 0.0) - (measured.alt or 0.0),
        )
        offset = None
        if orientation is not None:
            offset = Orientation(-orientation.pitch, -orientation.roll, -orientation.yaw)
        profile = CalibrationProfile(
            name=name,
            position_bias=bias,
            source=CalibrationSourceType.MANUAL,
            confidence=self.config.manual_confidence,
            orientation_offset=offset,
            imu_bias=tuple(imu_bias) if imu_bias is not None else None,
            reference=reference,
            metadata={'reference': reference.to_dict(), 'measured': measured.to_dict()},
        )
        self.store.add(profile)
        error = haversine_distance(reference, measured)
        orientation_error = (max(abs(orientation.pitch), abs(orientation.roll), abs(orientation.yaw))
                             if orientation is not None else 0.0)
        logger.info(f"Manual calibration {profile.id}: offset {error:.2f} m")
        return CalibrationResult(profile, position_error=error, orientation_error=orientation_error)

    async def auto_calibration(self, duration: Optional[float] = None,
                               samples: Optional[Iterable[IMUData]] = None,
                               reference: Optional[GeoPoint] = None,
                               name: str = 'Auto Calibration') -> CalibrationResult:
        """Collect inertial readings for ``duration`` seconds and store a profile

        Readings published on the event bus during the window are collected
        together with any ``samples`` passed in. The position bias is zero;
        the IMU bias is the stationary mean of the collected readings.
        """
        duration = self.config.auto_duration if duration is None else duration
        if duration < 0:
            raise CalibrationError("Calibration duration cannot be negative")
        collected = list(samples or [])
        unsubscribe = self.events.subscribe(IMUReadingEvent, lambda e: collected.append(e.reading))
        logger.info(f"Auto-calibration collecting for {duration:.1f}s")
        try:
            await asyncio.sleep(duration)
        finally:
            unsubscribe()

        imu_bias = tuple(float(v) for v in stationary_bias(collected)) if collected else None
        profile = CalibrationProfile(
            name=name,
            position_bias=(0.0, 0.0, 0.0),
            source=CalibrationSourceType.AUTOMATIC,
            confidence=self.config.auto_confidence,
            imu_bias=imu_bias,
            reference=reference,
            metadata={'duration': duration, 'samples': len(collected)},
        )
        self.store.add(profile)
        logger.info(f"Auto calibration {profile.id} from {len(collected)} samples")
        return CalibrationResult(profile, samples=len(collected))

    def best_profile(self, location: Optional[GeoPoint] = None) -> Optional[CalibrationProfile]:
        return self.store.get_best_match(location, self.config.max_match_distance_m)

    @staticmethod
    def _shift(point: GeoPoint, profile: CalibrationProfile, sign: float) -> GeoPoint:
        dlat, dlon, dalt = profile.position_bias
        alt = point.alt + sign * dalt if point.alt is not None else None
        return GeoPoint(point.lat + sign * dlat, point.lon + sign * dlon, alt)

    def _transform(self, position, profile: CalibrationProfile, sign: float):
        if isinstance(position, FusedPosition):
            orientation = position.orientation
            if orientation is not None and profile.orientation_offset is not None:
                orientation = add_orientation(orientation, profile.orientation_offset, sign)
            return replace(position, position=self._shift(position.position, profile, sign),
                           orientation=orientation)
        if isinstance(position, GeoPoint):
            return self._shift(position, profile, sign)
        raise TypeError(f"Cannot calibrate {type(position).__name__}")

    def apply(self, position, profile: CalibrationProfile):
        """Add the profile's bias to a ``GeoPoint`` or ``FusedPosition``"""
        return self._transform(position, profile, 1.0)

    def remove_bias(self, position, profile: CalibrationProfile):
        """Inverse of ``apply``"""
        return self._transform(position, profile, -1.0)

    @staticmethod
    def apply_orientation(orientation: Orientation, profile: CalibrationProfile) -> Orientation:
        if profile.orientation_offset is None:
            return orientation
        return add_orientation(orientation, profile.orientation_offset)

    @staticmethod
    def apply_imu(reading: IMUData, profile: CalibrationProfile) -> IMUData:
        """Subtract the profile's accelerometer and gyro bias from a reading"""
        if profile.imu_bias is None:
            return reading
        b = profile.imu_bias
        return replace(
            reading,
            acceleration=tuple(a - o for a, o in zip(reading.acceleration, b[:3])),
            gyroscope=tuple(g - o for g, o in zip(reading.gyroscope, b[3:])),
        )
