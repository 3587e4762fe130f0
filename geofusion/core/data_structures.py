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

"""Core data structures for positioning, corrections and fusion"""

import copy
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np

from .constants import R2D


def _frozen_array(values, size=None):
    arr = np.array(values, dtype=float)
    if size is not None and arr.shape != (size,):
        raise ValueError(f"Expected {size} values, got shape {arr.shape}")
    arr.setflags(write=False)
    return arr


class SolutionStatus(Enum):
    """Solution-quality verdict of the position solver"""
    VALID = 'valid'
    DEGRADED = 'degraded'
    INVALID = 'invalid'


class SourceKind(Enum):
    """Transport kind of a correction source"""
    NTRIP = 'NTRIP'
    RTCM = 'RTCM'
    NMEA = 'NMEA'
    LOCAL = 'LOCAL'


class CorrectionFormat(Enum):
    """Payload format carried by a correction source"""
    RTCM3 = 'RTCM3'
    RTCM2 = 'RTCM2'
    CMR = 'CMR'
    RTCA = 'RTCA'
    NMEA = 'NMEA'


class SourceStatus(Enum):
    """Live connection status of a correction source"""
    CONNECTED = 'connected'
    ERROR = 'error'
    DISCONNECTED = 'disconnected'


class CalibrationSourceType(Enum):
    """How a calibration profile was created"""
    MANUAL = 'manual'
    AUTOMATIC = 'automatic'
    AGENT = 'agent'
    IMPORTED = 'imported'


class FusionStatus(Enum):
    """Provenance status of an audited fused position"""
    CALIBRATED = 'calibrated'
    RAW = 'raw'
    OFFLINE = 'offline'
    CONFLICTED = 'conflicted'


@dataclass(frozen=True)
class GeoPoint:
    """Geodetic point in WGS84.

    Attributes
    ----------
    lat : float
        Latitude in degrees
    lon : float
        Longitude in degrees
    alt : float, optional
        Height in meters, None when unknown
    """
    lat: float
    lon: float
    alt: Optional[float] = None

    def to_dict(self) -> dict:
        out = {'lat': self.lat, 'lon': self.lon}
        if self.alt is not None:
            out['alt'] = self.alt
        return out

    @classmethod
    def from_dict(cls, data: dict) -> 'GeoPoint':
        return cls(lat=float(data['lat']), lon=float(data['lon']),
                   alt=None if data.get('alt') is None else float(data['alt']))


@dataclass(frozen=True)
class Orientation:
    """Attitude in radians"""
    pitch: float
    roll: float
    yaw: float

    def to_dict(self) -> dict:
        return {'pitch': self.pitch, 'roll': self.roll, 'yaw': self.yaw}


@dataclass(frozen=True, eq=False)
class SatelliteObservation:
    """Pseudorange observation of a single satellite.

    Attributes
    ----------
    sat_id : str
        Satellite identifier (e.g. 'G05')
    position : np.ndarray
        Satellite ECEF position [x, y, z] in meters, read-only
    pseudorange : float
        Measured pseudorange in meters
    carrier_phase : float, optional
        Carrier phase in cycles
    snr : float, optional
        Signal strength in dB-Hz
    constellation : str, optional
        Constellation tag (GPS, GLONASS, Galileo, BeiDou, ...)
    """
    sat_id: str
    position: np.ndarray
    pseudorange: float
    carrier_phase: Optional[float] = None
    snr: Optional[float] = None
    constellation: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'position', _frozen_array(self.position, 3))
        if not np.isfinite(self.pseudorange) or self.pseudorange <= 0:
            raise ValueError(f"Invalid pseudorange for {self.sat_id}: {self.pseudorange}")


@dataclass(frozen=True)
class DOP:
    """Dilution of precision"""
    pdop: float
    hdop: float
    vdop: float
    gdop: float
    tdop: float = float('inf')

    @classmethod
    def singular(cls) -> 'DOP':
        inf = float('inf')
        return cls(inf, inf, inf, inf, inf)

    @property
    def is_finite(self) -> bool:
        return bool(np.isfinite(self.gdop))


@dataclass(frozen=True, eq=False)
class PositionEstimate:
    """Result of one position solve.

    Attributes
    ----------
    ecef : np.ndarray
        Receiver ECEF position [x, y, z] in meters
    llh : np.ndarray
        Receiver geodetic position [lat, lon, h] (radians, radians, meters)
    clock_bias : float
        Receiver clock bias in seconds
    dop : DOP
        Dilution of precision of the final geometry
    covariance : np.ndarray
        4x4 covariance of [x, y, z, c*dt] in m^2
    residuals : np.ndarray
        Post-fit pseudorange residuals in meters
    iterations : int
        Gauss-Newton iterations performed
    num_satellites : int
        Observations used
    status : SolutionStatus
        VALID, DEGRADED or INVALID
    error_estimate : float, optional
        GDOP times RMS residual in meters; None without redundant observations
    weights : np.ndarray
        Normalised observation weights of the final iteration
    """
    ecef: np.ndarray
    llh: np.ndarray
    clock_bias: float
    dop: DOP
    covariance: np.ndarray
    residuals: np.ndarray
    iterations: int
    num_satellites: int
    status: SolutionStatus
    error_estimate: Optional[float] = None
    weights: np.ndarray = field(default_factory=lambda: np.zeros(0))
    sat_ids: tuple = ()

    def __post_init__(self):
        for name in ('ecef', 'llh', 'covariance', 'residuals', 'weights'):
            arr = np.array(getattr(self, name), dtype=float)
            arr.setflags(write=False)
            object.__setattr__(self, name, arr)

    @property
    def latitude_deg(self) -> float:
        return float(self.llh[0] * R2D)

    @property
    def longitude_deg(self) -> float:
        return float(self.llh[1] * R2D)

    @property
    def altitude(self) -> float:
        return float(self.llh[2])

    def to_geopoint(self) -> GeoPoint:
        return GeoPoint(self.latitude_deg, self.longitude_deg, self.altitude)


@dataclass(frozen=True)
class GNSSData:
    """Raw or solved GNSS fix"""
    latitude: float
    longitude: float
    timestamp: float
    altitude: Optional[float] = None
    source: str = 'GNSS'          # GNSS, RTCM, NMEA, RTK
    accuracy: Optional[float] = None
    hdop: Optional[float] = None
    vdop: Optional[float] = None
    satellites: Optional[int] = None
    fix_quality: Optional[int] = None
    speed: Optional[float] = None   # m/s
    course: Optional[float] = None  # degrees from true north

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude, self.altitude)


@dataclass(frozen=True)
class IMUData:
    """Inertial reading.

    Attributes
    ----------
    acceleration : tuple
        Specific force [ax, ay, az] in m/s^2
    gyroscope : tuple
        Angular rate [wx, wy, wz] in rad/s
    timestamp : float
        POSIX seconds
    magnetometer : tuple, optional
        Magnetic field [mx, my, mz] in uT
    orientation : Orientation, optional
        Device-reported attitude
    accuracy : float, optional
        Attitude accuracy in degrees
    """
    acceleration: tuple
    gyroscope: tuple
    timestamp: float
    magnetometer: Optional[tuple] = None
    orientation: Optional[Orientation] = None
    accuracy: Optional[float] = None
    source: str = 'IMU'

    def __post_init__(self):
        for name in ('acceleration', 'gyroscope'):
            values = tuple(float(v) for v in getattr(self, name))
            if len(values) != 3:
                raise ValueError(f"{name} must have 3 components")
            object.__setattr__(self, name, values)
        if self.magnetometer is not None:
            object.__setattr__(self, 'magnetometer', tuple(float(v) for v in self.magnetometer))


@dataclass(frozen=True)
class OCRAnchor:
    """Optically recognised landmark with a known position"""
    text: str
    classification: str
    confidence: float
    position: GeoPoint
    timestamp: float
    source: str = 'camera'
    metadata: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class FusedPosition:
    """Output of one fusion pass.

    Attributes
    ----------
    position : GeoPoint
        Fused geodetic position
    accuracy : float
        Estimated horizontal accuracy in meters
    timestamp : float
        Timestamp of the newest contributing record
    sources : tuple
        Ordered source tags ('GNSS', 'IMU', 'deadReckoning', 'OCR', ...)
    orientation : Orientation, optional
        Attitude from the inertial reading
    anchors : tuple
        Anchors used in this pass
    metadata : dict
        Inputs and corrections applied
    velocity : tuple, optional
        East/north velocity in m/s used for dead reckoning
    """
    position: GeoPoint
    accuracy: float
    timestamp: float
    sources: tuple = ()
    orientation: Optional[Orientation] = None
    anchors: tuple = ()
    metadata: dict = field(default_factory=dict, compare=False)
    velocity: Optional[tuple] = None

    def to_dict(self) -> dict:
        out = {
            'position': self.position.to_dict(),
            'accuracy': self.accuracy,
            'timestamp': self.timestamp,
            'sources': list(self.sources),
        }
        if self.orientation is not None:
            out['orientation'] = self.orientation.to_dict()
        if self.anchors:
            out['anchors'] = [{'text': a.text, 'classification': a.classification,
                               'confidence': a.confidence,
                               'position': a.position.to_dict()} for a in self.anchors]
        if self.metadata:
            out['metadata'] = copy.deepcopy(self.metadata)
        return out


@dataclass
class CorrectionSource:
    """Differential correction source registered with the stream manager.

    Instances are owned by the manager; callers receive copies.
    """
    name: str
    url: str
    kind: SourceKind
    format: CorrectionFormat = CorrectionFormat.RTCM3
    requires_auth: bool = False
    auth_type: Optional[str] = None   # basic, digest, bearer
    username: Optional[str] = None
    password: Optional[str] = None
    mountpoint: Optional[str] = None
    country: Optional[str] = None
    location: Optional[GeoPoint] = None
    max_distance_km: Optional[float] = None
    priority: float = 5.0
    id: str = field(default_factory=lambda: f"src_{uuid.uuid4().hex[:12]}")
    active: bool = False
    last_used: Optional[datetime] = None
    last_status: SourceStatus = SourceStatus.DISCONNECTED
    error: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.kind, str):
            self.kind = SourceKind(self.kind.upper())
        if isinstance(self.format, str):
            self.format = CorrectionFormat(self.format.upper())
        if isinstance(self.last_status, str):
            self.last_status = SourceStatus(self.last_status)
        if isinstance(self.location, dict):
            self.location = GeoPoint.from_dict(self.location)

    def to_dict(self, include_credentials: bool = False) -> dict:
        """Serializable form; credentials are dropped unless requested"""
        out = {
            'id': self.id,
            'name': self.name,
            'url': self.url,
            'kind': self.kind.value,
            'format': self.format.value,
            'requires_auth': self.requires_auth,
            'auth_type': self.auth_type,
            'mountpoint': self.mountpoint,
            'country': self.country,
            'location': self.location.to_dict() if self.location else None,
            'max_distance_km': self.max_distance_km,
            'priority': self.priority,
        }
        if include_credentials:
            out['username'] = self.username
            out['password'] = self.password
        return out

    @classmethod
    def from_dict(cls, data: dict) -> 'CorrectionSource':
        known = {k: v for k, v in data.items()
                 if k in cls.__dataclass_fields__ and v is not None}
        return cls(**known)


@dataclass(frozen=True)
class CorrectionData:
    """One decoded correction message, forwarded to listeners"""
    source_id: str
    timestamp: float
    payload: bytes
    format: CorrectionFormat
    message_types: tuple = ()
    size: int = 0
    checksum_valid: bool = False


@dataclass
class CorrectionStats:
    """Live statistics of a connected correction source"""
    bytes_received: int = 0
    messages_received: int = 0
    last_message_time: Optional[float] = None
    connected_since: Optional[float] = None
    uptime: float = 0.0
    errors: int = 0
    last_error: Optional[str] = None
    message_types: dict = field(default_factory=dict)

    def snapshot(self, now: Optional[float] = None) -> 'CorrectionStats':
        """Copy with uptime brought up to date"""
        now = time.time() if now is None else now
        uptime = self.uptime
        if self.connected_since is not None:
            uptime += max(0.0, now - self.connected_since)
        return replace(self, uptime=uptime, message_types=dict(self.message_types))


@dataclass(frozen=True)
class CalibrationProfile:
    """Stored calibration.

    Attributes
    ----------
    name : str
        Human readable label
    position_bias : tuple
        (dlat, dlon, dalt) in degrees, degrees, meters; added to measurements
    source : CalibrationSourceType
        How the profile was produced
    confidence : float
        Trust in [0, 1]
    orientation_offset : Orientation, optional
        Added to measured attitude
    imu_bias : tuple, optional
        (ax, ay, az, gx, gy, gz) subtracted from inertial readings
    reference : GeoPoint, optional
        Where the calibration was taken
    """
    name: str
    position_bias: tuple
    source: CalibrationSourceType
    confidence: float
    orientation_offset: Optional[Orientation] = None
    imu_bias: Optional[tuple] = None
    reference: Optional[GeoPoint] = None
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: f"cal_{uuid.uuid4().hex[:12]}")
    metadata: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        bias = tuple(float(v) for v in self.position_bias)
        if len(bias) != 3:
            raise ValueError("position_bias must be (dlat, dlon, dalt)")
        object.__setattr__(self, 'position_bias', bias)
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if self.imu_bias is not None:
            imu_bias = tuple(float(v) for v in self.imu_bias)
            if len(imu_bias) != 6:
                raise ValueError("imu_bias must have 6 components")
            object.__setattr__(self, 'imu_bias', imu_bias)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'timestamp': self.timestamp,
            'source': self.source.value,
            'position_bias': list(self.position_bias),
            'orientation_offset': (self.orientation_offset.to_dict()
                                   if self.orientation_offset else None),
            'imu_bias': list(self.imu_bias) if self.imu_bias else None,
            'confidence': self.confidence,
            'reference': self.reference.to_dict() if self.reference else None,
            'metadata': dict(self.metadata),
        }


@dataclass
class FusionLogEntry:
    """Snapshot of one fused position with its provenance"""
    position: GeoPoint
    accuracy: float
    sources: tuple
    status: FusionStatus
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    calibration_profile: Optional[str] = None
    correction_source: Optional[str] = None
    anchor: Optional[dict] = None
    orientation: Optional[Orientation] = None
    metadata: dict = field(default_factory=dict)
    export_ids: list = field(default_factory=list)
    hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'position': self.position.to_dict(),
            'accuracy': self.accuracy,
            'sources': list(self.sources),
            'status': self.status.value,
            'calibration_profile': self.calibration_profile,
            'correction_source': self.correction_source,
            'anchor': self.anchor,
            'orientation': self.orientation.to_dict() if self.orientation else None,
            'metadata': self.metadata,
            'export_ids': list(self.export_ids),
        }


def anchor_to_dict(anchor: OCRAnchor) -> dict[str, Any]:
    return {
        'text': anchor.text,
        'classification': anchor.classification,
        'confidence': anchor.confidence,
        'position': anchor.position.to_dict(),
        'timestamp': anchor.timestamp,
        'source': anchor.source,
    }


__all__ = [
    'SolutionStatus', 'SourceKind', 'CorrectionFormat', 'SourceStatus',
    'CalibrationSourceType', 'FusionStatus', 'GeoPoint', 'Orientation',
    'SatelliteObservation', 'DOP', 'PositionEstimate', 'GNSSData', 'IMUData',
    'OCRAnchor', 'FusedPosition', 'CorrectionSource', 'CorrectionData',
    'CorrectionStats', 'CalibrationProfile', 'FusionLogEntry', 'anchor_to_dict',
]
