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

"""NMEA 0183 sentence decoding

pynmea2 tokenises sentences and verifies the ``*hh`` checksum; this module
maps the supported sentence types onto one uniform ``NMEARecord``.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timezone
from functools import reduce
from typing import Iterable, Optional

import pynmea2

from ..core.constants import KMH_TO_MS, KNOTS_TO_MS
from ..core.exceptions import ParseError, UnsupportedSentence

logger = logging.getLogger(__name__)


def nmea_checksum(body: str) -> str:
    """Running XOR of all characters between '$' and '*', as two hex digits"""
    body = body.lstrip('$').split('*', 1)[0]
    return f"{reduce(lambda acc, ch: acc ^ ord(ch), body, 0):02X}"


def validate_nmea_checksum(sentence: str) -> bool:
    """True when the sentence carries a checksum that matches its body"""
    sentence = sentence.strip()
    if not sentence.startswith('$') or '*' not in sentence:
        return False
    body, given = sentence[1:].split('*', 1)
    return nmea_checksum(body) == given[:2].upper()


def nmea_to_decimal(value: str, direction: str) -> float:
    """Convert a ddmm.mmmm / dddmm.mmmm field to signed decimal degrees

    The number of degree digits is whatever precedes the two minute digits
    before the decimal point; S and W negate.
    """
    if not value:
        raise ValueError("empty coordinate field")
    value = value.strip()
    dot = value.find('.')
    split = (dot if dot >= 0 else len(value)) - 2
    if split < 1:
        raise ValueError(f"malformed coordinate field: {value!r}")
    degrees = float(value[:split])
    minutes = float(value[split:])
    if minutes >= 60.0:
        raise ValueError(f"minutes out of range in {value!r}")
    decimal = degrees + minutes / 60.0
    if direction and direction.upper() in ('S', 'W'):
        decimal = -decimal
    return decimal


def decimal_to_nmea(value: float, is_latitude: bool) -> tuple:
    """Signed decimal degrees to (ddmm.mmmm field, hemisphere letter)"""
    a = abs(value)
    deg = int(a)
    minutes = round((a - deg) * 60.0, 4)
    if minutes >= 60.0:
        deg, minutes = deg + 1, 0.0
    if is_latitude:
        return f"{deg:02d}{minutes:07.4f}", 'N' if value >= 0 else 'S'
    return f"{deg:03d}{minutes:07.4f}", 'E' if value >= 0 else 'W'


def _field(msg, name, cast=float):
    """Typed field access tolerant of pynmea2 returning str, None or numbers"""
    try:
        value = getattr(msg, name)
    except (AttributeError, ValueError, TypeError):
        return None
    if value is None or value == '':
        return None
    try:
        result = cast(value)
    except (TypeError, ValueError):
        return None
    if isinstance(result, float) and not math.isfinite(result):
        return None
    return result


@dataclass(frozen=True)
class SatelliteInView:
    prn: str
    elevation: Optional[float] = None  # degrees
    azimuth: Optional[float] = None    # degrees
    snr: Optional[float] = None        # dB-Hz


@dataclass(frozen=True)
class NMEARecord:
    """Uniform view of one decoded sentence; unused fields stay None"""
    sentence_type: str
    talker: str
    raw: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    geoid_separation: Optional[float] = None
    time_of_day: Optional[dtime] = None
    datestamp: Optional[date] = None
    fix_quality: Optional[int] = None
    fix_type: Optional[int] = None      # GSA: 1 none, 2 2D, 3 3D
    satellites: Optional[int] = None
    hdop: Optional[float] = None
    vdop: Optional[float] = None
    pdop: Optional[float] = None
    speed: Optional[float] = None       # m/s
    course: Optional[float] = None      # degrees true
    status: Optional[str] = None
    active_satellites: tuple = ()
    satellites_in_view: tuple = ()
    message_number: Optional[int] = None
    total_messages: Optional[int] = None

    @property
    def has_position(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def utc_datetime(self) -> Optional[datetime]:
        if self.datestamp is None or self.time_of_day is None:
            return None
        return datetime.combine(self.datestamp, self.time_of_day).replace(tzinfo=timezone.utc)


@dataclass
class IngestResult:
    """Records decoded from a batch plus the warnings for skipped units"""
    records: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    unsupported: dict = field(default_factory=dict)

    def __len__(self):
        return len(self.records)


class NMEAParser:
    """Sentence-type dispatcher

    Parameters
    ----------
    require_checksum : bool
        Reject sentences that carry no ``*hh`` checksum
    """

    def __init__(self, require_checksum: bool = False):
        self.require_checksum = require_checksum
        self._handlers = {
            'GGA': self._parse_gga,
            'RMC': self._parse_rmc,
            'GSA': self._parse_gsa,
            'GSV': self._parse_gsv,
            'VTG': self._parse_vtg,
        }

    @property
    def supported_types(self) -> tuple:
        return tuple(self._handlers)

    def parse(self, line: str) -> NMEARecord:
        """Decode one sentence

        Raises
        ------
        UnsupportedSentence
            Valid sentence of a type not in ``supported_types``
        ParseError
            Malformed sentence, bad checksum or unusable field values
        """
        if isinstance(line, bytes):
            line = line.decode('ascii', errors='replace')
        line = line.strip()
        if not line.startswith('$'):
            raise ParseError("NMEA sentence must start with '$'", line)
        if self.require_checksum and '*' not in line:
            raise ParseError("NMEA checksum missing", line)

        sentence_type = line[3:6] if len(line) >= 6 else ''
        try:
            msg = pynmea2.parse(line, check=self.require_checksum)
        except pynmea2.ChecksumError as e:
            raise ParseError(f"NMEA checksum mismatch: {e}", line) from e
        except pynmea2.SentenceTypeError as e:
            raise UnsupportedSentence(sentence_type or '?', line) from e
        except (pynmea2.ParseError, ValueError) as e:
            raise ParseError(f"Malformed NMEA sentence: {e}", line) from e

        sentence_type = getattr(msg, 'sentence_type', sentence_type)
        handler = self._handlers.get(sentence_type)
        if handler is None:
            raise UnsupportedSentence(sentence_type, line)
        try:
            return handler(msg, line)
        except ValueError as e:
            raise ParseError(f"Invalid {sentence_type} fields: {e}", line) from e

    def parse_many(self, lines: Iterable[str]) -> IngestResult:
        """Decode a batch; bad or unsupported lines become warnings"""
        result = IngestResult()
        for line in lines:
            if not line or not line.strip():
                continue
            try:
                result.records.append(self.parse(line))
            except UnsupportedSentence as e:
                result.unsupported[e.sentence_type] = result.unsupported.get(e.sentence_type, 0) + 1
                result.warnings.append(str(e))
                logger.debug("Skipping %s", e)
            except ParseError as e:
                result.warnings.append(str(e))
                logger.warning("Skipping NMEA line: %s", e)
        return result

    def _position(self, msg):
        lat_field, lon_field = getattr(msg, 'lat', ''), getattr(msg, 'lon', '')
        if not lat_field or not lon_field:
            return None, None
        lat = nmea_to_decimal(lat_field, getattr(msg, 'lat_dir', ''))
        lon = nmea_to_decimal(lon_field, getattr(msg, 'lon_dir', ''))
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
            raise ValueError(f"coordinate out of range: {lat}, {lon}")
        return lat, lon

    def _parse_gga(self, msg, line):
        lat, lon = self._position(msg)
        return NMEARecord(
            sentence_type='GGA', talker=msg.talker, raw=line,
            latitude=lat, longitude=lon,
            altitude=_field(msg, 'altitude'),
            geoid_separation=_field(msg, 'geo_sep'),
            time_of_day=_field(msg, 'timestamp', lambda v: v),
            fix_quality=_field(msg, 'gps_qual', int),
            satellites=_field(msg, 'num_sats', int),
            hdop=_field(msg, 'horizontal_dil'),
        )

    def _parse_rmc(self, msg, line):
        status = getattr(msg, 'status', '')
        if status != 'A':
            raise ValueError(f"RMC status is '{status}', expected 'A'")
        lat, lon = self._position(msg)
        knots = _field(msg, 'spd_over_grnd')
        return NMEARecord(
            sentence_type='RMC', talker=msg.talker, raw=line,
            latitude=lat, longitude=lon,
            time_of_day=_field(msg, 'timestamp', lambda v: v),
            datestamp=_field(msg, 'datestamp', lambda v: v),
            speed=None if knots is None else knots * KNOTS_TO_MS,
            course=_field(msg, 'true_course'),
            status=status,
        )

    def _parse_gsa(self, msg, line):
        active = []
        for i in range(1, 13):
            prn = getattr(msg, f'sv_id{i:02d}', '')
            if prn:
                active.append(str(prn))
        return NMEARecord(
            sentence_type='GSA', talker=msg.talker, raw=line,
            fix_type=_field(msg, 'mode_fix_type', int),
            active_satellites=tuple(active),
            satellites=len(active),
            pdop=_field(msg, 'pdop'),
            hdop=_field(msg, 'hdop'),
            vdop=_field(msg, 'vdop'),
        )

    def _parse_gsv(self, msg, line):
        sats = []
        for i in range(1, 5):
            prn = getattr(msg, f'sv_prn_num_{i}', '')
            if not prn:
                continue
            sats.append(SatelliteInView(
                prn=str(prn),
                elevation=_field(msg, f'elevation_deg_{i}'),
                azimuth=_field(msg, f'azimuth_{i}'),
                snr=_field(msg, f'snr_{i}'),
            ))
        return NMEARecord(
            sentence_type='GSV', talker=msg.talker, raw=line,
            satellites=_field(msg, 'num_sv_in_view', int),
            satellites_in_view=tuple(sats),
            message_number=_field(msg, 'msg_num', int),
            total_messages=_field(msg, 'num_messages', int),
        )

    def _parse_vtg(self, msg, line):
        kmh = _field(msg, 'spd_over_grnd_kmph')
        if kmh is not None:
            speed = kmh * KMH_TO_MS
        else:
            knots = _field(msg, 'spd_over_grnd_kts')
            speed = None if knots is None else knots * KNOTS_TO_MS
        return NMEARecord(
            sentence_type='VTG', talker=msg.talker, raw=line,
            course=_field(msg, 'true_track'),
            speed=speed,
        )


def split_sentences(buffer: str) -> tuple:
    """Split text into complete '$'-sentences and the unterminated remainder"""
    parts = buffer.replace('\r', '').split('\n')
    remainder = parts.pop()
    return [p for p in parts if p.startswith('$')], remainder
