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

"""Observation ingest: raw NMEA text and RTCM bytes to canonical records"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ..core.data_structures import GNSSData
from .nmea import IngestResult, NMEAParser, NMEARecord
from .rtcm import RTCMStreamParser

logger = logging.getLogger(__name__)

# User-equivalent range error per GGA fix quality (m)
UERE_BY_FIX = {
    1: 5.0,    # autonomous
    2: 1.0,    # differential
    4: 0.02,   # RTK fixed
    5: 0.5,    # RTK float
}

SOURCE_BY_FIX = {2: 'RTCM', 4: 'RTK', 5: 'RTK'}


def estimate_accuracy(hdop: Optional[float], fix_quality: Optional[int]) -> Optional[float]:
    """Horizontal accuracy estimate HDOP * UERE, None when not derivable"""
    if hdop is None or fix_quality not in UERE_BY_FIX:
        return None
    return hdop * UERE_BY_FIX[fix_quality]


class ObservationIngest:
    """Decodes sensor text/bytes with parsers chosen at construction

    Parameters
    ----------
    nmea_parser : NMEAParser, optional
        Sentence decoder; any object with ``parse``/``parse_many`` works
    rtcm_parser : RTCMStreamParser, optional
        Incremental RTCM framer
    clock : callable
        Returns POSIX seconds for records without their own date
    """

    def __init__(self, nmea_parser: Optional[NMEAParser] = None,
                 rtcm_parser: Optional[RTCMStreamParser] = None,
                 clock: Callable[[], float] = time.time):
        self.nmea_parser = nmea_parser or NMEAParser()
        self.rtcm_parser = rtcm_parser or RTCMStreamParser()
        self.clock = clock
        self._dop = {}
        self._motion = {}

    def record_timestamp(self, record: NMEARecord, received_at: Optional[float] = None) -> float:
        """POSIX time of a record: RMC date+time, else time-of-day on the receive date"""
        dt = record.utc_datetime
        if dt is not None:
            return dt.timestamp()
        base = self.clock() if received_at is None else received_at
        if record.time_of_day is None:
            return base
        day = datetime.fromtimestamp(base, tz=timezone.utc).date()
        ts = datetime.combine(day, record.time_of_day).replace(tzinfo=timezone.utc).timestamp()
        # a fix stamped just before midnight but received just after
        if ts - base > 12 * 3600:
            ts -= 86400
        return ts

    def to_gnss_data(self, record: NMEARecord, received_at: Optional[float] = None) -> Optional[GNSSData]:
        """Position-bearing record to ``GNSSData``; None for other records"""
        if not record.has_position:
            return None
        if record.sentence_type == 'GGA' and record.fix_quality == 0:
            logger.debug("GGA without fix ignored")
            return None
        hdop = record.hdop if record.hdop is not None else self._dop.get('hdop')
        fix = record.fix_quality
        return GNSSData(
            latitude=record.latitude,
            longitude=record.longitude,
            altitude=record.altitude,
            timestamp=self.record_timestamp(record, received_at),
            source=SOURCE_BY_FIX.get(fix, 'NMEA'),
            accuracy=estimate_accuracy(hdop, fix),
            hdop=hdop,
            vdop=self._dop.get('vdop'),
            satellites=record.satellites,
            fix_quality=fix,
            speed=record.speed if record.speed is not None else self._motion.get('speed'),
            course=record.course if record.course is not None else self._motion.get('course'),
        )

    def ingest_nmea(self, lines: Iterable[str], received_at: Optional[float] = None) -> tuple:
        """Decode a batch of sentences

        Returns
        -------
        tuple
            (fixes, result): ``GNSSData`` for every fix in the batch and the
            parser's ``IngestResult`` with all records and warnings
        """
        result: IngestResult = self.nmea_parser.parse_many(lines)
        fixes = []
        for record in result.records:
            if record.sentence_type == 'GSA':
                self._dop = {'hdop': record.hdop, 'vdop': record.vdop, 'pdop': record.pdop}
                continue
            if record.speed is not None or record.course is not None:
                self._motion = {'speed': record.speed, 'course': record.course}
            fix = self.to_gnss_data(record, received_at)
            if fix is not None:
                fixes.append(fix)
        return fixes, result

    def ingest_rtcm(self, chunk: bytes) -> list:
        """Feed correction bytes; returns the complete frames now available"""
        return self.rtcm_parser.feed(chunk)
