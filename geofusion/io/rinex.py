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

"""RINEX observation file reader

Reads RINEX 2.x and 3.x observation files into header metadata and
per-epoch observation tables, and turns an epoch into
``SatelliteObservation`` lists for the position solver. Satellite
positions are not part of an observation file; they are supplied by the
caller as a mapping or a callable.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from ..core.data_structures import SatelliteObservation
from ..core.exceptions import ParseError

logger = logging.getLogger(__name__)

END_OF_HEADER = 'END OF HEADER'

CONSTELLATIONS = {
    'G': 'GPS',
    'R': 'GLONASS',
    'E': 'Galileo',
    'C': 'BeiDou',
    'J': 'QZSS',
    'S': 'SBAS',
    'I': 'NavIC',
}

# Pseudorange codes tried in order when none is requested
PSEUDORANGE_CODES = ('C1C', 'C1W', 'C1X', 'C1P', 'C2I', 'C1', 'P1', 'C2C', 'C2W', 'C2', 'P2', 'C5Q', 'C5X')

# Epoch flags carrying observations; 2-5 are events, 6 is cycle-slip records
OBSERVATION_FLAGS = (0, 1)

SatellitePositions = Union[Mapping[str, np.ndarray], Callable[[str, float], Optional[np.ndarray]]]


@dataclass
class RinexHeader:
    """Metadata of a RINEX observation file

    Attributes
    ----------
    version : float
        Format version (2.11, 3.04, ...)
    file_type : str
        'O' for observation files
    system : str
        Satellite system letter; 'M' for mixed files
    obs_types : dict
        Observation codes per system letter. RINEX 2 files list one set for
        every system, stored under ``'*'``
    approx_position : np.ndarray, optional
        Approximate marker ECEF position (m)
    antenna_delta : np.ndarray, optional
        Antenna height/east/north offsets (m)
    interval : float, optional
        Nominal observation interval (s)
    first_obs, last_obs : float, optional
        POSIX seconds of the first/last epoch, calendar time of ``time_system``
    """
    version: float = 0.0
    file_type: str = 'O'
    system: str = 'G'
    marker_name: str = ''
    receiver: Tuple[str, str, str] = ('', '', '')
    antenna: Tuple[str, str] = ('', '')
    approx_position: Optional[np.ndarray] = None
    antenna_delta: Optional[np.ndarray] = None
    obs_types: Dict[str, List[str]] = field(default_factory=dict)
    interval: Optional[float] = None
    first_obs: Optional[float] = None
    last_obs: Optional[float] = None
    time_system: str = 'GPS'
    leap_seconds: Optional[int] = None
    comments: List[str] = field(default_factory=list)

    @property
    def is_rinex3(self) -> bool:
        return self.version >= 3.0

    def types_for(self, system: str) -> List[str]:
        """Observation codes recorded for satellites of ``system``"""
        if system in self.obs_types:
            return self.obs_types[system]
        return self.obs_types.get('*', [])


@dataclass
class RinexEpoch:
    """One observation epoch

    ``observations`` maps satellite id ('G05') to ``{code: value}``; blank
    fields are left out.
    """
    timestamp: float
    flag: int = 0
    clock_offset: Optional[float] = None
    observations: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def satellites(self) -> List[str]:
        return list(self.observations)


def rinex_time(year: int, month: int, day: int, hour: int, minute: int, second: float) -> float:
    """POSIX seconds of a RINEX calendar time; two-digit years pivot at 80"""
    if year < 100:
        year += 2000 if year < 80 else 1900
    dt = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    return (dt + timedelta(seconds=second)).timestamp()


def normalize_sat_id(token: str, default_system: str = 'G') -> str:
    """'G 5', ' 5' and 'G05' all become 'G05'"""
    token = token.rstrip()
    system = token[0] if token[:1].isalpha() else default_system
    prn = int(token[1:] if token[:1].isalpha() else token)
    return f"{system}{prn:02d}"


def _floats(text: str) -> np.ndarray:
    return np.array([float(v) for v in text.split()])


def parse_rinex_header(lines: Iterable[str]) -> Tuple[RinexHeader, int]:
    """Parse header records up to END OF HEADER

    Returns
    -------
    header : RinexHeader
    consumed : int
        Number of lines read, END OF HEADER included

    Raises
    ------
    ParseError
        If the END OF HEADER record is missing or a record cannot be read
    """
    header = RinexHeader()
    pending_system = None
    consumed = 0
    for line in lines:
        consumed += 1
        line = line.rstrip('\n')
        label = line[60:].strip()
        content = line[:60]
        if label == END_OF_HEADER:
            return header, consumed
        try:
            if label == 'RINEX VERSION / TYPE':
                header.version = float(content[:9])
                header.file_type = content[20:21] or 'O'
                header.system = content[40:41].strip() or 'G'
            elif label == 'MARKER NAME':
                header.marker_name = content.strip()
            elif label == 'REC # / TYPE / VERS':
                header.receiver = tuple(content[i:i + 20].strip() for i in (0, 20, 40))
            elif label == 'ANT # / TYPE':
                header.antenna = tuple(content[i:i + 20].strip() for i in (0, 20))
            elif label == 'APPROX POSITION XYZ':
                header.approx_position = _floats(content)[:3]
            elif label == 'ANTENNA: DELTA H/E/N':
                header.antenna_delta = _floats(content)[:3]
            elif label == '# / TYPES OF OBSERV':
                header.obs_types.setdefault('*', []).extend(content[6:].split())
            elif label == 'SYS / # / OBS TYPES':
                if content[:1].strip():
                    pending_system = content[0]
                    header.obs_types[pending_system] = []
                if pending_system is None:
                    raise ValueError("continuation line without a system")
                header.obs_types[pending_system].extend(content[7:].split())
            elif label == 'INTERVAL':
                header.interval = float(content[:10])
            elif label in ('TIME OF FIRST OBS', 'TIME OF LAST OBS'):
                parts = content.split()
                ts = rinex_time(*(int(p) for p in parts[:5]), float(parts[5]))
                if len(parts) > 6:
                    header.time_system = parts[6]
                if label == 'TIME OF FIRST OBS':
                    header.first_obs = ts
                else:
                    header.last_obs = ts
            elif label == 'LEAP SECONDS':
                header.leap_seconds = int(content[:6])
            elif label == 'COMMENT':
                header.comments.append(content.rstrip())
        except (ValueError, IndexError) as e:
            raise ParseError(f"Bad RINEX header record '{label}': {e}", line) from e
    raise ParseError("RINEX header has no END OF HEADER record")


def _observation_fields(text: str, types: List[str]) -> Dict[str, float]:
    """Decode 16-column (F14.3, LLI, SSI) fields in the order of ``types``"""
    values = {}
    for i, code in enumerate(types):
        raw = text[16 * i:16 * i + 14].strip()
        if raw:
            values[code] = float(raw)
    return values


def _parse_rinex3_epochs(lines: List[str], header: RinexHeader) -> List[RinexEpoch]:
    epochs = []
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.startswith('>'):
            if line.strip():
                logger.warning(f"Skipping unexpected RINEX line: {line.strip()[:40]}")
            continue
        try:
            ts = rinex_time(int(line[2:6]), int(line[7:9]), int(line[10:12]),
                            int(line[13:15]), int(line[16:18]), float(line[18:29]))
            flag = int(line[31:32].strip() or 0)
            count = int(line[32:35])
        except ValueError:
            logger.warning(f"Skipping malformed RINEX epoch: {line.strip()}")
            continue
        clock = line[41:56].strip()
        body, i = lines[i:i + count], i + count
        if flag not in OBSERVATION_FLAGS:
            logger.debug(f"Skipping RINEX event epoch with flag {flag}")
            continue
        epoch = RinexEpoch(ts, flag, float(clock) if clock else None)
        for record in body:
            try:
                sat = normalize_sat_id(record[:3])
                epoch.observations[sat] = _observation_fields(record[3:], header.types_for(sat[0]))
            except ValueError:
                logger.warning(f"Skipping malformed RINEX observation: {record.strip()[:40]}")
        epochs.append(epoch)
    return epochs


def _parse_rinex2_epochs(lines: List[str], header: RinexHeader) -> List[RinexEpoch]:
    types = header.types_for('*')
    lines_per_sat = max(1, -(-len(types) // 5))
    epochs = []
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        try:
            ts = rinex_time(int(line[1:3]), int(line[4:6]), int(line[7:9]),
                            int(line[10:12]), int(line[13:15]), float(line[15:26]))
            flag = int(line[28:29].strip() or 0)
            count = int(line[29:32])
        except ValueError:
            logger.warning(f"Skipping malformed RINEX epoch: {line.strip()}")
            continue
        if 2 <= flag <= 5:
            # event records carry header lines instead of observations
            i += count
            logger.debug(f"Skipping RINEX event epoch with flag {flag}")
            continue
        clock = line[68:80].strip()
        row = line
        sats = []
        while True:
            sats.extend(row[32 + 3 * k:35 + 3 * k] for k in range(min(count - len(sats), 12)))
            if len(sats) >= count or i >= len(lines):
                break
            row = lines[i]
            i += 1
        if flag not in OBSERVATION_FLAGS:
            i += count * lines_per_sat
            logger.debug(f"Skipping RINEX epoch with flag {flag}")
            continue
        epoch = RinexEpoch(ts, flag, float(clock) if clock else None)
        for token in sats:
            block = lines[i:i + lines_per_sat]
            i += lines_per_sat
            text = ''.join(part.ljust(80)[:80] for part in block)
            try:
                sat = normalize_sat_id(token, header.system if header.system != 'M' else 'G')
            except ValueError:
                logger.warning(f"Skipping malformed RINEX satellite id: {token!r}")
                continue
            epoch.observations[sat] = _observation_fields(text, types)
        epochs.append(epoch)
    return epochs


def parse_rinex_obs(lines: Iterable[str]) -> Tuple[RinexHeader, List[RinexEpoch]]:
    """Parse observation file text into header and epochs

    Event epochs (flags 2-6) are skipped; malformed lines are logged and
    skipped.
    """
    lines = [line.rstrip('\n').rstrip('\r') for line in lines]
    header, consumed = parse_rinex_header(lines)
    if header.file_type.upper() != 'O':
        raise ParseError(f"Not a RINEX observation file (type '{header.file_type}')")
    body = lines[consumed:]
    if header.is_rinex3:
        epochs = _parse_rinex3_epochs(body, header)
    else:
        epochs = _parse_rinex2_epochs(body, header)
    logger.info(f"RINEX {header.version:.2f}: {len(epochs)} epochs, marker '{header.marker_name}'")
    return header, epochs


def read_obs(filename: Union[str, Path]) -> Tuple[RinexHeader, List[RinexEpoch]]:
    """
    Read a RINEX observation file

    Parameters
    ----------
    filename : str or Path
        RINEX observation file path

    Returns
    -------
    header : RinexHeader
    epochs : list of RinexEpoch
    """
    with open(filename, 'r') as f:
        return parse_rinex_obs(f)


def pick_pseudorange_code(types: List[str], codes: Optional[Iterable[str]] = None) -> Optional[str]:
    """First preferred pseudorange code present in ``types``"""
    for code in (codes or PSEUDORANGE_CODES):
        if code in types:
            return code
    return None


def epoch_observations(epoch: RinexEpoch, header: RinexHeader,
                       satellite_positions: SatellitePositions,
                       codes: Optional[Iterable[str]] = None) -> List[SatelliteObservation]:
    """
    Build solver input from one epoch

    Satellites without a position, a pseudorange or a positive value are
    left out. Carrier phase and SNR come from the L/S codes of the same
    band and tracking mode as the pseudorange.

    Parameters
    ----------
    epoch : RinexEpoch
    header : RinexHeader
        Supplies the observation codes per system
    satellite_positions : mapping or callable
        ``{sat_id: ecef}`` or ``f(sat_id, timestamp) -> ecef or None``
    codes : iterable of str, optional
        Pseudorange code preference, ``PSEUDORANGE_CODES`` by default

    Returns
    -------
    observations : list of SatelliteObservation
    """
    codes = tuple(codes) if codes is not None else None
    result = []
    for sat, values in epoch.observations.items():
        if callable(satellite_positions):
            position = satellite_positions(sat, epoch.timestamp)
        else:
            position = satellite_positions.get(sat)
        if position is None:
            logger.debug(f"No position for {sat}")
            continue
        code = pick_pseudorange_code(list(values), codes)
        if code is None or not values[code] > 0:
            continue
        band = code[1:]
        result.append(SatelliteObservation(
            sat, np.asarray(position, dtype=float), values[code],
            carrier_phase=values.get('L' + band),
            snr=values.get('S' + band),
            constellation=CONSTELLATIONS.get(sat[0]),
        ))
    return result


def epochs_to_dataframe(epochs: List[RinexEpoch]) -> pd.DataFrame:
    """Long table with one row per (epoch, satellite)"""
    rows = []
    for epoch in epochs:
        for sat, values in epoch.observations.items():
            rows.append({'time': epoch.timestamp, 'sat': sat, **values})
    if not rows:
        return pd.DataFrame(columns=['time', 'sat'])
    return pd.DataFrame(rows)


class RinexObsReader:
    """RINEX observation file reader

    Parameters
    ----------
    filename : str or Path
        Observation file path
    """

    def __init__(self, filename: Union[str, Path]):
        self.filename = Path(filename)
        if not self.filename.exists():
            raise FileNotFoundError(f"RINEX file not found: {self.filename}")
        self.header: Optional[RinexHeader] = None
        self.epochs: List[RinexEpoch] = []

    def read(self) -> List[RinexEpoch]:
        """Read the file; the header is kept in ``self.header``"""
        self.header, self.epochs = read_obs(self.filename)
        return self.epochs

    def observations(self, satellite_positions: SatellitePositions,
                     codes: Optional[Iterable[str]] = None):
        """Yield ``(timestamp, [SatelliteObservation, ...])`` per epoch"""
        if self.header is None:
            self.read()
        for epoch in self.epochs:
            yield epoch.timestamp, epoch_observations(epoch, self.header, satellite_positions, codes)

    def to_dataframe(self) -> pd.DataFrame:
        if self.header is None:
            self.read()
        return epochs_to_dataframe(self.epochs)


__all__ = [
    'RinexHeader',
    'RinexEpoch',
    'RinexObsReader',
    'parse_rinex_header',
    'parse_rinex_obs',
    'read_obs',
    'epoch_observations',
    'epochs_to_dataframe',
    'pick_pseudorange_code',
    'normalize_sat_id',
    'rinex_time',
]
