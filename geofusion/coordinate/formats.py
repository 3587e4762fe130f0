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

"""Angle notation (DD / DMM / DMS) and unit conversions"""

import math
import re

from ..core.constants import KNOTS_TO_MS

_DMS_RE = re.compile(r"(-?\d+)[°\s]+(\d+)['′\s]+(\d+(?:\.\d+)?)[\"″']*\s*([NSEW]?)", re.I)
_DMM_RE = re.compile(r"(-?\d+)[°\s]+(\d+(?:\.\d+)?)['′]?\s*([NSEW]?)", re.I)
_DD_RE = re.compile(r"(-?\d+(?:\.\d+)?)°?\s*([NSEW]?)", re.I)

# factors to m/s and to meters
SPEED_UNITS = {
    'm/s': 1.0,
    'km/h': 1.0 / 3.6,
    'knots': KNOTS_TO_MS,
    'mph': 0.44704,
}
DISTANCE_UNITS = {
    'm': 1.0,
    'km': 1000.0,
    'ft': 0.3048,
    'mi': 1609.344,
    'nmi': 1852.0,
}


def _hemisphere(value: float, is_longitude: bool) -> str:
    if is_longitude:
        return 'E' if value >= 0 else 'W'
    return 'N' if value >= 0 else 'S'


def _signed(value: float, direction: str) -> float:
    if direction.upper() in ('S', 'W'):
        return -abs(value)
    return value


def parse_angle(text: str, notation: str = 'DD') -> float:
    """Parse a DD, DMM or DMS string into signed decimal degrees

    >>> parse_angle("40° 26' 46\\" N", 'DMS')
    40.44611111111111
    """
    notation = notation.upper()
    if notation == 'DMS':
        m = _DMS_RE.search(text)
        if not m:
            raise ValueError(f"Invalid DMS format: {text!r}")
        deg, minutes, seconds = float(m.group(1)), float(m.group(2)), float(m.group(3))
        value = abs(deg) + minutes / 60.0 + seconds / 3600.0
        return _signed(-value if deg < 0 else value, m.group(4))
    if notation == 'DMM':
        m = _DMM_RE.search(text)
        if not m:
            raise ValueError(f"Invalid DMM format: {text!r}")
        deg, minutes = float(m.group(1)), float(m.group(2))
        value = abs(deg) + minutes / 60.0
        return _signed(-value if deg < 0 else value, m.group(3))
    if notation == 'DD':
        m = _DD_RE.search(text)
        if not m:
            raise ValueError(f"Invalid DD format: {text!r}")
        return _signed(float(m.group(1)), m.group(2))
    raise ValueError(f"Unknown notation: {notation}")


def format_angle(value: float, notation: str = 'DD', is_longitude: bool = False) -> str:
    """Format signed decimal degrees in DD, DMM or DMS notation"""
    notation = notation.upper()
    hemi = _hemisphere(value, is_longitude)
    a = abs(value)
    if notation == 'DMS':
        d = int(math.floor(a))
        m = int(math.floor((a - d) * 60.0))
        s = (a - d - m / 60.0) * 3600.0
        if round(s, 2) >= 60.0:
            m, s = m + 1, 0.0
        if m >= 60:
            d, m = d + 1, 0
        return f"{d}° {m}' {s:.2f}\" {hemi}"
    if notation == 'DMM':
        d = int(math.floor(a))
        return f"{d}° {(a - d) * 60.0:.4f}' {hemi}"
    if notation == 'DD':
        return f"{value:.6f}°"
    raise ValueError(f"Unknown notation: {notation}")


def convert_angle(value, from_notation: str, to_notation: str,
                  is_longitude: bool = False) -> str:
    """Re-express an angle given as number or string in another notation"""
    decimal = parse_angle(value, from_notation) if isinstance(value, str) else float(value)
    return format_angle(decimal, to_notation, is_longitude)


def convert_speed(value: float, from_unit: str, to_unit: str) -> float:
    try:
        return value * SPEED_UNITS[from_unit] / SPEED_UNITS[to_unit]
    except KeyError as e:
        raise ValueError(f"Unsupported speed unit: {e.args[0]}") from None


def convert_distance(value: float, from_unit: str, to_unit: str) -> float:
    try:
        return value * DISTANCE_UNITS[from_unit] / DISTANCE_UNITS[to_unit]
    except KeyError as e:
        raise ValueError(f"Unsupported distance unit: {e.args[0]}") from None
