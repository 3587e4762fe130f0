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

"""Coordinate Frame Module.

- **transforms**: ECEF, geodetic and local ENU conversions on WGS84
- **geodetic**: haversine distance, bearing and small local offsets
- **reference_frames**: registry of projected/geographic systems backed by
  pyproj, UTM zone inference
- **formats**: DD/DMM/DMS notation and speed/distance units
"""

from .formats import convert_angle, convert_distance, convert_speed, format_angle, parse_angle
from .geodetic import (
    destination_point,
    haversine_distance,
    in_bbox,
    initial_bearing,
    local_offset,
    midpoint,
)
from .reference_frames import (
    WGS84,
    CoordinateFrameManager,
    CoordinateSystem,
    utm_epsg,
    utm_zone,
)
from .transforms import ecef2enu, ecef2llh, enu2ecef, enu_rotation, geodetic_to_ecef_deg, llh2ecef

__all__ = [
    # formats
    'convert_angle', 'convert_distance', 'convert_speed', 'format_angle', 'parse_angle',
    # geodetic
    'destination_point', 'haversine_distance', 'in_bbox', 'initial_bearing',
    'local_offset', 'midpoint',
    # reference frames
    'WGS84', 'CoordinateFrameManager', 'CoordinateSystem', 'utm_epsg', 'utm_zone',
    # transforms
    'ecef2enu', 'ecef2llh', 'enu2ecef', 'enu_rotation', 'geodetic_to_ecef_deg', 'llh2ecef',
]
