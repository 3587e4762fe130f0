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

"""Registry of reference systems and conversions between them

Conversions go through pyproj with ``always_xy=True``: geographic systems
take and return (lon, lat) internally, while the public methods use explicit
``lat``/``lon`` argument names.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError

from ..core.data_structures import GeoPoint
from ..core.exceptions import UndefinedReferenceFrame
from .geodetic import haversine_distance, in_bbox

logger = logging.getLogger(__name__)

WGS84 = 'EPSG:4326'
WORLD_BBOX = (-180.0, -90.0, 180.0, 90.0)
UTM_EXTENT = (166021.44, 0.0, 833978.55, 9329005.18)


@dataclass(frozen=True)
class CoordinateSystem:
    """Registered reference system.

    Attributes
    ----------
    code : str
        Registry key, e.g. 'EPSG:32632'
    name : str
        Display name
    definition : str
        Anything ``pyproj.CRS.from_user_input`` accepts (EPSG code, PROJ string, WKT)
    area_of_use : tuple
        (min_lon, min_lat, max_lon, max_lat) in degrees
    extent : tuple, optional
        (min_x, min_y, max_x, max_y) in the system's own units
    description : str
        Free-text area description
    """
    code: str
    name: str
    definition: str
    area_of_use: tuple = WORLD_BBOX
    extent: Optional[tuple] = None
    description: str = 'Not specified'


DEFAULT_SYSTEMS = (
    CoordinateSystem(WGS84, 'WGS 84 (Latitude/Longitude)', 'EPSG:4326',
                     WORLD_BBOX, WORLD_BBOX, 'World'),
    CoordinateSystem('EPSG:32632', 'WGS 84 / UTM zone 32N', 'EPSG:32632',
                     (6.0, 0.0, 12.0, 84.0), UTM_EXTENT,
                     'Between 6E and 12E, northern hemisphere'),
    CoordinateSystem('EPSG:32633', 'WGS 84 / UTM zone 33N', 'EPSG:32633',
                     (12.0, 0.0, 18.0, 84.0), UTM_EXTENT,
                     'Between 12E and 18E, northern hemisphere'),
    CoordinateSystem('EPSG:2154', 'RGF93 / Lambert-93', 'EPSG:2154',
                     (-9.86, 41.15, 10.38, 51.56),
                     (-378305.81, 6093283.21, 1212610.74, 7186901.82),
                     'France - mainland onshore'),
    CoordinateSystem('EPSG:32733', 'WGS 84 / UTM zone 33S', 'EPSG:32733',
                     (12.0, -80.0, 18.0, 0.0), UTM_EXTENT,
                     'Between 12E and 18E, southern hemisphere'),
    CoordinateSystem('EPSG:32632_CAM_WEST', 'WGS 84 / UTM zone 32N (Cameroon West)',
                     '+proj=utm +zone=32 +ellps=WGS84 +datum=WGS84 +units=m +no_defs',
                     (8.45, 1.65, 12.0, 13.09), UTM_EXTENT, 'Cameroon - west of 12E'),
    CoordinateSystem('EPSG:32633_CAM_EAST', 'WGS 84 / UTM zone 33N (Cameroon East)',
                     '+proj=utm +zone=33 +ellps=WGS84 +datum=WGS84 +units=m +no_defs',
                     (12.0, 1.65, 16.21, 13.09), UTM_EXTENT, 'Cameroon - east of 12E'),
)


def utm_zone(lon: float, lat: float) -> int:
    """UTM zone number including the Norway and Svalbard exceptions"""
    if not -180.0 <= lon <= 180.0 or not -90.0 <= lat <= 90.0:
        raise ValueError(f"Coordinate out of range: lat={lat}, lon={lon}")
    zone = int(math.floor((lon + 180.0) / 6.0)) + 1
    zone = min(zone, 60)

    if 56.0 <= lat < 64.0 and 3.0 <= lon < 12.0:
        zone = 32

    if 72.0 <= lat < 84.0:
        if 0.0 <= lon < 9.0:
            zone = 31
        elif 9.0 <= lon < 21.0:
            zone = 33
        elif 21.0 <= lon < 33.0:
            zone = 35
        elif 33.0 <= lon < 42.0:
            zone = 37
    return zone


def utm_epsg(lon: float, lat: float) -> str:
    """EPSG code of the WGS84 UTM zone containing the point (326zz / 327zz)"""
    zone = utm_zone(lon, lat)
    prefix = 326 if lat >= 0 else 327
    return f"EPSG:{prefix}{zone:02d}"


class CoordinateFrameManager:
    """Named reference systems with forward/inverse and direct conversion

    Instances are independent; the engine owns one and passes it to the
    components that need it.
    """

    def __init__(self, systems=DEFAULT_SYSTEMS):
        self._systems: dict[str, CoordinateSystem] = {}
        self._crs: dict[str, CRS] = {}
        self._transformers: dict[tuple, Transformer] = {}
        for system in systems:
            self.register(system)

    def register(self, system: CoordinateSystem) -> None:
        """Register or replace a system; invalid definitions raise ValueError"""
        try:
            crs = CRS.from_user_input(system.definition)
        except CRSError as e:
            raise ValueError(f"Invalid definition for {system.code}: {e}") from e

        if system.code in self._systems:
            logger.warning("Coordinate system %s is already defined, overwriting", system.code)
            self._transformers = {k: v for k, v in self._transformers.items()
                                  if system.code not in k}
        self._systems[system.code] = system
        self._crs[system.code] = crs

    def add_custom_projection(self, code: str, definition: str,
                              area_of_use: tuple = WORLD_BBOX,
                              name: Optional[str] = None) -> CoordinateSystem:
        system = CoordinateSystem(code, name or code, definition, tuple(area_of_use))
        self.register(system)
        return system

    def unregister(self, code: str) -> None:
        self.get(code)
        del self._systems[code]
        del self._crs[code]
        self._transformers = {k: v for k, v in self._transformers.items() if code not in k}

    def get(self, code: str) -> CoordinateSystem:
        try:
            return self._systems[code]
        except KeyError:
            raise UndefinedReferenceFrame(code) from None

    def is_registered(self, code: str) -> bool:
        return code in self._systems

    def list_systems(self) -> list[CoordinateSystem]:
        return list(self._systems.values())

    def projection_info(self, code: str) -> dict:
        """Descriptive summary of a registered system"""
        system = self.get(code)
        crs = self._crs[code]
        axis = crs.axis_info[0] if crs.axis_info else None
        return {
            'code': code,
            'name': system.name,
            'unit': 'degrees' if crs.is_geographic else (axis.unit_name if axis else 'metre'),
            'area_of_use': system.description,
            'bbox': system.area_of_use,
            'extent': system.extent,
            'is_geographic': crs.is_geographic,
            'is_projected': crs.is_projected,
        }

    def _transformer(self, from_code: str, to_code: str) -> Transformer:
        key = (from_code, to_code)
        if key not in self._transformers:
            source, target = self.get(from_code), self.get(to_code)
            self._transformers[key] = Transformer.from_crs(
                self._crs[source.code], self._crs[target.code], always_xy=True)
        return self._transformers[key]

    def to_geodetic(self, x: float, y: float, code: str,
                    z: Optional[float] = None) -> GeoPoint:
        """Projected (x, y) in ``code`` to a WGS84 point"""
        lon, lat = self._transformer(code, WGS84).transform(x, y)
        return GeoPoint(float(lat), float(lon), z)

    def from_geodetic(self, lat: float, lon: float, code: str) -> tuple:
        """WGS84 (lat, lon) to (x, y) in ``code``"""
        x, y = self._transformer(WGS84, code).transform(lon, lat)
        return float(x), float(y)

    def convert(self, x: float, y: float, from_code: str, to_code: str) -> tuple:
        """Direct conversion between two registered systems, in their own axis units

        Geographic systems use (lon, lat) order here, matching x/y.
        """
        if from_code == to_code:
            self.get(from_code)
            return float(x), float(y)
        nx, ny = self._transformer(from_code, to_code).transform(x, y)
        return float(nx), float(ny)

    def utm_system(self, lon: float, lat: float) -> str:
        """Code of the UTM system for the point, registering it on first use"""
        code = utm_epsg(lon, lat)
        if code not in self._systems:
            zone = utm_zone(lon, lat)
            south = lat < 0
            west = -180.0 + (zone - 1) * 6.0
            area = (west, -80.0 if south else 0.0, west + 6.0, 0.0 if south else 84.0)
            self.register(CoordinateSystem(
                code, f"WGS 84 / UTM zone {zone}{'S' if south else 'N'}", code,
                area, UTM_EXTENT))
        return code

    def in_area_of_use(self, lat: float, lon: float, code: str) -> bool:
        return in_bbox(lat, lon, self.get(code).area_of_use)

    def is_in_bounding_box(self, x: float, y: float, bbox: tuple, code: str = WGS84) -> bool:
        """Point given in ``code`` against a (min_lon, min_lat, max_lon, max_lat) box"""
        if code == WGS84:
            lon, lat = x, y
        else:
            p = self.to_geodetic(x, y, code)
            lon, lat = p.lon, p.lat
        return in_bbox(lat, lon, bbox)

    def distance(self, a: tuple, b: tuple, code: str = WGS84) -> float:
        """Haversine distance between two (x, y[, z]) points expressed in ``code``

        With z on both points the result is the 3D distance.
        """
        def as_point(c):
            z = c[2] if len(c) > 2 else None
            if code == WGS84:
                return GeoPoint(c[1], c[0], z)
            return self.to_geodetic(c[0], c[1], code, z)

        pa, pb = as_point(a), as_point(b)
        return haversine_distance(pa, pb, include_elevation=True)
