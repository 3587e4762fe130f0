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

"""Great-circle distance, bearing and small-offset geodesy on a spherical Earth"""

from typing import Optional, Sequence

import numpy as np

from ..core.constants import RE_MEAN
from ..core.data_structures import GeoPoint


def haversine_distance(a: GeoPoint, b: GeoPoint, include_elevation: bool = False) -> float:
    """Great-circle distance between two WGS84 points

    Parameters
    ----------
    a, b : GeoPoint
        Points in degrees
    include_elevation : bool
        When both points carry an altitude, combine the surface distance
        with the height difference into a 3D distance

    Returns
    -------
    float
        Distance in meters (mean Earth radius 6371 km)

    Examples
    --------
    >>> paris = GeoPoint(48.8566, 2.3522)
    >>> london = GeoPoint(51.5074, -0.1278)
    >>> round(haversine_distance(paris, london) / 1000)
    344
    """
    phi1, phi2 = np.radians(a.lat), np.radians(b.lat)
    dphi = phi2 - phi1
    dlam = np.radians(b.lon - a.lon)

    h = np.sin(dphi / 2)**2 + np.cos(phi1) * np.cos(phi2) * np.sin(dlam / 2)**2
    d = 2.0 * RE_MEAN * np.arctan2(np.sqrt(h), np.sqrt(max(0.0, 1.0 - h)))

    if include_elevation and a.alt is not None and b.alt is not None:
        return float(np.hypot(d, b.alt - a.alt))
    return float(d)


def initial_bearing(a: GeoPoint, b: GeoPoint) -> float:
    """Forward azimuth from a to b in degrees, normalised to [0, 360)"""
    phi1, phi2 = np.radians(a.lat), np.radians(b.lat)
    dlam = np.radians(b.lon - a.lon)
    y = np.sin(dlam) * np.cos(phi2)
    x = np.cos(phi1) * np.sin(phi2) - np.sin(phi1) * np.cos(phi2) * np.cos(dlam)
    return float((np.degrees(np.arctan2(y, x)) + 360.0) % 360.0)


def destination_point(origin: GeoPoint, east: float, north: float, up: float = 0.0) -> GeoPoint:
    """Offset a point by local east/north meters (small-distance approximation)"""
    dlat = np.degrees(north / RE_MEAN)
    dlon = np.degrees(east / (RE_MEAN * np.cos(np.radians(origin.lat))))
    alt = None if origin.alt is None else origin.alt + up
    lon = (origin.lon + dlon + 180.0) % 360.0 - 180.0
    return GeoPoint(float(origin.lat + dlat), float(lon), alt)


def local_offset(origin: GeoPoint, point: GeoPoint) -> tuple:
    """East/north meters of ``point`` relative to ``origin``"""
    dlat = np.radians(point.lat - origin.lat)
    dlon = np.radians((point.lon - origin.lon + 180.0) % 360.0 - 180.0)
    north = dlat * RE_MEAN
    east = dlon * RE_MEAN * np.cos(np.radians((point.lat + origin.lat) / 2.0))
    return float(east), float(north)


def in_bbox(lat: float, lon: float, bbox: Sequence[float]) -> bool:
    """True when (lat, lon) lies in bbox = (min_lon, min_lat, max_lon, max_lat)"""
    min_lon, min_lat, max_lon, max_lat = bbox
    return min_lon <= lon <= max_lon and min_lat <= lat <= max_lat


def midpoint(a: GeoPoint, b: GeoPoint) -> GeoPoint:
    """Arithmetic mean of two nearby points; altitude only when both have one"""
    alt: Optional[float] = None
    if a.alt is not None and b.alt is not None:
        alt = (a.alt + b.alt) / 2.0
    return GeoPoint((a.lat + b.lat) / 2.0, (a.lon + b.lon) / 2.0, alt)
