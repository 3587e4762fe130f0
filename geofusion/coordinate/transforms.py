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

"""Earth-centred and local-level coordinate transformations (WGS84)"""

import numpy as np

from ..core.constants import E2_WGS84, FE_WGS84, RE_WGS84

RB_WGS84 = RE_WGS84 * (1.0 - FE_WGS84)        # semi-minor axis (m)
EP2_WGS84 = (RE_WGS84**2 - RB_WGS84**2) / RB_WGS84**2  # second eccentricity squared


def ecef2llh(xyz: np.ndarray) -> np.ndarray:
    """Convert ECEF coordinates to geodetic coordinates

    Uses Bowring's closed-form latitude with the pole-stable height
    expression, sub-millimetre for terrestrial and airborne heights.

    Parameters
    ----------
    xyz : np.ndarray
        ECEF coordinates [x, y, z] in meters, or an (N, 3) array

    Returns
    -------
    np.ndarray
        [lat, lon, height] with angles in radians, same leading shape as input
    """
    xyz = np.asarray(xyz, dtype=float)
    x, y, z = xyz[..., 0], xyz[..., 1], xyz[..., 2]

    p = np.hypot(x, y)
    theta = np.arctan2(z * RE_WGS84, p * RB_WGS84)
    lat = np.arctan2(z + EP2_WGS84 * RB_WGS84 * np.sin(theta)**3,
                     p - E2_WGS84 * RE_WGS84 * np.cos(theta)**3)
    lon = np.arctan2(y, x)

    sin_lat = np.sin(lat)
    n = RE_WGS84 / np.sqrt(1.0 - E2_WGS84 * sin_lat**2)
    h = p * np.cos(lat) + z * sin_lat - RE_WGS84**2 / n

    return np.stack([lat, lon, h], axis=-1)


def llh2ecef(llh: np.ndarray) -> np.ndarray:
    """Convert geodetic [lat, lon, height] (radians, meters) to ECEF meters"""
    llh = np.asarray(llh, dtype=float)
    lat, lon, h = llh[..., 0], llh[..., 1], llh[..., 2]

    sin_lat = np.sin(lat)
    cos_lat = np.cos(lat)
    n = RE_WGS84 / np.sqrt(1.0 - E2_WGS84 * sin_lat**2)

    return np.stack([
        (n + h) * cos_lat * np.cos(lon),
        (n + h) * cos_lat * np.sin(lon),
        (n * (1.0 - E2_WGS84) + h) * sin_lat,
    ], axis=-1)


def enu_rotation(lat: float, lon: float) -> np.ndarray:
    """Rotation matrix taking ECEF vectors to East-North-Up at (lat, lon) radians"""
    sl, cl = np.sin(lat), np.cos(lat)
    so, co = np.sin(lon), np.cos(lon)
    return np.array([
        [-so, co, 0.0],
        [-sl * co, -sl * so, cl],
        [cl * co, cl * so, sl],
    ])


def ecef2enu(xyz: np.ndarray, org_llh: np.ndarray) -> np.ndarray:
    """ECEF point(s) to local ENU meters relative to a geodetic origin"""
    R = enu_rotation(org_llh[0], org_llh[1])
    d = np.asarray(xyz, dtype=float) - llh2ecef(org_llh)
    return d @ R.T


def enu2ecef(enu: np.ndarray, org_llh: np.ndarray) -> np.ndarray:
    """Local ENU meters back to ECEF"""
    R = enu_rotation(org_llh[0], org_llh[1])
    return np.asarray(enu, dtype=float) @ R + llh2ecef(org_llh)


def geodetic_to_ecef_deg(lat_deg: float, lon_deg: float, h: float = 0.0) -> np.ndarray:
    """Convenience wrapper taking degrees"""
    return llh2ecef(np.array([np.radians(lat_deg), np.radians(lon_deg), h]))
