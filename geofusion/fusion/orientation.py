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

"""Attitude helpers for inertial readings"""

import math
from typing import Optional

import numpy as np

from ..core.data_structures import IMUData, Orientation

TWO_PI = 2 * np.pi


def wrap_to_pi(angle: float) -> float:
    """Wrap an angle to [-pi, pi)"""
    return float((angle + np.pi) % TWO_PI - np.pi)


def tilt_from_gravity(acceleration) -> tuple:
    """Pitch and roll of a static body from its specific-force vector

    Parameters
    ----------
    acceleration : array_like, shape (3,)
        Accelerometer output (m/s^2) in a forward-right-down or
        forward-left-up body frame with gravity reaction along +z

    Returns
    -------
    tuple
        (pitch, roll) in radians
    """
    ax, ay, az = (float(v) for v in acceleration)
    pitch = math.atan2(-ax, math.hypot(ay, az))
    roll = math.atan2(ay, az)
    return pitch, roll


def heading_from_magnetometer(magnetometer, pitch: float, roll: float) -> float:
    """Tilt-compensated magnetic heading in radians, wrapped to [-pi, pi)"""
    mx, my, mz = (float(v) for v in magnetometer)
    sp, cp = math.sin(pitch), math.cos(pitch)
    sr, cr = math.sin(roll), math.cos(roll)
    xh = mx * cp + my * sr * sp + mz * cr * sp
    yh = my * cr - mz * sr
    return wrap_to_pi(math.atan2(-yh, xh))


def orientation_from_imu(imu: IMUData, yaw: Optional[float] = None) -> Orientation:
    """Device orientation when reported, otherwise derived from gravity

    Heading comes from the magnetometer when present, else ``yaw`` (or 0).
    """
    if imu.orientation is not None:
        return imu.orientation
    pitch, roll = tilt_from_gravity(imu.acceleration)
    if imu.magnetometer is not None:
        heading = heading_from_magnetometer(imu.magnetometer, pitch, roll)
    else:
        heading = 0.0 if yaw is None else yaw
    return Orientation(pitch=pitch, roll=roll, yaw=heading)


def add_orientation(base: Orientation, offset: Orientation, sign: float = 1.0) -> Orientation:
    """Component-wise sum ``base + sign * offset`` with angles wrapped"""
    return Orientation(
        pitch=wrap_to_pi(base.pitch + sign * offset.pitch),
        roll=wrap_to_pi(base.roll + sign * offset.roll),
        yaw=wrap_to_pi(base.yaw + sign * offset.yaw),
    )
