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

"""Sensor fusion loop, upstream readers and attitude helpers"""

from .orientation import (
    add_orientation,
    heading_from_magnetometer,
    orientation_from_imu,
    tilt_from_gravity,
    wrap_to_pi,
)
from .readers import QueueReader, ReplayReader, SensorReader
from .sensor_fusion import SensorFusion

__all__ = [
    'add_orientation',
    'heading_from_magnetometer',
    'orientation_from_imu',
    'tilt_from_gravity',
    'wrap_to_pi',
    'QueueReader',
    'ReplayReader',
    'SensorReader',
    'SensorFusion',
]
