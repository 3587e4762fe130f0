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

"""
GeoFusion - GNSS Positioning and Multi-Sensor Fusion Engine

Turns NMEA/RTCM streams, pseudorange observations, inertial readings and
optical anchor detections into one calibrated position with an accuracy
estimate and an audit trail.
"""

__version__ = "1.0.0"
__author__ = "GeoFusion Development Team"
__title__ = "geofusion"
__description__ = "GNSS positioning and multi-sensor fusion engine"

from .core import *
from .coordinate import *
from .gnss import *
from .io import *
from .corrections import *
from .fusion import *
from .calibration import *
from .audit import *
from .config import EngineConfig, load_config, save_config
from .engine import FusionEngine
from . import logger
