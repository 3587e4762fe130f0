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

"""Physical, geodetic and processing constants"""

import numpy as np

# Physical Constants
CLIGHT = 299792458.0  # speed of light (m/s)
GRAVITY = 9.80665     # standard gravity (m/s^2)

# WGS84 ellipsoid
RE_WGS84 = 6378137.0            # semi-major axis (m)
FE_WGS84 = 1.0 / 298.257223563  # flattening
E2_WGS84 = FE_WGS84 * (2.0 - FE_WGS84)  # first eccentricity squared
RE_MEAN = 6371e3                # mean Earth radius for great-circle math (m)

# Angle conversion
R2D = 180.0 / np.pi

# Unit conversions
KNOTS_TO_MS = 0.514444  # knots to m/s
KMH_TO_MS = 1.0 / 3.6   # km/h to m/s

# Position solver
MAX_ITERATIONS = 20           # Gauss-Newton iteration cap
CONVERGENCE_THRESHOLD = 1e-4  # state correction norm (m)
MIN_SATELLITES = 4            # x, y, z, clock
MAX_GDOP = 10.0               # above this the solution is DEGRADED
SNR_REFERENCE = 50.0          # dB-Hz giving full signal weight
DEFAULT_SNR_WEIGHT = 0.5      # signal weight when SNR is absent
MIN_ELEVATION_WEIGHT = 1e-6   # floor for sin^2(el)

# RTCM3 framing
RTCM_PREAMBLE = 0xD3
RTCM_HEADER_LEN = 3   # preamble + reserved/length
RTCM_CRC_LEN = 3
RTCM_MAX_PAYLOAD = 1023

# Correction streams
RECONNECT_BASE_DELAY = 5.0    # seconds
MAX_RECONNECT_ATTEMPTS = 5    # connection attempts before giving up
SOURCE_DISTANCE_WEIGHT = 0.7
SOURCE_PRIORITY_WEIGHT = 0.3
SOURCE_PRIORITY_SCALE = 10.0
STREAM_READ_SIZE = 4096       # bytes per transport read
NTRIP_USER_AGENT = 'NTRIP geofusion/1.0'

# Sensor fusion
MAX_GNSS_AGE = 5.0            # seconds
MAX_IMU_AGE = 1.0             # seconds
MAX_ANCHOR_AGE = 10.0         # seconds
DEFAULT_GNSS_ACCURACY = 10.0  # meters, used when the fix has none
COMPLEMENTARY_ALPHA = 0.1     # weight of the new GNSS fix
DR_GROWTH_RATE = 1.1          # accuracy growth per second of dead reckoning
DR_MAX_ACCURACY = 100.0       # meters
DR_MIN_ACCURACY = 0.1         # floor of the propagated accuracy (m)
ANCHOR_SEED_ACCURACY = 5.0    # meters
ANCHOR_OVERRIDE_CONFIDENCE = 0.8
ANCHOR_OVERRIDE_ACCURACY = 2.0
ANCHOR_MIN_ACCURACY = 5.0

# Calibration
MANUAL_CONFIDENCE = 0.9
AUTO_CONFIDENCE = 0.7
AUTO_CALIBRATION_DURATION = 5.0  # seconds

# Audit
MAX_AUDIT_ENTRIES = 1000
AUDIT_RETRY_DELAY = 1.0       # seconds
AUDIT_MAX_RETRIES = 5

__all__ = [name for name in dir() if name.isupper()]
