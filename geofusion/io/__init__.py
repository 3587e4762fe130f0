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

"""Observation ingest and export formats"""

from .export import parse_gpx, to_geojson, to_gpx, to_nmea_gga, to_nmea_track
from .imu_reader import IMUFileReader, load_imu_readings, stationary_bias
from .ingest import ObservationIngest, estimate_accuracy
from .nmea import (
    IngestResult,
    NMEAParser,
    NMEARecord,
    SatelliteInView,
    decimal_to_nmea,
    nmea_checksum,
    nmea_to_decimal,
    split_sentences,
    validate_nmea_checksum,
)
from .rtcm import (
    RTCMFrame,
    RTCMHeader,
    RTCMStreamParser,
    build_rtcm_frame,
    parse_rtcm_frame,
    parse_rtcm_header,
)
from .rinex import (
    RinexEpoch,
    RinexHeader,
    RinexObsReader,
    epoch_observations,
    parse_rinex_obs,
    read_obs,
)

__all__ = [
    # export
    'parse_gpx', 'to_geojson', 'to_gpx', 'to_nmea_gga', 'to_nmea_track',
    # imu files
    'IMUFileReader', 'load_imu_readings', 'stationary_bias',
    # ingest
    'ObservationIngest', 'estimate_accuracy',
    # nmea
    'IngestResult', 'NMEAParser', 'NMEARecord', 'SatelliteInView', 'decimal_to_nmea',
    'nmea_checksum', 'nmea_to_decimal', 'split_sentences', 'validate_nmea_checksum',
    # rtcm
    'RTCMFrame', 'RTCMHeader', 'RTCMStreamParser', 'build_rtcm_frame', 'parse_rtcm_frame',
    'parse_rtcm_header',
    # rinex
    'RinexEpoch', 'RinexHeader', 'RinexObsReader', 'epoch_observations', 'parse_rinex_obs',
    'read_obs',
]
