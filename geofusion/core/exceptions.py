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

"""Error taxonomy for the positioning and fusion engine"""


class GeoFusionError(Exception):
    """Base class for all engine errors"""


class ParseError(GeoFusionError, ValueError):
    """A single NMEA line or RTCM frame could not be decoded"""

    def __init__(self, message, raw=None):
        super().__init__(message)
        self.raw = raw


class UnsupportedSentence(ParseError):
    """Well-formed NMEA sentence of a type the ingest does not handle"""

    def __init__(self, sentence_type, raw=None):
        super().__init__(f"Unsupported NMEA sentence type: {sentence_type}", raw)
        self.sentence_type = sentence_type


class InsufficientObservations(GeoFusionError):
    """Fewer usable ranges than unknowns"""

    def __init__(self, count, required):
        super().__init__(f"Need at least {required} observations, got {count}")
        self.count = count
        self.required = required


class SingularSystem(GeoFusionError):
    """Normal equations of the solver are not invertible"""


class UndefinedReferenceFrame(GeoFusionError, KeyError):
    """A coordinate system was requested that is not registered"""

    def __init__(self, code):
        super().__init__(code)
        self.code = code

    def __str__(self):
        return f"Coordinate system not registered: {self.code}"


class StreamConnectionError(GeoFusionError, ConnectionError):
    """Correction source transport failure"""


class AuthenticationError(StreamConnectionError):
    """Correction source rejected the supplied credentials"""


class SourceNotFound(GeoFusionError, KeyError):
    """Unknown correction source id"""


class CalibrationError(GeoFusionError):
    """Calibration procedure or profile failure"""


class AuditSinkError(GeoFusionError):
    """Audit sink rejected or failed to store an entry"""


__all__ = [
    'GeoFusionError', 'ParseError', 'UnsupportedSentence', 'InsufficientObservations',
    'SingularSystem', 'UndefinedReferenceFrame', 'StreamConnectionError',
    'AuthenticationError', 'SourceNotFound', 'CalibrationError', 'AuditSinkError',
]
