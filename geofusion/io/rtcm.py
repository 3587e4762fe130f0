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

"""RTCM 3 transport-layer framing

Frame layout::

    0xD3 | 6 reserved bits + 10-bit length | payload (length bytes) | CRC-24Q

The first 12 bits of the payload are the message number. CRC-24Q is
computed with pyrtcm.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from pyrtcm.rtcmhelpers import calc_crc24q

from ..core.constants import RTCM_CRC_LEN, RTCM_HEADER_LEN, RTCM_MAX_PAYLOAD, RTCM_PREAMBLE
from ..core.exceptions import ParseError

logger = logging.getLogger(__name__)

FRAME_OVERHEAD = RTCM_HEADER_LEN + RTCM_CRC_LEN


@dataclass(frozen=True)
class RTCMHeader:
    preamble: int
    length: int
    message_type: Optional[int]


@dataclass(frozen=True)
class RTCMFrame:
    """One complete RTCM 3 frame"""
    message_type: int
    length: int
    payload: bytes
    crc: int
    crc_valid: bool
    raw: bytes

    @property
    def size(self) -> int:
        return len(self.raw)


def parse_rtcm_header(data: bytes) -> RTCMHeader:
    """Decode preamble, length and message type from the start of a frame

    Only the first five bytes are needed; use ``parse_rtcm_frame`` to accept
    a complete frame.
    """
    data = bytes(data)
    if len(data) < RTCM_HEADER_LEN:
        raise ParseError(f"RTCM header needs {RTCM_HEADER_LEN} bytes, got {len(data)}", data)
    if data[0] != RTCM_PREAMBLE:
        raise ParseError(f"Bad RTCM preamble 0x{data[0]:02X}", data)
    length = ((data[1] & 0x03) << 8) | data[2]
    message_type = None
    if len(data) >= RTCM_HEADER_LEN + 2 and length >= 2:
        message_type = (data[3] << 4) | (data[4] >> 4)
    return RTCMHeader(preamble=data[0], length=length, message_type=message_type)


def parse_rtcm_frame(data: bytes) -> RTCMFrame:
    """Validate and decode one frame at the start of ``data``

    Raises
    ------
    ParseError
        Wrong preamble, or fewer than ``length + 6`` bytes present
    """
    data = bytes(data)
    header = parse_rtcm_header(data)
    total = header.length + FRAME_OVERHEAD
    if len(data) < total:
        raise ParseError(
            f"Truncated RTCM frame: need {total} bytes, have {len(data)}", data)
    if header.message_type is None:
        raise ParseError("RTCM payload too short for a message number", data)

    raw = data[:total]
    payload = raw[RTCM_HEADER_LEN:RTCM_HEADER_LEN + header.length]
    crc = int.from_bytes(raw[-RTCM_CRC_LEN:], 'big')
    crc_valid = calc_crc24q(raw) == 0
    if not crc_valid:
        logger.debug("RTCM %d frame failed CRC-24Q", header.message_type)
    return RTCMFrame(
        message_type=header.message_type,
        length=header.length,
        payload=payload,
        crc=crc,
        crc_valid=crc_valid,
        raw=raw,
    )


def build_rtcm_frame(payload: bytes) -> bytes:
    """Wrap a payload into a frame with header and CRC-24Q"""
    if len(payload) > RTCM_MAX_PAYLOAD:
        raise ValueError(f"RTCM payload too long: {len(payload)} bytes")
    head = bytes([RTCM_PREAMBLE, (len(payload) >> 8) & 0x03, len(payload) & 0xFF])
    body = head + bytes(payload)
    return body + calc_crc24q(body).to_bytes(RTCM_CRC_LEN, 'big')


class RTCMStreamParser:
    """Incremental framer for a correction byte stream

    Bytes are consumed strictly in arrival order. Garbage before a preamble
    is dropped, and a preamble whose frame fails CRC is treated as a false
    sync and skipped by one byte when ``resync_on_crc_error`` is set.
    """

    def __init__(self, resync_on_crc_error: bool = True, max_buffer: int = 64 * 1024):
        self.resync_on_crc_error = resync_on_crc_error
        self.max_buffer = max_buffer
        self._buffer = bytearray()
        self.discarded = 0
        self.crc_errors = 0

    def reset(self):
        self._buffer.clear()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list:
        """Append bytes and return every complete frame now available"""
        self._buffer.extend(chunk)
        frames = []
        while True:
            start = self._buffer.find(bytes([RTCM_PREAMBLE]))
            if start < 0:
                self.discarded += len(self._buffer)
                self._buffer.clear()
                break
            if start > 0:
                self.discarded += start
                del self._buffer[:start]
            if len(self._buffer) < RTCM_HEADER_LEN:
                break

            length = ((self._buffer[1] & 0x03) << 8) | self._buffer[2]
            total = length + FRAME_OVERHEAD
            if len(self._buffer) < total:
                break

            try:
                frame = parse_rtcm_frame(self._buffer[:total])
            except ParseError:
                self.discarded += 1
                del self._buffer[:1]
                continue

            if not frame.crc_valid:
                self.crc_errors += 1
                if self.resync_on_crc_error:
                    self.discarded += 1
                    del self._buffer[:1]
                    continue
            frames.append(frame)
            del self._buffer[:total]

        if len(self._buffer) > self.max_buffer:
            overflow = len(self._buffer) - self.max_buffer
            logger.warning("RTCM buffer overflow, dropping %d bytes", overflow)
            self.discarded += overflow
            del self._buffer[:overflow]
        return frames
