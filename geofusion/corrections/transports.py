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

"""Byte transports for correction sources

A transport only moves bytes: ``open`` establishes the stream, ``read``
returns the next chunk (``b''`` at end of stream) and ``close`` releases it.
Framing and statistics belong to the stream manager.
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlsplit

import aiohttp
import serial

from ..core.constants import NTRIP_USER_AGENT, STREAM_READ_SIZE
from ..core.data_structures import CorrectionSource, SourceKind
from ..core.exceptions import AuthenticationError, StreamConnectionError

logger = logging.getLogger(__name__)

NTRIP_DEFAULT_PORT = 2101
MAX_HEADER_BYTES = 16 * 1024


class CorrectionTransport(ABC):
    """Base class of all transports

    Parameters
    ----------
    source : CorrectionSource
        Source description (copy; transports never mutate it)
    read_size : int
        Maximum bytes returned by one ``read``
    timeout : float
        Connect timeout in seconds
    """

    #: True when end of stream is a normal end rather than a dropped link
    finite = False

    def __init__(self, source: CorrectionSource, read_size: int = STREAM_READ_SIZE,
                 timeout: float = 10.0):
        self.source = source
        self.read_size = read_size
        self.timeout = timeout

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    async def open(self) -> None:
        pass

    @abstractmethod
    async def read(self) -> bytes:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    def __repr__(self):
        return f"{type(self).__name__}({self.source.name!r})"


def _host_port(url: str, default_port: int):
    parts = urlsplit(url if '://' in url else f'tcp://{url}')
    if not parts.hostname:
        raise ValueError(f"No host in source URL: {url!r}")
    return parts.hostname, parts.port or default_port, parts


class _StreamTransport(CorrectionTransport):
    """Shared asyncio stream handling for TCP based transports"""

    def __init__(self, source, read_size=STREAM_READ_SIZE, timeout=10.0):
        super().__init__(source, read_size, timeout)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def _connect(self, host: str, port: int):
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise StreamConnectionError(f"Timed out connecting to {host}:{port}") from e
        except OSError as e:
            raise StreamConnectionError(f"Cannot connect to {host}:{port}: {e}") from e

    async def read(self) -> bytes:
        if self._reader is None:
            raise StreamConnectionError(f"{self!r} is not open")
        try:
            return await self._reader.read(self.read_size)
        except OSError as e:
            raise StreamConnectionError(f"Read failed: {e}") from e

    async def close(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Ignoring error while closing {self!r}: {e}")


class TCPTransport(_StreamTransport):
    """Raw correction bytes from ``tcp://host:port``"""

    async def open(self) -> None:
        host, port, _ = _host_port(self.source.url, NTRIP_DEFAULT_PORT)
        await self._connect(host, port)
        logger.info(f"TCP stream open: {host}:{port}")


class NTRIPTransport(_StreamTransport):
    """NTRIP caster client

    Sends an HTTP/1.0 GET for the mountpoint and accepts both the
    ``ICY 200 OK`` (NTRIP 1) and ``HTTP/1.x 200`` (NTRIP 2) status lines.
    """

    def mountpoint(self) -> str:
        if self.source.mountpoint:
            return self.source.mountpoint.lstrip('/')
        _, _, parts = _host_port(self.source.url, NTRIP_DEFAULT_PORT)
        mount = parts.path.lstrip('/')
        if not mount:
            raise ValueError(f"No mountpoint for NTRIP source {self.source.name!r}")
        return mount

    def _credentials(self):
        username, password = self.source.username, self.source.password
        if username is None:
            parts = urlsplit(self.source.url)
            username = unquote(parts.username) if parts.username else None
            password = unquote(parts.password) if parts.password else password
        return username, password

    def request(self, host: str) -> bytes:
        lines = [
            f"GET /{self.mountpoint()} HTTP/1.0",
            f"Host: {host}",
            "Ntrip-Version: Ntrip/2.0",
            f"User-Agent: {NTRIP_USER_AGENT}",
            "Accept: */*",
            "Connection: close",
        ]
        if self.source.requires_auth:
            username, password = self._credentials()
            if (self.source.auth_type or 'basic').lower() == 'bearer':
                lines.append(f"Authorization: Bearer {password or ''}")
            else:
                token = base64.b64encode(f"{username or ''}:{password or ''}".encode()).decode()
                lines.append(f"Authorization: Basic {token}")
        return ('\r\n'.join(lines) + '\r\n\r\n').encode('ascii')

    async def open(self) -> None:
        host, port, _ = _host_port(self.source.url, NTRIP_DEFAULT_PORT)
        await self._connect(host, port)
        try:
            self._writer.write(self.request(host))
            await self._writer.drain()
            status = await asyncio.wait_for(self._reader.readline(), timeout=self.timeout)
            self._check_status(status)
            if status.startswith(b'HTTP/'):
                await self._skip_headers()
        except (asyncio.TimeoutError, OSError) as e:
            await self.close()
            raise StreamConnectionError(f"NTRIP handshake with {host} failed: {e}") from e
        except StreamConnectionError:
            await self.close()
            raise
        logger.info(f"NTRIP stream open: {host}:{port}/{self.mountpoint()}")

    def _check_status(self, line: bytes):
        text = line.decode('latin-1').strip()
        if not text:
            raise StreamConnectionError("Caster closed the connection without a response")
        if text.startswith('SOURCETABLE'):
            raise StreamConnectionError(f"Mountpoint {self.mountpoint()!r} not found (got source table)")
        parts = text.split()
        code = parts[1] if len(parts) > 1 else ''
        if code == '401':
            raise AuthenticationError(f"Caster rejected credentials: {text}")
        if code != '200':
            raise StreamConnectionError(f"Unexpected caster response: {text}")

    async def _skip_headers(self):
        consumed = 0
        while True:
            line = await asyncio.wait_for(self._reader.readline(), timeout=self.timeout)
            consumed += len(line)
            if line in (b'\r\n', b'\n', b''):
                return
            if consumed > MAX_HEADER_BYTES:
                raise StreamConnectionError("Caster response headers too long")


class HTTPStreamTransport(CorrectionTransport):
    """Streaming HTTP GET (text sources such as NMEA over HTTP)"""

    def __init__(self, source, read_size=STREAM_READ_SIZE, timeout=10.0):
        super().__init__(source, read_size, timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._response: Optional[aiohttp.ClientResponse] = None

    @property
    def is_open(self) -> bool:
        return self._response is not None and not self._response.closed

    async def open(self) -> None:
        auth = None
        headers = {'User-Agent': NTRIP_USER_AGENT}
        if self.source.requires_auth:
            if (self.source.auth_type or 'basic').lower() == 'bearer':
                headers['Authorization'] = f"Bearer {self.source.password or ''}"
            else:
                auth = aiohttp.BasicAuth(self.source.username or '', self.source.password or '')

        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout))
        try:
            self._response = await self._session.get(self.source.url, auth=auth, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self.close()
            raise StreamConnectionError(f"HTTP stream {self.source.url} failed: {e}") from e

        status = self._response.status
        if status == 401:
            await self.close()
            raise AuthenticationError(f"HTTP 401 from {self.source.url}")
        if status != 200:
            await self.close()
            raise StreamConnectionError(f"HTTP {status} from {self.source.url}")
        logger.info(f"HTTP stream open: {self.source.url}")

    async def read(self) -> bytes:
        if self._response is None:
            raise StreamConnectionError(f"{self!r} is not open")
        try:
            return await self._response.content.read(self.read_size)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StreamConnectionError(f"HTTP stream read failed: {e}") from e

    async def close(self) -> None:
        response, self._response = self._response, None
        session, self._session = self._session, None
        if response is not None:
            response.release()
        if session is not None:
            await session.close()


class SerialTransport(CorrectionTransport):
    """Local receiver on a serial port, polled without blocking the loop

    The URL is a device path or any pyserial URL (``loop://``,
    ``socket://host:port``); ``serial://`` prefixes are stripped and a
    ``baudrate`` query parameter is honoured.
    """

    poll_interval = 0.05

    def __init__(self, source, read_size=STREAM_READ_SIZE, timeout=10.0, baudrate: int = 115200):
        super().__init__(source, read_size, timeout)
        self.baudrate = baudrate
        self._port = None

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    def _port_url(self):
        url = self.source.url
        baudrate = self.baudrate
        if url.startswith('serial://'):
            url = url[len('serial://'):]
        if '?' in url and not url.startswith(('socket://', 'rfc2217://')):
            url, query = url.split('?', 1)
            for item in query.split('&'):
                key, _, value = item.partition('=')
                if key == 'baudrate' and value.isdigit():
                    baudrate = int(value)
        return url, baudrate

    async def open(self) -> None:
        url, baudrate = self._port_url()
        try:
            self._port = serial.serial_for_url(url, baudrate=baudrate, timeout=0)
        except (serial.SerialException, ValueError) as e:
            raise StreamConnectionError(f"Cannot open serial port {url}: {e}") from e
        logger.info(f"Serial port open: {url} @ {baudrate}")

    async def read(self) -> bytes:
        if self._port is None:
            raise StreamConnectionError(f"{self!r} is not open")
        while True:
            try:
                waiting = self._port.in_waiting
                data = self._port.read(min(waiting, self.read_size) if waiting else 1)
            except serial.SerialException as e:
                raise StreamConnectionError(f"Serial read failed: {e}") from e
            if data:
                return data
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        port, self._port = self._port, None
        if port is not None:
            port.close()


class FileTransport(CorrectionTransport):
    """Replays a recorded stream from ``file://path`` or a plain path"""

    finite = True

    def __init__(self, source, read_size=STREAM_READ_SIZE, timeout=10.0, chunk_delay: float = 0.0):
        super().__init__(source, read_size, timeout)
        self.chunk_delay = chunk_delay
        self._file = None

    @property
    def path(self) -> Path:
        url = self.source.url
        if url.startswith('file://'):
            url = unquote(urlsplit(url).path)
        return Path(url)

    @property
    def is_open(self) -> bool:
        return self._file is not None

    async def open(self) -> None:
        try:
            self._file = open(self.path, 'rb')
        except OSError as e:
            raise StreamConnectionError(f"Cannot open replay file {self.path}: {e}") from e
        logger.info(f"Replaying corrections from {self.path}")

    async def read(self) -> bytes:
        if self._file is None:
            raise StreamConnectionError(f"{self!r} is not open")
        if self.chunk_delay:
            await asyncio.sleep(self.chunk_delay)
        else:
            await asyncio.sleep(0)
        return self._file.read(self.read_size)

    async def close(self) -> None:
        f, self._file = self._file, None
        if f is not None:
            f.close()


def default_transport_factory(source: CorrectionSource, config=None) -> CorrectionTransport:
    """Pick the transport for a source from its kind and URL scheme"""
    read_size = getattr(config, 'read_size', STREAM_READ_SIZE)
    timeout = getattr(config, 'connect_timeout', 10.0)
    scheme = urlsplit(source.url).scheme.lower() if '://' in source.url else ''

    if scheme == 'file':
        return FileTransport(source, read_size, timeout)
    if source.kind is SourceKind.NTRIP:
        return NTRIPTransport(source, read_size, timeout)
    if source.kind is SourceKind.LOCAL:
        if not scheme and Path(source.url).is_file():
            return FileTransport(source, read_size, timeout)
        return SerialTransport(source, read_size, timeout)
    if scheme in ('http', 'https'):
        return HTTPStreamTransport(source, read_size, timeout)
    if scheme in ('tcp', ''):
        return TCPTransport(source, read_size, timeout)
    raise ValueError(f"No transport for {source.kind.value} source with URL {source.url!r}")
