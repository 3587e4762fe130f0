#!/usr/bin/env python3
"""Test suite for correction transports"""

import asyncio
import os
import tempfile
import unittest

from geofusion.config import StreamConfig
from geofusion.core.data_structures import CorrectionSource, SourceKind
from geofusion.core.exceptions import AuthenticationError, StreamConnectionError
from geofusion.corrections import (
    FileTransport,
    HTTPStreamTransport,
    NTRIPTransport,
    SerialTransport,
    TCPTransport,
    default_transport_factory,
)

PAYLOAD = bytes(range(0xD0, 0xF0))


def ntrip_source(url, **kwargs):
    return CorrectionSource(name='caster', url=url, kind=SourceKind.NTRIP, **kwargs)


class TestTransportFactory(unittest.TestCase):

    def test_dispatch(self):
        cases = [
            (ntrip_source('ntrip://caster.example:2101/MOUNT'), NTRIPTransport),
            (CorrectionSource('f', 'file:///tmp/replay.rtcm', SourceKind.RTCM), FileTransport),
            (CorrectionSource('h', 'https://example.com/nmea', SourceKind.NMEA), HTTPStreamTransport),
            (CorrectionSource('t', 'tcp://10.0.0.1:5000', SourceKind.RTCM), TCPTransport),
            (CorrectionSource('r', '10.0.0.1:5000', SourceKind.RTCM), TCPTransport),
            (CorrectionSource('s', '/dev/ttyUSB0', SourceKind.LOCAL), SerialTransport),
        ]
        for source, expected in cases:
            self.assertIsInstance(default_transport_factory(source), expected, source.url)

    def test_config_applied(self):
        transport = default_transport_factory(ntrip_source('caster.example/M'),
                                              StreamConfig(read_size=128, connect_timeout=2.5))
        self.assertEqual(transport.read_size, 128)
        self.assertEqual(transport.timeout, 2.5)

    def test_unknown_scheme(self):
        with self.assertRaises(ValueError):
            default_transport_factory(CorrectionSource('x', 'ftp://example.com/x', SourceKind.RTCM))


class TestNTRIPRequest(unittest.TestCase):

    def test_basic_auth(self):
        source = ntrip_source('ntrip://caster.example:2101', mountpoint='/MOUNT',
                              requires_auth=True, username='user', password='pass')
        request = NTRIPTransport(source).request('caster.example')
        self.assertTrue(request.startswith(b'GET /MOUNT HTTP/1.0\r\n'))
        self.assertIn(b'Host: caster.example\r\n', request)
        self.assertIn(b'Authorization: Basic dXNlcjpwYXNz\r\n', request)
        self.assertTrue(request.endswith(b'\r\n\r\n'))

    def test_credentials_from_url(self):
        source = ntrip_source('ntrip://u%40x:pw@caster.example:2101/RTCM3', requires_auth=True)
        transport = NTRIPTransport(source)
        self.assertEqual(transport.mountpoint(), 'RTCM3')
        # base64 of 'u@x:pw'
        self.assertIn(b'Authorization: Basic dUB4OnB3', transport.request('caster.example'))

    def test_bearer(self):
        source = ntrip_source('caster.example/M', requires_auth=True, auth_type='bearer',
                              password='tok')
        self.assertIn(b'Authorization: Bearer tok', NTRIPTransport(source).request('h'))

    def test_no_auth_header_without_credentials(self):
        request = NTRIPTransport(ntrip_source('caster.example/M')).request('h')
        self.assertNotIn(b'Authorization', request)

    def test_missing_mountpoint(self):
        with self.assertRaises(ValueError):
            NTRIPTransport(ntrip_source('ntrip://caster.example:2101')).mountpoint()

    def test_status_lines(self):
        transport = NTRIPTransport(ntrip_source('caster.example/M'))
        transport._check_status(b'ICY 200 OK\r\n')
        transport._check_status(b'HTTP/1.1 200 OK\r\n')
        with self.assertRaises(AuthenticationError):
            transport._check_status(b'HTTP/1.1 401 Unauthorized\r\n')
        with self.assertRaises(StreamConnectionError):
            transport._check_status(b'SOURCETABLE 200 OK\r\n')
        with self.assertRaises(StreamConnectionError):
            transport._check_status(b'')


class TestNTRIPSession(unittest.IsolatedAsyncioTestCase):
    """Handshake against a local caster"""

    async def asyncSetUp(self):
        self.requests = []
        self.response = b''
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def asyncTearDown(self):
        self.server.close()
        await self.server.wait_closed()

    async def handle(self, reader, writer):
        self.requests.append(await reader.readuntil(b'\r\n\r\n'))
        writer.write(self.response)
        await writer.drain()
        await asyncio.sleep(0.2)
        writer.close()

    async def read_all(self, transport, size):
        data = b''
        while len(data) < size:
            chunk = await asyncio.wait_for(transport.read(), 2.0)
            if not chunk:
                break
            data += chunk
        return data

    async def test_ntrip1(self):
        self.response = b'ICY 200 OK\r\n' + PAYLOAD
        transport = NTRIPTransport(ntrip_source(f'ntrip://127.0.0.1:{self.port}/MOUNT'))
        await transport.open()
        try:
            self.assertTrue(transport.is_open)
            self.assertEqual(await self.read_all(transport, len(PAYLOAD)), PAYLOAD)
        finally:
            await transport.close()
        self.assertTrue(self.requests[0].startswith(b'GET /MOUNT HTTP/1.0'))
        self.assertFalse(transport.is_open)

    async def test_ntrip2_headers_skipped(self):
        self.response = (b'HTTP/1.1 200 OK\r\nContent-Type: gnss/data\r\n'
                         b'Ntrip-Version: Ntrip/2.0\r\n\r\n' + PAYLOAD)
        transport = NTRIPTransport(ntrip_source(f'127.0.0.1:{self.port}/MOUNT'))
        await transport.open()
        try:
            self.assertEqual(await self.read_all(transport, len(PAYLOAD)), PAYLOAD)
        finally:
            await transport.close()

    async def test_rejected_credentials(self):
        self.response = b'HTTP/1.1 401 Unauthorized\r\n\r\n'
        transport = NTRIPTransport(ntrip_source(f'127.0.0.1:{self.port}/MOUNT', requires_auth=True,
                                                username='u', password='wrong'))
        with self.assertRaises(AuthenticationError):
            await transport.open()
        self.assertFalse(transport.is_open)

    async def test_plain_tcp(self):
        self.response = PAYLOAD
        transport = TCPTransport(CorrectionSource('raw', f'tcp://127.0.0.1:{self.port}', SourceKind.RTCM))
        await transport.open()
        try:
            transport._writer.write(b'\r\n\r\n')
            self.assertEqual(await self.read_all(transport, len(PAYLOAD)), PAYLOAD)
        finally:
            await transport.close()

    async def test_connection_refused(self):
        self.server.close()
        await self.server.wait_closed()
        transport = TCPTransport(CorrectionSource('raw', f'tcp://127.0.0.1:{self.port}', SourceKind.RTCM))
        with self.assertRaises(StreamConnectionError):
            await transport.open()

    async def test_read_before_open(self):
        with self.assertRaises(StreamConnectionError):
            await TCPTransport(CorrectionSource('raw', 'tcp://127.0.0.1:1', SourceKind.RTCM)).read()


class TestSerialTransport(unittest.IsolatedAsyncioTestCase):

    def test_port_url(self):
        source = CorrectionSource('rx', 'serial:///dev/ttyUSB0?baudrate=9600', SourceKind.LOCAL)
        self.assertEqual(SerialTransport(source)._port_url(), ('/dev/ttyUSB0', 9600))
        source = CorrectionSource('rx', 'socket://10.0.0.2:7000', SourceKind.LOCAL)
        self.assertEqual(SerialTransport(source, baudrate=38400)._port_url(),
                         ('socket://10.0.0.2:7000', 38400))

    async def test_loopback_port(self):
        transport = SerialTransport(CorrectionSource('rx', 'loop://', SourceKind.LOCAL))
        await transport.open()
        try:
            transport._port.write(b'$GPGGA')
            self.assertEqual(await asyncio.wait_for(transport.read(), 2.0), b'$GPGGA')
        finally:
            await transport.close()
        self.assertFalse(transport.is_open)

    async def test_bad_port(self):
        transport = SerialTransport(CorrectionSource('rx', '/dev/does-not-exist-0', SourceKind.LOCAL))
        with self.assertRaises(StreamConnectionError):
            await transport.open()


class TestFileTransport(unittest.IsolatedAsyncioTestCase):

    async def test_replay_in_chunks(self):
        fd, path = tempfile.mkstemp()
        with os.fdopen(fd, 'wb') as f:
            f.write(PAYLOAD)
        self.addCleanup(os.remove, path)

        transport = FileTransport(CorrectionSource('f', f'file://{path}', SourceKind.RTCM), read_size=10)
        self.assertTrue(transport.finite)
        await transport.open()
        chunks = []
        while True:
            chunk = await transport.read()
            if not chunk:
                break
            chunks.append(chunk)
        await transport.close()
        self.assertEqual([len(c) for c in chunks], [10, 10, 10, 2])
        self.assertEqual(b''.join(chunks), PAYLOAD)

    async def test_missing_file(self):
        transport = FileTransport(CorrectionSource('f', '/nonexistent/replay.rtcm', SourceKind.RTCM))
        with self.assertRaises(StreamConnectionError):
            await transport.open()
