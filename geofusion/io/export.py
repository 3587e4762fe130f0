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

"""Track export (NMEA GGA, GPX 1.1, GeoJSON) and GPX import

All functions are pure: they take positions and return text.
"""

import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Union

from ..core.data_structures import FusedPosition, GeoPoint, GNSSData
from ..core.exceptions import ParseError
from .nmea import decimal_to_nmea, nmea_checksum

GPX_NS = 'http://www.topografix.com/GPX/1/1'
XSI_NS = 'http://www.w3.org/2001/XMLSchema-instance'
GPX_CREATOR = 'geofusion'

PositionLike = Union[FusedPosition, GNSSData, GeoPoint]


def _as_point(item: PositionLike) -> GeoPoint:
    if isinstance(item, FusedPosition):
        return item.position
    if isinstance(item, GNSSData):
        return item.point
    if isinstance(item, GeoPoint):
        return item
    raise TypeError(f"Cannot export {type(item).__name__}")


def _timestamp(item) -> Optional[float]:
    return getattr(item, 'timestamp', None)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


def to_nmea_gga(item: PositionLike, timestamp: Optional[float] = None,
                talker: str = 'GP') -> str:
    """Encode a position as a checksum-terminated GGA sentence

    Fix quality, satellite count and HDOP come from ``GNSSData`` when
    available and default to 1, 00 and 1.0.
    """
    point = _as_point(item)
    ts = timestamp if timestamp is not None else _timestamp(item)
    when = datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else datetime.now(timezone.utc)
    utc = f"{when:%H%M%S}.{when.microsecond // 10000:02d}"

    lat, ns = decimal_to_nmea(point.lat, is_latitude=True)
    lon, ew = decimal_to_nmea(point.lon, is_latitude=False)

    fix, sats, hdop = '1', '00', '1.0'
    if isinstance(item, GNSSData):
        if item.fix_quality is not None:
            fix = str(item.fix_quality)
        if item.satellites is not None:
            sats = f"{item.satellites:02d}"
        if item.hdop is not None:
            hdop = f"{item.hdop:.1f}"

    fields = [
        f"{talker}GGA", utc, lat, ns, lon, ew, fix, sats, hdop,
        f"{(point.alt or 0.0):.1f}", 'M', '0.0', 'M', '', '0000',
    ]
    body = ','.join(fields)
    return f"${body}*{nmea_checksum(body)}\r\n"


def to_nmea_track(items: Iterable[PositionLike], talker: str = 'GP') -> str:
    return ''.join(to_nmea_gga(item, talker=talker) for item in items)


def to_gpx(items: Sequence[PositionLike], name: str = 'Track',
           created: Optional[float] = None) -> str:
    """GPX 1.1 document with one track segment"""
    ET.register_namespace('', GPX_NS)
    ET.register_namespace('xsi', XSI_NS)
    gpx = ET.Element(f'{{{GPX_NS}}}gpx', {
        'version': '1.1',
        'creator': GPX_CREATOR,
        f'{{{XSI_NS}}}schemaLocation': f'{GPX_NS} {GPX_NS}/gpx.xsd',
    })
    metadata = ET.SubElement(gpx, f'{{{GPX_NS}}}metadata')
    ET.SubElement(metadata, f'{{{GPX_NS}}}name').text = name
    if created is not None:
        ET.SubElement(metadata, f'{{{GPX_NS}}}time').text = _iso(created)

    trk = ET.SubElement(gpx, f'{{{GPX_NS}}}trk')
    ET.SubElement(trk, f'{{{GPX_NS}}}name').text = name
    seg = ET.SubElement(trk, f'{{{GPX_NS}}}trkseg')
    for item in items:
        point = _as_point(item)
        pt = ET.SubElement(seg, f'{{{GPX_NS}}}trkpt',
                           {'lat': f"{point.lat:.8f}", 'lon': f"{point.lon:.8f}"})
        if point.alt is not None:
            ET.SubElement(pt, f'{{{GPX_NS}}}ele').text = f"{point.alt:.2f}"
        ts = _timestamp(item)
        if ts is not None:
            ET.SubElement(pt, f'{{{GPX_NS}}}time').text = _iso(ts)
        if isinstance(item, GNSSData) and item.hdop is not None:
            ET.SubElement(pt, f'{{{GPX_NS}}}hdop').text = f"{item.hdop:.1f}"

    ET.indent(gpx)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(gpx, encoding='unicode')


def to_geojson(items: Sequence[PositionLike], indent: Optional[int] = 2) -> str:
    """FeatureCollection of Point features with accuracy/orientation properties"""
    features = []
    for i, item in enumerate(items, start=1):
        point = _as_point(item)
        coords = [point.lon, point.lat]
        if point.alt is not None:
            coords.append(point.alt)
        props = {'id': i}
        ts = _timestamp(item)
        if ts is not None:
            props['timestamp'] = ts
            props['time'] = _iso(ts)
        if isinstance(item, FusedPosition):
            props['accuracy'] = item.accuracy
            props['sources'] = list(item.sources)
            if item.orientation is not None:
                props['orientation'] = item.orientation.to_dict()
        elif isinstance(item, GNSSData):
            props['accuracy'] = item.accuracy
            props['source'] = item.source
            if item.hdop is not None:
                props['hdop'] = item.hdop
        features.append({
            'type': 'Feature',
            'geometry': {'type': 'Point', 'coordinates': coords},
            'properties': props,
        })
    return json.dumps({'type': 'FeatureCollection', 'features': features}, indent=indent)


def _local(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def parse_gpx(text: str) -> list:
    """Track, route and waypoints of a GPX document as ``GNSSData`` records

    Points without a time get timestamp 0.0. Unparseable coordinates are
    skipped; malformed XML raises ``ParseError``.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ParseError(f"Invalid GPX document: {e}", text) from e
    if _local(root.tag) != 'gpx':
        raise ParseError("Root element is not <gpx>", text)

    points = []
    for el in root.iter():
        if _local(el.tag) not in ('trkpt', 'rtept', 'wpt'):
            continue
        try:
            lat = float(el.get('lat'))
            lon = float(el.get('lon'))
        except (TypeError, ValueError):
            continue
        children = {_local(c.tag): (c.text or '').strip() for c in el.iter() if c is not el}
        ts = 0.0
        if children.get('time'):
            try:
                ts = datetime.fromisoformat(children['time'].replace('Z', '+00:00')).timestamp()
            except ValueError:
                ts = 0.0

        def num(key, cast=float):
            try:
                return cast(children[key]) if children.get(key) else None
            except ValueError:
                return None

        points.append(GNSSData(
            latitude=lat, longitude=lon, timestamp=ts,
            altitude=num('ele'), source='GPX',
            hdop=num('hdop'), vdop=num('vdop'),
            satellites=num('sat', int),
            speed=num('speed'), course=num('course'),
        ))
    return points
