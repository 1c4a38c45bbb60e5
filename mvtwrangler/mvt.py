"""Mapbox Vector Tile model: protobuf decoding, encoding and geometry access."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, Union

from shapely.geometry import (
    GeometryCollection,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)
from shapely.geometry.base import BaseGeometry

DEFAULT_EXTENT = 4096

_U64 = 1 << 64
_U32_MASK = 0xFFFFFFFF

_VARINT = 0
_FIXED64 = 1
_LEN = 2
_FIXED32 = 5

_MOVE_TO = 1
_LINE_TO = 2
_CLOSE_PATH = 7


class DecodeError(ValueError):
    """Raised when bytes are not a valid vector tile."""


class GeomType(IntEnum):
    UNKNOWN = 0
    POINT = 1
    LINESTRING = 2
    POLYGON = 3


# --- wire-level reading -----------------------------------------------------


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise DecodeError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
        shift += 7
        if shift >= 70:
            raise DecodeError("varint is too long")
    return result & (_U64 - 1), pos


def _take(buf: bytes, pos: int, length: int) -> tuple[bytes, int]:
    end = pos + length
    if end > len(buf):
        raise DecodeError("unexpected end of data")
    return buf[pos:end], end


def _fields(buf: bytes) -> Iterator[tuple[int, int, Union[int, bytes]]]:
    """Yield (field number, wire type, raw value) for every field in a message."""
    pos = 0
    while pos < len(buf):
        key, pos = _read_varint(buf, pos)
        number, wire = key >> 3, key & 7
        if number == 0:
            raise DecodeError("invalid field number 0")
        if wire == _VARINT:
            value, pos = _read_varint(buf, pos)
        elif wire == _FIXED64:
            value, pos = _take(buf, pos, 8)
        elif wire == _LEN:
            length, pos = _read_varint(buf, pos)
            value, pos = _take(buf, pos, length)
        elif wire == _FIXED32:
            value, pos = _take(buf, pos, 4)
        else:
            raise DecodeError(f"unsupported wire type {wire}")
        yield number, wire, value


def _expect(wire: int, expected: int, name: str) -> None:
    if wire != expected:
        raise DecodeError(f"invalid wire type {wire} for field {name}")


def _uint32_list(wire: int, value: Union[int, bytes], name: str) -> list[int]:
    if wire == _VARINT:
        return [value & _U32_MASK]
    _expect(wire, _LEN, name)
    items = []
    pos = 0
    while pos < len(value):
        item, pos = _read_varint(value, pos)
        items.append(item & _U32_MASK)
    return items


def _text(value: bytes, name: str) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"invalid UTF-8 in {name}") from exc


def _int64(value: int) -> int:
    return value - _U64 if value >= 1 << 63 else value


def _int32(value: int) -> int:
    value &= _U32_MASK
    return value - (1 << 32) if value >= 1 << 31 else value


def _zigzag_decode(value: int) -> int:
    return (value >> 1) ^ -(value & 1)


# --- wire-level writing -----------------------------------------------------


def _varint_bytes(value: int) -> bytes:
    if value < 0:
        value += _U64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(number: int, wire: int) -> bytes:
    return _varint_bytes((number << 3) | wire)


def _varint_field(number: int, value: int) -> bytes:
    return _key(number, _VARINT) + _varint_bytes(value)


def _len_field(number: int, payload: bytes) -> bytes:
    return _key(number, _LEN) + _varint_bytes(len(payload)) + payload


def _packed_field(number: int, values: list[int]) -> bytes:
    if not values:
        return b""
    return _len_field(number, b"".join(_varint_bytes(v) for v in values))


def _zigzag_encode(value: int) -> int:
    return (value << 1) ^ (value >> 63)


# --- message types ----------------------------------------------------------


@dataclass(frozen=True)
class TileValue:
    """A tag value; exactly one of the fields is normally set."""

    string_value: str | None = None
    float_value: float | None = None
    double_value: float | None = None
    int_value: int | None = None
    uint_value: int | None = None
    sint_value: int | None = None
    bool_value: bool | None = None

    @classmethod
    def _decode(cls, buf: bytes) -> TileValue:
        kwargs: dict[str, object] = {}
        for number, wire, value in _fields(buf):
            if number == 1:
                _expect(wire, _LEN, "string_value")
                kwargs["string_value"] = _text(value, "string_value")
            elif number == 2:
                _expect(wire, _FIXED32, "float_value")
                kwargs["float_value"] = struct.unpack("<f", value)[0]
            elif number == 3:
                _expect(wire, _FIXED64, "double_value")
                kwargs["double_value"] = struct.unpack("<d", value)[0]
            elif number == 4:
                _expect(wire, _VARINT, "int_value")
                kwargs["int_value"] = _int64(value)
            elif number == 5:
                _expect(wire, _VARINT, "uint_value")
                kwargs["uint_value"] = value
            elif number == 6:
                _expect(wire, _VARINT, "sint_value")
                kwargs["sint_value"] = _zigzag_decode(value)
            elif number == 7:
                _expect(wire, _VARINT, "bool_value")
                kwargs["bool_value"] = value != 0
        return cls(**kwargs)

    def _encode(self) -> bytes:
        parts = []
        if self.string_value is not None:
            parts.append(_len_field(1, self.string_value.encode("utf-8")))
        if self.float_value is not None:
            parts.append(_key(2, _FIXED32) + struct.pack("<f", self.float_value))
        if self.double_value is not None:
            parts.append(_key(3, _FIXED64) + struct.pack("<d", self.double_value))
        if self.int_value is not None:
            parts.append(_varint_field(4, self.int_value))
        if self.uint_value is not None:
            parts.append(_varint_field(5, self.uint_value))
        if self.sint_value is not None:
            parts.append(_varint_field(6, _zigzag_encode(self.sint_value)))
        if self.bool_value is not None:
            parts.append(_varint_field(7, int(self.bool_value)))
        return b"".join(parts)


def _decode_paths(geometry: list[int]) -> list[list[tuple[int, int]]]:
    """Run the geometry command stream, returning paths of absolute coordinates."""
    paths: list[list[tuple[int, int]]] = []
    current: list[tuple[int, int]] | None = None
    x = y = 0
    stream = iter(geometry)
    for command in stream:
        cmd, count = command & 7, command >> 3
        if cmd in (_MOVE_TO, _LINE_TO):
            for _ in range(count):
                try:
                    dx, dy = next(stream), next(stream)
                except StopIteration:
                    raise DecodeError("geometry ends inside a command") from None
                x += _zigzag_decode(dx)
                y += _zigzag_decode(dy)
                if cmd == _MOVE_TO:
                    current = [(x, y)]
                    paths.append(current)
                elif current is None:
                    raise DecodeError("LineTo before MoveTo")
                else:
                    current.append((x, y))
        elif cmd == _CLOSE_PATH:
            if current is None:
                raise DecodeError("ClosePath before MoveTo")
            current.append(current[0])
        else:
            raise DecodeError(f"unknown geometry command {cmd}")
    return paths


def _signed_area(ring: list[tuple[int, int]]) -> float:
    return sum(x1 * y2 - x2 * y1 for (x1, y1), (x2, y2) in zip(ring, ring[1:])) / 2


def _points_shape(paths: list[list[tuple[int, int]]]) -> BaseGeometry:
    points = [point for path in paths for point in path]
    if not points:
        return Point()
    if len(points) == 1:
        return Point(points[0])
    return MultiPoint(points)


def _lines_shape(paths: list[list[tuple[int, int]]]) -> BaseGeometry:
    lines = [path for path in paths if len(path) >= 2]
    if not lines:
        return LineString()
    if len(lines) == 1:
        return LineString(lines[0])
    return MultiLineString(lines)


def _polygons_shape(paths: list[list[tuple[int, int]]]) -> BaseGeometry:
    polygons: list[tuple[list[tuple[int, int]], list[list[tuple[int, int]]]]] = []
    for path in paths:
        ring = path if path[0] == path[-1] else [*path, path[0]]
        area = _signed_area(ring)
        if area == 0:
            continue
        if area > 0 or not polygons:
            polygons.append((ring, []))
        else:
            polygons[-1][1].append(ring)
    if not polygons:
        return Polygon()
    if len(polygons) == 1:
        shell, holes = polygons[0]
        return Polygon(shell, holes)
    return MultiPolygon([Polygon(shell, holes) for shell, holes in polygons])


@dataclass
class Feature:
    """A feature with tag index pairs and an encoded geometry command stream."""

    id: int | None = None
    tags: list[int] = field(default_factory=list)
    type: GeomType | int | None = None
    geometry: list[int] = field(default_factory=list)

    @classmethod
    def _decode(cls, buf: bytes) -> Feature:
        feature = cls()
        for number, wire, value in _fields(buf):
            if number == 1:
                _expect(wire, _VARINT, "id")
                feature.id = value
            elif number == 2:
                feature.tags.extend(_uint32_list(wire, value, "tags"))
            elif number == 3:
                _expect(wire, _VARINT, "type")
                code = _int32(value)
                try:
                    feature.type = GeomType(code)
                except ValueError:
                    feature.type = code
            elif number == 4:
                feature.geometry.extend(_uint32_list(wire, value, "geometry"))
        return feature

    def _encode(self) -> bytes:
        parts = []
        if self.id is not None:
            parts.append(_varint_field(1, self.id))
        parts.append(_packed_field(2, self.tags))
        if self.type is not None:
            parts.append(_varint_field(3, int(self.type)))
        parts.append(_packed_field(4, self.geometry))
        return b"".join(parts)

    def to_shape(self) -> BaseGeometry:
        """Decode the geometry into a shapely shape in tile coordinates."""
        paths = _decode_paths(self.geometry)
        if self.type == GeomType.POINT:
            return _points_shape(paths)
        if self.type == GeomType.LINESTRING:
            return _lines_shape(paths)
        if self.type == GeomType.POLYGON:
            return _polygons_shape(paths)
        return GeometryCollection()


@dataclass
class Layer:
    """A named layer holding features and their shared key and value tables."""

    name: str = ""
    features: list[Feature] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    values: list[TileValue] = field(default_factory=list)
    extent: int | None = None
    version: int = 1

    @classmethod
    def _decode(cls, buf: bytes) -> Layer:
        layer = cls()
        for number, wire, value in _fields(buf):
            if number == 15:
                _expect(wire, _VARINT, "version")
                layer.version = value & _U32_MASK
            elif number == 1:
                _expect(wire, _LEN, "name")
                layer.name = _text(value, "name")
            elif number == 2:
                _expect(wire, _LEN, "features")
                layer.features.append(Feature._decode(value))
            elif number == 3:
                _expect(wire, _LEN, "keys")
                layer.keys.append(_text(value, "keys"))
            elif number == 4:
                _expect(wire, _LEN, "values")
                layer.values.append(TileValue._decode(value))
            elif number == 5:
                _expect(wire, _VARINT, "extent")
                layer.extent = value & _U32_MASK
        return layer

    def _encode(self) -> bytes:
        parts = [
            _varint_field(15, self.version),
            _len_field(1, self.name.encode("utf-8")),
        ]
        parts.extend(_len_field(2, feature._encode()) for feature in self.features)
        parts.extend(_len_field(3, key.encode("utf-8")) for key in self.keys)
        parts.extend(_len_field(4, value._encode()) for value in self.values)
        if self.extent is not None:
            parts.append(_varint_field(5, self.extent))
        return b"".join(parts)


@dataclass
class Tile:
    """A vector tile: an ordered list of layers."""

    layers: list[Layer] = field(default_factory=list)

    def encode(self) -> bytes:
        """Serialise the tile to protobuf bytes."""
        return b"".join(_len_field(3, layer._encode()) for layer in self.layers)


def decode_tile(data: bytes) -> Tile:
    """Parse protobuf bytes into a Tile, raising DecodeError if malformed."""
    tile = Tile()
    for number, wire, value in _fields(bytes(data)):
        if number == 3:
            _expect(wire, _LEN, "layers")
            tile.layers.append(Layer._decode(value))
    return tile