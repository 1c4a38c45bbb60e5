import pytest
from shapely.geometry import (
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)

from mvtwrangler.mvt import (
    DecodeError,
    Feature,
    GeomType,
    Layer,
    Tile,
    TileValue,
    decode_tile,
)


def _cmd(cmd, count):
    return (count << 3) | cmd


def _zz(n):
    return (n << 1) ^ (n >> 31)


def _path_commands(paths, close=False):
    out = []
    cx = cy = 0
    for path in paths:
        x, y = path[0]
        out += [_cmd(1, 1), _zz(x - cx), _zz(y - cy)]
        cx, cy = x, y
        rest = path[1:]
        if rest:
            out.append(_cmd(2, len(rest)))
            for x, y in rest:
                out += [_zz(x - cx), _zz(y - cy)]
                cx, cy = x, y
        if close:
            out.append(_cmd(7, 1))
    return out


def _multipoint_commands(points):
    out = [_cmd(1, len(points))]
    cx = cy = 0
    for x, y in points:
        out += [_zz(x - cx), _zz(y - cy)]
        cx, cy = x, y
    return out


def _sample_tile():
    return Tile(
        layers=[
            Layer(
                name="roads",
                keys=["name", "rank", "offset", "level", "ratio", "scale", "open"],
                values=[
                    TileValue(string_value="Main"),
                    TileValue(int_value=-5),
                    TileValue(sint_value=-70000),
                    TileValue(uint_value=2**64 - 1),
                    TileValue(double_value=3.41),
                    TileValue(float_value=0.5),
                    TileValue(bool_value=False),
                ],
                extent=4096,
                features=[
                    Feature(id=7, tags=[0, 0, 1, 1], type=GeomType.POINT, geometry=[9, 50, 34]),
                    Feature(tags=[2, 2], type=GeomType.LINESTRING,
                            geometry=_path_commands([[(0, 0), (5, -3)]])),
                ],
            ),
            Layer(name="empty", version=2),
        ]
    )


def test_round_trip_preserves_tile():
    tile = _sample_tile()
    assert decode_tile(tile.encode()) == tile


def test_decoded_type_is_enum_member():
    decoded = decode_tile(_sample_tile().encode())
    assert decoded.layers[0].features[0].type is GeomType.POINT


def test_unknown_type_code_round_trips():
    tile = Tile(layers=[Layer(name="x", features=[Feature(type=9)])])
    assert decode_tile(tile.encode()).layers[0].features[0].type == 9


def test_minimal_tile_wire_bytes():
    tile = Tile(layers=[Layer(name="a", version=2)])
    assert tile.encode() == b"\x1a\x05\x78\x02\x0a\x01a"


def test_empty_bytes_give_empty_tile():
    assert decode_tile(b"") == Tile(layers=[])


def test_unknown_fields_are_skipped():
    assert decode_tile(b"\xa0\x01\x05") == Tile(layers=[])


def test_unpacked_tags_are_accepted():
    feature = b"\x10\x01\x10\x02"
    layer = b"\x0a\x01a" + b"\x12" + bytes([len(feature)]) + feature
    data = b"\x1a" + bytes([len(layer)]) + layer
    assert decode_tile(data).layers[0].features[0].tags == [1, 2]


@pytest.mark.parametrize(
    "data",
    [
        b"\x1b",
        b"\x1a\x05\x78",
        b"\x18\x01",
        b"\x1a\x03\x0a\x01\xff",
        b"\x1a\x02\x78",
    ],
)
def test_malformed_data_raises(data):
    with pytest.raises(DecodeError):
        decode_tile(data)


def test_spec_point_example():
    shape = Feature(type=GeomType.POINT, geometry=[9, 50, 34]).to_shape()
    assert shape.equals(Point(25, 17))


def test_multipoint():
    points = [(5, 7), (3, 2), (-4, 10)]
    shape = Feature(type=GeomType.POINT, geometry=_multipoint_commands(points)).to_shape()
    assert shape.equals(MultiPoint(points))


def test_linestring():
    path = [(2, 2), (2, 10), (10, 10)]
    shape = Feature(type=GeomType.LINESTRING, geometry=_path_commands([path])).to_shape()
    assert shape.equals(LineString(path))


def test_multilinestring():
    paths = [[(0, 0), (5, 5)], [(10, 10), (10, 20), (20, 20)]]
    shape = Feature(type=GeomType.LINESTRING, geometry=_path_commands(paths)).to_shape()
    assert shape.equals(MultiLineString(paths))


def test_polygon_with_hole():
    exterior = [(0, 0), (10, 0), (10, 10), (0, 10)]
    hole = [(2, 2), (2, 8), (8, 8), (8, 2)]
    geometry = _path_commands([exterior, hole], close=True)
    shape = Feature(type=GeomType.POLYGON, geometry=geometry).to_shape()
    assert shape.geom_type == "Polygon"
    assert len(shape.interiors) == 1
    assert shape.equals(Polygon(exterior, [hole]))


def test_multipolygon():
    first = [(0, 0), (10, 0), (10, 10), (0, 10)]
    second = [(20, 20), (30, 20), (30, 30), (20, 30)]
    geometry = _path_commands([first, second], close=True)
    shape = Feature(type=GeomType.POLYGON, geometry=geometry).to_shape()
    assert shape.equals(MultiPolygon([Polygon(first), Polygon(second)]))


def test_unknown_type_gives_empty_shape():
    shape = Feature(type=GeomType.UNKNOWN, geometry=[9, 50, 34]).to_shape()
    assert shape.is_empty


def test_point_without_geometry_is_empty():
    assert Feature(type=GeomType.POINT).to_shape().is_empty


@pytest.mark.parametrize(
    "geometry",
    [
        [_cmd(2, 1), 2, 2],
        [_cmd(1, 1), 2],
        [_cmd(3, 1)],
        [_cmd(7, 1)],
    ],
)
def test_invalid_geometry_raises(geometry):
    with pytest.raises(DecodeError):
        Feature(type=GeomType.LINESTRING, geometry=geometry).to_shape()


def test_value_equality_and_hash():
    a = TileValue(string_value="park")
    b = TileValue(string_value="park")
    assert a == b
    assert len({a, b}) == 1
    assert TileValue(int_value=1) != TileValue(uint_value=1)