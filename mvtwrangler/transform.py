"""Per-tile filtering: project filter areas into tile space and drop features or tags."""

from __future__ import annotations

import math
from dataclasses import replace

from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as transform_coords

from mvtwrangler.filtering.data import CompiledFilterCollection, CompiledFilterFeature
from mvtwrangler.filtering.executor import EvaluationContext
from mvtwrangler.mvt import DEFAULT_EXTENT, DecodeError, Feature, Layer, TileValue, decode_tile
from mvtwrangler.pmtiles import TileCoord, format_tile_coord

_SHAPE_NAMES = {
    "Point": "Point",
    "MultiPoint": "Point",
    "LineString": "LineString",
    "MultiLineString": "LineString",
    "Polygon": "Polygon",
    "MultiPolygon": "Polygon",
}


def _ln(value: float) -> float:
    """Natural logarithm with IEEE results for zero and negative input."""
    if value > 0:
        return math.log(value)
    if value == 0:
        return -math.inf
    return math.nan


def project_to_tile(geometry: BaseGeometry, coord: TileCoord, extent: int) -> BaseGeometry:
    """Map a lon/lat geometry into the local pixel space of a tile."""
    n = 2.0 ** coord.z

    def project_point(lon: float, lat: float) -> tuple[float, float]:
        x_frac = (lon + 180.0) / 360.0 * n
        lat_rad = math.radians(lat)
        y_frac = (1.0 - _ln(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n
        return (x_frac - coord.x) * extent, (y_frac - coord.y) * extent

    def project(xs, ys, zs=None):
        if isinstance(xs, (int, float)):
            x, y = project_point(xs, ys)
            return (x, y) if zs is None else (x, y, zs)
        points = [project_point(lon, lat) for lon, lat in zip(xs, ys)]
        new_xs = tuple(x for x, _ in points)
        new_ys = tuple(y for _, y in points)
        return (new_xs, new_ys) if zs is None else (new_xs, new_ys, zs)

    return transform_coords(project, geometry)


def bbox_intersects_tile(geometry: BaseGeometry, extent: int) -> bool:
    """True if the geometry's bounding box overlaps the square [0, extent]²."""
    if geometry.is_empty:
        return False
    min_x, min_y, max_x, max_y = geometry.bounds
    return min_x <= extent and max_x >= 0.0 and min_y <= extent and max_y >= 0.0


def _filters_in_tile(
    filter_collection: CompiledFilterCollection | None, coord: TileCoord, extent: int
) -> list[CompiledFilterFeature]:
    if filter_collection is None:
        return []
    projected = (
        replace(feature, geometry=project_to_tile(feature.geometry, coord, extent))
        for feature in filter_collection.features
    )
    return [feature for feature in projected if bbox_intersects_tile(feature.geometry, extent)]


def _feature_tags(layer: Layer, feature: Feature) -> dict[str, TileValue]:
    tags: dict[str, TileValue] = {}
    for key_index, value_index in zip(feature.tags[0::2], feature.tags[1::2]):
        try:
            tags[layer.keys[key_index]] = layer.values[value_index]
        except IndexError:
            raise DecodeError(
                f"tag index out of range in layer {layer.name!r}: {key_index}/{value_index}"
            ) from None
    return tags


def _filter_layer(layer: Layer, areas: list[CompiledFilterFeature]) -> None:
    keys: dict[str, int] = {}
    values: dict[TileValue, int] = {}
    kept: list[Feature] = []

    for feature in layer.features:
        properties = _feature_tags(layer, feature)
        shape = feature.to_shape()
        matching = [area for area in areas if shape.intersects(area.geometry)]
        context = EvaluationContext(layer.name, dict(properties)).with_geometry_type(
            _SHAPE_NAMES.get(shape.geom_type, "Unknown")
        )
        if any(area.should_remove_feature(context) for area in matching):
            continue

        new_tags: list[int] = []
        for key, value in properties.items():
            tag_context = context.with_current_key(key)
            if any(area.should_remove_tag(tag_context) for area in matching):
                continue
            new_tags.append(keys.setdefault(key, len(keys)))
            new_tags.append(values.setdefault(value, len(values)))
        feature.tags = new_tags
        kept.append(feature)

    layer.keys = list(keys)
    layer.values = list(values)
    layer.features = kept


def transform_tile(
    coord: TileCoord, data: bytes, filter_collection: CompiledFilterCollection | None
) -> bytes:
    """Apply the filters to an uncompressed vector tile and return the re-encoded tile."""
    try:
        tile = decode_tile(data)
    except DecodeError as exc:
        raise DecodeError(f"Failed to decode MVT tile: {format_tile_coord(coord)}: {exc}") from exc

    for layer in tile.layers:
        extent = layer.extent if layer.extent is not None else DEFAULT_EXTENT
        _filter_layer(layer, _filters_in_tile(filter_collection, coord, extent))

    return tile.encode()