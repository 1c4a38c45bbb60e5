"""GeoJSON filter specifications and their compiled, evaluable form."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from shapely.errors import ShapelyError
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry

from mvtwrangler.filtering.executor import EvaluationContext, evaluate_bool
from mvtwrangler.filtering.expression import CompiledExpression, compile_expression

WILDCARD_LAYER = "*"

_GEOMETRY_TYPES = frozenset(
    {
        "Point",
        "MultiPoint",
        "LineString",
        "MultiLineString",
        "Polygon",
        "MultiPolygon",
        "GeometryCollection",
    }
)


class FilterParseError(ValueError):
    """Raised when a filter document is malformed."""


def _require(obj: dict, key: str, where: str) -> Any:
    if key not in obj:
        raise FilterParseError(f"missing field `{key}` in {where}")
    return obj[key]


def _require_dict(value: Any, where: str) -> dict:
    if not isinstance(value, dict):
        raise FilterParseError(f"{where} must be an object")
    return value


def _require_str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise FilterParseError(f"{where} must be a string")
    return value


def _optional_str(obj: dict, key: str, where: str) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    return _require_str(value, f"`{key}` in {where}")


def _parse_geometry(value: Any) -> dict:
    geometry = _require_dict(value, "geometry")
    kind = _require(geometry, "type", "geometry")
    if kind not in _GEOMETRY_TYPES:
        raise FilterParseError(f"unknown geometry type: {kind!r}")
    if kind == "GeometryCollection":
        members = _require(geometry, "geometries", "geometry")
        if not isinstance(members, list):
            raise FilterParseError("`geometries` must be an array")
        for member in members:
            _parse_geometry(member)
    elif not isinstance(_require(geometry, "coordinates", "geometry"), list):
        raise FilterParseError("`coordinates` must be an array")
    return dict(geometry)


@dataclass(frozen=True)
class CompiledLayerFilter:
    """Compiled feature and tag expressions for one layer."""

    feature: CompiledExpression | None = None
    tag: CompiledExpression | None = None


@dataclass
class LayerFilter:
    """Filter rules for a layer: an expression removing features, one removing tags."""

    feature: Any = None
    tag: Any = None

    @classmethod
    def _from_json(cls, value: Any, name: str) -> LayerFilter:
        obj = _require_dict(value, f"layer filter {name!r}")
        return cls(feature=obj.get("feature"), tag=obj.get("tag"))

    def _to_dict(self) -> dict:
        return {"feature": self.feature, "tag": self.tag}

    def compile(self) -> CompiledLayerFilter:
        """Compile both expressions, raising ExpressionError if either is invalid."""
        return CompiledLayerFilter(
            feature=None if self.feature is None else compile_expression(self.feature),
            tag=None if self.tag is None else compile_expression(self.tag),
        )


@dataclass
class FilterProperties:
    """Identification of a filter and its per-layer rules."""

    layers: dict[str, LayerFilter] = field(default_factory=dict)
    id: str | None = None
    description: str | None = None

    @classmethod
    def _from_json(cls, value: Any) -> FilterProperties:
        obj = _require_dict(value, "properties")
        layers = _require_dict(_require(obj, "layers", "properties"), "`layers`")
        return cls(
            layers={
                _require_str(name, "layer name"): LayerFilter._from_json(rule, name)
                for name, rule in layers.items()
            },
            id=_optional_str(obj, "id", "properties"),
            description=_optional_str(obj, "description", "properties"),
        )

    def _to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "layers": {name: rule._to_dict() for name, rule in self.layers.items()},
        }


@dataclass(frozen=True)
class CompiledFilterFeature:
    """A filter area together with its compiled layer rules."""

    geometry: BaseGeometry
    layers: dict[str, CompiledLayerFilter] = field(default_factory=dict)

    def _matching(self, context: EvaluationContext, attr: str) -> CompiledExpression | None:
        for name in (context.layer_name, WILDCARD_LAYER):
            rule = self.layers.get(name)
            if rule is not None and getattr(rule, attr) is not None:
                return getattr(rule, attr)
        return None

    def should_remove_feature(self, context: EvaluationContext) -> bool:
        """True if the layer's (or wildcard) feature expression says to drop the feature."""
        expr = self._matching(context, "feature")
        return False if expr is None else evaluate_bool(expr, context)

    def should_remove_tag(self, context: EvaluationContext) -> bool:
        """True if the layer's (or wildcard) tag expression says to drop the current tag."""
        expr = self._matching(context, "tag")
        return False if expr is None else evaluate_bool(expr, context)


@dataclass
class FilterFeature:
    """A GeoJSON feature: an area and the rules applied inside it."""

    geometry: dict
    properties: FilterProperties
    feature_type: str = "Feature"

    @classmethod
    def _from_json(cls, value: Any) -> FilterFeature:
        obj = _require_dict(value, "feature")
        return cls(
            geometry=_parse_geometry(_require(obj, "geometry", "feature")),
            properties=FilterProperties._from_json(_require(obj, "properties", "feature")),
            feature_type=_require_str(_require(obj, "type", "feature"), "feature `type`"),
        )

    def _to_dict(self) -> dict:
        return {
            "type": self.feature_type,
            "geometry": self.geometry,
            "properties": self.properties._to_dict(),
        }

    def to_json(self) -> str:
        """Serialise the feature as GeoJSON text."""
        return json.dumps(self._to_dict())

    def compile_layers(self) -> dict[str, CompiledLayerFilter]:
        """Compile every layer rule."""
        return {name: rule.compile() for name, rule in self.properties.layers.items()}

    def compile(self) -> CompiledFilterFeature:
        """Compile the rules and convert the geometry into a shape."""
        layers = self.compile_layers()
        try:
            geometry = shape(self.geometry)
        except (ShapelyError, ValueError, TypeError, IndexError, KeyError) as exc:
            raise FilterParseError(f"invalid filter geometry: {exc}") from exc
        return CompiledFilterFeature(geometry=geometry, layers=layers)


@dataclass(frozen=True)
class CompiledFilterCollection:
    """All compiled filter features."""

    features: tuple[CompiledFilterFeature, ...] = ()


@dataclass
class FilterCollection:
    """A GeoJSON FeatureCollection of filter features."""

    features: list[FilterFeature] = field(default_factory=list)
    feature_type: str = "FeatureCollection"

    @classmethod
    def _from_json(cls, value: Any) -> FilterCollection:
        obj = _require_dict(value, "filter collection")
        features = _require(obj, "features", "filter collection")
        if not isinstance(features, list):
            raise FilterParseError("`features` must be an array")
        return cls(
            features=[FilterFeature._from_json(item) for item in features],
            feature_type=_require_str(
                _require(obj, "type", "filter collection"), "collection `type`"
            ),
        )

    def to_json(self) -> str:
        """Serialise the collection as GeoJSON text."""
        return json.dumps(
            {
                "type": self.feature_type,
                "features": [feature._to_dict() for feature in self.features],
            }
        )

    def compile(self) -> CompiledFilterCollection:
        """Compile every feature for evaluation."""
        return CompiledFilterCollection(
            features=tuple(feature.compile() for feature in self.features)
        )


def parse_filter_collection(text: str) -> FilterCollection:
    """Parse GeoJSON filter text, raising FilterParseError if it is malformed."""
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FilterParseError(f"invalid JSON: {exc}") from exc
    return FilterCollection._from_json(document)