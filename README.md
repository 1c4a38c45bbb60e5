# mvtwrangler

Rewrite a PMTiles (version 3) archive of Mapbox Vector Tiles, removing whole
features or individual tags wherever they fall inside regions you describe in
a GeoJSON filter file.

## Installation

```
pip install .
```

## Usage

```
mvt-wrangler INPUT.pmtiles OUTPUT.pmtiles --filter filter.geojson
```

- `INPUT` – the source PMTiles archive. Its tile type must be MVT.
- `OUTPUT` – the archive to write. It must end in `.pmtiles`; an existing
  file at that path is removed first.
- `-f`, `--filter` – a GeoJSON `FeatureCollection` holding the filter rules.
  Without it, every tile is still decoded and re-encoded.

The tile type, tile compression, zoom range, bounds and centre of the input
header, and the input's metadata, are carried over to the output. Directories
and metadata of the output are gzip-compressed, identical tile contents are
stored once, and runs of identical consecutive tiles share one entry.

Tiles are processed on a thread pool, with a progress bar on a terminal. A
tile that cannot be read, decoded or filtered is reported on standard error
as `Error processing tile: ...` and left out of the output. When finished the
command prints `✅ Wrote transformed tiles to OUTPUT`. On a missing input or
filter file, an invalid filter, a wrong output extension or an unsupported
archive, it prints `Error: ...` and exits with status 1.

## Filter files

Each feature of the filter collection has a geometry (longitude/latitude) and
a `layers` map in its properties, plus optional `id` and `description`
strings. Only tile features whose geometry intersects a filter's geometry are
affected. Within `layers`, a key names a tile layer, or `*` for any layer; the
layer-specific entry is tried before the wildcard one. Each entry may carry:

- `feature` – an expression; when true, the whole feature is dropped.
- `tag` – an expression evaluated for every tag of the feature; when true,
  that tag is dropped.

A feature is dropped if any intersecting filter says so; a tag likewise.

```json
{
  "type": "FeatureCollection",
  "features": [
    {
      "type": "Feature",
      "geometry": {
        "type": "Polygon",
        "coordinates": [[[-180,-90],[-180,90],[180,90],[180,-90],[-180,-90]]]
      },
      "properties": {
        "id": "drop-foreign-names",
        "layers": {
          "*": {
            "feature": ["in", ["tag", "kind"], ["literal", ["park", "school"]]],
            "tag": [
              "all",
              ["starts-with", ["key"], "name"],
              ["not", ["in", ["regex-capture", ["key"], "^name:?(.*)$", 1],
                       ["literal", ["", "ja"]]]]
            ]
          }
        }
      }
    }
  ]
}
```

### Expressions

Expressions are JSON arrays whose first element is an operator; bare strings,
numbers, booleans and `null` are literals.

| Kind | Operators |
| --- | --- |
| Comparison | `==`, `!=`, `<`, `>`, `<=`, `>=` |
| Logical | `any`, `all`, `none`, `not` / `!` |
| Membership | `in` (second argument must be `["literal", [...]]`) |
| Strings | `starts-with`, `ends-with`, `regex-match`, `regex-capture` |
| Values | `boolean`, `literal` |
| Context | `["tag", name]`, `["key"]`, `["type"]` |

`["type"]` yields `Point`, `LineString` or `Polygon` (multi-geometries
included), or `Unknown`. `["key"]` is the tag currently being considered by a
`tag` rule. A missing tag, or a regex capture that does not match, evaluates
to null, which sorts before every other value. Values of different kinds are
compared by their text.

## Library use

```python
from mvtwrangler.filtering.executor import EvaluationContext, evaluate_bool
from mvtwrangler.filtering.expression import compile_expression
from mvtwrangler.mvt import TileValue

expr = compile_expression(["==", ["tag", "kind"], "park"])
ctx = EvaluationContext("landuse", {"kind": TileValue(string_value="park")})
evaluate_bool(expr, ctx)  # True
```

Modules:

- `mvtwrangler.cli` – `Args`, `run(args)` and `main(argv=None)`.
- `mvtwrangler.processing` – `process_tiles(input_path, writer, tile_compression, filter_collection)`.
- `mvtwrangler.transform` – `transform_tile(coord, data, filter_collection)`,
  `project_to_tile`, `bbox_intersects_tile`.
- `mvtwrangler.filtering.data` – `parse_filter_collection(text)` and the
  filter classes with their `compile()` methods.
- `mvtwrangler.filtering.expression` / `mvtwrangler.filtering.executor` –
  expression compilation and evaluation.
- `mvtwrangler.mvt` – `decode_tile(data)`, `Tile.encode()`, `Feature.to_shape()`.
- `mvtwrangler.pmtiles` – `PMTilesReader`, `PMTilesWriter`, `TileCoord`,
  `Header`, `compress` / `decompress`.

## Limitations

- Only PMTiles version 3 archives with MVT tiles are accepted.
- Tile compression must be gzip or none; brotli and zstd archives are not
  supported.
- The package rewrites archives; it does not serve tiles or export them to
  other formats.