"""Command line entry point: filter the vector tiles of a PMTiles archive."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

from mvtwrangler.filtering.data import parse_filter_collection
from mvtwrangler.pmtiles import Header, PMTilesError, PMTilesReader, PMTilesWriter, TileType
from mvtwrangler.processing import process_tiles


@dataclass
class Args:
    """Input archive, output archive and optional GeoJSON filter file."""

    input: Path
    output: Path
    filter: Path | None = None


def run(args: Args) -> None:
    """Filter every tile of the input archive and write the output archive."""
    input_path = Path(args.input)
    output_path = Path(args.output)

    if output_path.exists():
        output_path.unlink()

    if not input_path.exists():
        raise FileNotFoundError(f"Input file does not exist: {input_path}")

    compiled = None
    if args.filter is not None:
        filter_path = Path(args.filter)
        if not filter_path.exists():
            raise FileNotFoundError(f"Filter file does not exist: {filter_path}")
        compiled = parse_filter_collection(filter_path.read_text(encoding="utf-8")).compile()

    if output_path.suffix != ".pmtiles":
        raise ValueError("Output file must have .pmtiles extension")

    with PMTilesReader(input_path) as reader:
        header = reader.header
        metadata = reader.get_metadata()
    if header.tile_type is not TileType.MVT:
        raise PMTilesError(f"Unsupported tile type: {header.tile_type.name}")

    out_header = Header(
        tile_type=header.tile_type,
        tile_compression=header.tile_compression,
        min_zoom=header.min_zoom,
        max_zoom=header.max_zoom,
        min_longitude=header.min_longitude,
        min_latitude=header.min_latitude,
        max_longitude=header.max_longitude,
        max_latitude=header.max_latitude,
        center_zoom=header.center_zoom,
        center_longitude=header.center_longitude,
        center_latitude=header.center_latitude,
    )
    writer = PMTilesWriter(output_path, out_header, metadata)
    process_tiles(input_path, writer, header.tile_compression, compiled)

    print(f"✅ Wrote transformed tiles to {output_path}")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mvt-wrangler",
        description="Remove features and tags from the vector tiles of a PMTiles archive.",
    )
    parser.add_argument("input", type=Path, help="Input PMTiles file")
    parser.add_argument(
        "output", type=Path, help="Output PMTiles file (will be overwritten if exists)"
    )
    parser.add_argument(
        "-f", "--filter", type=Path, default=None, help="GeoJSON file describing the filters"
    )
    return parser


def main(argv=None) -> int:
    """Parse arguments, run, and return the process exit status."""
    ns = _parser().parse_args(argv)
    try:
        run(Args(input=ns.input, output=ns.output, filter=ns.filter))
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())