"""Concurrent processing of every tile of an archive into a new archive."""

from __future__ import annotations

import os
import sys
from concurrent.futures import ThreadPoolExecutor
from functools import partial

from tqdm import tqdm

from mvtwrangler.filtering.data import CompiledFilterCollection
from mvtwrangler.pmtiles import (
    Compression,
    DirEntry,
    Header,
    PMTilesError,
    PMTilesReader,
    PMTilesWriter,
    TileCoord,
    compress,
    format_tile_coord,
    tile_id_to_coord,
)
from mvtwrangler.transform import transform_tile

_BAR_FORMAT = "[{desc}] {bar} {n_fmt:>7}/{total_fmt:7} {elapsed}/{remaining}"


def _process_entry(
    reader: PMTilesReader,
    tile_compression: Compression,
    filter_collection: CompiledFilterCollection | None,
    entry: DirEntry,
) -> tuple[list[TileCoord], bytes] | None:
    coords = [tile_id_to_coord(tile_id) for tile_id in entry.tile_ids()]
    try:
        if not coords:
            raise PMTilesError(f"No tile coordinates found in entry: {entry}")
        data = reader.get_tile_decompressed(coords[0])
        if data is None:
            return None
        transformed = transform_tile(coords[0], data, filter_collection)
    except Exception as exc:  # a bad tile is reported and skipped
        print(f"Error processing tile: {exc}", file=sys.stderr)
        return None
    return coords, compress(transformed, tile_compression)


def process_tiles(
    input_path,
    writer: PMTilesWriter,
    tile_compression: Compression,
    filter_collection: CompiledFilterCollection | None,
) -> Header:
    """Transform every tile of the input archive into the writer and finalize it."""
    tile_compression = Compression(tile_compression)
    with PMTilesReader(input_path) as reader:
        entries = list(reader.entries())
        total = sum(len(entry.tile_ids()) for entry in entries)
        work = partial(_process_entry, reader, tile_compression, filter_collection)
        with tqdm(total=total, leave=False, bar_format=_BAR_FORMAT, disable=None) as bar:
            with ThreadPoolExecutor(max_workers=os.cpu_count() or 1) as pool:
                for result in pool.map(work, entries):
                    if result is None:
                        continue
                    coords, data = result
                    bar.set_description_str(format_tile_coord(coords[0]))
                    for coord in coords:
                        writer.add_tile(coord, data)
                        bar.update(1)
    return writer.finalize()