"""Reading and writing PMTiles version 3 archives."""

from __future__ import annotations

import gzip
import hashlib
import shutil
import struct
import tempfile
import threading
import zlib
from bisect import bisect_right
from dataclasses import dataclass, replace
from enum import IntEnum
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator

MAGIC = b"PMTiles"
SPEC_VERSION = 3
HEADER_SIZE = 127
ROOT_AREA_SIZE = 16384
MAX_ZOOM = 31

_MAX_DEPTH = 3
_FIRST_LEAF_SIZE = 4096
_HEADER_STRUCT = struct.Struct("<7sB11Q6B4iB2i")
_E7 = 10_000_000


class PMTilesError(ValueError):
    """Raised when an archive is malformed or an operation is not supported."""


class TileType(IntEnum):
    UNKNOWN = 0
    MVT = 1
    PNG = 2
    JPEG = 3
    WEBP = 4
    AVIF = 5


class Compression(IntEnum):
    UNKNOWN = 0
    NONE = 1
    GZIP = 2
    BROTLI = 3
    ZSTD = 4


# --- tile coordinates -------------------------------------------------------


def _zoom_start(z: int) -> int:
    return ((1 << (2 * z)) - 1) // 3


def _rotate(n: int, x: int, y: int, rx: int, ry: int) -> tuple[int, int]:
    if ry == 0:
        if rx == 1:
            x = n - 1 - x
            y = n - 1 - y
        x, y = y, x
    return x, y


def _hilbert_position(z: int, d: int) -> tuple[int, int]:
    n = 1 << z
    x = y = 0
    s = 1
    while s < n:
        rx = 1 & (d >> 1)
        ry = 1 & (d ^ rx)
        x, y = _rotate(s, x, y, rx, ry)
        x += s * rx
        y += s * ry
        d >>= 2
        s <<= 1
    return x, y


@dataclass(frozen=True)
class TileCoord:
    """A tile address: zoom level and column/row within it."""

    z: int
    x: int
    y: int

    def __post_init__(self) -> None:
        if not 0 <= self.z <= MAX_ZOOM:
            raise PMTilesError(f"zoom {self.z} is outside 0..{MAX_ZOOM}")
        limit = 1 << self.z
        if not (0 <= self.x < limit and 0 <= self.y < limit):
            raise PMTilesError(f"tile {self.x}/{self.y} does not exist at zoom {self.z}")

    def to_tile_id(self) -> int:
        """The Hilbert-curve tile id used to index the archive."""
        n = 1 << self.z
        x, y = self.x, self.y
        d = 0
        s = n >> 1
        while s:
            rx = 1 if x & s else 0
            ry = 1 if y & s else 0
            d += s * s * ((3 * rx) ^ ry)
            x, y = _rotate(n, x, y, rx, ry)
            s >>= 1
        return _zoom_start(self.z) + d


def tile_id_to_coord(tile_id: int) -> TileCoord:
    """Convert a Hilbert tile id back into its coordinates."""
    if tile_id < 0:
        raise PMTilesError(f"tile id {tile_id} is negative")
    for z in range(MAX_ZOOM + 1):
        start = _zoom_start(z)
        if tile_id < start + (1 << (2 * z)):
            x, y = _hilbert_position(z, tile_id - start)
            return TileCoord(z, x, y)
    raise PMTilesError(f"tile id {tile_id} lies beyond zoom {MAX_ZOOM}")


def format_tile_coord(coord: TileCoord) -> str:
    """Render a coordinate as z/x/y."""
    return f"{coord.z}/{coord.x}/{coord.y}"


# --- compression ------------------------------------------------------------


def compress(data: bytes, compression: Compression) -> bytes:
    """Compress bytes with the given archive compression."""
    compression = Compression(compression)
    if compression is Compression.NONE:
        return bytes(data)
    if compression is Compression.GZIP:
        return gzip.compress(bytes(data), mtime=0)
    raise PMTilesError(f"Unsupported compression: {compression.name}")


def decompress(data: bytes, compression: Compression) -> bytes:
    """Undo the given archive compression."""
    compression = Compression(compression)
    if compression is Compression.NONE:
        return bytes(data)
    if compression is Compression.GZIP:
        try:
            return gzip.decompress(bytes(data))
        except (OSError, EOFError, zlib.error) as exc:
            raise PMTilesError(f"invalid gzip data: {exc}") from exc
    raise PMTilesError(f"Unsupported compression: {compression.name}")


# --- header -----------------------------------------------------------------


def _enum(kind: type[IntEnum], value: int, what: str) -> IntEnum:
    try:
        return kind(value)
    except ValueError:
        raise PMTilesError(f"unknown {what} {value}") from None


def _to_e7(degrees: float) -> int:
    return int(round(degrees * _E7))


@dataclass(frozen=True)
class Header:
    """The fixed-size archive header: layout, tile format and map extent."""

    tile_type: TileType = TileType.UNKNOWN
    tile_compression: Compression = Compression.UNKNOWN
    internal_compression: Compression = Compression.GZIP
    min_zoom: int = 0
    max_zoom: int = 0
    min_longitude: float = -180.0
    min_latitude: float = -85.0
    max_longitude: float = 180.0
    max_latitude: float = 85.0
    center_zoom: int = 0
    center_longitude: float = 0.0
    center_latitude: float = 0.0
    clustered: bool = False
    root_offset: int = 0
    root_length: int = 0
    metadata_offset: int = 0
    metadata_length: int = 0
    leaf_offset: int = 0
    leaf_length: int = 0
    data_offset: int = 0
    data_length: int = 0
    addressed_tiles: int = 0
    tile_entries: int = 0
    tile_contents: int = 0

    @classmethod
    def _unpack(cls, data: bytes) -> Header:
        if len(data) < HEADER_SIZE:
            raise PMTilesError("file is too short for a PMTiles header")
        magic, version, *rest = _HEADER_STRUCT.unpack_from(data)
        if magic != MAGIC:
            raise PMTilesError("not a PMTiles archive")
        if version != SPEC_VERSION:
            raise PMTilesError(f"unsupported PMTiles version {version}")
        (
            root_offset, root_length, metadata_offset, metadata_length,
            leaf_offset, leaf_length, data_offset, data_length,
            addressed, entries, contents, clustered, internal, tile_compression,
            tile_type, min_zoom, max_zoom, min_lon, min_lat, max_lon, max_lat,
            center_zoom, center_lon, center_lat,
        ) = rest
        return cls(
            tile_type=_enum(TileType, tile_type, "tile type"),
            tile_compression=_enum(Compression, tile_compression, "tile compression"),
            internal_compression=_enum(Compression, internal, "internal compression"),
            min_zoom=min_zoom,
            max_zoom=max_zoom,
            min_longitude=min_lon / _E7,
            min_latitude=min_lat / _E7,
            max_longitude=max_lon / _E7,
            max_latitude=max_lat / _E7,
            center_zoom=center_zoom,
            center_longitude=center_lon / _E7,
            center_latitude=center_lat / _E7,
            clustered=bool(clustered),
            root_offset=root_offset,
            root_length=root_length,
            metadata_offset=metadata_offset,
            metadata_length=metadata_length,
            leaf_offset=leaf_offset,
            leaf_length=leaf_length,
            data_offset=data_offset,
            data_length=data_length,
            addressed_tiles=addressed,
            tile_entries=entries,
            tile_contents=contents,
        )

    def _pack(self) -> bytes:
        try:
            return _HEADER_STRUCT.pack(
                MAGIC, SPEC_VERSION,
                self.root_offset, self.root_length,
                self.metadata_offset, self.metadata_length,
                self.leaf_offset, self.leaf_length,
                self.data_offset, self.data_length,
                self.addressed_tiles, self.tile_entries, self.tile_contents,
                int(self.clustered), int(self.internal_compression),
                int(self.tile_compression), int(self.tile_type),
                self.min_zoom, self.max_zoom,
                _to_e7(self.min_longitude), _to_e7(self.min_latitude),
                _to_e7(self.max_longitude), _to_e7(self.max_latitude),
                self.center_zoom,
                _to_e7(self.center_longitude), _to_e7(self.center_latitude),
            )
        except struct.error as exc:
            raise PMTilesError(f"header field out of range: {exc}") from exc


# --- directories ------------------------------------------------------------


@dataclass(frozen=True)
class DirEntry:
    """A directory entry; a run length of zero points at a leaf directory."""

    tile_id: int
    offset: int
    length: int
    run_length: int

    def tile_ids(self) -> range:
        """The ids of every tile this entry addresses."""
        return range(self.tile_id, self.tile_id + self.run_length)


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _iter_varints(data: bytes) -> Iterator[int]:
    value = shift = 0
    for byte in data:
        value |= (byte & 0x7F) << shift
        if byte & 0x80:
            shift += 7
            if shift >= 70:
                raise PMTilesError("varint is too long")
        else:
            yield value
            value = shift = 0
    if shift:
        raise PMTilesError("truncated varint in directory")


def _serialize_directory(entries: list[DirEntry], compression: Compression) -> bytes:
    out = bytearray(_varint(len(entries)))
    last_id = 0
    for entry in entries:
        out += _varint(entry.tile_id - last_id)
        last_id = entry.tile_id
    for entry in entries:
        out += _varint(entry.run_length)
    for entry in entries:
        out += _varint(entry.length)
    previous = None
    for entry in entries:
        if previous is not None and entry.offset == previous.offset + previous.length:
            out += _varint(0)
        else:
            out += _varint(entry.offset + 1)
        previous = entry
    return compress(bytes(out), compression)


def _deserialize_directory(data: bytes) -> list[DirEntry]:
    values = _iter_varints(data)

    def take(count: int) -> list[int]:
        chunk = list(islice(values, count))
        if len(chunk) != count:
            raise PMTilesError("directory ends early")
        return chunk

    (count,) = take(1)
    tile_ids = []
    last_id = 0
    for delta in take(count):
        last_id += delta
        tile_ids.append(last_id)
    run_lengths = take(count)
    lengths = take(count)
    entries: list[DirEntry] = []
    for tile_id, run_length, length, raw in zip(tile_ids, run_lengths, lengths, take(count)):
        if raw == 0:
            if not entries:
                raise PMTilesError("first directory entry has no offset")
            offset = entries[-1].offset + entries[-1].length
        else:
            offset = raw - 1
        entries.append(DirEntry(tile_id, offset, length, run_length))
    return entries


def _find_entry(entries: list[DirEntry], tile_id: int) -> DirEntry | None:
    index = bisect_right(entries, tile_id, key=lambda e: e.tile_id) - 1
    if index < 0:
        return None
    entry = entries[index]
    if entry.run_length == 0 or tile_id < entry.tile_id + entry.run_length:
        return entry
    return None


# --- reading ----------------------------------------------------------------


class PMTilesReader:
    """Random access to the tiles and metadata of an archive on disk."""

    def __init__(self, path) -> None:
        self.path = Path(path)
        self._file = open(self.path, "rb")
        self._lock = threading.Lock()
        self._leaf_cache: dict[tuple[int, int], list[DirEntry]] = {}
        try:
            self.header = Header._unpack(self._read(0, HEADER_SIZE, exact=False))
            self._root = self._read_directory(self.header.root_offset, self.header.root_length)
        except BaseException:
            self._file.close()
            raise

    def __enter__(self) -> PMTilesReader:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying file."""
        self._file.close()

    def _read(self, offset: int, length: int, exact: bool = True) -> bytes:
        with self._lock:
            self._file.seek(offset)
            data = self._file.read(length)
        if exact and len(data) != length:
            raise PMTilesError("unexpected end of archive")
        return data

    def _read_directory(self, offset: int, length: int) -> list[DirEntry]:
        raw = self._read(offset, length)
        return _deserialize_directory(decompress(raw, self.header.internal_compression))

    def _leaf(self, entry: DirEntry) -> list[DirEntry]:
        key = (self.header.leaf_offset + entry.offset, entry.length)
        cached = self._leaf_cache.get(key)
        if cached is None:
            cached = self._leaf_cache[key] = self._read_directory(*key)
        return cached

    def get_metadata(self) -> str:
        """The archive's JSON metadata text."""
        if self.header.metadata_length == 0:
            return ""
        raw = self._read(self.header.metadata_offset, self.header.metadata_length)
        try:
            return decompress(raw, self.header.internal_compression).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PMTilesError("metadata is not valid UTF-8") from exc

    def entries(self) -> Iterator[DirEntry]:
        """Every tile entry of the archive in tile id order, leaves expanded."""
        yield from self._walk(self._root, 1)

    def _walk(self, directory: list[DirEntry], depth: int) -> Iterator[DirEntry]:
        for entry in directory:
            if entry.run_length > 0:
                yield entry
            elif depth >= _MAX_DEPTH:
                raise PMTilesError("directory nesting is too deep")
            else:
                leaf = self._read_directory(
                    self.header.leaf_offset + entry.offset, entry.length
                )
                yield from self._walk(leaf, depth + 1)

    def get_tile(self, coord: TileCoord) -> bytes | None:
        """The stored (possibly compressed) bytes of a tile, or None if absent."""
        tile_id = coord.to_tile_id()
        directory = self._root
        for _ in range(_MAX_DEPTH):
            entry = _find_entry(directory, tile_id)
            if entry is None:
                return None
            if entry.run_length > 0:
                return self._read(self.header.data_offset + entry.offset, entry.length)
            directory = self._leaf(entry)
        raise PMTilesError("directory nesting is too deep")

    def get_tile_decompressed(self, coord: TileCoord) -> bytes | None:
        """The tile bytes with the archive's tile compression undone, or None."""
        data = self.get_tile(coord)
        if data is None:
            return None
        return decompress(data, self.header.tile_compression)


# --- writing ----------------------------------------------------------------


def _merge_runs(entries: Iterable[DirEntry]) -> list[DirEntry]:
    merged: list[DirEntry] = []
    for entry in entries:
        last = merged[-1] if merged else None
        if (
            last is not None
            and entry.tile_id == last.tile_id + last.run_length
            and entry.offset == last.offset
            and entry.length == last.length
        ):
            merged[-1] = replace(last, run_length=last.run_length + 1)
        else:
            merged.append(entry)
    return merged


def _is_clustered(entries: list[DirEntry]) -> bool:
    next_offset = 0
    for entry in entries:
        if entry.offset == next_offset:
            next_offset += entry.length
        elif entry.offset > next_offset:
            return False
    return True


def _build_directories(entries: list[DirEntry], compression: Compression) -> tuple[bytes, bytes]:
    limit = ROOT_AREA_SIZE - HEADER_SIZE
    root = _serialize_directory(entries, compression)
    if len(root) <= limit:
        return root, b""
    leaf_size = _FIRST_LEAF_SIZE
    while True:
        pointers: list[DirEntry] = []
        leaves = bytearray()
        for start in range(0, len(entries), leaf_size):
            chunk = entries[start:start + leaf_size]
            leaf = _serialize_directory(chunk, compression)
            pointers.append(DirEntry(chunk[0].tile_id, len(leaves), len(leaf), 0))
            leaves += leaf
        root = _serialize_directory(pointers, compression)
        if len(root) <= limit:
            return root, bytes(leaves)
        leaf_size *= 2


class PMTilesWriter:
    """Collects tiles, deduplicating identical contents, and writes an archive."""

    def __init__(self, path, header: Header, metadata: str) -> None:
        self.path = Path(path)
        self.header = header
        self.metadata = metadata
        self._data = tempfile.TemporaryFile()
        self._data_length = 0
        self._entries: list[DirEntry] = []
        self._seen: set[int] = set()
        self._contents: dict[bytes, tuple[int, int]] = {}
        self._finalized = False
        self._lock = threading.Lock()

    def add_tile(self, coord: TileCoord, data: bytes) -> None:
        """Store one tile; identical contents are written only once."""
        tile_id = coord.to_tile_id()
        digest = hashlib.sha256(data).digest()
        with self._lock:
            if self._finalized:
                raise PMTilesError("writer has already been finalized")
            if tile_id in self._seen:
                raise PMTilesError(f"duplicate tile {format_tile_coord(coord)}")
            location = self._contents.get(digest)
            if location is None:
                location = (self._data_length, len(data))
                self._data.write(data)
                self._data_length += len(data)
                self._contents[digest] = location
            self._seen.add(tile_id)
            self._entries.append(DirEntry(tile_id, location[0], location[1], 1))

    def finalize(self) -> Header:
        """Write the archive to its path and return the header written."""
        with self._lock:
            if self._finalized:
                raise PMTilesError("writer has already been finalized")
            self._finalized = True
            internal = Compression.GZIP
            entries = _merge_runs(sorted(self._entries, key=lambda e: e.tile_id))
            root, leaves = _build_directories(entries, internal)
            metadata = compress(self.metadata.encode("utf-8"), internal)
            root_offset = HEADER_SIZE
            metadata_offset = root_offset + len(root)
            leaf_offset = metadata_offset + len(metadata)
            data_offset = leaf_offset + len(leaves)
            header = replace(
                self.header,
                internal_compression=internal,
                clustered=_is_clustered(entries),
                root_offset=root_offset,
                root_length=len(root),
                metadata_offset=metadata_offset,
                metadata_length=len(metadata),
                leaf_offset=leaf_offset,
                leaf_length=len(leaves),
                data_offset=data_offset,
                data_length=self._data_length,
                addressed_tiles=len(self._entries),
                tile_entries=len(entries),
                tile_contents=len(self._contents),
            )
            packed = header._pack()
            try:
                with open(self.path, "wb") as out:
                    out.write(packed)
                    out.write(root)
                    out.write(metadata)
                    out.write(leaves)
                    self._data.seek(0)
                    shutil.copyfileobj(self._data, out)
            finally:
                self._data.close()
            return header