"""Filter features and tags out of vector tiles in PMTiles archives."""

__version__ = "0.1.0"