[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mvtwrangler"
version = "0.1.0"
description = "Filter features and tags out of Mapbox Vector Tiles in PMTiles archives using GeoJSON-defined rules"
requires-python = ">=3.10"
keywords = ["mvt", "vector-tiles", "pmtiles", "geojson", "filter", "gis"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: GIS",
]
dependencies = [
    "shapely",
    "tqdm",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
mvt-wrangler = "mvtwrangler.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["mvtwrangler"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
