"""Configuration module for landcover-maker project.

Centralizes data paths and configuration settings.
"""
import os
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = Path(os.environ.get("LANDCOVER_DATA_DIR", PROJECT_ROOT / "data"))
IMAGERY_DIR = DATA_DIR / "imagery"
VECTOR_DIR = DATA_DIR / "vectors"
OUTPUT_DIR = PROJECT_ROOT / "output"

# Band loading
DEFAULT_BAND_PATTERN = "*.TIF"
DEFAULT_BAND_NAMES = ("blue", "green", "red", "nir")

# Classification
DEFAULT_N_CLUSTERS = 5
DEFAULT_MAX_ITER = 100
DEFAULT_SEED = 42
LABEL_NODATA = -1

# Reprojection
DEFAULT_DST_CRS = "EPSG:4326"

# Basemap
DEFAULT_IMAGERY = "satellite"
BASEMAP_TIMEOUT = 30  # seconds
BASEMAP_MAX_TILES = 64
USER_AGENT = "landcover-maker/0.1 (+https://github.com/landcover-maker)"

# Rendering
DEFAULT_OVERLAY_ALPHA = 0.5
DEFAULT_DPI = 150

DEFAULT_LOG_LEVEL = "INFO"
