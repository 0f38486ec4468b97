"""Pytest configuration and fixtures for landcover-maker tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

from src.landcover.raster import RasterGrid

UTM_CRS = "EPSG:32633"
ORIGIN = (500000.0, 4650000.0)
CELL = 30.0


def write_band(path, array, transform=None, crs=UTM_CRS, nodata=None, count=1):
    """Write a single-band (or repeated multi-band) GeoTIFF for tests."""
    transform = transform or from_origin(ORIGIN[0], ORIGIN[1], CELL, CELL)
    array = np.asarray(array)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=array.shape[0],
        width=array.shape[1],
        count=count,
        dtype=array.dtype,
        crs=crs,
        transform=transform,
        nodata=nodata,
    ) as dst:
        for index in range(1, count + 1):
            dst.write(array, index)
    return path


@pytest.fixture
def sample_grid():
    """Small 4-band continuous grid in UTM with 30 m cells."""
    rng = np.random.default_rng(0)
    data = rng.uniform(0.0, 0.5, size=(4, 20, 30)).astype(np.float32)
    return RasterGrid(
        data=data,
        transform=from_origin(ORIGIN[0], ORIGIN[1], CELL, CELL),
        crs=UTM_CRS,
        band_names=("blue", "green", "red", "nir"),
    )


@pytest.fixture
def three_block_scene():
    """
    100x100 scene with three spectrally distinct vertical blocks plus noise.

    Returns:
        tuple: (grid, truth) where truth holds the block index of each cell
    """
    rng = np.random.default_rng(7)
    truth = np.zeros((100, 100), dtype=int)
    truth[:, 33:66] = 1
    truth[:, 66:] = 2

    signatures = np.array(
        [
            [0.08, 0.06, 0.04, 0.02],  # water
            [0.03, 0.07, 0.04, 0.40],  # vegetation
            [0.20, 0.20, 0.22, 0.25],  # bare / built-up
        ]
    )
    data = signatures[truth].transpose(2, 0, 1) + rng.normal(0, 0.01, (4, 100, 100))
    grid = RasterGrid(
        data=data.astype(np.float32),
        transform=from_origin(ORIGIN[0], ORIGIN[1], CELL, CELL),
        crs=UTM_CRS,
        band_names=("blue", "green", "red", "nir"),
    )
    return grid, truth


@pytest.fixture
def band_dir(tmp_path):
    """Directory with four single-band GeoTIFFs named like Landsat bands (B2..B5)."""
    directory = tmp_path / "scene"
    directory.mkdir()
    for i, key in enumerate(["B2", "B3", "B4", "B5"]):
        values = np.full((10, 12), (i + 1) * 100, dtype=np.uint16)
        values[0, 0] = 0
        write_band(directory / f"LC08_TEST_SR_{key}.TIF", values, nodata=0)
    return directory


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def band_writer():
    """The write_band helper, for tests that build their own band files."""
    return write_band
