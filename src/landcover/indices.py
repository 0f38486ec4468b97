"""
Spectral index computation.

Indices are continuous single-band grids sharing the source georeferencing.
"""

import logging

import numpy as np

from src.landcover.raster import CONTINUOUS, RasterGrid

logger = logging.getLogger(__name__)


def normalized_difference(grid: RasterGrid, band_a: str, band_b: str, name: str = None) -> RasterGrid:
    """
    Compute (a - b) / (a + b) for two bands of a grid.

    Cells where a + b == 0 or either input is NaN become NaN.

    Args:
        grid: Multi-band continuous RasterGrid
        band_a: Name of the first band
        band_b: Name of the second band
        name: Band name of the result (default: "nd_<a>_<b>")

    Returns:
        Single-band continuous RasterGrid with values in [-1, 1]
    """
    a = grid.band(band_a).astype(np.float64)
    b = grid.band(band_b).astype(np.float64)

    with np.errstate(divide="ignore", invalid="ignore"):
        index = (a - b) / (a + b)
    index[~np.isfinite(index)] = np.nan

    name = name or f"nd_{band_a}_{band_b}"
    if np.any(np.isfinite(index)):
        logger.info(f"{name} range: {np.nanmin(index):.3f} to {np.nanmax(index):.3f}")

    return RasterGrid(
        data=index.astype(np.float32),
        transform=grid.transform,
        crs=grid.crs,
        band_names=(name,),
        nodata=np.nan,
        kind=CONTINUOUS,
    )


def ndvi(grid: RasterGrid, red: str = "red", nir: str = "nir") -> RasterGrid:
    """Normalized Difference Vegetation Index, (nir - red) / (nir + red)."""
    return normalized_difference(grid, nir, red, name="ndvi")
