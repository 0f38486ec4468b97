"""
Raster reprojection between coordinate reference systems.

Resampling follows the kind of data being warped:

- categorical grids (cluster labels) only allow nearest-neighbor, because
  averaging category codes produces codes that mean nothing;
- continuous grids (reflectance, indices, imagery) default to bilinear.
"""

import logging
from typing import Optional, Tuple, Union

import numpy as np
import rasterio
from rasterio.transform import array_bounds
from rasterio.warp import Resampling, calculate_default_transform, reproject

from src.config import DEFAULT_DST_CRS, LABEL_NODATA
from src.landcover.raster import CATEGORICAL, RasterGrid

logger = logging.getLogger(__name__)


def _unused_label(data: np.ndarray):
    """Pick a nodata value for a label grid that doesn't occur in it."""
    present = set(np.unique(data).tolist())
    if np.issubdtype(data.dtype, np.integer):
        info = np.iinfo(data.dtype)
        low, high = int(info.min), int(info.max)
    else:
        low, high = -np.inf, np.inf

    for value in (LABEL_NODATA, min(present) - 1, max(present) + 1):
        if low <= value <= high and value not in present:
            return value
    raise ValueError(
        "Categorical raster uses every value of its data type; set nodata before reprojecting"
    )


def default_resampling(kind: str) -> Resampling:
    """Resampling used when the caller doesn't pick one."""
    return Resampling.nearest if kind == CATEGORICAL else Resampling.bilinear


def _as_resampling(resampling) -> Resampling:
    if isinstance(resampling, Resampling):
        return resampling
    try:
        return Resampling[str(resampling)]
    except KeyError:
        raise ValueError(f"Unknown resampling method: {resampling!r}") from None


def reproject_grid(
    grid: RasterGrid,
    dst_crs=DEFAULT_DST_CRS,
    *,
    resampling: Optional[Union[str, Resampling]] = None,
    resolution: Optional[Union[float, Tuple[float, float]]] = None,
    num_threads: int = 2,
) -> RasterGrid:
    """
    Warp a grid onto a regular grid in another CRS.

    The output covers the whole source footprint; cells outside it are
    nodata.

    Args:
        grid: Source RasterGrid (its CRS must be set)
        dst_crs: Target CRS (default: EPSG:4326)
        resampling: Resampling name or rasterio Resampling. Defaults to nearest
            for categorical grids and bilinear for continuous grids.
        resolution: Optional output cell size in target CRS units
        num_threads: GDAL warp threads

    Returns:
        New RasterGrid in dst_crs with the same bands, kind and nodata

    Raises:
        ValueError: If the grid has no CRS or an interpolating method is
            requested for categorical data
    """
    if grid.crs is None:
        raise ValueError("Cannot reproject a grid without a CRS")

    method = default_resampling(grid.kind) if resampling is None else _as_resampling(resampling)
    if grid.kind == CATEGORICAL and method != Resampling.nearest:
        raise ValueError(
            f"Categorical rasters must be resampled with nearest neighbor, not {method.name}"
        )

    logger.info(f"Reprojecting {grid.kind} raster from {grid.crs} to {dst_crs} ({method.name})")

    with rasterio.Env(GDAL_NUM_THREADS=str(num_threads)):
        dst_transform, width, height = calculate_default_transform(
            grid.crs,
            dst_crs,
            grid.width,
            grid.height,
            *array_bounds(grid.height, grid.width, grid.transform),
            resolution=resolution,
        )

        nodata = grid.nodata
        if np.issubdtype(grid.data.dtype, np.integer) and nodata is not None and np.isnan(float(nodata)):
            nodata = None
        if nodata is None and grid.kind == CATEGORICAL:
            # cells outside the footprint must not read as a real label
            nodata = _unused_label(grid.data)
            logger.info(f"Label raster has no nodata value; using {nodata} outside the footprint")

        fill = nodata if nodata is not None else 0
        dst_data = np.full((grid.count, height, width), fill, dtype=grid.data.dtype)

        reproject(
            source=np.array(grid.data),
            destination=dst_data,
            src_transform=grid.transform,
            src_crs=grid.crs,
            src_nodata=nodata,
            dst_transform=dst_transform,
            dst_crs=dst_crs,
            dst_nodata=nodata,
            resampling=method,
            num_threads=num_threads,
        )

    logger.info(f"Reprojection complete. New shape: {dst_data.shape[1:]}")
    logger.debug(f"  Transform: {dst_transform}")

    if grid.kind == CATEGORICAL:
        return grid.derive(data=dst_data, transform=dst_transform, crs=dst_crs, nodata=nodata)
    return grid.derive(data=dst_data, transform=dst_transform, crs=dst_crs)
