"""
Spatial subsetting of raster grids.

A cell is kept when its center lies inside the closed extent. The result
keeps cell size, bands, kind and CRS; only the origin moves.
"""

import logging

import numpy as np
from rasterio import Affine

from src.landcover.errors import EmptyIntersectionError
from src.landcover.raster import Extent, RasterGrid

logger = logging.getLogger(__name__)


def _selected_range(centers: np.ndarray, low: float, high: float):
    inside = np.flatnonzero((centers >= low) & (centers <= high))
    if inside.size == 0:
        return None
    # centers are monotonic, so the selection is contiguous
    return int(inside[0]), int(inside[-1]) + 1


def crop_to_extent(grid: RasterGrid, extent) -> RasterGrid:
    """
    Crop a grid to a rectangular extent in the grid's own CRS.

    Args:
        grid: Input RasterGrid (must be unrotated)
        extent: Extent, or a (xmin, ymin, xmax, ymax) sequence

    Returns:
        New RasterGrid containing the cells whose centers fall inside the extent

    Raises:
        ValueError: If the extent is malformed or the grid is rotated
        EmptyIntersectionError: If no cell center falls inside the extent
    """
    if not isinstance(extent, Extent):
        extent = Extent.from_bounds(extent)

    if not grid.is_rectilinear:
        raise ValueError("Cannot subset a rotated grid by extent")

    logger.info(f"Cropping {grid.shape} grid to extent {extent.as_tuple()}")

    xs, ys = grid.cell_centers()
    cols = _selected_range(xs, extent.xmin, extent.xmax)
    rows = _selected_range(ys, extent.ymin, extent.ymax)

    if cols is None or rows is None:
        raise EmptyIntersectionError(
            f"Extent {extent.as_tuple()} does not contain any cell center of grid "
            f"with bounds {tuple(grid.bounds)}"
        )

    col_start, col_stop = cols
    row_start, row_stop = rows

    data = grid.data[:, row_start:row_stop, col_start:col_stop]
    transform = grid.transform * Affine.translation(col_start, row_start)

    logger.info(
        f"  Rows {row_start}:{row_stop}, cols {col_start}:{col_stop} -> shape {data.shape[1:]}"
    )
    return grid.derive(data=data, transform=transform)
