"""
Raster grid data model.

A RasterGrid is a regular, north-up (or at least axis-aligned) grid of cells
holding one value per band. All bands share one shape and one georeferencing.
Grids are immutable: operations build new grids through ``derive`` instead of
editing the array in place.

Example::

    from src.landcover.raster import read_raster, write_raster

    grid = read_raster("scene.tif", band_names=["blue", "green", "red", "nir"])
    print(grid.shape, grid.cell_size, grid.bounds)
    write_raster(grid, "copy.tif")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio import Affine
from rasterio.coords import BoundingBox
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.transform import array_bounds

logger = logging.getLogger(__name__)

CONTINUOUS = "continuous"
CATEGORICAL = "categorical"
RASTER_KINDS = (CONTINUOUS, CATEGORICAL)


@dataclass(frozen=True)
class Extent:
    """Axis-aligned rectangle in a grid's own coordinate system."""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self):
        if not (self.xmin < self.xmax and self.ymin < self.ymax):
            raise ValueError(
                f"Invalid extent: expected xmin < xmax and ymin < ymax, got "
                f"({self.xmin}, {self.ymin}, {self.xmax}, {self.ymax})"
            )

    @classmethod
    def from_bounds(cls, bounds: Sequence[float]) -> "Extent":
        """Build from a (left, bottom, right, top) sequence."""
        left, bottom, right, top = bounds
        return cls(float(left), float(bottom), float(right), float(top))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.xmin, self.ymin, self.xmax, self.ymax)

    def intersects(self, other: "Extent") -> bool:
        return not (
            self.xmax < other.xmin
            or other.xmax < self.xmin
            or self.ymax < other.ymin
            or other.ymax < self.ymin
        )


@dataclass(frozen=True, eq=False)
class RasterGrid:
    """
    Multi-band raster with shared georeferencing.

    Attributes:
        data: Array of shape (bands, rows, cols). Stored read-only.
        transform: Affine transform mapping (col, row) to map coordinates
        crs: Coordinate reference system, any value rasterio accepts
            (EPSG string, PROJ string, WKT, CRS object). Never parsed here.
        band_names: One unique name per band
        nodata: Value marking missing cells (NaN for continuous data)
        kind: "continuous" or "categorical"
    """

    data: np.ndarray
    transform: Affine
    crs: Any
    band_names: Tuple[str, ...] = field(default=())
    nodata: Optional[float] = np.nan
    kind: str = CONTINUOUS

    def __post_init__(self):
        data = np.array(self.data, copy=True)
        if data.ndim == 2:
            data = data[np.newaxis, ...]
        if data.ndim != 3:
            raise ValueError(f"Raster data must be 2-D or 3-D, got shape {data.shape}")
        if data.shape[1] == 0 or data.shape[2] == 0:
            raise ValueError(f"Raster must have at least one cell, got shape {data.shape}")
        data.setflags(write=False)
        object.__setattr__(self, "data", data)

        names = tuple(self.band_names) or tuple(f"band_{i + 1}" for i in range(data.shape[0]))
        if len(names) != data.shape[0]:
            raise ValueError(
                f"Got {len(names)} band names for {data.shape[0]} bands: {list(names)}"
            )
        if len(set(names)) != len(names):
            raise ValueError(f"Band names must be unique: {list(names)}")
        object.__setattr__(self, "band_names", names)

        if self.kind not in RASTER_KINDS:
            raise ValueError(f"kind must be one of {RASTER_KINDS}, got {self.kind!r}")
        if not isinstance(self.transform, Affine):
            object.__setattr__(self, "transform", Affine(*tuple(self.transform)[:6]))

    # ----- geometry -----

    @property
    def count(self) -> int:
        return self.data.shape[0]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def shape(self) -> Tuple[int, int]:
        """(rows, cols) shared by every band."""
        return self.data.shape[1], self.data.shape[2]

    @property
    def cell_size(self) -> Tuple[float, float]:
        """(x size, y size) as absolute values."""
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def origin(self) -> Tuple[float, float]:
        """Map coordinate of the upper-left corner of cell (0, 0)."""
        return self.transform.c, self.transform.f

    @property
    def bounds(self) -> BoundingBox:
        west, south, east, north = array_bounds(self.height, self.width, self.transform)
        return BoundingBox(west, south, east, north)

    @property
    def extent(self) -> Extent:
        return Extent.from_bounds(self.bounds)

    @property
    def is_rectilinear(self) -> bool:
        return self.transform.b == 0 and self.transform.d == 0

    def cell_centers(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Map coordinates of cell centers along each axis.

        Only valid for rectilinear grids.

        Returns:
            tuple: (xs, ys) with len(xs) == width and len(ys) == height
        """
        if not self.is_rectilinear:
            raise ValueError("Cell centers per axis are only defined for unrotated grids")
        t = self.transform
        xs = t.c + (np.arange(self.width) + 0.5) * t.a
        ys = t.f + (np.arange(self.height) + 0.5) * t.e
        return xs, ys

    # ----- bands -----

    def band(self, name: str) -> np.ndarray:
        """Return the 2-D array of a band by name."""
        try:
            index = self.band_names.index(name)
        except ValueError:
            raise ValueError(
                f"Unknown band {name!r}; available bands: {list(self.band_names)}"
            ) from None
        return self.data[index]

    def valid_mask(self) -> np.ndarray:
        """Boolean (rows, cols) mask of cells valid in every band."""
        if self.nodata is None:
            return np.ones(self.shape, dtype=bool)
        if isinstance(self.nodata, float) and np.isnan(self.nodata):
            return ~np.any(np.isnan(self.data), axis=0)
        return ~np.any(self.data == self.nodata, axis=0)

    def derive(self, **changes) -> "RasterGrid":
        """Build a new grid from this one with some attributes replaced."""
        params = dict(
            data=self.data,
            transform=self.transform,
            crs=self.crs,
            band_names=self.band_names,
            nodata=self.nodata,
            kind=self.kind,
        )
        if "data" in changes and "band_names" not in changes:
            new_count = 1 if np.ndim(changes["data"]) == 2 else np.shape(changes["data"])[0]
            if new_count != self.count:
                params["band_names"] = ()
        params.update(changes)
        return RasterGrid(**params)

    def same_grid_as(self, other: "RasterGrid") -> bool:
        """True if both grids share shape, transform and CRS."""
        return (
            self.shape == other.shape
            and self.transform.almost_equals(other.transform)
            and same_crs(self.crs, other.crs)
        )

    def __repr__(self) -> str:
        return (
            f"RasterGrid(kind={self.kind!r}, bands={list(self.band_names)}, "
            f"shape={self.shape}, crs={self.crs!r})"
        )


def same_crs(a, b) -> bool:
    if a is None or b is None:
        return a is None and b is None
    try:
        return CRS.from_user_input(a) == CRS.from_user_input(b)
    except CRSError:
        return a == b


def read_raster(
    path: Union[str, Path],
    band_names: Optional[Sequence[str]] = None,
    kind: str = CONTINUOUS,
) -> RasterGrid:
    """
    Read every band of a raster file into a RasterGrid.

    Continuous rasters are converted to floating point with the file's nodata
    value replaced by NaN. Categorical rasters keep their integer values.

    Args:
        path: Path to any raster format rasterio can open
        band_names: Names for the bands (default: file band descriptions, then band_N)
        kind: "continuous" or "categorical"

    Returns:
        RasterGrid

    Raises:
        rasterio.errors.RasterioIOError: If the file can't be opened
    """
    logger.info(f"Reading raster: {path}")
    with rasterio.open(path) as src:
        data = src.read()
        src_nodata = src.nodata
        transform = src.transform
        crs = src.crs
        descriptions = src.descriptions

    if band_names is None and all(descriptions):
        band_names = descriptions

    if kind == CONTINUOUS:
        data = data.astype(np.float64 if data.dtype == np.float64 else np.float32)
        if src_nodata is not None and not np.isnan(src_nodata):
            data[data == src_nodata] = np.nan
        nodata = np.nan
    else:
        nodata = src_nodata

    logger.info(f"  {data.shape[0]} band(s), shape {data.shape[1:]}, CRS {crs}")
    return RasterGrid(
        data=data,
        transform=transform,
        crs=crs,
        band_names=tuple(band_names or ()),
        nodata=nodata,
        kind=kind,
    )


def write_raster(grid: RasterGrid, path: Union[str, Path]) -> Path:
    """
    Write a RasterGrid to a compressed GeoTIFF.

    Band names are stored as band descriptions so read_raster restores them.

    Returns:
        Path to the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    nodata = grid.nodata
    if nodata is not None and np.issubdtype(grid.data.dtype, np.integer) and np.isnan(float(nodata)):
        nodata = None

    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        height=grid.height,
        width=grid.width,
        count=grid.count,
        dtype=grid.data.dtype,
        crs=grid.crs,
        transform=grid.transform,
        nodata=nodata,
        compress="lzw",
    ) as dst:
        dst.write(grid.data)
        for index, name in enumerate(grid.band_names, start=1):
            dst.set_band_description(index, name)

    logger.info(f"Wrote {grid.kind} raster {grid.shape} with {grid.count} band(s) to {path}")
    return path
