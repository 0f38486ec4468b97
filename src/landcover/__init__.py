"""
Land-cover classification package.

Core functionality:
- RasterGrid data model and GeoTIFF I/O
- Band stacking, extent subsetting and reprojection
- k-means land-cover classification
- Basemap download and map rendering
- LandCoverPipeline tying the stages together
"""

from .raster import Extent, RasterGrid, read_raster, write_raster
from .errors import (
    BasemapFetchError,
    EmptyIntersectionError,
    LandCoverError,
    MismatchedGridError,
)
from .data_loading import load_band_stack, stack_grids
from .subset import crop_to_extent
from .classification import classify_raster, kmeans, relabel_by_brightness
from .reprojection import reproject_grid
from .pipeline import LandCoverPipeline, PipelineConfig

__all__ = [
    "Extent",
    "RasterGrid",
    "read_raster",
    "write_raster",
    "BasemapFetchError",
    "EmptyIntersectionError",
    "LandCoverError",
    "MismatchedGridError",
    "load_band_stack",
    "stack_grids",
    "crop_to_extent",
    "classify_raster",
    "kmeans",
    "relabel_by_brightness",
    "reproject_grid",
    "LandCoverPipeline",
    "PipelineConfig",
]
