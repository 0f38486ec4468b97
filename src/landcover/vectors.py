"""
Vector layer I/O (shapefiles, GeoPackages, GeoJSON) via geopandas.

Vector layers are used as outlines on rendered maps (study area boundary,
parcels, roads) and to derive subsetting extents.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
from shapely.geometry import box

from src.landcover.raster import Extent

logger = logging.getLogger(__name__)

DRIVERS_BY_SUFFIX = {
    ".shp": "ESRI Shapefile",
    ".gpkg": "GPKG",
    ".geojson": "GeoJSON",
    ".json": "GeoJSON",
}


def read_vector(path: Union[str, Path], layer: Optional[str] = None, crs=None) -> gpd.GeoDataFrame:
    """
    Read a vector file into a GeoDataFrame.

    Args:
        path: Path to a shapefile, GeoPackage, GeoJSON, ...
        layer: Layer name for multi-layer sources
        crs: Optional CRS to reproject the features into

    Returns:
        GeoDataFrame with geometries and the attribute table

    Raises:
        FileNotFoundError: If the path doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Vector file not found: {path}")

    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    logger.info(f"Read {len(gdf)} features from {path.name} (CRS: {gdf.crs})")

    if crs is not None:
        if gdf.crs is None:
            raise ValueError(f"{path.name} has no CRS; cannot reproject to {crs}")
        gdf = gdf.to_crs(crs)
        logger.info(f"  Reprojected to {crs}")

    return gdf


def write_vector(gdf: gpd.GeoDataFrame, path: Union[str, Path], driver: Optional[str] = None) -> Path:
    """
    Write a GeoDataFrame, choosing the driver from the file suffix.

    Returns:
        Path to the written file

    Raises:
        ValueError: If the driver can't be inferred from the suffix
    """
    path = Path(path)
    if driver is None:
        try:
            driver = DRIVERS_BY_SUFFIX[path.suffix.lower()]
        except KeyError:
            raise ValueError(
                f"Can't infer vector driver for '{path.suffix}'; pass driver= or use one of "
                f"{sorted(DRIVERS_BY_SUFFIX)}"
            ) from None

    path.parent.mkdir(parents=True, exist_ok=True)
    gdf.to_file(path, driver=driver)
    logger.info(f"Wrote {len(gdf)} features to {path} ({driver})")
    return path


def extent_of(gdf: gpd.GeoDataFrame) -> Extent:
    """Bounding extent of all features, in the layer's CRS."""
    if gdf.empty:
        raise ValueError("Cannot compute the extent of an empty layer")
    return Extent.from_bounds(gdf.total_bounds)


def extent_to_polygon(extent: Extent, crs=None) -> gpd.GeoDataFrame:
    """Single-feature layer holding an extent rectangle, e.g. to outline a crop window."""
    return gpd.GeoDataFrame(
        {"name": ["extent"]},
        geometry=[box(extent.xmin, extent.ymin, extent.xmax, extent.ymax)],
        crs=crs,
    )
