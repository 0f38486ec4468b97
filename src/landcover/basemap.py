"""
Basemap imagery download from XYZ (slippy-map) tile servers.

Tiles are fetched for a lon/lat bounding box, mosaicked with Pillow,
georeferenced in Web Mercator (EPSG:3857) and warped to the overlay CRS so a
classified raster can be drawn on top of them.

Imagery types:
    satellite - Esri World Imagery
    street    - OpenStreetMap standard tiles
    terrain   - OpenTopoMap

Failures (network errors, HTTP error status, undecodable tiles) raise
BasemapFetchError immediately. There is no retry and no substitute imagery.

Usage::

    from src.landcover.basemap import fetch_basemap

    bounds = (-83.2, 42.2, -82.9, 42.45)  # west, south, east, north
    basemap = fetch_basemap(bounds, imagery="satellite")
    plt.imshow(basemap.image, extent=basemap.extent)
"""

import io
import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError
from rasterio.transform import from_bounds
from tqdm import tqdm

from src.config import (
    BASEMAP_MAX_TILES,
    BASEMAP_TIMEOUT,
    DEFAULT_DST_CRS,
    DEFAULT_IMAGERY,
    USER_AGENT,
)
from src.landcover.errors import BasemapFetchError
from src.landcover.raster import CONTINUOUS, RasterGrid
from src.landcover.reprojection import reproject_grid

logger = logging.getLogger(__name__)

TILE_SIZE = 256
WEB_MERCATOR = "EPSG:3857"
WEB_MERCATOR_HALF_WIDTH = 20037508.342789244  # metres
MAX_LATITUDE = 85.0511287798066

IMAGERY_SOURCES = {
    "satellite": {
        "url": "https://server.arcgisonline.com/ArcGIS/rest/services/World_Imagery/MapServer/tile/{z}/{y}/{x}",
        "attribution": "Tiles © Esri, Maxar, Earthstar Geographics",
        "max_zoom": 19,
    },
    "street": {
        "url": "https://tile.openstreetmap.org/{z}/{x}/{y}.png",
        "attribution": "© OpenStreetMap contributors",
        "max_zoom": 19,
    },
    "terrain": {
        "url": "https://tile.opentopomap.org/{z}/{x}/{y}.png",
        "attribution": "© OpenStreetMap contributors, SRTM | © OpenTopoMap (CC-BY-SA)",
        "max_zoom": 17,
    },
}


def validate_bounds(bounds: Sequence[float]) -> Tuple[float, float, float, float]:
    """
    Check a (west, south, east, north) lon/lat bounding box.

    Raises:
        ValueError: If the box is malformed or outside the Web Mercator domain
    """
    if not isinstance(bounds, (tuple, list)) or len(bounds) != 4:
        raise ValueError("bounds must be a tuple/list with 4 values (west, south, east, north)")

    west, south, east, north = (float(v) for v in bounds)

    if west >= east or south >= north:
        raise ValueError(
            f"Invalid bounds: expected (west, south, east, north) with west < east and "
            f"south < north, got ({west}, {south}, {east}, {north})"
        )
    if west < -180 or east > 180:
        raise ValueError(f"Longitudes must lie within [-180, 180], got {west} to {east}")
    if south < -MAX_LATITUDE or north > MAX_LATITUDE:
        raise ValueError(
            f"Latitudes must lie within ±{MAX_LATITUDE:.4f} for web map tiles, got {south} to {north}"
        )
    return west, south, east, north


def lonlat_to_tile(lon: float, lat: float, zoom: int) -> Tuple[float, float]:
    """
    Fractional XYZ tile coordinates of a lon/lat point.

    Examples:
        >>> lonlat_to_tile(0.0, 0.0, 1)
        (1.0, 1.0)
    """
    n = 2 ** zoom
    lat_rad = math.radians(lat)
    x = (lon + 180.0) / 360.0 * n
    y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n
    return x, y


def tile_bounds(x: int, y: int, zoom: int) -> Tuple[float, float, float, float]:
    """Web Mercator (west, south, east, north) of tile (x, y) at a zoom level."""
    size = 2 * WEB_MERCATOR_HALF_WIDTH / 2 ** zoom
    west = -WEB_MERCATOR_HALF_WIDTH + x * size
    north = WEB_MERCATOR_HALF_WIDTH - y * size
    return west, north - size, west + size, north


def tile_range(bounds: Sequence[float], zoom: int) -> Tuple[int, int, int, int]:
    """
    Inclusive tile index range covering a bounding box.

    Returns:
        tuple: (x_min, x_max, y_min, y_max)
    """
    west, south, east, north = bounds
    last = 2 ** zoom - 1
    x_min, y_min = lonlat_to_tile(west, north, zoom)
    x_max, y_max = lonlat_to_tile(east, south, zoom)
    return (
        min(int(math.floor(x_min)), last),
        min(int(math.floor(x_max)), last),
        min(int(math.floor(y_min)), last),
        min(int(math.floor(y_max)), last),
    )


def count_tiles(bounds: Sequence[float], zoom: int) -> int:
    x_min, x_max, y_min, y_max = tile_range(bounds, zoom)
    return (x_max - x_min + 1) * (y_max - y_min + 1)


def choose_zoom(bounds: Sequence[float], max_tiles: int = BASEMAP_MAX_TILES, max_zoom: int = 19) -> int:
    """Highest zoom level whose tile cover stays within max_tiles."""
    bounds = validate_bounds(bounds)
    for zoom in range(max_zoom, -1, -1):
        if count_tiles(bounds, zoom) <= max_tiles:
            return zoom
    return 0


@dataclass
class Basemap:
    """
    Georeferenced RGB basemap image.

    Attributes:
        grid: Continuous 3-band (red, green, blue) uint8 RasterGrid
        zoom: Tile zoom level the imagery was fetched at
        imagery: Imagery type key
        attribution: Attribution text required by the tile provider
    """

    grid: RasterGrid
    zoom: int
    imagery: str
    attribution: str

    @property
    def image(self) -> np.ndarray:
        """(rows, cols, 3) array ready for imshow."""
        return np.transpose(self.grid.data, (1, 2, 0))

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(left, right, bottom, top) for matplotlib's imshow."""
        b = self.grid.bounds
        return b.left, b.right, b.bottom, b.top

    @property
    def crs(self):
        return self.grid.crs


def fetch_tile(session: requests.Session, url: str, timeout: float = BASEMAP_TIMEOUT) -> np.ndarray:
    """
    Download one tile and decode it to an RGB array.

    Raises:
        BasemapFetchError: On any network/HTTP failure or undecodable content
    """
    logger.debug(f"Fetching tile {url}")
    try:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise BasemapFetchError(f"Failed to fetch basemap tile {url}: {e}") from e

    try:
        with Image.open(io.BytesIO(response.content)) as img:
            rgb = img.convert("RGB")
            if rgb.size != (TILE_SIZE, TILE_SIZE):
                rgb = rgb.resize((TILE_SIZE, TILE_SIZE), Image.Resampling.BILINEAR)
            return np.asarray(rgb, dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as e:
        raise BasemapFetchError(f"Basemap tile {url} is not a readable image: {e}") from e


def fetch_basemap(
    bounds: Sequence[float],
    zoom: Optional[int] = None,
    imagery: str = DEFAULT_IMAGERY,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = BASEMAP_TIMEOUT,
    max_tiles: int = BASEMAP_MAX_TILES,
    dst_crs=DEFAULT_DST_CRS,
) -> Basemap:
    """
    Fetch basemap imagery covering a lon/lat bounding box.

    Args:
        bounds: (west, south, east, north) in decimal degrees
        zoom: Tile zoom level (default: highest level within max_tiles)
        imagery: "satellite", "street" or "terrain"
        session: Optional requests.Session (a new one is created and closed otherwise)
        timeout: Per-request timeout in seconds
        max_tiles: Upper bound on the number of tiles to download
        dst_crs: CRS of the returned imagery (default: EPSG:4326). Pass
            "EPSG:3857" to keep the native tile projection.

    Returns:
        Basemap covering at least the requested bounds

    Raises:
        ValueError: If bounds or imagery are invalid, or the zoom needs too many tiles
        BasemapFetchError: If any tile can't be downloaded or decoded
    """
    bounds = validate_bounds(bounds)

    if imagery not in IMAGERY_SOURCES:
        raise ValueError(f"Unknown imagery type: {imagery}. Available: {list(IMAGERY_SOURCES)}")
    source = IMAGERY_SOURCES[imagery]

    if zoom is None:
        zoom = choose_zoom(bounds, max_tiles=max_tiles, max_zoom=source["max_zoom"])
    zoom = int(min(zoom, source["max_zoom"]))

    x_min, x_max, y_min, y_max = tile_range(bounds, zoom)
    n_x, n_y = x_max - x_min + 1, y_max - y_min + 1
    if n_x * n_y > max_tiles:
        raise ValueError(
            f"Zoom {zoom} needs {n_x * n_y} tiles for bounds {bounds}, more than max_tiles={max_tiles}"
        )

    logger.info(f"Fetching {n_x * n_y} {imagery} tiles at zoom {zoom} for bounds {bounds}")

    own_session = session is None
    if own_session:
        session = requests.Session()
        session.headers.update({"User-Agent": USER_AGENT})

    mosaic = np.zeros((n_y * TILE_SIZE, n_x * TILE_SIZE, 3), dtype=np.uint8)
    try:
        tiles = [(x, y) for y in range(y_min, y_max + 1) for x in range(x_min, x_max + 1)]
        for x, y in tqdm(tiles, desc="Downloading basemap tiles"):
            url = source["url"].format(z=zoom, x=x, y=y)
            row = (y - y_min) * TILE_SIZE
            col = (x - x_min) * TILE_SIZE
            mosaic[row : row + TILE_SIZE, col : col + TILE_SIZE] = fetch_tile(session, url, timeout)
    finally:
        if own_session:
            session.close()

    west, _, _, north = tile_bounds(x_min, y_min, zoom)
    _, south, east, _ = tile_bounds(x_max, y_max, zoom)
    transform = from_bounds(west, south, east, north, mosaic.shape[1], mosaic.shape[0])

    grid = RasterGrid(
        data=np.transpose(mosaic, (2, 0, 1)),
        transform=transform,
        crs=WEB_MERCATOR,
        band_names=("red", "green", "blue"),
        nodata=None,
        kind=CONTINUOUS,
    )

    if dst_crs is not None and dst_crs != WEB_MERCATOR:
        grid = reproject_grid(grid, dst_crs)

    logger.info(f"Basemap ready: {grid.shape} pixels in {grid.crs}")
    return Basemap(grid=grid, zoom=zoom, imagery=imagery, attribution=source["attribution"])
