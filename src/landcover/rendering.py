"""
Map rendering with matplotlib.

Composes a basemap image, raster overlays (categorical or continuous) and
vector outlines on one axes, then adds a legend, a scale bar and a north
arrow. All layers must already share one CRS; reproject them first.

Example::

    from src.landcover.rendering import RasterOverlay, render_map

    render_map(
        "landcover.png",
        basemap=basemap,
        rasters=[RasterOverlay(classified_wgs84, alpha=0.5, label="Land cover")],
        title="k-means land cover (k=5)",
    )
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.lines import Line2D
from matplotlib.patches import Patch, Rectangle
from pyproj import Geod
from rasterio.crs import CRS

from src.config import DEFAULT_DPI, DEFAULT_OVERLAY_ALPHA, LABEL_NODATA
from src.landcover.basemap import Basemap
from src.landcover.color_mapping import categorical_palette, labels_to_rgba
from src.landcover.raster import CATEGORICAL, RasterGrid, same_crs

logger = logging.getLogger(__name__)

GEOD = Geod(ellps="WGS84")


@dataclass
class RasterOverlay:
    """
    Raster layer drawn over the basemap.

    Attributes:
        grid: RasterGrid to draw (first band is used)
        alpha: Opacity (default: 0.5)
        cmap_name: Colormap (default: 'tab10' categorical, 'viridis' continuous)
        class_names: Legend labels for categorical classes, indexed by label
        n_classes: Number of classes (default: highest label + 1)
        vmin: Lower color limit for continuous data
        vmax: Upper color limit for continuous data
        label: Legend title / colorbar label
    """

    grid: RasterGrid
    alpha: float = DEFAULT_OVERLAY_ALPHA
    cmap_name: Optional[str] = None
    class_names: Optional[Sequence[str]] = None
    n_classes: Optional[int] = None
    vmin: Optional[float] = None
    vmax: Optional[float] = None
    label: str = ""


@dataclass
class VectorOverlay:
    """Vector layer drawn as outlines (GeoDataFrame)."""

    gdf: object
    edgecolor: str = "yellow"
    facecolor: str = "none"
    linewidth: float = 1.2
    label: Optional[str] = None


# =============================================================================
# Cartographic helpers
# =============================================================================


def is_geographic(crs) -> bool:
    if crs is None:
        return False
    return CRS.from_user_input(crs).is_geographic


def nice_scale_length(max_length: float) -> float:
    """
    Largest 1, 2 or 5 x 10^n value not exceeding max_length.

    Examples:
        >>> nice_scale_length(3700)
        2000.0
        >>> nice_scale_length(0.8)
        0.5
    """
    if max_length <= 0:
        raise ValueError(f"max_length must be positive, got {max_length}")
    base = 10.0 ** math.floor(math.log10(max_length))
    for step in (5.0, 2.0, 1.0):
        if step * base <= max_length:
            return step * base
    return base


def metres_per_map_unit(crs, extent: Tuple[float, float, float, float]) -> float:
    """
    Ground metres per horizontal map unit at the center of an extent.

    Geographic CRSs use geodesic distance on the WGS84 ellipsoid along the
    central parallel; projected CRSs use their linear unit factor.
    """
    left, right, bottom, top = extent
    if is_geographic(crs):
        lat = (bottom + top) / 2.0
        _, _, distance = GEOD.inv(left, lat, right, lat)
        return distance / (right - left)
    if crs is None:
        return 1.0
    _, factor = CRS.from_user_input(crs).linear_units_factor
    return factor


def scale_bar_length(crs, extent, fraction: float = 0.25) -> Tuple[float, float]:
    """
    Pick a round scale bar length for an extent.

    Returns:
        tuple: (length in metres, length in map units)
    """
    left, right, _, _ = extent
    per_unit = metres_per_map_unit(crs, extent)
    length_m = nice_scale_length((right - left) * fraction * per_unit)
    return length_m, length_m / per_unit


def _format_distance(metres: float) -> str:
    if metres >= 1000:
        return f"{metres / 1000:g} km"
    return f"{metres:g} m"


def add_scale_bar(ax, crs, extent, fraction: float = 0.25) -> float:
    """Draw a scale bar in the lower-left corner. Returns its length in metres."""
    left, right, bottom, top = extent
    length_m, length_units = scale_bar_length(crs, extent, fraction)

    x0 = left + 0.05 * (right - left)
    y0 = bottom + 0.05 * (top - bottom)
    height = 0.012 * (top - bottom)

    ax.add_patch(
        Rectangle((x0, y0), length_units, height, facecolor="black", edgecolor="white", zorder=5)
    )
    ax.text(
        x0 + length_units / 2,
        y0 + 2 * height,
        _format_distance(length_m),
        ha="center",
        va="bottom",
        fontsize=9,
        zorder=5,
        bbox=dict(facecolor="white", alpha=0.7, edgecolor="none", pad=1),
    )
    logger.debug(f"Scale bar: {_format_distance(length_m)}")
    return length_m


def add_north_arrow(ax, location=(0.94, 0.86), size=0.08):
    """Draw a north arrow in axes-fraction coordinates."""
    x, y = location
    ax.annotate(
        "N",
        xy=(x, y + size),
        xytext=(x, y),
        xycoords="axes fraction",
        textcoords="axes fraction",
        ha="center",
        va="top",
        fontsize=12,
        fontweight="bold",
        arrowprops=dict(facecolor="black", edgecolor="white", width=4, headwidth=12),
        zorder=6,
    )


def map_aspect(crs, extent) -> Union[float, str]:
    """Axes aspect that keeps ground distances square."""
    if is_geographic(crs):
        _, _, bottom, top = extent
        return 1.0 / math.cos(math.radians((bottom + top) / 2.0))
    return "equal"


# =============================================================================
# Layers
# =============================================================================


def _imshow_extent(grid: RasterGrid):
    b = grid.bounds
    return b.left, b.right, b.bottom, b.top


def _draw_raster(ax, overlay: RasterOverlay, handles: List) -> Optional[object]:
    grid = overlay.grid
    data = grid.data[0]
    if grid.transform.e > 0:
        data = np.flipud(data)

    if grid.kind == CATEGORICAL:
        nodata = LABEL_NODATA if grid.nodata is None else grid.nodata
        valid = data != nodata
        n_classes = overlay.n_classes or (int(data[valid].max()) + 1 if np.any(valid) else 1)
        palette = categorical_palette(n_classes, overlay.cmap_name or "tab10")
        rgba = labels_to_rgba(data, palette, nodata=nodata, alpha=overlay.alpha)
        ax.imshow(rgba, extent=_imshow_extent(grid), interpolation="nearest", zorder=2)

        names = overlay.class_names or [f"Class {i}" for i in range(n_classes)]
        handles.extend(
            Patch(facecolor=palette[i], edgecolor="black", label=names[i]) for i in range(n_classes)
        )
        return None

    values = np.ma.masked_invalid(data.astype(np.float64))
    return ax.imshow(
        values,
        extent=_imshow_extent(grid),
        cmap=overlay.cmap_name or "viridis",
        vmin=overlay.vmin,
        vmax=overlay.vmax,
        alpha=overlay.alpha,
        interpolation="nearest",
        zorder=2,
    )


def _layers_extent(basemap, rasters, vectors):
    boxes = [r.grid.bounds for r in rasters]
    boxes += [tuple(v.gdf.total_bounds) for v in vectors if not v.gdf.empty]
    if not boxes:
        left, right, bottom, top = basemap.extent
        return left, right, bottom, top
    lefts, bottoms, rights, tops = zip(*boxes)
    return min(lefts), max(rights), min(bottoms), max(tops)


def _layers_crs(basemap, rasters, vectors):
    crs_values = [r.grid.crs for r in rasters]
    crs_values += [v.gdf.crs for v in vectors]
    if basemap is not None:
        crs_values.append(basemap.crs)

    crs = crs_values[0]
    for other in crs_values[1:]:
        if not same_crs(crs, other):
            raise ValueError(f"All layers must share one CRS; got {crs} and {other}. Reproject first.")
    return crs


def draw_map(
    ax,
    *,
    basemap: Optional[Basemap] = None,
    rasters: Sequence[RasterOverlay] = (),
    vectors: Sequence[VectorOverlay] = (),
    title: Optional[str] = None,
    legend: bool = True,
    legend_title: Optional[str] = None,
    scale_bar: bool = True,
    north_arrow: bool = True,
    extent: Optional[Tuple[float, float, float, float]] = None,
):
    """
    Draw layers onto an existing axes.

    Returns:
        tuple: (extent, continuous_mappables) where extent is (left, right, bottom, top)
    """
    if basemap is None and not rasters and not vectors:
        raise ValueError("Nothing to draw: pass a basemap, raster overlays or vector overlays")

    crs = _layers_crs(basemap, rasters, vectors)
    extent = extent or _layers_extent(basemap, rasters, vectors)
    handles = []
    mappables = []

    if basemap is not None:
        ax.imshow(basemap.image, extent=basemap.extent, interpolation="bilinear", zorder=1)
        ax.text(
            0.99,
            0.01,
            basemap.attribution,
            transform=ax.transAxes,
            ha="right",
            va="bottom",
            fontsize=6,
            zorder=6,
            bbox=dict(facecolor="white", alpha=0.6, edgecolor="none", pad=1),
        )

    for overlay in rasters:
        mappable = _draw_raster(ax, overlay, handles)
        if mappable is not None:
            mappables.append((mappable, overlay.label))

    for overlay in vectors:
        overlay.gdf.plot(
            ax=ax,
            facecolor=overlay.facecolor,
            edgecolor=overlay.edgecolor,
            linewidth=overlay.linewidth,
            zorder=3,
        )
        if overlay.label:
            handles.append(
                Line2D([0], [0], color=overlay.edgecolor, linewidth=overlay.linewidth, label=overlay.label)
            )

    left, right, bottom, top = extent
    ax.set_xlim(left, right)
    ax.set_ylim(bottom, top)
    ax.set_aspect(map_aspect(crs, extent))

    if is_geographic(crs):
        ax.set_xlabel("Longitude")
        ax.set_ylabel("Latitude")
    else:
        ax.set_xlabel("Easting")
        ax.set_ylabel("Northing")

    if title:
        ax.set_title(title)
    if legend and handles:
        ax.legend(handles=handles, loc="upper left", title=legend_title, fontsize=8, framealpha=0.8)
    if scale_bar:
        add_scale_bar(ax, crs, extent)
    if north_arrow:
        add_north_arrow(ax)

    return extent, mappables


def render_map(
    output_path: Union[str, Path],
    *,
    basemap: Optional[Basemap] = None,
    rasters: Sequence[RasterOverlay] = (),
    vectors: Sequence[VectorOverlay] = (),
    title: Optional[str] = None,
    legend: bool = True,
    legend_title: Optional[str] = None,
    scale_bar: bool = True,
    north_arrow: bool = True,
    extent: Optional[Tuple[float, float, float, float]] = None,
    figsize=(8, 8),
    dpi: int = DEFAULT_DPI,
) -> Path:
    """
    Render layers to an image file.

    Args:
        output_path: Output image path (format from suffix, usually .png)
        basemap: Optional basemap backdrop
        rasters: Raster overlays, drawn in order
        vectors: Vector outline overlays, drawn above rasters
        title: Figure title
        legend: Draw a legend for categorical classes and labeled vectors
        legend_title: Legend title (default: first raster overlay label)
        scale_bar: Draw a scale bar
        north_arrow: Draw a north arrow
        extent: (left, right, bottom, top) to show (default: union of overlays)
        figsize: Figure size in inches
        dpi: Output resolution

    Returns:
        Path to the written image
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if legend_title is None and rasters:
        legend_title = rasters[0].label or None

    fig, ax = plt.subplots(figsize=figsize)
    try:
        _, mappables = draw_map(
            ax,
            basemap=basemap,
            rasters=rasters,
            vectors=vectors,
            title=title,
            legend=legend,
            legend_title=legend_title,
            scale_bar=scale_bar,
            north_arrow=north_arrow,
            extent=extent,
        )
        for mappable, label in mappables:
            fig.colorbar(mappable, ax=ax, shrink=0.7, label=label)

        fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    finally:
        plt.close(fig)

    logger.info(f"Saved map to {output_path}")
    return output_path


def render_comparison(
    output_path: Union[str, Path],
    overlay: RasterOverlay,
    *,
    basemap: Optional[Basemap] = None,
    vectors: Sequence[VectorOverlay] = (),
    titles: Tuple[str, str] = ("Basemap", "Classification"),
    figsize=(14, 7),
    dpi: int = DEFAULT_DPI,
) -> Path:
    """
    Render the backdrop alone next to the backdrop with the overlay.

    Without a basemap the left panel shows the vector outlines only, so at
    least one vector layer is then required.

    Returns:
        Path to the written image
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    fig, (left_ax, right_ax) = plt.subplots(1, 2, figsize=figsize)
    try:
        extent = _layers_extent(basemap, [overlay], [])
        draw_map(
            left_ax,
            basemap=basemap,
            vectors=vectors,
            title=titles[0],
            legend=False,
            scale_bar=True,
            north_arrow=True,
            extent=extent,
        )
        _, mappables = draw_map(
            right_ax,
            basemap=basemap,
            rasters=[overlay],
            vectors=vectors,
            title=titles[1],
            legend_title=overlay.label or None,
            scale_bar=True,
            north_arrow=True,
            extent=extent,
        )
        for mappable, label in mappables:
            fig.colorbar(mappable, ax=right_ax, shrink=0.7, label=label)

        fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    finally:
        plt.close(fig)

    logger.info(f"Saved comparison to {output_path}")
    return output_path
