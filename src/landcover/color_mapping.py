"""
Color mapping functions for land-cover visualization.

This module maps categorical cluster labels and continuous raster values to
colors using matplotlib colormaps.
"""

import logging

import matplotlib
import numpy as np
from matplotlib.colors import ListedColormap

from src.config import LABEL_NODATA

logger = logging.getLogger(__name__)


def _get_cmap(cmap_name):
    return matplotlib.colormaps.get_cmap(cmap_name)


def categorical_palette(n_classes, cmap_name="tab10"):
    """
    Pick one distinct RGBA color per class from a matplotlib colormap.

    Qualitative colormaps (tab10, Set2, Paired, ...) are sampled color by
    color; continuous colormaps are sampled evenly across their range.

    Args:
        n_classes: Number of categories
        cmap_name: Matplotlib colormap name (default: 'tab10')

    Returns:
        Array of shape (n_classes, 4) with RGBA floats in [0, 1]
    """
    if n_classes < 1:
        raise ValueError(f"n_classes must be at least 1, got {n_classes}")

    cmap = _get_cmap(cmap_name)

    if isinstance(cmap, ListedColormap) and cmap.N < 64:
        colors = np.array([cmap(i % cmap.N) for i in range(n_classes)])
        if n_classes > cmap.N:
            logger.warning(
                f"Colormap {cmap_name} has {cmap.N} colors for {n_classes} classes; colors repeat"
            )
    else:
        colors = cmap(np.linspace(0, 1, n_classes))

    return np.asarray(colors, dtype=np.float64)


def labels_to_rgba(labels, palette, nodata=LABEL_NODATA, alpha=1.0):
    """
    Paint a 2-D label array with a palette.

    Args:
        labels: Integer array (rows, cols) of class labels
        palette: Array (n_classes, 4) of RGBA colors
        nodata: Label treated as transparent (default: -1)
        alpha: Opacity applied to labeled cells (default: 1.0)

    Returns:
        Float array (rows, cols, 4)

    Raises:
        ValueError: If a label has no palette entry
    """
    labels = np.asarray(labels)
    palette = np.asarray(palette, dtype=np.float64)

    valid = labels != nodata
    if np.any(valid):
        if labels[valid].min() < 0 or labels[valid].max() >= len(palette):
            raise ValueError(
                f"Labels span {labels[valid].min()}..{labels[valid].max()} but the palette has "
                f"{len(palette)} colors"
            )

    rgba = np.zeros(labels.shape + (4,), dtype=np.float64)
    rgba[valid] = palette[labels[valid]]
    rgba[valid, 3] = alpha
    return rgba


def continuous_colormap(values, cmap_name="viridis", vmin=None, vmax=None, alpha=1.0):
    """
    Create RGBA colors for continuous raster values.

    Low values map to the start of the colormap, high values to the end.
    NaN cells are fully transparent.

    Args:
        values: 2D numpy array of values
        cmap_name: Matplotlib colormap name (default: 'viridis')
        vmin: Minimum value for normalization (default: use data min)
        vmax: Maximum value for normalization (default: use data max)
        alpha: Opacity of valid cells (default: 1.0)

    Returns:
        Float array of RGBA colors with shape (rows, cols, 4)
    """
    values = np.asarray(values, dtype=np.float64)
    valid_mask = ~np.isnan(values)

    if not np.any(valid_mask):
        return np.zeros(values.shape + (4,), dtype=np.float64)

    if vmin is None:
        vmin = np.nanmin(values)
    if vmax is None:
        vmax = np.nanmax(values)

    logger.debug(f"Normalizing values from {vmin:.3f} to {vmax:.3f} with {cmap_name}")

    normalized = np.zeros_like(values)
    if vmax > vmin:
        normalized[valid_mask] = np.clip((values[valid_mask] - vmin) / (vmax - vmin), 0, 1)

    rgba = _get_cmap(cmap_name)(normalized)
    rgba[..., 3] = np.where(valid_mask, alpha, 0.0)
    return rgba
