"""
Data loading operations for land-cover processing.

This module contains functions for loading co-registered single-band raster
files (one file per spectral band, as delivered for Landsat/Sentinel scenes)
and stacking them into one multi-band RasterGrid.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
import rasterio
from tqdm import tqdm

from src.landcover.errors import MismatchedGridError
from src.landcover.raster import CONTINUOUS, RasterGrid

logger = logging.getLogger(__name__)


def find_band_files(
    directory_path: Union[str, Path],
    pattern: str,
    band_order: Optional[Sequence[str]] = None,
    recursive: bool = False,
) -> List[Path]:
    """
    Locate band files in a directory and put them in band order.

    Args:
        directory_path: Directory containing the band files
        pattern: Glob pattern for band files (e.g. "*_B[2-5].TIF")
        band_order: Optional keys, one per band, each matched as a substring of
            exactly one file stem (e.g. ["B2", "B3", "B4", "B5"]). Without it the
            files are returned in sorted filename order.
        recursive: Whether to search subdirectories recursively (default: False)

    Returns:
        List of file paths, one per band, in band order

    Raises:
        ValueError: If the directory doesn't exist, nothing matches, or a key
            matches zero or several files
    """
    directory = Path(directory_path)

    if not directory.exists():
        raise ValueError(f"Directory does not exist: {directory}")

    if not directory.is_dir():
        raise ValueError(f"Path is not a directory: {directory}")

    glob_func = directory.rglob if recursive else directory.glob
    files = sorted(p for p in glob_func(pattern) if p.is_file())

    if not files:
        raise ValueError(f"No files matching '{pattern}' found in {directory}")

    if band_order is None:
        return files

    ordered = []
    for key in band_order:
        matches = [f for f in files if key in f.stem]
        if len(matches) != 1:
            raise ValueError(
                f"Band key '{key}' must match exactly one file, matched {len(matches)}: "
                f"{[m.name for m in matches]}"
            )
        ordered.append(matches[0])

    if len(set(ordered)) != len(ordered):
        raise ValueError(f"Band keys {list(band_order)} select the same file more than once")

    return ordered


def load_band_stack(
    directory_path: Union[str, Path],
    pattern: str,
    band_names: Sequence[str],
    band_order: Optional[Sequence[str]] = None,
    recursive: bool = False,
) -> RasterGrid:
    """
    Load co-registered single-band rasters into one multi-band stack.

    Supports any raster format readable by rasterio (GeoTIFF, IMG, etc.).
    Values are converted to floating point and each file's nodata value is
    replaced with NaN.

    Args:
        directory_path: Path to directory containing band files
        pattern: File pattern to match
        band_names: Name for each band, in band order (e.g. blue, green, red, nir)
        band_order: Optional filename keys selecting the file for each band
        recursive: Whether to search subdirectories recursively (default: False)

    Returns:
        RasterGrid with one band per file

    Raises:
        ValueError: If files can't be found or band names don't match the file count
        MismatchedGridError: If files differ in shape, transform or CRS
        rasterio.errors.RasterioIOError: If a file can't be read
    """
    logger.info(f"Searching for band files matching '{pattern}' in: {directory_path}")

    files = find_band_files(directory_path, pattern, band_order=band_order, recursive=recursive)

    if len(files) != len(band_names):
        raise ValueError(
            f"Found {len(files)} band files but {len(band_names)} band names were given: "
            f"{[f.name for f in files]}"
        )

    bands = []
    reference = None
    with tqdm(list(zip(files, band_names)), desc="Reading band files") as pbar:
        for path, name in pbar:
            with rasterio.open(path) as ds:
                if ds.count != 1:
                    logger.warning(f"{path.name} has {ds.count} bands, using band 1 only")

                array = ds.read(1)
                profile = (ds.height, ds.width, ds.transform, ds.crs)

                dtype = np.float64 if array.dtype == np.float64 else np.float32
                array = array.astype(dtype)
                if ds.nodata is not None and not np.isnan(ds.nodata):
                    array[array == ds.nodata] = np.nan

            if reference is None:
                reference = (path, profile)
            else:
                _check_same_grid(reference, (path, profile))

            bands.append(array)
            pbar.set_postfix({"band": name})

    _, (height, width, transform, crs) = reference
    stack = np.stack(bands).astype(np.result_type(*bands))

    logger.info(f"Stacked {len(bands)} bands: {list(band_names)}")
    logger.info(f"  Output shape: {stack.shape}")
    logger.info(f"  Value range: {np.nanmin(stack):.2f} to {np.nanmax(stack):.2f}")
    logger.info(f"  Transform: {transform}")

    return RasterGrid(
        data=stack,
        transform=transform,
        crs=crs,
        band_names=tuple(band_names),
        nodata=np.nan,
        kind=CONTINUOUS,
    )


def _check_same_grid(reference, candidate):
    ref_path, (ref_h, ref_w, ref_transform, ref_crs) = reference
    path, (h, w, transform, crs) = candidate

    if (h, w) != (ref_h, ref_w):
        raise MismatchedGridError(
            f"{path.name} has shape {(h, w)} but {ref_path.name} has {(ref_h, ref_w)}"
        )
    if not transform.almost_equals(ref_transform):
        raise MismatchedGridError(
            f"{path.name} transform {tuple(transform)[:6]} differs from "
            f"{ref_path.name} transform {tuple(ref_transform)[:6]}"
        )
    if crs != ref_crs:
        raise MismatchedGridError(f"{path.name} CRS {crs} differs from {ref_path.name} CRS {ref_crs}")


def stack_grids(grids: Sequence[RasterGrid]) -> RasterGrid:
    """
    Combine in-memory grids into one multi-band grid.

    Band names are concatenated in order and must stay unique.

    Raises:
        ValueError: If no grids are given
        MismatchedGridError: If grids don't share shape, transform and CRS
    """
    if not grids:
        raise ValueError("Need at least one grid to stack")

    first = grids[0]
    for grid in grids[1:]:
        if not grid.same_grid_as(first):
            raise MismatchedGridError(
                f"Cannot stack {grid!r} onto {first!r}: shape, transform or CRS differ"
            )
        if grid.kind != first.kind:
            raise MismatchedGridError(f"Cannot stack {grid.kind} bands onto {first.kind} bands")

    names = tuple(name for grid in grids for name in grid.band_names)
    data = np.concatenate([grid.data for grid in grids], axis=0)
    return first.derive(data=data, band_names=names)
