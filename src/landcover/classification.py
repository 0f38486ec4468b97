"""
Unsupervised land-cover classification with k-means.

The multi-band grid is flattened into a pixel-feature table (one row per
valid cell, one column per band), partitioned into k clusters, and the
per-row labels are scattered back onto the grid.

Flatten and unflatten both walk the grid in row-major (C) order, so label i
always lands on the cell that produced feature row i.

Clustering uses Lloyd-style batch refinement:

1. Assign every row to its nearest mean (squared Euclidean distance). Ties go
   to the lowest cluster index.
2. Refill any empty cluster with the row farthest from its own mean, taken
   from a cluster that keeps at least one other member. Only rows that differ
   from their mean can be moved. When there are none (fewer distinct feature
   vectors than k) the cluster stays empty and keeps its previous mean, so
   the effective number of clusters drops below k.
3. Recompute every mean.
4. Stop when an assignment step changes nothing, or after ``max_iter`` steps.
   Hitting the cap is reported through ``converged=False``, not an exception.

Example::

    from src.landcover.classification import classify_raster

    result = classify_raster(stack, n_clusters=5, seed=42)
    labels = result.grid          # single-band categorical RasterGrid
    print(result.converged, result.n_iter, result.cluster_sizes())
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple, Union

import numpy as np
from scipy.spatial.distance import cdist
from sklearn.cluster import KMeans

from src.config import DEFAULT_MAX_ITER, DEFAULT_N_CLUSTERS, DEFAULT_SEED, LABEL_NODATA
from src.landcover.errors import EmptyIntersectionError
from src.landcover.raster import CATEGORICAL, RasterGrid

logger = logging.getLogger(__name__)

ENGINES = ("lloyd", "sklearn")


# =============================================================================
# Pixel-feature table
# =============================================================================


@dataclass
class FeatureTable:
    """
    Flattened view of a raster grid.

    Attributes:
        values: Array (n_valid, bands) of feature vectors, row-major cell order
        valid: Boolean array (rows * cols,) marking which cells produced a row
        shape: (rows, cols) of the source grid
        band_names: Column names
    """

    values: np.ndarray
    valid: np.ndarray
    shape: Tuple[int, int]
    band_names: Tuple[str, ...]

    @property
    def n_valid(self) -> int:
        return self.values.shape[0]

    @property
    def n_cells(self) -> int:
        return self.shape[0] * self.shape[1]


def flatten_features(grid: RasterGrid) -> FeatureTable:
    """
    Flatten a grid to one feature row per cell.

    Cells that are nodata in any band are left out; their positions are
    remembered in ``valid`` so labels can be scattered back.
    """
    bands, rows, cols = grid.data.shape
    table = grid.data.reshape(bands, rows * cols).T
    valid = grid.valid_mask().reshape(rows * cols)
    values = np.ascontiguousarray(table[valid], dtype=np.float64)

    logger.debug(f"Flattened {rows}x{cols} grid to {values.shape[0]} rows x {bands} bands")
    return FeatureTable(values=values, valid=valid, shape=(rows, cols), band_names=grid.band_names)


def unflatten_labels(table: FeatureTable, labels, fill=LABEL_NODATA) -> np.ndarray:
    """
    Scatter one value per feature row back onto the grid.

    Args:
        table: FeatureTable the labels were computed from
        labels: Array (n_valid,) of per-row values
        fill: Value for cells that had no feature row

    Returns:
        Array of shape (rows, cols)
    """
    labels = np.asarray(labels)
    if labels.shape != (table.n_valid,):
        raise ValueError(
            f"Expected {table.n_valid} labels for this feature table, got shape {labels.shape}"
        )

    dtype = np.result_type(labels.dtype, np.min_scalar_type(fill))
    out = np.full(table.n_cells, fill, dtype=dtype)
    out[table.valid] = labels
    return out.reshape(table.shape)


# =============================================================================
# K-means
# =============================================================================


@dataclass
class KMeansResult:
    """Outcome of a k-means run on a feature table."""

    labels: np.ndarray
    centers: np.ndarray
    inertia: float
    n_iter: int
    converged: bool


def _kmeans_plusplus(X: np.ndarray, n_clusters: int, rng: np.random.Generator) -> np.ndarray:
    n = X.shape[0]
    centers = np.empty((n_clusters, X.shape[1]), dtype=np.float64)
    centers[0] = X[rng.integers(n)]
    closest = cdist(X, centers[:1], "sqeuclidean").ravel()

    for j in range(1, n_clusters):
        total = closest.sum()
        if total > 0:
            index = rng.choice(n, p=closest / total)
        else:
            # every remaining point coincides with a chosen center
            index = rng.integers(n)
        centers[j] = X[index]
        closest = np.minimum(closest, cdist(X, centers[j : j + 1], "sqeuclidean").ravel())

    return centers


def _initial_centers(X, n_clusters, init, rng) -> np.ndarray:
    if isinstance(init, str):
        if init == "k-means++":
            return _kmeans_plusplus(X, n_clusters, rng)
        if init == "random":
            return X[rng.choice(X.shape[0], size=n_clusters, replace=False)].copy()
        raise ValueError(f"Unknown init {init!r}; use 'k-means++', 'random' or an array")

    centers = np.array(init, dtype=np.float64)
    if centers.shape != (n_clusters, X.shape[1]):
        raise ValueError(
            f"Initial centers must have shape {(n_clusters, X.shape[1])}, got {centers.shape}"
        )
    return centers


def _refill_empty_clusters(labels, own_distance, n_clusters) -> np.ndarray:
    counts = np.bincount(labels, minlength=n_clusters)
    empty = np.flatnonzero(counts == 0)
    if empty.size == 0:
        return labels

    labels = labels.copy()
    own_distance = own_distance.copy()
    for j in empty:
        donors = (counts[labels] > 1) & (own_distance > 0)
        if not donors.any():
            logger.debug(f"Cluster {j} is empty and no point differs from its mean; leaving it empty")
            continue
        candidates = np.where(donors, own_distance, -1.0)
        point = int(np.argmax(candidates))
        logger.debug(
            f"Cluster {j} is empty; moving point {point} from cluster {labels[point]} "
            f"(distance {own_distance[point]:.3f})"
        )
        counts[labels[point]] -= 1
        labels[point] = j
        counts[j] = 1
        own_distance[point] = 0.0

    return labels


def _cluster_means(X, labels, previous) -> np.ndarray:
    n_clusters = previous.shape[0]
    counts = np.bincount(labels, minlength=n_clusters).astype(np.float64)
    sums = np.empty((n_clusters, X.shape[1]), dtype=np.float64)
    for column in range(X.shape[1]):
        sums[:, column] = np.bincount(labels, weights=X[:, column], minlength=n_clusters)

    means = previous.copy()
    filled = counts > 0
    means[filled] = sums[filled] / counts[filled, np.newaxis]
    return means


def _lloyd(X, centers, max_iter) -> KMeansResult:
    n_clusters = centers.shape[0]
    rows = np.arange(X.shape[0])
    labels = None
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        distances = cdist(X, centers, "sqeuclidean")
        assignment = np.argmin(distances, axis=1)

        if labels is not None and np.array_equal(assignment, labels):
            converged = True
            break

        labels = _refill_empty_clusters(assignment, distances[rows, assignment], n_clusters)
        centers = _cluster_means(X, labels, centers)

    inertia = float(np.sum((X - centers[labels]) ** 2))
    return KMeansResult(
        labels=labels, centers=centers, inertia=inertia, n_iter=n_iter, converged=converged
    )


def kmeans(
    features,
    n_clusters: int,
    *,
    max_iter: int = DEFAULT_MAX_ITER,
    n_init: int = 1,
    init: Union[str, np.ndarray] = "k-means++",
    seed: Optional[int] = None,
) -> KMeansResult:
    """
    Partition feature rows into k clusters minimizing within-cluster variance.

    Args:
        features: Array (n, d) of feature vectors
        n_clusters: Number of clusters k (1 <= k <= n)
        max_iter: Maximum assignment/update steps per run (default: 100)
        n_init: Number of independent starts; the lowest inertia wins (default: 1)
        init: "k-means++" (default), "random", or an explicit (k, d) array
        seed: Seed for numpy's default_rng; equal seeds give equal results

    Returns:
        KMeansResult with labels in [0, k)

    Raises:
        ValueError: On invalid k, iteration settings, or non-finite features
    """
    X = np.asarray(features, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"Features must be a 2-D (rows, bands) array, got shape {X.shape}")
    if X.shape[0] == 0:
        raise ValueError("Cannot cluster an empty feature table")
    if n_clusters < 1:
        raise ValueError(f"n_clusters must be at least 1, got {n_clusters}")
    if n_clusters > X.shape[0]:
        raise ValueError(f"Cannot form {n_clusters} clusters from {X.shape[0]} feature rows")
    if max_iter < 1 or n_init < 1:
        raise ValueError(f"max_iter and n_init must be positive, got {max_iter} and {n_init}")
    if not np.all(np.isfinite(X)):
        raise ValueError("Features contain NaN or infinite values")

    if not isinstance(init, str) and n_init > 1:
        logger.warning(f"Explicit initial centers given; running a single start instead of {n_init}")
        n_init = 1

    rng = np.random.default_rng(seed)
    best = None
    for run in range(n_init):
        centers = _initial_centers(X, n_clusters, init, rng)
        result = _lloyd(X, centers, max_iter)
        logger.debug(
            f"Start {run + 1}/{n_init}: inertia {result.inertia:.4g} after {result.n_iter} steps"
        )
        if best is None or result.inertia < best.inertia:
            best = result

    filled = int(np.count_nonzero(np.bincount(best.labels, minlength=n_clusters)))
    if filled < n_clusters:
        logger.info(f"Only {filled} of {n_clusters} clusters are non-empty (too few distinct rows)")
    if not best.converged:
        logger.warning(
            f"k-means did not converge within {max_iter} iterations; "
            f"returning the last assignment (inertia {best.inertia:.4g})"
        )
    return best


def _sklearn_kmeans(X, n_clusters, *, max_iter, n_init, init, seed) -> KMeansResult:
    """
    Run scikit-learn's KMeans and wrap it as a KMeansResult.

    scikit-learn only reports the iteration count, so a run that used every
    allowed iteration counts as converged when its centers are already the
    means of the labels it returns (a Lloyd fixed point).
    """
    model = KMeans(
        n_clusters=n_clusters,
        init=init,
        n_init=n_init,
        max_iter=max_iter,
        random_state=seed,
        algorithm="lloyd",
    )
    labels = model.fit_predict(X).astype(np.int64)
    centers = model.cluster_centers_
    n_iter = int(model.n_iter_)
    converged = n_iter < max_iter or np.allclose(_cluster_means(X, labels, centers), centers)
    return KMeansResult(
        labels=labels,
        centers=centers,
        inertia=float(model.inertia_),
        n_iter=n_iter,
        converged=bool(converged),
    )


# =============================================================================
# Raster classification
# =============================================================================


@dataclass
class ClassificationResult:
    """
    Categorical raster produced by classify_raster plus clustering diagnostics.

    Attributes:
        grid: Single-band categorical RasterGrid of cluster labels (nodata -1)
        centers: Array (k, bands) of cluster means in feature space
        inertia: Sum of squared distances of pixels to their cluster mean
        n_iter: Assignment steps performed
        converged: Whether the assignment stabilized before the cap
        band_names: Feature names matching the columns of ``centers``
    """

    grid: RasterGrid
    centers: np.ndarray
    inertia: float
    n_iter: int
    converged: bool
    band_names: Tuple[str, ...] = ()

    @property
    def n_clusters(self) -> int:
        return self.centers.shape[0]

    def cluster_sizes(self) -> np.ndarray:
        """Number of cells per cluster label."""
        labels = self.grid.data[0]
        return np.bincount(labels[labels != LABEL_NODATA].ravel(), minlength=self.n_clusters)


def classify_raster(
    grid: RasterGrid,
    n_clusters: int = DEFAULT_N_CLUSTERS,
    *,
    seed: Optional[int] = DEFAULT_SEED,
    max_iter: int = DEFAULT_MAX_ITER,
    n_init: int = 1,
    init: Union[str, np.ndarray] = "k-means++",
    engine: str = "lloyd",
) -> ClassificationResult:
    """
    Classify a multi-band grid into k spectral clusters.

    Args:
        grid: Continuous multi-band RasterGrid
        n_clusters: Number of land-cover clusters (default: 5)
        seed: Random seed for initialisation (default: 42)
        max_iter: Iteration cap (default: 100)
        n_init: Number of restarts (default: 1)
        init: "k-means++", "random" or explicit initial centers
        engine: "lloyd" (built-in refinement) or "sklearn" (scikit-learn KMeans)

    Returns:
        ClassificationResult whose grid has the input's shape and georeferencing

    Raises:
        ValueError: On categorical input, unknown engine or invalid k
        EmptyIntersectionError: If the grid has no valid pixel
    """
    if grid.kind == CATEGORICAL:
        raise ValueError("Cannot cluster a categorical raster; pass spectral (continuous) bands")
    if engine not in ENGINES:
        raise ValueError(f"Unknown engine {engine!r}; available: {list(ENGINES)}")

    table = flatten_features(grid)
    if table.n_valid == 0:
        raise EmptyIntersectionError("Grid has no valid pixels to classify")

    logger.info(
        f"Classifying {table.n_valid} of {table.n_cells} pixels into {n_clusters} clusters "
        f"using bands {list(grid.band_names)} ({engine})"
    )

    if engine == "lloyd":
        km = kmeans(
            table.values, n_clusters, max_iter=max_iter, n_init=n_init, init=init, seed=seed
        )
    else:
        if n_clusters > table.n_valid:
            raise ValueError(f"Cannot form {n_clusters} clusters from {table.n_valid} pixels")
        km = _sklearn_kmeans(
            table.values, n_clusters, max_iter=max_iter, n_init=n_init, init=init, seed=seed
        )

    labels = unflatten_labels(table, km.labels.astype(np.int32), fill=LABEL_NODATA)
    label_grid = RasterGrid(
        data=labels.astype(np.int32),
        transform=grid.transform,
        crs=grid.crs,
        band_names=("cluster",),
        nodata=LABEL_NODATA,
        kind=CATEGORICAL,
    )

    result = ClassificationResult(
        grid=label_grid,
        centers=km.centers,
        inertia=km.inertia,
        n_iter=km.n_iter,
        converged=km.converged,
        band_names=grid.band_names,
    )
    logger.info(
        f"Clustering finished after {km.n_iter} iterations (converged: {km.converged}), "
        f"cluster sizes: {result.cluster_sizes().tolist()}"
    )
    return result


def relabel_by_brightness(result: ClassificationResult) -> ClassificationResult:
    """
    Renumber clusters by ascending mean brightness of their centers.

    K-means label numbers are arbitrary; sorting them by the mean of each
    center across bands keeps legends stable between runs and engines.
    """
    order = np.argsort(result.centers.mean(axis=1), kind="stable")
    lookup = np.empty_like(order)
    lookup[order] = np.arange(order.size)

    labels = result.grid.data[0]
    relabeled = np.where(labels == LABEL_NODATA, LABEL_NODATA, lookup[np.clip(labels, 0, None)])

    return replace(
        result,
        grid=result.grid.derive(data=relabeled.astype(np.int32)),
        centers=result.centers[order],
    )
