"""
Tests for k-means land-cover classification.
"""

import logging

import numpy as np
import pytest
from rasterio.transform import from_origin

from src.landcover.classification import (
    FeatureTable,
    classify_raster,
    flatten_features,
    kmeans,
    relabel_by_brightness,
    unflatten_labels,
)
from src.landcover.errors import EmptyIntersectionError
from src.landcover.raster import CATEGORICAL, RasterGrid


def _agreement(labels, truth):
    """Fraction of cells whose label matches the majority label of their true class."""
    matched = 0
    for cls in np.unique(truth):
        values = labels[truth == cls]
        matched += np.bincount(values).max()
    return matched / truth.size


class TestFeatureTable:
    """Tests for flatten_features / unflatten_labels."""

    def test_flatten_is_row_major(self):
        """Test that rows follow C order and columns follow bands."""
        data = np.stack([np.arange(6).reshape(2, 3), 10 * np.arange(6).reshape(2, 3)])
        grid = RasterGrid(data.astype(float), from_origin(0, 2, 1, 1), None)

        table = flatten_features(grid)

        assert table.values.shape == (6, 2)
        np.testing.assert_array_equal(table.values[:, 0], np.arange(6))
        np.testing.assert_array_equal(table.values[:, 1], 10 * np.arange(6))

    def test_nan_cells_are_excluded(self):
        """Test that a NaN in any band drops the cell."""
        data = np.ones((2, 2, 2))
        data[1, 0, 1] = np.nan
        grid = RasterGrid(data, from_origin(0, 2, 1, 1), None)

        table = flatten_features(grid)

        assert table.n_valid == 3
        assert table.n_cells == 4
        np.testing.assert_array_equal(table.valid, [True, False, True, True])

    def test_unflatten_inverts_flatten(self, sample_grid):
        """Test that scattering row indices back restores cell positions."""
        data = np.array(sample_grid.data)
        data[:, 3, 4] = np.nan
        grid = sample_grid.derive(data=data)
        table = flatten_features(grid)

        row_ids = np.arange(table.n_valid)
        restored = unflatten_labels(table, row_ids, fill=-1)

        assert restored.shape == grid.shape
        assert restored[3, 4] == -1
        # every valid cell holds the id of the feature row built from it
        np.testing.assert_array_equal(table.values[restored[grid.valid_mask()]], table.values)
        np.testing.assert_array_equal(
            grid.data[0][grid.valid_mask()], table.values[:, 0].astype(np.float32)
        )

    def test_unflatten_wrong_length_raises(self):
        """Test that label count must match the table."""
        table = FeatureTable(
            values=np.zeros((3, 1)), valid=np.ones(3, bool), shape=(1, 3), band_names=("a",)
        )
        with pytest.raises(ValueError, match="Expected 3 labels"):
            unflatten_labels(table, np.zeros(2, dtype=int))


class TestKMeans:
    """Tests for the kmeans function."""

    def test_separates_obvious_clusters(self):
        """Test two well separated blobs."""
        rng = np.random.default_rng(1)
        X = np.vstack([rng.normal(0, 0.1, (50, 2)), rng.normal(5, 0.1, (50, 2))])

        result = kmeans(X, 2, seed=0)

        assert result.converged
        assert len(set(result.labels[:50])) == 1
        assert len(set(result.labels[50:])) == 1
        assert result.labels[0] != result.labels[-1]

    def test_labels_in_range(self):
        """Test that every label is in [0, k)."""
        X = np.random.default_rng(2).uniform(size=(200, 3))
        result = kmeans(X, 6, seed=3)

        assert result.labels.min() >= 0
        assert result.labels.max() < 6
        assert result.centers.shape == (6, 3)

    def test_same_seed_same_result(self):
        """Test determinism for a fixed seed."""
        X = np.random.default_rng(4).uniform(size=(300, 4))

        a = kmeans(X, 5, seed=11, n_init=3)
        b = kmeans(X, 5, seed=11, n_init=3)

        np.testing.assert_array_equal(a.labels, b.labels)
        np.testing.assert_array_equal(a.centers, b.centers)
        assert a.inertia == b.inertia

    def test_centers_are_cluster_means(self):
        """Test that returned centers are the means of their members."""
        X = np.random.default_rng(5).normal(size=(120, 2))
        result = kmeans(X, 3, seed=0)

        for j in range(3):
            np.testing.assert_allclose(result.centers[j], X[result.labels == j].mean(axis=0))

    def test_inertia_matches_assignment(self):
        """Test inertia is the sum of squared distances to assigned centers."""
        X = np.random.default_rng(6).normal(size=(80, 3))
        result = kmeans(X, 4, seed=0)

        expected = np.sum((X - result.centers[result.labels]) ** 2)
        assert result.inertia == pytest.approx(expected)

    def test_k_equals_n_gives_singletons(self):
        """Test that k == n puts each point in its own cluster."""
        X = np.array([[0.0], [1.0], [5.0], [9.0]])
        result = kmeans(X, 4, seed=0)

        assert sorted(result.labels.tolist()) == [0, 1, 2, 3]
        assert result.inertia == pytest.approx(0.0)

    def test_single_cluster(self):
        """Test k == 1 returns the global mean."""
        X = np.random.default_rng(7).normal(size=(50, 2))
        result = kmeans(X, 1, seed=0)

        assert np.all(result.labels == 0)
        np.testing.assert_allclose(result.centers[0], X.mean(axis=0))

    def test_empty_cluster_is_refilled(self):
        """Test that a start leaving a cluster empty still yields k non-empty clusters."""
        X = np.array([[0.0], [0.1], [0.2], [10.0], [10.1]])
        # The third center is far from every point, so it starts empty
        init = np.array([[0.0], [10.0], [100.0]])

        result = kmeans(X, 3, init=init, seed=0)

        counts = np.bincount(result.labels, minlength=3)
        assert np.all(counts > 0)
        assert result.labels.max() == 2

    def test_duplicated_rows_converge_with_fewer_clusters(self, caplog):
        """Test that k above the number of distinct rows settles instead of cycling."""
        X = np.repeat([[0.0], [1.0], [2.0]], 10, axis=0)

        with caplog.at_level(logging.INFO):
            result = kmeans(X, 4, seed=0)

        counts = np.bincount(result.labels, minlength=4)
        assert result.converged
        assert result.n_iter < 100
        assert result.inertia == 0.0
        assert np.count_nonzero(counts) == 3
        assert sorted(result.centers[counts > 0].ravel()) == [0.0, 1.0, 2.0]
        assert "did not converge" not in caplog.text
        assert "Only 3 of 4 clusters" in caplog.text

    def test_ties_go_to_lowest_index(self):
        """Test that equidistant points join the lower-numbered cluster."""
        X = np.array([[0.0], [1.0], [2.0]])
        init = np.array([[0.0], [2.0]])

        result = kmeans(X, 2, init=init, max_iter=1)

        # 1.0 is equidistant from both initial centers
        assert result.labels[1] == 0

    def test_iteration_cap_reports_not_converged(self, caplog):
        """Test that hitting max_iter is reported, not raised."""
        X = np.random.default_rng(8).normal(size=(500, 2))

        with caplog.at_level(logging.WARNING):
            result = kmeans(X, 8, max_iter=1, seed=0)

        assert result.converged is False
        assert result.n_iter == 1
        assert "did not converge" in caplog.text

    def test_explicit_init_shape_checked(self):
        """Test that wrong-shaped initial centers are rejected."""
        with pytest.raises(ValueError, match="Initial centers"):
            kmeans(np.zeros((5, 2)), 2, init=np.zeros((3, 2)))

    @pytest.mark.parametrize(
        "features, k, match",
        [
            (np.zeros((5, 2)), 0, "at least 1"),
            (np.zeros((5, 2)), 6, "Cannot form"),
            (np.zeros((0, 2)), 1, "empty"),
            (np.zeros(5), 1, "2-D"),
            (np.array([[0.0], [np.nan]]), 1, "NaN"),
        ],
    )
    def test_invalid_input_raises(self, features, k, match):
        """Test argument validation."""
        with pytest.raises(ValueError, match=match):
            kmeans(features, k)

    def test_unknown_init_raises(self):
        """Test that unknown init strategies are rejected."""
        with pytest.raises(ValueError, match="Unknown init"):
            kmeans(np.zeros((5, 2)), 2, init="forgy")

    def test_random_init(self):
        """Test random initialisation still yields a valid partition."""
        X = np.random.default_rng(9).uniform(size=(60, 2))
        result = kmeans(X, 3, init="random", seed=1)

        assert set(result.labels.tolist()) == {0, 1, 2}


class TestClassifyRaster:
    """Tests for classify_raster."""

    def test_output_grid_matches_input(self, sample_grid):
        """Test that labels share the input georeferencing."""
        result = classify_raster(sample_grid, 3, seed=0)
        labels = result.grid

        assert labels.kind == CATEGORICAL
        assert labels.band_names == ("cluster",)
        assert labels.data.dtype == np.int32
        assert labels.nodata == -1
        assert labels.shape == sample_grid.shape
        assert labels.transform == sample_grid.transform
        assert labels.crs == sample_grid.crs

    def test_three_block_scene_is_recovered(self, three_block_scene):
        """Test that three spectrally distinct blocks come back as three clusters."""
        grid, truth = three_block_scene

        result = classify_raster(grid, 3, seed=42)

        assert result.converged
        assert _agreement(result.grid.data[0], truth) >= 0.95
        # Each block maps to a different cluster
        majority = {int(np.bincount(result.grid.data[0][truth == c]).argmax()) for c in range(3)}
        assert majority == {0, 1, 2}

    def test_nodata_pixels_get_nodata_label(self, sample_grid):
        """Test that NaN cells are labeled -1 and others in [0, k)."""
        data = np.array(sample_grid.data)
        data[:, :2, :] = np.nan
        grid = sample_grid.derive(data=data)

        result = classify_raster(grid, 4, seed=0)
        labels = result.grid.data[0]

        assert np.all(labels[:2] == -1)
        assert labels[2:].min() >= 0
        assert labels[2:].max() < 4
        assert result.cluster_sizes().sum() == labels[2:].size

    def test_deterministic_for_seed(self, sample_grid):
        """Test that the same seed reproduces the label map."""
        a = classify_raster(sample_grid, 4, seed=5)
        b = classify_raster(sample_grid, 4, seed=5)

        np.testing.assert_array_equal(a.grid.data, b.grid.data)

    def test_categorical_input_raises(self, sample_grid):
        """Test that label rasters can't be classified again."""
        labels = classify_raster(sample_grid, 2, seed=0).grid

        with pytest.raises(ValueError, match="categorical"):
            classify_raster(labels, 2)

    def test_all_nodata_raises(self, sample_grid):
        """Test that a grid without valid pixels raises EmptyIntersectionError."""
        grid = sample_grid.derive(data=np.full(sample_grid.data.shape, np.nan))

        with pytest.raises(EmptyIntersectionError):
            classify_raster(grid, 2)

    def test_too_many_clusters_raises(self):
        """Test that k larger than the pixel count is rejected."""
        grid = RasterGrid(np.ones((2, 2, 2)), from_origin(0, 2, 1, 1), None)

        with pytest.raises(ValueError, match="Cannot form"):
            classify_raster(grid, 5)

    def test_unknown_engine_raises(self, sample_grid):
        """Test engine validation."""
        with pytest.raises(ValueError, match="Unknown engine"):
            classify_raster(sample_grid, 2, engine="hartigan")

    def test_sklearn_engine(self, three_block_scene):
        """Test that the scikit-learn engine recovers the same blocks."""
        grid, truth = three_block_scene

        result = classify_raster(grid, 3, seed=42, engine="sklearn")

        assert result.grid.data.dtype == np.int32
        assert result.n_clusters == 3
        assert _agreement(result.grid.data[0], truth) >= 0.95

    def test_sklearn_fixed_point_on_last_iteration_is_converged(self):
        """Test that a run which settles on its final allowed step counts as converged."""
        grid = RasterGrid(
            np.array([[[0.0] * 5 + [10.0] * 5]]),
            from_origin(0, 1, 1, 1),
            "EPSG:32633",
        )

        result = classify_raster(
            grid, 2, engine="sklearn", max_iter=1, init=np.array([[0.0], [10.0]])
        )

        assert result.n_iter == 1
        assert result.converged


class TestRelabelByBrightness:
    """Tests for relabel_by_brightness."""

    def test_labels_sorted_by_center_brightness(self, three_block_scene):
        """Test that cluster 0 is the darkest and k-1 the brightest."""
        grid, truth = three_block_scene
        result = relabel_by_brightness(classify_raster(grid, 3, seed=42))

        brightness = result.centers.mean(axis=1)
        assert np.all(np.diff(brightness) >= 0)

        # water block is darkest, bare block is brightest
        labels = result.grid.data[0]
        assert np.bincount(labels[truth == 0]).argmax() == 0
        assert np.bincount(labels[truth == 2]).argmax() == 2

    def test_relabel_keeps_nodata_and_partition(self, sample_grid):
        """Test that relabeling only renames clusters."""
        data = np.array(sample_grid.data)
        data[:, 0, 0] = np.nan
        original = classify_raster(sample_grid.derive(data=data), 4, seed=0)

        relabeled = relabel_by_brightness(original)

        before = original.grid.data[0]
        after = relabeled.grid.data[0]
        assert after[0, 0] == -1
        assert sorted(np.bincount(before[before >= 0])) == sorted(np.bincount(after[after >= 0]))
        # same cells grouped together
        for label in range(4):
            assert len(set(after[before == label].tolist())) == 1
