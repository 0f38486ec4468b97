"""
Tests for the RasterGrid data model and GeoTIFF I/O.
"""

import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin

from src.landcover.raster import (
    CATEGORICAL,
    Extent,
    RasterGrid,
    read_raster,
    same_crs,
    write_raster,
)


class TestExtent:
    """Tests for Extent validation."""

    def test_valid_extent(self):
        """Test that a well-ordered extent is accepted."""
        extent = Extent(0, 0, 10, 5)
        assert extent.as_tuple() == (0, 0, 10, 5)

    @pytest.mark.parametrize("bounds", [(10, 0, 0, 5), (0, 5, 10, 0), (0, 0, 0, 5)])
    def test_invalid_extent_raises(self, bounds):
        """Test that inverted or degenerate extents are rejected."""
        with pytest.raises(ValueError, match="Invalid extent"):
            Extent(*bounds)

    def test_intersects(self):
        """Test rectangle overlap check."""
        a = Extent(0, 0, 10, 10)
        assert a.intersects(Extent(5, 5, 15, 15))
        assert not a.intersects(Extent(11, 11, 20, 20))


class TestRasterGrid:
    """Tests for RasterGrid construction and geometry."""

    def test_2d_data_is_promoted_to_single_band(self):
        """Test that a 2-D array becomes a one-band grid with a default name."""
        grid = RasterGrid(np.zeros((3, 4)), from_origin(0, 3, 1, 1), "EPSG:32633")

        assert grid.count == 1
        assert grid.shape == (3, 4)
        assert grid.band_names == ("band_1",)

    def test_data_is_read_only_copy(self):
        """Test that the grid owns an immutable copy of its data."""
        source = np.zeros((1, 2, 2))
        grid = RasterGrid(source, from_origin(0, 2, 1, 1), None)

        source[0, 0, 0] = 99
        assert grid.data[0, 0, 0] == 0
        with pytest.raises(ValueError):
            grid.data[0, 0, 0] = 1

    def test_band_name_count_must_match(self):
        """Test that band names must cover every band."""
        with pytest.raises(ValueError, match="band names"):
            RasterGrid(np.zeros((2, 3, 3)), from_origin(0, 3, 1, 1), None, band_names=("a",))

    def test_band_names_must_be_unique(self):
        """Test that duplicate band names are rejected."""
        with pytest.raises(ValueError, match="unique"):
            RasterGrid(np.zeros((2, 3, 3)), from_origin(0, 3, 1, 1), None, band_names=("a", "a"))

    def test_unknown_kind_raises(self):
        """Test that kind is validated."""
        with pytest.raises(ValueError, match="kind"):
            RasterGrid(np.zeros((3, 3)), from_origin(0, 3, 1, 1), None, kind="ordinal")

    def test_geometry_properties(self, sample_grid):
        """Test cell size, origin and bounds from the transform."""
        assert sample_grid.cell_size == (30.0, 30.0)
        assert sample_grid.origin == (500000.0, 4650000.0)

        bounds = sample_grid.bounds
        assert bounds.left == 500000.0
        assert bounds.top == 4650000.0
        assert bounds.right == 500000.0 + 30 * 30.0
        assert bounds.bottom == 4650000.0 - 20 * 30.0

    def test_cell_centers(self, sample_grid):
        """Test that cell centers are half a cell from the edges."""
        xs, ys = sample_grid.cell_centers()

        assert len(xs) == sample_grid.width
        assert len(ys) == sample_grid.height
        assert xs[0] == 500015.0
        assert ys[0] == 4649985.0
        assert np.all(np.diff(ys) < 0)

    def test_band_lookup(self, sample_grid):
        """Test band access by name."""
        np.testing.assert_array_equal(sample_grid.band("red"), sample_grid.data[2])
        with pytest.raises(ValueError, match="Unknown band"):
            sample_grid.band("swir")

    def test_valid_mask_for_nan_and_label_nodata(self):
        """Test nodata masks for continuous and categorical grids."""
        continuous = RasterGrid(
            np.array([[[1.0, np.nan]], [[1.0, 1.0]]]), from_origin(0, 1, 1, 1), None
        )
        np.testing.assert_array_equal(continuous.valid_mask(), [[True, False]])

        labels = RasterGrid(
            np.array([[0, -1]], dtype=np.int32),
            from_origin(0, 1, 1, 1),
            None,
            nodata=-1,
            kind=CATEGORICAL,
        )
        np.testing.assert_array_equal(labels.valid_mask(), [[True, False]])

    def test_derive_creates_new_grid(self, sample_grid):
        """Test that derive leaves the original untouched."""
        single = sample_grid.derive(data=sample_grid.data[:1] * 2)

        assert single is not sample_grid
        assert single.count == 1
        assert single.band_names == ("band_1",)
        assert sample_grid.count == 4
        assert single.crs == sample_grid.crs

    def test_same_grid_as(self, sample_grid):
        """Test grid equality on shape, transform and CRS."""
        assert sample_grid.same_grid_as(sample_grid.derive(data=sample_grid.data * 0))
        assert not sample_grid.same_grid_as(sample_grid.derive(crs="EPSG:32634"))


class TestSameCrs:
    """Tests for CRS comparison."""

    def test_equivalent_spellings(self):
        """Test that different spellings of one CRS compare equal."""
        assert same_crs("EPSG:4326", CRS.from_epsg(4326))
        assert not same_crs("EPSG:4326", "EPSG:3857")

    def test_none_handling(self):
        """Test that only None matches None."""
        assert same_crs(None, None)
        assert not same_crs(None, "EPSG:4326")


class TestRasterIO:
    """Tests for read_raster / write_raster."""

    def test_write_then_read_preserves_grid(self, tmp_path, sample_grid):
        """Test GeoTIFF round trip keeps values, georeferencing and band names."""
        path = write_raster(sample_grid, tmp_path / "stack.tif")
        loaded = read_raster(path)

        assert loaded.band_names == sample_grid.band_names
        assert loaded.same_grid_as(sample_grid)
        np.testing.assert_allclose(loaded.data, sample_grid.data)

    def test_categorical_round_trip_keeps_integer_labels(self, tmp_path):
        """Test that label rasters keep their dtype and nodata."""
        labels = RasterGrid(
            np.array([[0, 1], [2, -1]], dtype=np.int32),
            from_origin(0, 2, 1, 1),
            "EPSG:32633",
            band_names=("cluster",),
            nodata=-1,
            kind=CATEGORICAL,
        )
        loaded = read_raster(write_raster(labels, tmp_path / "labels.tif"), kind=CATEGORICAL)

        assert loaded.data.dtype == np.int32
        assert loaded.nodata == -1
        np.testing.assert_array_equal(loaded.data, labels.data)

    def test_read_converts_nodata_to_nan(self, tmp_path, band_writer):
        """Test that continuous reads replace the file nodata with NaN."""
        values = np.array([[0, 5], [6, 7]], dtype=np.uint16)
        path = band_writer(tmp_path / "band.tif", values, nodata=0)

        grid = read_raster(path)

        assert np.isnan(grid.data[0, 0, 0])
        assert grid.data[0, 1, 1] == 7
