"""
Exception types raised by the land-cover pipeline.

Input-shape problems are ``ValueError`` subclasses so callers that already
catch ``ValueError`` around raster handling keep working.
"""


class LandCoverError(Exception):
    """Base class for land-cover pipeline errors."""


class MismatchedGridError(LandCoverError, ValueError):
    """Rasters that must share one grid differ in shape, transform or CRS."""


class EmptyIntersectionError(LandCoverError, ValueError):
    """A requested extent leaves no cells (or no valid pixels) to work on."""


class BasemapFetchError(LandCoverError, RuntimeError):
    """Downloading or decoding basemap imagery failed."""
