"""Ensemble Explorer: multi-panel comparison viewer for Zarr ensemble stores."""

__version__ = "0.1.0"
