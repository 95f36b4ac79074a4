"""StreamSlicer - viral clip detection for stream recordings."""

__version__ = "1.0.0"
