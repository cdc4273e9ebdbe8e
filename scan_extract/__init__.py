"""Rate-limited, multi-key batch extraction of scanned documents."""

__version__ = "0.1.0"
