"""Calendar sync for podcast guest appearances."""

__version__ = "1.0.0"
