"""ocdev - Isolated development containers on Incus."""

__version__ = "0.1.0"
