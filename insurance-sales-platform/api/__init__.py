"""HTTP layer for the insurance sales platform."""

__version__ = "1.0.0"
