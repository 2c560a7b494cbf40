"""Leading-digit (Benford's Law) screening for numeric data."""

__version__ = "1.0.0"
