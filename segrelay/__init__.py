"""Segmented recording with encrypted local storage and ordered upload."""

__version__ = "0.1.0"
