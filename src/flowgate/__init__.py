"""Flowgate: platform abstraction and credit metering for hosted workflows."""

__version__ = "0.1.0"
