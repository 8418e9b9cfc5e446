"""Client for the agricultural yield dashboard API."""

__version__ = "0.1.0"
