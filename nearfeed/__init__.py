"""Proximity feed engine: geohash indexing, paginated and live nearby feeds, optimistic votes and an offline post queue."""

__version__ = "0.1.0"
