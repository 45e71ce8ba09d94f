"""Geohash cell indexing for coarse proximity lookups.

Posts are stored with a fixed-precision cell id (precision 7, cells of about
150m) and every prefix of it, so a caller can match at any coarser level.
Encoding goes through pygeohash; neighbors are derived from the decoded cell
size rather than a lookup table.
"""

from __future__ import annotations

import math

import pygeohash as pgh

from nearfeed.domain.feed.policy import ensure_coordinate
from nearfeed.settings import Settings, settings

KM_PER_DEGREE_LAT = 111.32
EARTH_CIRCUMFERENCE_KM = 40075.0


def _wrap_longitude(lon: float) -> float:
	if -180.0 <= lon <= 180.0:
		return lon
	return ((lon + 180.0) % 360.0) - 180.0


def _clamp_latitude(lat: float) -> float:
	return max(-90.0, min(90.0, lat))


class GeohashIndexer:
	def __init__(self, config: Settings = settings) -> None:
		self.precision = config.geohash_precision

	def encode(self, lat: float, lon: float) -> str:
		ensure_coordinate(lat, lon)
		return pgh.encode(lat, lon, precision=self.precision)

	@staticmethod
	def prefix_chain(cell_id: str) -> list[str]:
		return [cell_id[:length] for length in range(1, len(cell_id) + 1)]

	def neighbor_cells(self, lat: float, lon: float) -> set[str]:
		"""Return the cell containing the point plus its eight neighbors.

		Near the poles the clamped latitude can map two offsets onto the same
		cell, so the set may hold fewer than nine ids there.
		"""
		center = self.encode(lat, lon)
		center_lat, center_lon, lat_err, lon_err = pgh.decode_exactly(center)
		cell_height = lat_err * 2
		cell_width = lon_err * 2
		cells = {center}
		for dlat in (-1, 0, 1):
			for dlon in (-1, 0, 1):
				if dlat == 0 and dlon == 0:
					continue
				neighbor_lat = _clamp_latitude(center_lat + dlat * cell_height)
				neighbor_lon = _wrap_longitude(center_lon + dlon * cell_width)
				cells.add(pgh.encode(neighbor_lat, neighbor_lon, precision=self.precision))
		return cells

	def bounding_cells(self, lat: float, lon: float, radius_km: float) -> tuple[str, str]:
		"""South-west and north-east cells of the box enclosing the radius."""
		ensure_coordinate(lat, lon)
		km_per_degree_lon = EARTH_CIRCUMFERENCE_KM * math.cos(math.radians(lat)) / 360.0
		delta_lat = radius_km / KM_PER_DEGREE_LAT
		delta_lon = radius_km / km_per_degree_lon if km_per_degree_lon > 1e-9 else 180.0
		south_west = pgh.encode(
			_clamp_latitude(lat - delta_lat), _wrap_longitude(lon - delta_lon), precision=self.precision
		)
		north_east = pgh.encode(
			_clamp_latitude(lat + delta_lat), _wrap_longitude(lon + delta_lon), precision=self.precision
		)
		return south_west, north_east


__all__ = ["GeohashIndexer"]
