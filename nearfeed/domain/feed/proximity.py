"""Exact great-circle distance checks used to trim coarse candidates."""

from __future__ import annotations

import math

from nearfeed.domain.feed.models import Coordinates
from nearfeed.domain.feed.policy import ensure_radius

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
	"""Return the great-circle distance between two points in kilometers."""

	phi1, phi2 = math.radians(lat1), math.radians(lat2)
	dphi = math.radians(lat2 - lat1)
	dlambda = math.radians(lon2 - lon1)
	a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
	a = min(1.0, a)
	return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(center: Coordinates, point: Coordinates) -> float:
	return haversine(center.latitude, center.longitude, point.latitude, point.longitude)


def within_radius(center: Coordinates, point: Coordinates, radius_km: float) -> bool:
	ensure_radius(radius_km)
	return distance_km(center, point) <= radius_km


__all__ = ["EARTH_RADIUS_KM", "distance_km", "haversine", "within_radius"]
