"""Validation rules applied before any store call."""

from __future__ import annotations

import math
from typing import Optional

from nearfeed.domain.feed.exceptions import AuthRequired, InvalidCoordinate, ValidationError
from nearfeed.domain.feed.models import AuthenticatedUser
from nearfeed.settings import Settings, settings


def is_valid_coordinate(latitude: float, longitude: float) -> bool:
	if math.isnan(latitude) or math.isnan(longitude):
		return False
	return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def ensure_coordinate(latitude: float, longitude: float) -> None:
	if not is_valid_coordinate(latitude, longitude):
		raise InvalidCoordinate()


def ensure_radius(radius_km: float) -> None:
	if math.isnan(radius_km) or radius_km < 0:
		raise ValidationError("invalid_radius")


def ensure_id(value: Optional[str], name: str) -> str:
	if not value or not str(value).strip():
		raise ValidationError(f"{name}_required")
	return str(value)


def ensure_user(user: Optional[AuthenticatedUser]) -> AuthenticatedUser:
	if user is None or not user.id:
		raise AuthRequired()
	return user


def clean_post_content(content: Optional[str], *, config: Settings = settings) -> str:
	text = (content or "").strip()
	if not text:
		raise ValidationError("content_required")
	if len(text) > config.post_max_length:
		raise ValidationError("content_too_long")
	return text


def clean_comment_content(content: Optional[str], *, config: Settings = settings) -> str:
	text = (content or "").strip()
	if not text:
		raise ValidationError("content_required")
	if len(text) > config.comment_max_length:
		raise ValidationError("content_too_long")
	return text


def resolve_expiry_days(expires_in_days: Optional[int], *, config: Settings = settings) -> int:
	days = config.post_default_expiry_days if expires_in_days is None else int(expires_in_days)
	if days < config.post_min_expiry_days or days > config.post_max_expiry_days:
		raise ValidationError("invalid_expiry")
	return days
