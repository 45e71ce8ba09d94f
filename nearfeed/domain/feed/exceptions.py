"""Domain-level exceptions for the proximity feed."""

from __future__ import annotations


class FeedError(Exception):
	"""Base class for feed engine errors raised before or instead of a store call."""

	reason: str = "feed_error"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class ValidationError(FeedError):
	reason = "validation_error"


class InvalidCoordinate(ValidationError):
	reason = "invalid_coordinate"


class AuthRequired(FeedError):
	reason = "auth_required"


class NotAuthorized(FeedError):
	reason = "not_authorized"


class NotFound(FeedError):
	reason = "not_found"


__all__ = [
	"AuthRequired",
	"FeedError",
	"InvalidCoordinate",
	"NotAuthorized",
	"NotFound",
	"ValidationError",
]
