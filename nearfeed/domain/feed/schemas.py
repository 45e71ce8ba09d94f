"""Pydantic schemas for feed write requests."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class CreatePostRequest(BaseModel):
	"""Payload for creating a post; also what the offline queue persists."""

	content: str
	latitude: float
	longitude: float
	image_url: Optional[str] = None
	expires_in_days: Optional[int] = Field(default=None, description="Defaults to the configured expiry")

	@field_validator("image_url")
	def _blank_image_is_none(cls, value: Optional[str]) -> Optional[str]:
		if value is not None and not value.strip():
			return None
		return value


class UpdatePostRequest(BaseModel):
	post_id: str
	content: Optional[str] = None
	image_url: Optional[str] = None


class CommentRequest(BaseModel):
	post_id: str
	content: str

	@field_validator("content")
	def _strip(cls, value: str) -> str:
		return value.strip()
