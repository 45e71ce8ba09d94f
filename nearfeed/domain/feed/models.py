"""Domain models used by the proximity feed engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from nearfeed.domain.feed.schemas import CreatePostRequest
from nearfeed.settings import Settings, settings

VoteDirection = Literal["up", "down"]

POSTS = "posts"
VOTES = "votes"
COMMENTS = "comments"
USERS = "users"


def to_millis(value: datetime) -> int:
	if value.tzinfo is None:
		value = value.replace(tzinfo=timezone.utc)
	return int(value.timestamp() * 1000)


def from_millis(value: int | float) -> datetime:
	return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Coordinates:
	latitude: float
	longitude: float


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None


@dataclass(slots=True)
class Post:
	id: str
	author_id: str
	author_name: str
	content: str
	latitude: float
	longitude: float
	cell_id: str
	cell_prefix_chain: list[str]
	created_at: datetime
	expires_at: datetime
	author_avatar: Optional[str] = None
	image_url: Optional[str] = None
	upvotes: int = 0
	downvotes: int = 0
	comments_count: int = 0
	is_active: bool = True
	# Client-side enrichment, never written to the store
	has_user_voted: Optional[VoteDirection] = None

	@property
	def location(self) -> Coordinates:
		return Coordinates(self.latitude, self.longitude)

	def to_document(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"author_id": self.author_id,
			"author_name": self.author_name,
			"author_avatar": self.author_avatar,
			"content": self.content,
			"image_url": self.image_url,
			"latitude": self.latitude,
			"longitude": self.longitude,
			"cell_id": self.cell_id,
			"cell_prefix_chain": list(self.cell_prefix_chain),
			"created_at": to_millis(self.created_at),
			"expires_at": to_millis(self.expires_at),
			"upvotes": self.upvotes,
			"downvotes": self.downvotes,
			"comments_count": self.comments_count,
			"is_active": self.is_active,
		}

	@classmethod
	def from_document(cls, data: dict[str, Any]) -> "Post":
		return cls(
			id=str(data["id"]),
			author_id=str(data["author_id"]),
			author_name=data.get("author_name") or settings.anonymous_display_name,
			author_avatar=data.get("author_avatar"),
			content=data.get("content", ""),
			image_url=data.get("image_url"),
			latitude=float(data["latitude"]),
			longitude=float(data["longitude"]),
			cell_id=data.get("cell_id", ""),
			cell_prefix_chain=list(data.get("cell_prefix_chain") or []),
			created_at=from_millis(data["created_at"]),
			expires_at=from_millis(data["expires_at"]),
			upvotes=int(data.get("upvotes", 0)),
			downvotes=int(data.get("downvotes", 0)),
			comments_count=int(data.get("comments_count", 0)),
			is_active=bool(data.get("is_active", True)),
		)


@dataclass(slots=True)
class Vote:
	id: str
	voter_id: str
	post_id: str
	direction: VoteDirection
	created_at: datetime

	def to_document(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"voter_id": self.voter_id,
			"post_id": self.post_id,
			"direction": self.direction,
			"created_at": to_millis(self.created_at),
		}

	@classmethod
	def from_document(cls, data: dict[str, Any]) -> "Vote":
		return cls(
			id=str(data["id"]),
			voter_id=str(data["voter_id"]),
			post_id=str(data["post_id"]),
			direction=data["direction"],
			created_at=from_millis(data["created_at"]),
		)


@dataclass(slots=True)
class Comment:
	id: str
	post_id: str
	author_id: str
	author_name: str
	content: str
	created_at: datetime
	author_avatar: Optional[str] = None
	upvotes: int = 0
	downvotes: int = 0
	pending: bool = False

	def to_document(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"post_id": self.post_id,
			"author_id": self.author_id,
			"author_name": self.author_name,
			"author_avatar": self.author_avatar,
			"content": self.content,
			"created_at": to_millis(self.created_at),
			"upvotes": self.upvotes,
			"downvotes": self.downvotes,
		}

	@classmethod
	def from_document(cls, data: dict[str, Any]) -> "Comment":
		return cls(
			id=str(data["id"]),
			post_id=str(data["post_id"]),
			author_id=str(data["author_id"]),
			author_name=data.get("author_name") or settings.anonymous_display_name,
			author_avatar=data.get("author_avatar"),
			content=data.get("content", ""),
			created_at=from_millis(data["created_at"]),
			upvotes=int(data.get("upvotes", 0)),
			downvotes=int(data.get("downvotes", 0)),
		)


@dataclass(slots=True)
class UserProfile:
	id: str
	username: str
	email: str
	display_name: str
	created_at: datetime
	last_active_at: datetime
	avatar_url: Optional[str] = None
	notes_count: int = 0
	votes_count: int = 0

	def to_document(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"username": self.username,
			"email": self.email,
			"display_name": self.display_name,
			"avatar_url": self.avatar_url,
			"created_at": to_millis(self.created_at),
			"last_active_at": to_millis(self.last_active_at),
			"notes_count": self.notes_count,
			"votes_count": self.votes_count,
		}

	@classmethod
	def from_document(cls, data: dict[str, Any]) -> "UserProfile":
		return cls(
			id=str(data["id"]),
			username=data.get("username", ""),
			email=data.get("email", ""),
			display_name=data.get("display_name", ""),
			avatar_url=data.get("avatar_url"),
			created_at=from_millis(data["created_at"]),
			last_active_at=from_millis(data["last_active_at"]),
			notes_count=int(data.get("notes_count", 0)),
			votes_count=int(data.get("votes_count", 0)),
		)


@dataclass(frozen=True, slots=True)
class SearchContext:
	"""Cache and subscription key for one proximity feed.

	Build instances through ``create`` so that coordinates and radius are
	rounded; raw GPS jitter would otherwise open a new feed on every fix.
	"""

	latitude: float
	longitude: float
	radius_km: float

	@classmethod
	def create(
		cls,
		latitude: float,
		longitude: float,
		radius_km: Optional[float] = None,
		*,
		config: Settings = settings,
	) -> "SearchContext":
		radius = config.default_search_radius_km if radius_km is None else radius_km
		return cls(
			latitude=round(float(latitude), config.context_coordinate_decimals),
			longitude=round(float(longitude), config.context_coordinate_decimals),
			radius_km=round(float(radius), config.context_radius_decimals),
		)

	@property
	def center(self) -> Coordinates:
		return Coordinates(self.latitude, self.longitude)

	def cache_key(self) -> tuple:
		return ("posts", "nearby", self.latitude, self.longitude, self.radius_km)

	def label(self) -> str:
		return f"r={self.radius_km}km"


@dataclass(slots=True)
class CachePage:
	posts: list[Post] = field(default_factory=list)
	has_more: bool = False
	cursor: Optional[str] = None


@dataclass(slots=True)
class PageResult:
	posts: list[Post]
	next_cursor: Optional[str]
	has_more: bool
	raw_count: int = 0


@dataclass(slots=True)
class CommentPage:
	comments: list[Comment] = field(default_factory=list)
	has_more: bool = False
	cursor: Optional[str] = None


@dataclass(slots=True)
class OfflineRecord:
	id: str
	payload: CreatePostRequest
	created_at: datetime
	synced: bool = False

	def to_json(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"payload": self.payload.model_dump(mode="json"),
			"created_at": self.created_at.isoformat(),
			"synced": self.synced,
		}

	@classmethod
	def from_json(cls, data: dict[str, Any]) -> "OfflineRecord":
		created_at = datetime.fromisoformat(data["created_at"])
		if created_at.tzinfo is None:
			created_at = created_at.replace(tzinfo=timezone.utc)
		return cls(
			id=str(data["id"]),
			payload=CreatePostRequest.model_validate(data["payload"]),
			created_at=created_at,
			synced=bool(data.get("synced", False)),
		)


def post_cache_key(post_id: str) -> tuple:
	return ("posts", "by_id", post_id)


def vote_cache_key(post_id: str) -> tuple:
	return ("votes", "user", post_id)


def comments_cache_key(post_id: str) -> tuple:
	return ("comments", post_id)


def author_cache_key(author_id: str) -> tuple:
	return ("posts", "by_author", author_id)


NEARBY_PREFIX: tuple = ("posts", "nearby")
