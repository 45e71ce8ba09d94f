"""Document store contract shared by the feed engine and its backends.

The store is deliberately thin: equality/range filters, ordering, a limit and
an opaque ``start_after`` cursor for reads; all-or-nothing batches for writes;
and snapshot subscriptions that re-deliver the full query result whenever a
collection changes. Anything smarter (radius search, vote uniqueness) lives in
the domain layer.
"""

from __future__ import annotations

import json
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass, field, replace
from functools import cmp_to_key
from typing import Any, Awaitable, Callable, Iterable, Literal, Optional, Protocol, Sequence

Operator = Literal["==", "!=", "<", "<=", ">", ">=", "array_contains"]

_OPERATORS: frozenset[str] = frozenset({"==", "!=", "<", "<=", ">", ">=", "array_contains"})


class StoreError(Exception):
	"""Base class for failures reported by a document store."""

	reason: str = "store_error"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class StoreUnavailable(StoreError):
	reason = "unavailable"


class StorePermissionDenied(StoreError):
	reason = "permission_denied"


class DocumentNotFound(StoreError):
	reason = "not_found"


@dataclass(frozen=True, slots=True)
class FieldFilter:
	field: str
	op: Operator
	value: Any

	def matches(self, data: dict[str, Any]) -> bool:
		current = data.get(self.field)
		if self.op == "array_contains":
			return isinstance(current, list) and self.value in current
		if self.op == "==":
			return current == self.value
		if self.op == "!=":
			return current != self.value
		if current is None:
			return False
		try:
			if self.op == "<":
				return current < self.value
			if self.op == "<=":
				return current <= self.value
			if self.op == ">":
				return current > self.value
			return current >= self.value
		except TypeError:
			return False


@dataclass(frozen=True, slots=True)
class OrderBy:
	field: str
	descending: bool = False


@dataclass(frozen=True, slots=True)
class Query:
	"""Immutable query description; builder methods return new instances."""

	collection: str
	filters: tuple[FieldFilter, ...] = ()
	order_by: tuple[OrderBy, ...] = ()
	limit: Optional[int] = None
	start_after: Optional[str] = None

	def where(self, field_name: str, op: Operator, value: Any) -> "Query":
		if op not in _OPERATORS:
			raise ValueError(f"unsupported operator: {op}")
		return replace(self, filters=self.filters + (FieldFilter(field_name, op, value),))

	def order(self, field_name: str, *, descending: bool = False) -> "Query":
		return replace(self, order_by=self.order_by + (OrderBy(field_name, descending),))

	def limited(self, count: int) -> "Query":
		return replace(self, limit=count)

	def after(self, cursor: Optional[str]) -> "Query":
		return replace(self, start_after=cursor)


@dataclass(slots=True)
class Document:
	id: str
	data: dict[str, Any]
	cursor: Optional[str] = None


@dataclass(slots=True)
class WriteOp:
	kind: Literal["set", "update", "delete"]
	collection: str
	doc_id: str
	fields: dict[str, Any] = field(default_factory=dict)
	increments: dict[str, int] = field(default_factory=dict)


class WriteBatch:
	"""Ordered list of writes committed all-or-nothing by the store."""

	def __init__(self) -> None:
		self.ops: list[WriteOp] = []

	def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> "WriteBatch":
		self.ops.append(WriteOp("set", collection, doc_id, fields=dict(data)))
		return self

	def update(
		self,
		collection: str,
		doc_id: str,
		fields: Optional[dict[str, Any]] = None,
		*,
		increments: Optional[dict[str, int]] = None,
	) -> "WriteBatch":
		self.ops.append(
			WriteOp("update", collection, doc_id, fields=dict(fields or {}), increments=dict(increments or {}))
		)
		return self

	def delete(self, collection: str, doc_id: str) -> "WriteBatch":
		self.ops.append(WriteOp("delete", collection, doc_id))
		return self

	def __len__(self) -> int:
		return len(self.ops)


SnapshotCallback = Callable[[list[Document]], Awaitable[None]]


class StoreSubscription(Protocol):
	async def close(self) -> None: ...


class DocumentStore(Protocol):
	def new_id(self) -> str: ...

	async def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

	async def query(self, query: Query) -> list[Document]: ...

	async def commit(self, batch: WriteBatch) -> None: ...

	async def subscribe(self, query: Query, on_snapshot: SnapshotCallback) -> StoreSubscription: ...


def encode_cursor(values: Sequence[Any], doc_id: str) -> str:
	payload = json.dumps([list(values), doc_id], separators=(",", ":"))
	return urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[list[Any], str]:
	try:
		values, doc_id = json.loads(urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
	except (ValueError, TypeError) as exc:
		raise StoreError("invalid_cursor") from exc
	return list(values), str(doc_id)


def _cmp_values(left: Any, right: Any) -> int:
	# None sorts first, like a missing field
	if left is None or right is None:
		if left is None and right is None:
			return 0
		return -1 if left is None else 1
	if left == right:
		return 0
	try:
		return -1 if left < right else 1
	except TypeError:
		return -1 if str(left) < str(right) else 1


def _compare(left: tuple[list[Any], str], right: tuple[list[Any], str], order_by: Sequence[OrderBy]) -> int:
	left_values, left_id = left
	right_values, right_id = right
	for idx, order in enumerate(order_by):
		result = _cmp_values(left_values[idx], right_values[idx])
		if result:
			return -result if order.descending else result
	return _cmp_values(left_id, right_id)


def apply_query(query: Query, documents: Iterable[Document]) -> list[Document]:
	"""Evaluate ``query`` over already-loaded documents.

	Results carry a cursor encoding their sort key so a caller can resume with
	``Query.after(doc.cursor)``.
	"""
	matched = [doc for doc in documents if all(flt.matches(doc.data) for flt in query.filters)]

	def sort_key(doc: Document) -> tuple[list[Any], str]:
		return [doc.data.get(order.field) for order in query.order_by], doc.id

	ordered = sorted(
		matched,
		key=cmp_to_key(lambda a, b: _compare(sort_key(a), sort_key(b), query.order_by)),
	)
	if query.start_after:
		anchor = decode_cursor(query.start_after)
		if len(anchor[0]) != len(query.order_by):
			raise StoreError("invalid_cursor")
		ordered = [doc for doc in ordered if _compare(sort_key(doc), anchor, query.order_by) > 0]
	if query.limit is not None:
		ordered = ordered[: max(query.limit, 0)]
	for doc in ordered:
		values, doc_id = sort_key(doc)
		doc.cursor = encode_cursor(values, doc_id)
	return ordered


def apply_write(op: WriteOp, current: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
	"""Return the document state after ``op``; ``None`` means deleted."""
	if op.kind == "delete":
		return None
	if op.kind == "set":
		data = dict(op.fields)
		data["id"] = op.doc_id
		return data
	if current is None:
		raise DocumentNotFound(f"{op.collection}/{op.doc_id}")
	data = dict(current)
	data.update(op.fields)
	for name, delta in op.increments.items():
		data[name] = (data.get(name) or 0) + delta
	return data


__all__ = [
	"Document",
	"DocumentNotFound",
	"DocumentStore",
	"FieldFilter",
	"OrderBy",
	"Query",
	"SnapshotCallback",
	"StoreError",
	"StorePermissionDenied",
	"StoreSubscription",
	"StoreUnavailable",
	"WriteBatch",
	"WriteOp",
	"apply_query",
	"apply_write",
	"decode_cursor",
	"encode_cursor",
]
