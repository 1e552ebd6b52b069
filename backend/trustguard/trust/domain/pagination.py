"""Keyset pagination helpers for the trust admin surfaces."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Generic, Literal, Sequence, TypeVar

from trustguard.trust.domain.exceptions import InvalidInputError

SortOrder = Literal["asc", "desc"]
T = TypeVar("T")

DEFAULT_LIMIT = 25
MAX_LIMIT = 100


@dataclass(slots=True)
class KeysetCursor:
    """Represents the state required to resume a keyset page."""

    sort_value: Any
    entity_id: str
    sort_field: str


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    cursor: str | None = None


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    if limit < 1 or limit > MAX_LIMIT:
        raise InvalidInputError("invalid_limit")
    return limit


def encode_cursor(cursor: KeysetCursor) -> str:
    """Encode a cursor payload using URL-safe base64."""

    sort_value = cursor.sort_value
    if isinstance(sort_value, datetime):
        payload = {"v": sort_value.isoformat(), "t": "datetime"}
    elif isinstance(sort_value, (int, float)) and not isinstance(sort_value, bool):
        payload = {"v": sort_value, "t": "number"}
    else:
        payload = {"v": str(sort_value), "t": "string"}
    payload["id"] = cursor.entity_id
    payload["f"] = cursor.sort_field
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(value: str, *, expected_field: str | None = None) -> KeysetCursor:
    """Decode a cursor string produced by :func:`encode_cursor`."""

    try:
        raw = base64.urlsafe_b64decode(value.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("cursor payload must be an object")
        sort_type = payload.get("t")
        if sort_type == "datetime":
            sort_value: Any = datetime.fromisoformat(payload["v"])
        elif sort_type == "number":
            sort_value = payload["v"]
            if not isinstance(sort_value, (int, float)):
                raise ValueError("cursor value must be numeric")
        elif sort_type == "string":
            sort_value = str(payload["v"])
        else:
            raise ValueError("unknown cursor type")
    except (KeyError, UnicodeError, ValueError, binascii.Error) as exc:
        raise InvalidInputError("invalid_cursor") from exc
    entity_id = payload.get("id")
    if not entity_id:
        raise InvalidInputError("invalid_cursor")
    sort_field = str(payload.get("f") or "created_at")
    if expected_field is not None and sort_field != expected_field:
        raise InvalidInputError("invalid_cursor")
    return KeysetCursor(sort_value=sort_value, entity_id=str(entity_id), sort_field=sort_field)


def build_keyset_predicate(
    *,
    sort_column: str,
    order: SortOrder,
    cursor: KeysetCursor,
    params: list[Any],
    id_column: str = "id",
) -> str:
    """Append cursor parameters and return the SQL predicate for keyset pagination."""

    comparator = ">" if order == "asc" else "<"
    value_idx = len(params) + 1
    id_idx = value_idx + 1
    params.extend([cursor.sort_value, cursor.entity_id])
    return f"({sort_column}, {id_column}) {comparator} (${value_idx}, ${id_idx})"


def page_from_rows(rows: Sequence[T], *, limit: int, sort_field: str, key: Callable[[T], tuple[Any, str]]) -> Page[T]:
    """Trim a ``limit + 1`` fetch and emit a cursor when another page exists."""

    items = list(rows[:limit])
    cursor = None
    if len(rows) > limit and items:
        sort_value, entity_id = key(items[-1])
        cursor = encode_cursor(KeysetCursor(sort_value=sort_value, entity_id=entity_id, sort_field=sort_field))
    return Page(items=items, cursor=cursor)


def paginate_in_memory(
    items: Sequence[T],
    *,
    limit: int,
    cursor: str | None,
    sort_field: str,
    key: Callable[[T], tuple[Any, str]],
) -> Page[T]:
    """Descending keyset pagination over an in-memory sequence."""

    ordered = sorted(items, key=key, reverse=True)
    if cursor:
        decoded = decode_cursor(cursor, expected_field=sort_field)
        boundary = (decoded.sort_value, decoded.entity_id)
        ordered = [item for item in ordered if key(item) < boundary]
    return page_from_rows(ordered[: limit + 1], limit=limit, sort_field=sort_field, key=key)
