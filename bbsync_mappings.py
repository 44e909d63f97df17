"""Bubble record → local row mapping.

Bubble returns field names as they appear in the editor ("Linked Customer",
"Total Amount", "??SunPeak Hours"). Each entity's FieldSpec table in
bbsync_config says which of those land in which column and how to coerce them;
the handful of rules that don't fit a table live in the post-mappers below.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from bbsync_config import EntityConfig

logger = structlog.get_logger()

TRUTHY = {"true", "yes", "y"}


class MappingError(ValueError):
    def __init__(self, type_name: str, record_id: str | None, message: str):
        super().__init__(message)
        self.type_name = type_name
        self.record_id = record_id


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_bubble_date(value: Any) -> datetime | None:
    """Parse Bubble's ISO strings ("2025-01-02T03:04:05.678Z") or epoch millis."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def convert_value(value: Any, kind: str) -> Any:
    if value is None:
        return None

    if kind == "integer":
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None
    if kind == "numeric":
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    if kind == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in TRUTHY
        return bool(value)
    if kind == "timestamp":
        return parse_bubble_date(value)
    if kind == "array":
        if isinstance(value, list):
            return [v for v in value if v is not None]
        return [value]
    if kind == "json":
        return value
    # string / text
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _first_present(record: dict[str, Any], sources: list[str]) -> Any:
    for name in sources:
        v = record.get(name)
        if v is not None:
            return v
    return None


def _map_invoice(record: dict[str, Any], row: dict[str, Any]) -> None:
    if not row.get("invoice_number") and row.get("invoice_id") is not None:
        row["invoice_number"] = str(row["invoice_id"])
    if row.get("total_amount") is None:
        row["total_amount"] = row.get("amount")
    if not row.get("status"):
        row["status"] = "draft"
    if row.get("invoice_date") is None:
        row["invoice_date"] = row.get("created_date")


def _map_user(record: dict[str, Any], row: dict[str, Any]) -> None:
    auth = record.get("authentication") or {}
    email = (auth.get("email") or {}).get("email") if isinstance(auth, dict) else None
    row["email"] = email or record.get("email")


def _map_submitted_payment(record: dict[str, Any], row: dict[str, Any]) -> None:
    if not row.get("status"):
        row["status"] = "pending"


def _map_invoice_item(record: dict[str, Any], row: dict[str, Any]) -> None:
    # Keep a back-filled link when Bubble carries none
    if row.get("linked_invoice") is None:
        row.pop("linked_invoice", None)


POST_MAPPERS: dict[str, Callable[[dict[str, Any], dict[str, Any]], None]] = {
    "invoice": _map_invoice,
    "invoice_item": _map_invoice_item,
    "user": _map_user,
    "submit_payment": _map_submitted_payment,
}


def map_record(entity: EntityConfig, record: dict[str, Any]) -> dict[str, Any]:
    """Map one Bubble record to a row keyed by local column names."""
    record_id = record.get("_id")
    if not record_id:
        raise MappingError(entity.type_name, None, "record has no _id")

    row: dict[str, Any] = {
        entity.conflict_column: str(record_id),
        "created_date": parse_bubble_date(record.get("Created Date")),
        "modified_date": parse_bubble_date(record.get("Modified Date")),
    }
    for column, spec in entity.fields.items():
        raw = _first_present(record, spec.source)
        try:
            row[column] = convert_value(raw, spec.type)
        except Exception as e:
            raise MappingError(entity.type_name, record_id, f"{column}: {e}") from e

    post = POST_MAPPERS.get(entity.type_name)
    if post:
        post(record, row)
    return row
