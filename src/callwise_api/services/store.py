from __future__ import annotations

import datetime as dt
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import CallerAttribute

T = TypeVar("T")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def get_or_create(db: Session, model: type[T], defaults: dict[str, Any] | None = None, **lookup: Any) -> tuple[T, bool]:
    """Fetch the row matching `lookup` or insert it inside a savepoint."""
    row = db.scalars(select(model).filter_by(**lookup)).first()
    if row is not None:
        return row, False
    row = model(**lookup, **(defaults or {}))
    savepoint = db.begin_nested()
    try:
        db.add(row)
        db.flush()
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        row = db.scalars(select(model).filter_by(**lookup)).first()
        if row is None:
            raise
        return row, False
    return row, True


def _value_columns(value: Any) -> dict[str, Any]:
    cols: dict[str, Any] = {
        "string_value": None,
        "number_value": None,
        "boolean_value": None,
        "json_value": None,
    }
    if isinstance(value, bool):
        cols["value_type"] = "BOOLEAN"
        cols["boolean_value"] = value
    elif isinstance(value, (int, float)):
        cols["value_type"] = "NUMBER"
        cols["number_value"] = float(value)
    elif isinstance(value, (dict, list)):
        cols["value_type"] = "JSON"
        cols["json_value"] = value
    else:
        cols["value_type"] = "STRING"
        cols["string_value"] = None if value is None else str(value)
    return cols


def attribute_value(row: CallerAttribute) -> Any:
    if row.value_type == "BOOLEAN":
        return row.boolean_value
    if row.value_type == "NUMBER":
        return row.number_value
    if row.value_type == "JSON":
        return row.json_value
    return row.string_value


def set_attribute(
    db: Session,
    *,
    caller_id: str,
    scope: str,
    key: str,
    value: Any,
    source_spec_slug: str | None = None,
    confidence: float = 1.0,
) -> CallerAttribute:
    row, _ = get_or_create(db, CallerAttribute, caller_id=caller_id, scope=scope, key=key)
    for col, col_value in _value_columns(value).items():
        setattr(row, col, col_value)
    row.source_spec_slug = source_spec_slug
    row.confidence = confidence
    row.updated_at = utcnow()
    db.flush()
    return row


def get_attribute(db: Session, *, caller_id: str, scope: str, key: str) -> Any:
    row = db.scalars(
        select(CallerAttribute).where(
            CallerAttribute.caller_id == caller_id,
            CallerAttribute.scope == scope,
            CallerAttribute.key == key,
        )
    ).first()
    return None if row is None else attribute_value(row)


def attributes_with_prefix(db: Session, *, caller_id: str, scope: str, prefix: str) -> dict[str, Any]:
    rows = db.scalars(
        select(CallerAttribute).where(
            CallerAttribute.caller_id == caller_id,
            CallerAttribute.scope == scope,
            CallerAttribute.key.startswith(prefix, autoescape=True),
        )
    ).all()
    return {row.key: attribute_value(row) for row in rows}


def delete_attributes_with_prefix(db: Session, *, caller_id: str, scope: str, prefix: str) -> int:
    rows = db.scalars(
        select(CallerAttribute).where(
            CallerAttribute.caller_id == caller_id,
            CallerAttribute.scope == scope,
            CallerAttribute.key.startswith(prefix, autoescape=True),
        )
    ).all()
    for row in rows:
        db.delete(row)
    db.flush()
    return len(rows)
