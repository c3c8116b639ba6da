"""Helpers for MongoDB documents: id parsing, date parsing, JSON serialization."""

from datetime import date, datetime
from typing import Any, Dict, Optional

from bson import Decimal128, ObjectId

from .errors import NotFound, ValidationError


def parse_object_id(value: Any, entity: str = "Document") -> ObjectId:
    """Parse an id from a URL or reference; malformed ids are reported as not found."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFound(f"{entity} not found")
    return ObjectId(str(value))


def today_iso() -> str:
    return datetime.utcnow().date().isoformat()


def parse_calendar_date(value: Any, field_name: str) -> Optional[str]:
    """
    Parse a due/stamp date into ISO 'YYYY-MM-DD'.

    Accepts dates, datetimes and ISO-8601 strings (date or date-time).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return date.fromisoformat(text[:10]).isoformat() if len(text) == 10 \
                else datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            pass
    raise ValidationError(f"Invalid date for '{field_name}'", field=field_name)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize MongoDB document for JSON response (handles ObjectId, Decimal128, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key == "_id":
            key = "id"
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value
