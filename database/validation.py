"""
Input coercion helpers shared by the domain services.

Services accept plain dicts (the API layer has already run pydantic
validation, but services are also called directly), so every field is
checked and normalized here before it reaches a model.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from database.errors import ValidationError

ADDRESS_FIELDS = ('line1', 'line2', 'city', 'region', 'country', 'postal')
REQUIRED_ADDRESS_FIELDS = ('line1', 'city', 'region', 'country', 'postal')


def require_text(data: Dict[str, Any], field: str, label: Optional[str] = None) -> str:
    value = data.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{label or field} is required", field=field)
    if not isinstance(value, str):
        raise ValidationError(f"{label or field} must be text", field=field)
    return value.strip()


def optional_text(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text", field=field)
    value = value.strip()
    return value or None


def coerce_uuid(value: Any, field: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise ValidationError(f"{field} must be a valid identifier", field=field)


def optional_uuid(data: Dict[str, Any], field: str) -> Optional[uuid.UUID]:
    value = data.get(field)
    if value is None or value == "":
        return None
    return coerce_uuid(value, field)


def coerce_date(value: Any, field: str) -> date:
    """Accept a date, a datetime (date part) or an ISO-8601 string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)", field=field)


def optional_date(data: Dict[str, Any], field: str) -> Optional[date]:
    value = data.get(field)
    if value is None or value == "":
        return None
    return coerce_date(value, field)


def positive_int(data: Dict[str, Any], field: str) -> int:
    value = data.get(field)
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a positive integer", field=field)
    try:
        number = int(value)
    except (ValueError, TypeError):
        raise ValidationError(f"{field} must be a positive integer", field=field)
    if number <= 0:
        raise ValidationError(
            f"{field} must be greater than zero",
            field=field,
            suggestion="Quantities are whole numbers of shares, at least 1"
        )
    if number != value and not (isinstance(value, str) and value.strip().isdigit()):
        raise ValidationError(f"{field} must be a whole number", field=field)
    return number


def optional_money(data: Dict[str, Any], field: str) -> Optional[Decimal]:
    """Non-negative decimal with two places, or None."""
    value = data.get(field)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal amount", field=field)
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return amount.quantize(Decimal("0.01"))


def address_fields(payload: Any, field: str) -> Dict[str, Any]:
    """Validate an embedded address object and return its column values."""
    if not isinstance(payload, dict):
        raise ValidationError(f"{field} must be an address object", field=field)
    for required in REQUIRED_ADDRESS_FIELDS:
        value = payload.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(
                f"{field}.{required} is required",
                field=f"{field}.{required}"
            )
    return {
        name: (payload.get(name).strip() if isinstance(payload.get(name), str) else None)
        for name in ADDRESS_FIELDS
    }


def reject_unknown(data: Dict[str, Any], allowed: Iterable[str]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(
            f"Unknown field(s): {', '.join(unknown)}",
            field=unknown[0]
        )
