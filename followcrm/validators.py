"""
Input shape checks.

These are the format rules callers must satisfy before business logic runs
(WhatsApp format, ISO datetimes, non-empty text, page bounds, typed custom
field values). Every failure raises ValidationError.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
from zoneinfo import ZoneInfo

from followcrm.config import config
from followcrm.errors import ValidationError
from followcrm.models import (
    ClientField, FIELD_CHECKBOX, FIELD_DATE, FIELD_NUMBER, FIELD_SELECT, FIELD_TEXT,
)

WHATSAPP_RE = re.compile(r'^\+[1-9]\d{6,14}$')
EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

_TRUE_VALUES = {'true', '1', 'yes', 'sim', 'on'}
_FALSE_VALUES = {'false', '0', 'no', 'nao', 'não', 'off', ''}


def validate_whatsapp(phone: str) -> str:
    phone = (phone or '').strip()
    if not WHATSAPP_RE.match(phone):
        raise ValidationError(
            f"WhatsApp number must be in international format (+5511999999999), got {phone!r}"
        )
    return phone


def validate_email(email: str) -> str:
    email = (email or '').strip()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: {email!r}")
    return email


def require_text(value: Optional[str], label: str) -> str:
    """Return the stripped value, or raise if it is missing or blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def as_aware(value: datetime) -> datetime:
    """Attach the configured zone to naive datetimes; aware ones pass through."""
    if value.tzinfo is None:
        return value.replace(tzinfo=ZoneInfo(config.TIMEZONE))
    return value


def parse_datetime(value: Union[str, datetime, None], label: str = 'date') -> datetime:
    """Accept an ISO-8601 string or a datetime and return an aware datetime."""
    if isinstance(value, datetime):
        return as_aware(value)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{label} must be a valid ISO-8601 datetime")
    raw = value.strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{label} must be a valid ISO-8601 datetime, got {value!r}") from None
    return as_aware(parsed)


def validate_page(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if page_size < 1 or page_size > config.MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {config.MAX_PAGE_SIZE}")


def coerce_field_value(client_field: ClientField, value) -> str:
    """
    Check a raw value against its field definition and return the text to store.

    NUMBER and DATE values are stored exactly as given (trimmed) once they parse;
    CHECKBOX is normalized to 'true' / 'false'.
    """
    label = client_field.name
    if isinstance(value, bool):
        text = 'true' if value else 'false'
    elif value is None:
        text = ''
    else:
        text = str(value).strip()

    if client_field.type == FIELD_NUMBER:
        try:
            number = Decimal(text.replace(',', '.'))
        except InvalidOperation:
            number = None
        if number is None or not number.is_finite():
            raise ValidationError(f"{label} must be a number, got {text!r}")
        return text

    if client_field.type == FIELD_DATE:
        try:
            date.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{label} must be a date (YYYY-MM-DD), got {text!r}") from None
        return text

    if client_field.type == FIELD_CHECKBOX:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return 'true'
        if lowered in _FALSE_VALUES:
            return 'false'
        raise ValidationError(f"{label} must be true or false, got {text!r}")

    if client_field.type == FIELD_SELECT:
        if text not in client_field.options:
            raise ValidationError(
                f"{label} must be one of: {', '.join(client_field.options)} (got {text!r})"
            )
        return text

    if client_field.type == FIELD_TEXT:
        return text

    raise ValidationError(f"Unknown field type {client_field.type!r} for {label}")
