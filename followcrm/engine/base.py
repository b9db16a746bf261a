"""
Helpers shared by the engine modules: column allow-lists for dynamic UPDATEs,
the clock, future-date guard and offset pagination.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Tuple

from followcrm.errors import BusinessRuleError, ValidationError
from followcrm.validators import parse_datetime, validate_page


def _validate_columns(updates: Dict[str, Any], allowed: set, entity: str) -> None:
    """Raise ValidationError if any key in updates is not an allowed column name."""
    invalid = set(updates.keys()) - allowed
    if invalid:
        raise ValidationError(f"Invalid {entity} fields: {sorted(invalid)}")


def set_clause(columns: Iterable[str]) -> str:
    """`a = %(a)s, b = %(b)s` for columns already checked by _validate_columns."""
    return ', '.join(f"{column} = %({column})s" for column in columns)


def now() -> datetime:
    """Server time. Patched in tests."""
    return datetime.now(timezone.utc)


def require_future(value, label: str, message: str) -> datetime:
    """Parse value and reject it unless it is strictly after now()."""
    moment = parse_datetime(value, label)
    if moment <= now():
        raise BusinessRuleError(message)
    return moment


def page_window(page: int, page_size: int) -> Tuple[int, int]:
    """Validate paging input and return (limit, offset)."""
    validate_page(page, page_size)
    return page_size, (page - 1) * page_size


def like_pattern(text: str) -> str:
    """Case-insensitive substring pattern with LIKE wildcards escaped."""
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"
