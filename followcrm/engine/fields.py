"""
Custom Field Registry
Admin-defined client attributes (EAV definitions): create, edit, deactivate, reorder.
"""

import logging
from typing import Any, Dict, List, Optional

from followcrm.db.connection import get_db_cursor
from followcrm.models import ClientField, FIELD_SELECT, FIELD_TYPES
from followcrm.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from followcrm.validators import require_text
from followcrm.bus.events import (
    bus, EVENT_FIELD_CREATED, EVENT_FIELD_UPDATED, EVENT_FIELD_DEACTIVATED, EVENT_FIELDS_REORDERED,
)
from followcrm.engine.base import _validate_columns, set_clause

logger = logging.getLogger(__name__)

# `type` is deliberately absent: a field's type never changes
_FIELD_COLUMNS = {'name', 'required', 'display_order', 'options'}


def _fetch_field(cur, field_id: int) -> ClientField:
    cur.execute("SELECT * FROM client_fields WHERE id = %s", (field_id,))
    row = cur.fetchone()
    if not row:
        raise NotFoundError(f"Field {field_id} not found")
    return ClientField(**row)


def list_fields() -> List[ClientField]:
    """Active fields in display order. Inactive fields never appear."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT * FROM client_fields
            WHERE active = TRUE
            ORDER BY display_order ASC, id ASC
        """)
        rows = cur.fetchall()
        logger.debug(f"list_fields: {len(rows)} active fields")
        return [ClientField(**row) for row in rows]


def get_field(field_id: int) -> ClientField:
    with get_db_cursor() as cur:
        return _fetch_field(cur, field_id)


def create_field(
    name: str,
    type: str,
    required: bool = False,
    options: Optional[List[str]] = None,
    display_order: int = 0,
) -> ClientField:
    """
    Create an active field.
    Names are unique (exact match). SELECT fields need at least one option.
    """
    name = require_text(name, 'Field name')
    if type not in FIELD_TYPES:
        raise ValidationError(f"Field type must be one of {', '.join(FIELD_TYPES)}, got {type!r}")
    options = [str(option) for option in (options or [])]
    if type == FIELD_SELECT and not options:
        raise ValidationError("SELECT fields must have at least one option")
    if display_order < 0:
        raise ValidationError("display_order must be >= 0")

    with get_db_cursor() as cur:
        cur.execute("SELECT id FROM client_fields WHERE name = %s", (name,))
        if cur.fetchone():
            raise ConflictError(f'A field named "{name}" already exists')

        cur.execute("""
            INSERT INTO client_fields (
                name, type, required, active, display_order, options, created_at, updated_at
            ) VALUES (
                %(name)s, %(type)s, %(required)s, TRUE, %(display_order)s, %(options)s, NOW(), NOW()
            ) RETURNING *
        """, {
            'name': name, 'type': type, 'required': bool(required),
            'display_order': display_order, 'options': options,
        })
        client_field = ClientField(**cur.fetchone())

    logger.info(f"Created field ID {client_field.id}: {name} ({type})")
    bus.emit(EVENT_FIELD_CREATED, {'field_id': client_field.id, 'field': client_field})
    return client_field


def update_field(field_id: int, updates: Dict[str, Any]) -> ClientField:
    """
    Update name, required, display_order or options.

    SELECT options are append-only: every option already stored must still be
    present in the new list.
    """
    if 'type' in updates:
        raise ValidationError("A field's type cannot be changed")
    _validate_columns(updates, _FIELD_COLUMNS, 'field')
    updates = dict(updates)
    if 'display_order' in updates and updates['display_order'] < 0:
        raise ValidationError("display_order must be >= 0")

    with get_db_cursor() as cur:
        current = _fetch_field(cur, field_id)
        if not updates:
            return current

        if 'options' in updates:
            updates['options'] = [str(option) for option in (updates['options'] or [])]
            if current.type == FIELD_SELECT:
                removed = [opt for opt in current.options if opt not in updates['options']]
                if removed:
                    raise BusinessRuleError(
                        f"Options cannot be removed from SELECT fields. Removed options: {', '.join(removed)}"
                    )

        if 'name' in updates:
            updates['name'] = require_text(updates['name'], 'Field name')
            if updates['name'] != current.name:
                cur.execute(
                    "SELECT id FROM client_fields WHERE name = %s AND id <> %s",
                    (updates['name'], field_id),
                )
                if cur.fetchone():
                    raise ConflictError(f'A field named "{updates["name"]}" already exists')

        params = dict(updates, field_id=field_id)
        cur.execute(f"""
            UPDATE client_fields
            SET {set_clause(updates)}, updated_at = NOW()
            WHERE id = %(field_id)s
            RETURNING *
        """, params)
        client_field = ClientField(**cur.fetchone())

    logger.info(f"Updated field ID {field_id}: {sorted(updates)}")
    bus.emit(EVENT_FIELD_UPDATED, {'field_id': field_id, 'updates': updates})
    return client_field


def deactivate_field(field_id: int) -> ClientField:
    """
    Hide a field from listings and from required-field checks.

    A required field can only be deactivated once every client has a value for
    it. Stored values are left untouched.
    """
    with get_db_cursor() as cur:
        current = _fetch_field(cur, field_id)

        if current.required:
            cur.execute("SELECT COUNT(*) AS total FROM clients")
            total = cur.fetchone()['total']
            if total > 0:
                cur.execute(
                    "SELECT COUNT(*) AS filled FROM client_field_values WHERE field_id = %s",
                    (field_id,),
                )
                filled = cur.fetchone()['filled']
                if filled < total:
                    raise BusinessRuleError(
                        "Cannot deactivate a required field while some clients have no value for it "
                        f"({total - filled} of {total} missing)"
                    )

        cur.execute("""
            UPDATE client_fields
            SET active = FALSE, updated_at = NOW()
            WHERE id = %s
            RETURNING *
        """, (field_id,))
        client_field = ClientField(**cur.fetchone())

    logger.info(f"Deactivated field ID {field_id}: {client_field.name}")
    bus.emit(EVENT_FIELD_DEACTIVATED, {'field_id': field_id})
    return client_field


def reorder_fields(orders: List[Dict[str, int]]) -> List[ClientField]:
    """
    Apply many display_order changes as one batch.
    orders: [{'id': 3, 'display_order': 0}, ...]; an unknown id aborts the whole batch.
    """
    if not orders:
        raise ValidationError("At least one field must be given to reorder")
    for item in orders:
        if item.get('display_order') is None or item['display_order'] < 0:
            raise ValidationError(f"Invalid display_order for field {item.get('id')}")

    with get_db_cursor() as cur:
        for item in orders:
            cur.execute("""
                UPDATE client_fields
                SET display_order = %s, updated_at = NOW()
                WHERE id = %s
            """, (item['display_order'], item['id']))
            if cur.rowcount == 0:
                raise NotFoundError(f"Field {item['id']} not found")

        ids = [item['id'] for item in orders]
        cur.execute("""
            SELECT * FROM client_fields
            WHERE id = ANY(%s)
            ORDER BY display_order ASC, id ASC
        """, (ids,))
        fields = [ClientField(**row) for row in cur.fetchall()]

    logger.info(f"Reordered {len(orders)} fields")
    bus.emit(EVENT_FIELDS_REORDERED, {'field_ids': ids})
    return fields
