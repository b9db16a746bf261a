"""
Client Entity Manager
Client CRUD, transfer between users, soft delete and interaction history.
Creating a client also opens its first appointment in the same transaction.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from psycopg2.extras import Json

from followcrm.config import config
from followcrm.db.connection import get_db_cursor
from followcrm.models import Client, ClientField, Page, STATUS_OPEN
from followcrm.errors import BusinessRuleError, NotFoundError, ValidationError
from followcrm.validators import coerce_field_value, parse_datetime, validate_whatsapp
from followcrm.bus.events import (
    bus, EVENT_CLIENT_CREATED, EVENT_CLIENT_UPDATED, EVENT_CLIENT_DEACTIVATED,
    EVENT_CLIENT_DELETED, EVENT_CLIENT_TRANSFERRED,
)
from followcrm.engine.base import _validate_columns, like_pattern, page_window
from followcrm.engine.snapshots import attach_relations, list_interactions, read_client_state

logger = logging.getLogger(__name__)

# assigned_to is changed through transfer_client only
_CLIENT_COLUMNS = {'whatsapp', 'notes'}
_CLIENT_UPDATE_KEYS = _CLIENT_COLUMNS | {'field_values'}

_NO_APPOINTMENT = datetime.max.replace(tzinfo=timezone.utc)


def sort_by_next_appointment(clients: List[Client]) -> List[Client]:
    """
    Soonest OPEN appointment first; clients without one go last.
    Stable, so ties keep their incoming order.
    """
    return sorted(
        clients,
        key=lambda c: (c.next_appointment_at is None, c.next_appointment_at or _NO_APPOINTMENT),
    )


def _parse_field_values(field_values) -> List[Tuple[int, Any]]:
    """
    [{'field_id': 3, 'value': 'Maria'}, ...] -> [(3, 'Maria'), ...]

    field_id may be an int or a string of digits. Each field may appear once.
    """
    pairs = []
    for index, entry in enumerate(field_values or []):
        field_id = entry.get('field_id') if isinstance(entry, dict) else None
        if isinstance(field_id, str) and field_id.strip().isdigit():
            field_id = int(field_id)
        if not isinstance(field_id, int) or isinstance(field_id, bool):
            raise ValidationError(f"field_values[{index}] needs an integer field_id")
        pairs.append((field_id, entry.get('value')))

    ids = [field_id for field_id, _ in pairs]
    if len(set(ids)) != len(ids):
        raise ValidationError("Each field may appear only once in field_values")
    return pairs


def _prepare_field_values(cur, pairs: List[Tuple[int, Any]]) -> List[Tuple[int, str]]:
    """
    Check parsed (field_id, raw_value) pairs against the field definitions and
    return (field_id, stored_text) pairs.
    """
    ids = [field_id for field_id, _ in pairs]
    cur.execute("SELECT * FROM client_fields WHERE id = ANY(%s)", (ids,))
    definitions = {row['id']: ClientField(**row) for row in cur.fetchall()}
    unknown = [field_id for field_id in ids if field_id not in definitions]
    if unknown:
        raise NotFoundError(f"Fields not found: {', '.join(str(i) for i in unknown)}")

    return [(field_id, coerce_field_value(definitions[field_id], value)) for field_id, value in pairs]


# =============================================================================
# READS
# =============================================================================

def list_clients(
    page: int = 1,
    page_size: Optional[int] = None,
    search: Optional[str] = None,
    tag_ids: Optional[List[int]] = None,
) -> Page:
    """
    Non-deleted clients, soonest OPEN appointment first.

    search: case-insensitive substring of the configured search fields' values.
    tag_ids: client matches if it has any of them.

    The sort key is derived, so the whole filtered set is sorted here and then
    sliced into the requested page.
    """
    page_size = page_size or config.DEFAULT_PAGE_SIZE
    limit, offset = page_window(page, page_size)

    conditions = ["c.deleted_at IS NULL"]
    params: Dict[str, Any] = {'open': STATUS_OPEN}

    if search:
        conditions.append("""EXISTS (
            SELECT 1 FROM client_field_values v
            JOIN client_fields f ON f.id = v.field_id
            WHERE v.client_id = c.id
              AND f.name = ANY(%(search_fields)s)
              AND v.value ILIKE %(search)s
        )""")
        params['search_fields'] = config.CLIENT_SEARCH_FIELDS
        params['search'] = like_pattern(search)

    if tag_ids:
        conditions.append("""EXISTS (
            SELECT 1 FROM client_tags ct
            WHERE ct.client_id = c.id AND ct.tag_id = ANY(%(tag_ids)s)
        )""")
        params['tag_ids'] = list(tag_ids)

    where_clause = " AND ".join(conditions)

    with get_db_cursor() as cur:
        cur.execute(f"""
            SELECT c.*, (
                SELECT MIN(a.scheduled_at) FROM appointments a
                WHERE a.client_id = c.id AND a.status = %(open)s
            ) AS next_appointment_at
            FROM clients c
            WHERE {where_clause}
            ORDER BY c.id ASC
        """, params)
        candidates = [Client(**row) for row in cur.fetchall()]

        ordered = sort_by_next_appointment(candidates)
        page_clients = attach_relations(cur, ordered[offset:offset + limit])

    logger.debug(f"list_clients: {len(candidates)} matches (search={search!r}, tag_ids={tag_ids})")
    return Page(data=page_clients, total=len(candidates), page=page, page_size=page_size)


def get_client(client_id: int) -> Client:
    """Client with field values and tags. Soft-deleted clients are not found."""
    with get_db_cursor() as cur:
        return read_client_state(cur, client_id, include_deleted=False)


def get_client_history(client_id: int, page: int = 1, page_size: Optional[int] = None) -> Page:
    """Interactions (with their snapshots), newest first. Soft-deleted clients keep their history."""
    page_size = page_size or config.DEFAULT_PAGE_SIZE
    with get_db_cursor() as cur:
        cur.execute("SELECT id FROM clients WHERE id = %s", (client_id,))
        if not cur.fetchone():
            raise NotFoundError("Client not found")
        return list_interactions(cur, client_id, page, page_size)


# =============================================================================
# WRITES
# =============================================================================

def create_client(
    whatsapp: str,
    assigned_to: int,
    user_id: int,
    scheduled_at,
    notes: Optional[str] = None,
    field_values: Optional[List[Dict[str, Any]]] = None,
    tag_ids: Optional[List[int]] = None,
) -> Client:
    """
    Create a client with its field values, tags and first OPEN appointment.

    Every active required field must have a value. All writes, including the
    CREATED history record, happen in one transaction.
    """
    whatsapp = validate_whatsapp(whatsapp)
    if assigned_to is None:
        raise ValidationError("assigned_to is required")
    if user_id is None:
        raise ValidationError("user_id is required")
    scheduled_at = parse_datetime(scheduled_at, 'scheduled_at')
    field_values = _parse_field_values(field_values)
    tag_ids = list(dict.fromkeys(tag_ids or []))

    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM client_fields WHERE required = TRUE AND active = TRUE ORDER BY display_order")
        required = [ClientField(**row) for row in cur.fetchall()]
        provided = {field_id for field_id, _ in field_values}
        missing = [f.name for f in required if f.id not in provided]
        if missing:
            raise BusinessRuleError(f"Required fields missing: {', '.join(missing)}")

        values = _prepare_field_values(cur, field_values) if field_values else []

        cur.execute("SELECT id FROM users WHERE id = %s", (assigned_to,))
        if not cur.fetchone():
            raise NotFoundError(f"Assignee {assigned_to} not found")

        cur.execute("""
            INSERT INTO clients (whatsapp, notes, assigned_to, created_at, updated_at)
            VALUES (%s, %s, %s, NOW(), NOW())
            RETURNING *
        """, (whatsapp, notes, assigned_to))
        client = Client(**cur.fetchone())

        if values:
            cur.executemany("""
                INSERT INTO client_field_values (client_id, field_id, value, created_at, updated_at)
                VALUES (%s, %s, %s, NOW(), NOW())
            """, [(client.id, field_id, value) for field_id, value in values])

        if tag_ids:
            cur.executemany("""
                INSERT INTO client_tags (client_id, tag_id, created_at)
                VALUES (%s, %s, NOW())
            """, [(client.id, tag_id) for tag_id in tag_ids])

        cur.execute("""
            INSERT INTO appointments (
                client_id, assigned_to, created_by, scheduled_at, status, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, NOW(), NOW())
        """, (client.id, assigned_to, user_id, scheduled_at, STATUS_OPEN))

        cur.execute("""
            INSERT INTO client_history (client_id, type, data, created_by, created_at)
            VALUES (%s, 'CREATED', %s, %s, NOW())
        """, (client.id, Json({
            'whatsapp': whatsapp,
            'notes': notes,
            'assignedTo': assigned_to,
            'fieldValues': [{'fieldId': field_id, 'value': value} for field_id, value in values],
            'tagIds': tag_ids,
            'scheduledAt': scheduled_at.isoformat(),
        }), user_id))

        attach_relations(cur, [client])

    logger.info(f"Created client ID {client.id}: {whatsapp} (assigned to {assigned_to})")
    bus.emit(EVENT_CLIENT_CREATED, {'client_id': client.id, 'client': client})
    return client


def update_client(client_id: int, updates: Dict[str, Any]) -> Client:
    """
    Partial update of whatsapp, notes and field values (upserted per field).
    Deactivated clients cannot be updated; assignee changes go through transfer_client.
    """
    if 'assigned_to' in updates:
        raise ValidationError("Use transfer to change a client's assignee")
    _validate_columns(updates, _CLIENT_UPDATE_KEYS, 'client')
    updates = dict(updates)
    field_values = _parse_field_values(updates.pop('field_values', None))
    if 'whatsapp' in updates:
        updates['whatsapp'] = validate_whatsapp(updates['whatsapp'])

    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
        row = cur.fetchone()
        if not row:
            raise NotFoundError("Client not found")
        if row['deleted_at']:
            raise BusinessRuleError("Cannot update a deactivated client")

        values = _prepare_field_values(cur, field_values) if field_values else []

        assignments = [f"{column} = %({column})s" for column in updates]
        assignments.append("updated_at = NOW()")
        cur.execute(f"""
            UPDATE clients
            SET {', '.join(assignments)}
            WHERE id = %(client_id)s
        """, dict(updates, client_id=client_id))

        if values:
            cur.executemany("""
                INSERT INTO client_field_values (client_id, field_id, value, created_at, updated_at)
                VALUES (%s, %s, %s, NOW(), NOW())
                ON CONFLICT (client_id, field_id)
                DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
            """, [(client_id, field_id, value) for field_id, value in values])

        client = read_client_state(cur, client_id)

    changed = sorted(updates) + (['field_values'] if values else [])
    logger.info(f"Updated client ID {client_id}: {changed}")
    bus.emit(EVENT_CLIENT_UPDATED, {'client_id': client_id, 'fields': changed})
    return client


def deactivate_client(client_id: int) -> Client:
    """Soft delete. Calling it again keeps the original deleted_at."""
    with get_db_cursor() as cur:
        cur.execute("""
            UPDATE clients
            SET deleted_at = COALESCE(deleted_at, NOW()),
                updated_at = CASE WHEN deleted_at IS NULL THEN NOW() ELSE updated_at END
            WHERE id = %s
            RETURNING *
        """, (client_id,))
        row = cur.fetchone()
        if not row:
            raise NotFoundError("Client not found")
        client = Client(**row)

    logger.info(f"Deactivated client ID {client_id} (deleted_at={client.deleted_at})")
    bus.emit(EVENT_CLIENT_DEACTIVATED, {'client_id': client_id})
    return client


def delete_client_permanently(client_id: int) -> bool:
    """
    Hard delete, cascading field values, tag links, appointments, interactions
    and history. Meant for test data cleanup; normal flows use deactivate_client.
    """
    with get_db_cursor() as cur:
        cur.execute("DELETE FROM clients WHERE id = %s", (client_id,))
        deleted = cur.rowcount > 0

    if deleted:
        logger.warning(f"Permanently deleted client ID {client_id}")
        bus.emit(EVENT_CLIENT_DELETED, {'client_id': client_id})
    return deleted


def transfer_client(client_id: int, new_assignee_id: int) -> Client:
    """
    Reassign a client and all of its OPEN appointments in one transaction.
    DONE and CANCELLED appointments keep their original assignee.
    """
    with get_db_cursor() as cur:
        cur.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
        row = cur.fetchone()
        if not row:
            raise NotFoundError("Client not found")
        if row['deleted_at']:
            raise BusinessRuleError("Cannot transfer a deactivated client")

        cur.execute("SELECT id FROM users WHERE id = %s", (new_assignee_id,))
        if not cur.fetchone():
            raise NotFoundError("New assignee not found")

        previous_assignee = row['assigned_to']
        if previous_assignee == new_assignee_id:
            raise BusinessRuleError("Client is already assigned to this user")

        cur.execute("""
            UPDATE clients
            SET assigned_to = %s, updated_at = NOW()
            WHERE id = %s
        """, (new_assignee_id, client_id))

        cur.execute("""
            UPDATE appointments
            SET assigned_to = %s, updated_at = NOW()
            WHERE client_id = %s AND status = %s
        """, (new_assignee_id, client_id, STATUS_OPEN))
        moved = cur.rowcount

        client = read_client_state(cur, client_id)

    logger.info(
        f"Transferred client ID {client_id} from {previous_assignee} to {new_assignee_id} "
        f"({moved} open appointments moved)"
    )
    bus.emit(EVENT_CLIENT_TRANSFERRED, {
        'client_id': client_id,
        'from_user_id': previous_assignee,
        'to_user_id': new_assignee_id,
        'appointments_moved': moved,
    })
    return client
