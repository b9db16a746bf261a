"""
Tag Registry
Named, coloured labels and their links to clients. Deleting a tag removes its
client links; snapshots already stored in interactions keep the tag by value.
"""

import logging
from typing import Any, Dict, List, Optional

from followcrm.db.connection import get_db_cursor
from followcrm.models import Tag
from followcrm.errors import ConflictError, NotFoundError
from followcrm.validators import require_text
from followcrm.bus.events import (
    bus, EVENT_TAG_CREATED, EVENT_TAG_UPDATED, EVENT_TAG_DELETED, EVENT_TAG_LINKED, EVENT_TAG_UNLINKED,
)
from followcrm.engine.base import _validate_columns, set_clause

logger = logging.getLogger(__name__)

_TAG_COLUMNS = {'name', 'color'}


def _fetch_tag(cur, tag_id: int) -> Tag:
    cur.execute("SELECT * FROM tags WHERE id = %s", (tag_id,))
    row = cur.fetchone()
    if not row:
        raise NotFoundError(f"Tag {tag_id} not found")
    return Tag(**row)


def _ensure_unique_name(cur, name: str, exclude_id: Optional[int] = None) -> None:
    """Tag names are unique ignoring case."""
    if exclude_id is None:
        cur.execute("SELECT id FROM tags WHERE LOWER(name) = LOWER(%s)", (name,))
    else:
        cur.execute(
            "SELECT id FROM tags WHERE LOWER(name) = LOWER(%s) AND id <> %s",
            (name, exclude_id),
        )
    if cur.fetchone():
        raise ConflictError(f'A tag named "{name}" already exists')


def list_tags() -> List[Tag]:
    """All tags, alphabetically, with a live count of linked clients."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT t.*, COUNT(ct.client_id) AS client_count
            FROM tags t
            LEFT JOIN client_tags ct ON ct.tag_id = t.id
            GROUP BY t.id
            ORDER BY t.name ASC
        """)
        rows = cur.fetchall()
        logger.debug(f"list_tags: {len(rows)} tags")
        return [Tag(**row) for row in rows]


def create_tag(name: str, created_by: int, color: Optional[str] = None) -> Tag:
    name = require_text(name, 'Tag name')

    with get_db_cursor() as cur:
        _ensure_unique_name(cur, name)
        cur.execute("""
            INSERT INTO tags (name, color, created_by, created_at, updated_at)
            VALUES (%s, %s, %s, NOW(), NOW())
            RETURNING *
        """, (name, color, created_by))
        tag = Tag(**cur.fetchone())

    logger.info(f"Created tag ID {tag.id}: {name}")
    bus.emit(EVENT_TAG_CREATED, {'tag_id': tag.id, 'tag': tag})
    return tag


def update_tag(tag_id: int, updates: Dict[str, Any]) -> Tag:
    _validate_columns(updates, _TAG_COLUMNS, 'tag')
    updates = dict(updates)

    with get_db_cursor() as cur:
        current = _fetch_tag(cur, tag_id)
        if not updates:
            return current

        if 'name' in updates:
            updates['name'] = require_text(updates['name'], 'Tag name')
            _ensure_unique_name(cur, updates['name'], exclude_id=tag_id)

        cur.execute(f"""
            UPDATE tags
            SET {set_clause(updates)}, updated_at = NOW()
            WHERE id = %(tag_id)s
            RETURNING *
        """, dict(updates, tag_id=tag_id))
        tag = Tag(**cur.fetchone())

    logger.info(f"Updated tag ID {tag_id}: {sorted(updates)}")
    bus.emit(EVENT_TAG_UPDATED, {'tag_id': tag_id, 'updates': updates})
    return tag


def delete_tag(tag_id: int) -> bool:
    """Remove a tag and every client link to it. Interaction snapshots are not touched."""
    with get_db_cursor() as cur:
        tag = _fetch_tag(cur, tag_id)
        cur.execute("DELETE FROM client_tags WHERE tag_id = %s", (tag_id,))
        unlinked = cur.rowcount
        cur.execute("DELETE FROM tags WHERE id = %s", (tag_id,))

    logger.info(f"Deleted tag ID {tag_id}: {tag.name} ({unlinked} client links removed)")
    bus.emit(EVENT_TAG_DELETED, {'tag_id': tag_id, 'unlinked': unlinked})
    return True


def link_client(tag_id: int, client_id: int) -> bool:
    """Attach a tag to a client. Linking twice is a no-op."""
    with get_db_cursor() as cur:
        _fetch_tag(cur, tag_id)
        cur.execute("SELECT id FROM clients WHERE id = %s", (client_id,))
        if not cur.fetchone():
            raise NotFoundError("Client not found")
        cur.execute("""
            INSERT INTO client_tags (client_id, tag_id, created_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (client_id, tag_id) DO NOTHING
        """, (client_id, tag_id))
        created = cur.rowcount > 0

    if created:
        logger.info(f"Linked tag ID {tag_id} to client ID {client_id}")
        bus.emit(EVENT_TAG_LINKED, {'tag_id': tag_id, 'client_id': client_id})
    return True


def unlink_client(tag_id: int, client_id: int) -> bool:
    """Detach a tag from a client. Unlinking a missing link is a no-op."""
    with get_db_cursor() as cur:
        cur.execute(
            "DELETE FROM client_tags WHERE client_id = %s AND tag_id = %s",
            (client_id, tag_id),
        )
        removed = cur.rowcount > 0

    if removed:
        logger.info(f"Unlinked tag ID {tag_id} from client ID {client_id}")
        bus.emit(EVENT_TAG_UNLINKED, {'tag_id': tag_id, 'client_id': client_id})
    return True
