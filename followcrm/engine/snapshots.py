"""
Snapshot / History Builder

Reads a client's current mutable state (field values with their definitions,
tags) and freezes it into a by-value Snapshot at finalize time. History is read
from interactions only, never from live client rows, so renaming or
deactivating a field, or deleting a tag, never changes what history shows.
"""

import logging
from typing import Dict, List

from followcrm.models import (
    Client, FieldValue, Interaction, Page, Snapshot, SnapshotFieldValue, SnapshotTag, Tag,
)
from followcrm.errors import NotFoundError
from followcrm.engine.base import page_window

logger = logging.getLogger(__name__)


# =============================================================================
# CLIENT STATE
# =============================================================================

def attach_relations(cur, clients: List[Client]) -> List[Client]:
    """Fill field_values and tags for the given clients with two queries."""
    if not clients:
        return clients
    by_id: Dict[int, Client] = {c.id: c for c in clients}
    ids = list(by_id)

    cur.execute("""
        SELECT v.*, f.name AS field_name, f.type AS field_type
        FROM client_field_values v
        JOIN client_fields f ON f.id = v.field_id
        WHERE v.client_id = ANY(%s)
        ORDER BY f.display_order ASC, f.id ASC
    """, (ids,))
    for row in cur.fetchall():
        by_id[row['client_id']].field_values.append(FieldValue(**row))

    cur.execute("""
        SELECT ct.client_id AS linked_client_id, t.*
        FROM client_tags ct
        JOIN tags t ON t.id = ct.tag_id
        WHERE ct.client_id = ANY(%s)
        ORDER BY t.name ASC
    """, (ids,))
    for row in cur.fetchall():
        row = dict(row)
        client_id = row.pop('linked_client_id')
        by_id[client_id].tags.append(Tag(**row))

    return clients


def read_client_state(cur, client_id: int, include_deleted: bool = True) -> Client:
    """Current client row with its field values and tags, read inside the caller's transaction."""
    cur.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
    row = cur.fetchone()
    if not row or (row.get('deleted_at') and not include_deleted):
        raise NotFoundError("Client not found")
    client = Client(**row)
    attach_relations(cur, [client])
    return client


# =============================================================================
# SNAPSHOTS
# =============================================================================

def build_snapshot(client: Client) -> Snapshot:
    """
    Freeze whatsapp, notes, field values and tags by value.
    Field name/type come from the definition as it is right now.
    """
    return Snapshot(
        whatsapp=client.whatsapp,
        notes=client.notes,
        field_values=tuple(
            SnapshotFieldValue(field_name=fv.field_name, field_type=fv.field_type, value=fv.value)
            for fv in client.field_values
        ),
        tags=tuple(SnapshotTag(name=tag.name, color=tag.color) for tag in client.tags),
    )


def interaction_from_row(row) -> Interaction:
    data = dict(row)
    data['snapshot'] = Snapshot.from_dict(data.get('snapshot'))
    return Interaction(**data)


# =============================================================================
# HISTORY
# =============================================================================

def list_interactions(cur, client_id: int, page: int, page_size: int) -> Page:
    """Interactions of one client, most recent first."""
    limit, offset = page_window(page, page_size)

    cur.execute(
        "SELECT COUNT(*) AS total FROM interactions WHERE client_id = %s",
        (client_id,),
    )
    total = cur.fetchone()['total']

    cur.execute("""
        SELECT * FROM interactions
        WHERE client_id = %s
        ORDER BY ended_at DESC, id DESC
        LIMIT %s OFFSET %s
    """, (client_id, limit, offset))
    rows = cur.fetchall()
    logger.debug(f"list_interactions: client_id={client_id} → {len(rows)} of {total}")

    return Page(
        data=[interaction_from_row(row) for row in rows],
        total=total,
        page=page,
        page_size=page_size,
    )
