"""
Appointment State Machine

    OPEN --finalize--> DONE
    OPEN --cancel----> CANCELLED
    OPEN --reschedule-> OPEN (new time)

DONE and CANCELLED are terminal. A client has at most one OPEN appointment,
and an appointment has at most one interaction. Both rules are checked before
writing and backed by unique indexes in the store; a violation reported by the
store is raised as ConflictError like the application check.

Finalizing writes the interaction (with the client snapshot), closes the
appointment and opens the next one inside a single transaction.
"""

import logging
from typing import Any, Dict, List, Optional

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from followcrm.config import config
from followcrm.db.connection import get_db_cursor
from followcrm.models import (
    Appointment, AppointmentDetail, APPOINTMENT_STATUSES, Client, FinalizeResult, Page, User,
    STATUS_CANCELLED, STATUS_DONE, STATUS_OPEN,
)
from followcrm.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from followcrm.validators import parse_datetime, require_text
from followcrm.bus.events import (
    bus, EVENT_APPOINTMENT_CREATED, EVENT_APPOINTMENT_RESCHEDULED,
    EVENT_APPOINTMENT_CANCELLED, EVENT_APPOINTMENT_FINALIZED,
)
from followcrm.engine.base import now, page_window, require_future
from followcrm.engine.snapshots import (
    attach_relations, build_snapshot, interaction_from_row, read_client_state,
)

logger = logging.getLogger(__name__)

ACTION_RESCHEDULE = 'reschedule'
ACTION_CANCEL = 'cancel'
ACTION_FINALIZE = 'finalize'

# Only OPEN appointments accept an action; these are the refusals for the terminal states
_REFUSALS = {
    (ACTION_RESCHEDULE, STATUS_DONE): "Completed appointment cannot be rescheduled",
    (ACTION_RESCHEDULE, STATUS_CANCELLED): "Only open appointments can be rescheduled",
    (ACTION_CANCEL, STATUS_DONE): "Completed appointment cannot be cancelled",
    (ACTION_CANCEL, STATUS_CANCELLED): "Appointment is already cancelled",
    (ACTION_FINALIZE, STATUS_DONE): "Only open appointments can be finalized",
    (ACTION_FINALIZE, STATUS_CANCELLED): "Only open appointments can be finalized",
}

_MSG_FUTURE = "Scheduled date must be in the future"
_MSG_NEXT_FUTURE = "Next appointment date must be in the future"
_MSG_ALREADY_OPEN = "Client already has an open appointment"
_MSG_ALREADY_FINALIZED = "Appointment already finalized"


def ensure_transition(appointment: Appointment, action: str) -> None:
    """Raise BusinessRuleError unless `action` is allowed from the appointment's status."""
    if appointment.status == STATUS_OPEN:
        return
    message = _REFUSALS.get(
        (action, appointment.status),
        f"Cannot {action} an appointment with status {appointment.status}",
    )
    raise BusinessRuleError(message)


def _fetch_appointment(cur, appointment_id: int, lock: bool = False) -> Appointment:
    sql = "SELECT * FROM appointments WHERE id = %s"
    if lock:
        sql += " FOR UPDATE"
    cur.execute(sql, (appointment_id,))
    row = cur.fetchone()
    if not row:
        raise NotFoundError("Appointment not found")
    return Appointment(**row)


def _insert_open(cur, client_id: int, assigned_to: int, created_by: int, scheduled_at) -> Appointment:
    cur.execute("""
        INSERT INTO appointments (
            client_id, assigned_to, created_by, scheduled_at, status, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, NOW(), NOW())
        RETURNING *
    """, (client_id, assigned_to, created_by, scheduled_at, STATUS_OPEN))
    return Appointment(**cur.fetchone())


# =============================================================================
# READS
# =============================================================================

def list_appointments(
    page: int = 1,
    page_size: Optional[int] = None,
    start_date=None,
    end_date=None,
    status: Optional[str] = None,
) -> Page:
    """
    Appointments ordered by scheduled time. Filters combine with AND; the date
    bounds are inclusive and independent. Several appointments may share the
    exact same time.
    """
    page_size = page_size or config.DEFAULT_PAGE_SIZE
    limit, offset = page_window(page, page_size)

    conditions = []
    params: Dict[str, Any] = {}

    if start_date is not None:
        conditions.append("a.scheduled_at >= %(start_date)s")
        params['start_date'] = parse_datetime(start_date, 'start_date')

    if end_date is not None:
        conditions.append("a.scheduled_at <= %(end_date)s")
        params['end_date'] = parse_datetime(end_date, 'end_date')

    if status:
        if status not in APPOINTMENT_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(APPOINTMENT_STATUSES)}")
        conditions.append("a.status = %(status)s")
        params['status'] = status

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    with get_db_cursor() as cur:
        cur.execute(f"SELECT COUNT(*) AS total FROM appointments a {where_clause}", params)
        total = cur.fetchone()['total']

        cur.execute(f"""
            SELECT a.*, c.whatsapp AS client_whatsapp, u.name AS assignee_name
            FROM appointments a
            JOIN clients c ON c.id = a.client_id
            LEFT JOIN users u ON u.id = a.assigned_to
            {where_clause}
            ORDER BY a.scheduled_at ASC, a.id ASC
            LIMIT %(limit)s OFFSET %(offset)s
        """, dict(params, limit=limit, offset=offset))
        rows = cur.fetchall()

    logger.debug(f"list_appointments: {len(rows)} of {total} (status={status}, start={start_date}, end={end_date})")
    return Page(data=[Appointment(**row) for row in rows], total=total, page=page, page_size=page_size)


def get_appointment(appointment_id: int) -> AppointmentDetail:
    """Appointment with its client (field values, tags), assignee, creator and interaction."""
    with get_db_cursor() as cur:
        appointment = _fetch_appointment(cur, appointment_id)

        cur.execute("SELECT * FROM clients WHERE id = %s", (appointment.client_id,))
        client_row = cur.fetchone()
        client = attach_relations(cur, [Client(**client_row)])[0] if client_row else None

        cur.execute(
            "SELECT * FROM users WHERE id = ANY(%s)",
            ([appointment.assigned_to, appointment.created_by],),
        )
        users = {row['id']: User(**row) for row in cur.fetchall()}

        cur.execute("SELECT * FROM interactions WHERE appointment_id = %s", (appointment_id,))
        interaction_row = cur.fetchone()

    return AppointmentDetail(
        appointment=appointment,
        client=client,
        assignee=users.get(appointment.assigned_to),
        creator=users.get(appointment.created_by),
        interaction=interaction_from_row(interaction_row) if interaction_row else None,
    )


# =============================================================================
# TRANSITIONS
# =============================================================================

def create_appointment(client_id: int, scheduled_at, user_id: int) -> Appointment:
    """
    Open an appointment for a client that has none open.
    The assignee is the client's current assignee, not the caller.
    """
    scheduled_at = require_future(scheduled_at, 'scheduled_at', _MSG_FUTURE)

    try:
        with get_db_cursor() as cur:
            cur.execute("SELECT * FROM clients WHERE id = %s", (client_id,))
            row = cur.fetchone()
            # Deleted clients are reported exactly like missing ones
            if not row or row['deleted_at']:
                raise NotFoundError("Client not found")
            if row['assigned_to'] is None:
                raise BusinessRuleError("Client has no assignee")

            cur.execute(
                "SELECT id FROM appointments WHERE client_id = %s AND status = %s LIMIT 1",
                (client_id, STATUS_OPEN),
            )
            if cur.fetchone():
                raise ConflictError(_MSG_ALREADY_OPEN)

            appointment = _insert_open(cur, client_id, row['assigned_to'], user_id, scheduled_at)
    except pg_errors.UniqueViolation as e:
        raise ConflictError(_MSG_ALREADY_OPEN) from e

    logger.info(f"Created appointment ID {appointment.id} for client {client_id} at {scheduled_at.isoformat()}")
    bus.emit(EVENT_APPOINTMENT_CREATED, {'appointment_id': appointment.id, 'appointment': appointment})
    return appointment


def reschedule_appointment(appointment_id: int, scheduled_at) -> Appointment:
    """Move an OPEN appointment to a new future time. Status stays OPEN."""
    scheduled_at = require_future(scheduled_at, 'scheduled_at', _MSG_FUTURE)

    with get_db_cursor() as cur:
        current = _fetch_appointment(cur, appointment_id, lock=True)
        ensure_transition(current, ACTION_RESCHEDULE)

        cur.execute("""
            UPDATE appointments
            SET scheduled_at = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING *
        """, (scheduled_at, appointment_id))
        appointment = Appointment(**cur.fetchone())

    logger.info(f"Rescheduled appointment ID {appointment_id}: {current.scheduled_at} → {scheduled_at}")
    bus.emit(EVENT_APPOINTMENT_RESCHEDULED, {
        'appointment_id': appointment_id,
        'previous': current.scheduled_at,
        'scheduled_at': scheduled_at,
    })
    return appointment


def cancel_appointment(appointment_id: int, reason: str) -> Appointment:
    """OPEN → CANCELLED. A reason is mandatory."""
    reason = require_text(reason, 'Cancel reason')

    with get_db_cursor() as cur:
        current = _fetch_appointment(cur, appointment_id, lock=True)
        ensure_transition(current, ACTION_CANCEL)

        cur.execute("""
            UPDATE appointments
            SET status = %s, cancel_reason = %s, cancelled_at = NOW(), updated_at = NOW()
            WHERE id = %s
            RETURNING *
        """, (STATUS_CANCELLED, reason, appointment_id))
        appointment = Appointment(**cur.fetchone())

    logger.info(f"Cancelled appointment ID {appointment_id}: {reason}")
    bus.emit(EVENT_APPOINTMENT_CANCELLED, {'appointment_id': appointment_id, 'reason': reason})
    return appointment


def finalize_appointment(
    appointment_id: int,
    user_id: int,
    started_at,
    summary: str,
    outcome: str,
    next_appointment_date,
) -> FinalizeResult:
    """
    OPEN → DONE, atomically:
      1. store an Interaction with a snapshot of the client's current state
      2. mark this appointment DONE
      3. open the next appointment for the same assignee as this one
    """
    summary = require_text(summary, 'Summary')
    outcome = require_text(outcome, 'Outcome')
    started_at = parse_datetime(started_at, 'started_at')
    next_date = require_future(next_appointment_date, 'next_appointment_date', _MSG_NEXT_FUTURE)

    try:
        with get_db_cursor() as cur:
            current = _fetch_appointment(cur, appointment_id, lock=True)
            ensure_transition(current, ACTION_FINALIZE)

            cur.execute("SELECT id FROM interactions WHERE appointment_id = %s", (appointment_id,))
            if cur.fetchone():
                raise ConflictError(_MSG_ALREADY_FINALIZED)

            snapshot = build_snapshot(read_client_state(cur, current.client_id))

            cur.execute("""
                INSERT INTO interactions (
                    appointment_id, client_id, user_id, started_at, ended_at,
                    summary, outcome, snapshot, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
                RETURNING *
            """, (
                appointment_id, current.client_id, user_id, started_at, now(),
                summary, outcome, Json(snapshot.to_dict()),
            ))
            interaction = interaction_from_row(cur.fetchone())

            cur.execute("""
                UPDATE appointments
                SET status = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING *
            """, (STATUS_DONE, appointment_id))
            done = Appointment(**cur.fetchone())

            # Next follow-up stays with whoever owned this one
            next_appointment = _insert_open(
                cur, current.client_id, current.assigned_to, user_id, next_date,
            )
    except pg_errors.UniqueViolation as e:
        raise ConflictError(_MSG_ALREADY_FINALIZED) from e

    logger.info(
        f"Finalized appointment ID {appointment_id} (interaction {interaction.id}); "
        f"next appointment ID {next_appointment.id} at {next_date.isoformat()}"
    )
    bus.emit(EVENT_APPOINTMENT_FINALIZED, {
        'appointment_id': appointment_id,
        'interaction_id': interaction.id,
        'next_appointment_id': next_appointment.id,
        'client_id': current.client_id,
    })
    return FinalizeResult(interaction=interaction, appointment=done, next_appointment=next_appointment)
