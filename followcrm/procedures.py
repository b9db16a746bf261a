"""
Procedure-call surface.

Each public operation is reachable by name ("appointment.finalize") with a
payload of keyword arguments, and returns the engine result or raises a
CrmError subclass. Transport layers (CLI, HTTP, ...) sit on top of this table.
"""

import inspect
import logging
from typing import Any, Callable, Dict, Optional

from followcrm.errors import NotFoundError, ValidationError
from followcrm.engine import appointments, clients, fields, tags, users

logger = logging.getLogger(__name__)

PROCEDURES: Dict[str, Callable[..., Any]] = {
    # Custom fields
    'clientField.list': fields.list_fields,
    'clientField.getById': fields.get_field,
    'clientField.create': fields.create_field,
    'clientField.update': fields.update_field,
    'clientField.deactivate': fields.deactivate_field,
    'clientField.reorder': fields.reorder_fields,

    # Tags
    'tag.list': tags.list_tags,
    'tag.create': tags.create_tag,
    'tag.update': tags.update_tag,
    'tag.delete': tags.delete_tag,
    'tag.linkClient': tags.link_client,
    'tag.unlinkClient': tags.unlink_client,

    # Clients
    'client.list': clients.list_clients,
    'client.getById': clients.get_client,
    'client.create': clients.create_client,
    'client.update': clients.update_client,
    'client.deactivate': clients.deactivate_client,
    'client.deletePermanently': clients.delete_client_permanently,
    'client.transfer': clients.transfer_client,
    'client.history': clients.get_client_history,

    # Appointments
    'appointment.list': appointments.list_appointments,
    'appointment.getById': appointments.get_appointment,
    'appointment.create': appointments.create_appointment,
    'appointment.reschedule': appointments.reschedule_appointment,
    'appointment.cancel': appointments.cancel_appointment,
    'appointment.finalize': appointments.finalize_appointment,

    # Users
    'user.list': users.list_users,
    'user.getById': users.get_user,
    'user.create': users.create_user,
    'user.update': users.update_user,
    'user.resetPassword': users.reset_password,
    'user.deactivate': users.deactivate_user,
    'user.reactivate': users.reactivate_user,
}

# Procedures that need to know who is calling
_SESSION_AWARE = {'user.deactivate'}


def call(name: str, payload: Optional[Dict[str, Any]] = None, current_user_id: Optional[int] = None) -> Any:
    """
    Run a procedure by name. `current_user_id` comes from the session and is
    only handed to procedures that use it.
    """
    procedure = PROCEDURES.get(name)
    if procedure is None:
        raise NotFoundError(f"Unknown procedure: {name}")

    kwargs = dict(payload or {})
    if name in _SESSION_AWARE:
        kwargs['current_user_id'] = current_user_id

    try:
        inspect.signature(procedure).bind(**kwargs)
    except TypeError as e:
        raise ValidationError(f"Invalid input for {name}: {e}") from None

    logger.debug(f"call {name} keys={sorted(kwargs)}")
    return procedure(**kwargs)
