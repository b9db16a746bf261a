"""
Event Bus - Decoupled Module Communication
Engine modules emit events after a mutation is committed; listeners react
without the engine importing them.
"""

from typing import Callable, Dict, List, Any
import logging

logger = logging.getLogger(__name__)


class EventBus:
    """
    Simple event bus for decoupled module communication.
    Modules emit events, other modules register handlers to listen.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def on(self, event_name: str, handler: Callable):
        """
        Register a handler for an event.

        Args:
            event_name: Name of the event to listen for
            handler: Callable that receives event_data dict
        """
        self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Registered handler for event '{event_name}': {getattr(handler, '__name__', handler)}")

    def off(self, event_name: str, handler: Callable):
        """Remove a previously registered handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, event_data: Dict[str, Any] = None):
        """
        Emit an event to all registered handlers.

        The emitting transaction is already committed, so a failing handler is
        logged and skipped instead of propagating.

        Args:
            event_name: Name of the event
            event_data: Optional dict of data to pass to handlers
        """
        if event_data is None:
            event_data = {}

        logger.debug(f"Emitting event '{event_name}' with keys: {sorted(event_data)}")

        for handler in list(self._handlers.get(event_name, [])):
            try:
                handler(event_data)
            except Exception as e:
                logger.error(
                    f"Error in handler {getattr(handler, '__name__', handler)} for event '{event_name}': {e}",
                    exc_info=True,
                )

    def clear(self):
        """Clear all handlers (useful for testing)."""
        self._handlers.clear()


# Singleton instance
bus = EventBus()


# =============================================================================
# STANDARD EVENTS
# =============================================================================

# Custom field registry
EVENT_FIELD_CREATED = 'field_created'
EVENT_FIELD_UPDATED = 'field_updated'
EVENT_FIELD_DEACTIVATED = 'field_deactivated'
EVENT_FIELDS_REORDERED = 'fields_reordered'

# Tag registry
EVENT_TAG_CREATED = 'tag_created'
EVENT_TAG_UPDATED = 'tag_updated'
EVENT_TAG_DELETED = 'tag_deleted'
EVENT_TAG_LINKED = 'tag_linked'
EVENT_TAG_UNLINKED = 'tag_unlinked'

# Clients
EVENT_CLIENT_CREATED = 'client_created'
EVENT_CLIENT_UPDATED = 'client_updated'
EVENT_CLIENT_DEACTIVATED = 'client_deactivated'
EVENT_CLIENT_DELETED = 'client_deleted'
EVENT_CLIENT_TRANSFERRED = 'client_transferred'

# Appointment lifecycle
EVENT_APPOINTMENT_CREATED = 'appointment_created'
EVENT_APPOINTMENT_RESCHEDULED = 'appointment_rescheduled'
EVENT_APPOINTMENT_CANCELLED = 'appointment_cancelled'
EVENT_APPOINTMENT_FINALIZED = 'appointment_finalized'

# Users
EVENT_USER_CREATED = 'user_created'
EVENT_USER_UPDATED = 'user_updated'
EVENT_USER_PASSWORD_RESET = 'user_password_reset'
EVENT_USER_DEACTIVATED = 'user_deactivated'
EVENT_USER_REACTIVATED = 'user_reactivated'

ALL_EVENTS = (
    EVENT_FIELD_CREATED, EVENT_FIELD_UPDATED, EVENT_FIELD_DEACTIVATED, EVENT_FIELDS_REORDERED,
    EVENT_TAG_CREATED, EVENT_TAG_UPDATED, EVENT_TAG_DELETED, EVENT_TAG_LINKED, EVENT_TAG_UNLINKED,
    EVENT_CLIENT_CREATED, EVENT_CLIENT_UPDATED, EVENT_CLIENT_DEACTIVATED, EVENT_CLIENT_DELETED,
    EVENT_CLIENT_TRANSFERRED,
    EVENT_APPOINTMENT_CREATED, EVENT_APPOINTMENT_RESCHEDULED, EVENT_APPOINTMENT_CANCELLED,
    EVENT_APPOINTMENT_FINALIZED,
    EVENT_USER_CREATED, EVENT_USER_UPDATED, EVENT_USER_PASSWORD_RESET, EVENT_USER_DEACTIVATED,
    EVENT_USER_REACTIVATED,
)
