"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Custom field types
FIELD_TEXT = 'TEXT'
FIELD_NUMBER = 'NUMBER'
FIELD_DATE = 'DATE'
FIELD_SELECT = 'SELECT'
FIELD_CHECKBOX = 'CHECKBOX'
FIELD_TYPES = (FIELD_TEXT, FIELD_NUMBER, FIELD_DATE, FIELD_SELECT, FIELD_CHECKBOX)

# Appointment lifecycle
STATUS_OPEN = 'OPEN'
STATUS_DONE = 'DONE'
STATUS_CANCELLED = 'CANCELLED'
APPOINTMENT_STATUSES = (STATUS_OPEN, STATUS_DONE, STATUS_CANCELLED)

SNAPSHOT_VERSION = 1


@dataclass
class User:
    """Application user. Deactivation is the banned flag, users are never deleted."""
    id: Optional[int] = None
    name: str = ''
    email: str = ''
    banned: bool = False
    ban_reason: Optional[str] = None
    ban_expires: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Live counters, only filled by user listing
    client_count: Optional[int] = None
    open_appointment_count: Optional[int] = None


@dataclass
class ClientField:
    """Admin-defined dynamic attribute. `type` never changes after creation."""
    id: Optional[int] = None
    name: str = ''
    type: str = FIELD_TEXT
    required: bool = False
    active: bool = True
    display_order: int = 0
    options: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class FieldValue:
    """Stored value of one ClientField for one Client (EAV row)."""
    id: Optional[int] = None
    client_id: Optional[int] = None
    field_id: int = 0
    value: str = ''
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Joined from the field definition
    field_name: Optional[str] = None
    field_type: Optional[str] = None


@dataclass
class Tag:
    """Named, optionally coloured label attachable to clients."""
    id: Optional[int] = None
    name: str = ''
    color: Optional[str] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    client_count: Optional[int] = None


@dataclass
class Client:
    """Tracked contact. `deleted_at` set means soft-deleted."""
    id: Optional[int] = None
    whatsapp: str = ''
    notes: Optional[str] = None
    assigned_to: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    field_values: List[FieldValue] = field(default_factory=list)
    tags: List[Tag] = field(default_factory=list)
    # Soonest OPEN appointment, only filled by client listing
    next_appointment_at: Optional[datetime] = None


@dataclass
class Appointment:
    """Scheduled follow-up slot. OPEN until finalized (DONE) or cancelled."""
    id: Optional[int] = None
    client_id: int = 0
    assigned_to: Optional[int] = None
    created_by: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    status: str = STATUS_OPEN
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Joined for listings
    client_whatsapp: Optional[str] = None
    assignee_name: Optional[str] = None


@dataclass(frozen=True)
class SnapshotFieldValue:
    field_name: str
    field_type: Optional[str]
    value: str


@dataclass(frozen=True)
class SnapshotTag:
    name: str
    color: Optional[str] = None


@dataclass(frozen=True)
class Snapshot:
    """
    Point-in-time copy of a client's mutable attributes, stored by value.

    Serialized as schema-less JSON. `from_dict` accepts older or partial shapes
    (missing keys fall back to empty values, unknown keys are kept in `extra`).
    """
    whatsapp: Optional[str] = None
    notes: Optional[str] = None
    field_values: Tuple[SnapshotFieldValue, ...] = ()
    tags: Tuple[SnapshotTag, ...] = ()
    version: int = SNAPSHOT_VERSION
    extra: Tuple[Tuple[str, Any], ...] = ()

    _KNOWN_KEYS = ('version', 'whatsapp', 'notes', 'fieldValues', 'tags')

    def to_dict(self) -> Dict[str, Any]:
        data = {key: value for key, value in self.extra}
        data.update({
            'version': self.version,
            'whatsapp': self.whatsapp,
            'notes': self.notes,
            'fieldValues': [
                {'fieldName': fv.field_name, 'fieldType': fv.field_type, 'value': fv.value}
                for fv in self.field_values
            ],
            'tags': [{'name': t.name, 'color': t.color} for t in self.tags],
        })
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Snapshot':
        data = data or {}
        return cls(
            whatsapp=data.get('whatsapp'),
            notes=data.get('notes'),
            field_values=tuple(
                SnapshotFieldValue(
                    field_name=fv.get('fieldName', ''),
                    field_type=fv.get('fieldType'),
                    value=fv.get('value', ''),
                )
                for fv in data.get('fieldValues') or []
            ),
            tags=tuple(
                SnapshotTag(name=t.get('name', ''), color=t.get('color'))
                for t in data.get('tags') or []
            ),
            # Shapes written before versioning carry no version key
            version=data.get('version', 0),
            extra=tuple((k, v) for k, v in data.items() if k not in cls._KNOWN_KEYS),
        )


@dataclass
class Interaction:
    """Permanent record of a finalized appointment. Never updated or deleted."""
    id: Optional[int] = None
    appointment_id: int = 0
    client_id: int = 0
    user_id: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    summary: str = ''
    outcome: str = ''
    snapshot: Optional[Snapshot] = None
    created_at: Optional[datetime] = None


@dataclass
class Page:
    """One page of a listing plus the total number of matching rows."""
    data: List[Any] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


@dataclass
class FinalizeResult:
    interaction: Interaction
    appointment: Appointment
    next_appointment: Appointment


@dataclass
class AppointmentDetail:
    appointment: Appointment
    client: Optional[Client] = None
    assignee: Optional[User] = None
    creator: Optional[User] = None
    interaction: Optional[Interaction] = None


@dataclass
class UserDetail:
    user: User
    clients: List[Client] = field(default_factory=list)
    open_appointments: List[Appointment] = field(default_factory=list)
