"""
User/Assignment Directory
Users, their credentials and the assignment counters shown in user listings.
Deactivation is a ban flag; it never touches client or appointment assignments.
"""

import hashlib
import hmac
import logging
import secrets
from typing import Any, Dict, List, Optional

from followcrm.config import config
from followcrm.db.connection import get_db_cursor
from followcrm.models import Appointment, Client, User, UserDetail, STATUS_OPEN
from followcrm.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from followcrm.validators import require_text, validate_email
from followcrm.bus.events import (
    bus, EVENT_USER_CREATED, EVENT_USER_UPDATED, EVENT_USER_PASSWORD_RESET,
    EVENT_USER_DEACTIVATED, EVENT_USER_REACTIVATED,
)
from followcrm.engine.base import _validate_columns, set_clause

logger = logging.getLogger(__name__)

_USER_COLUMNS = {'name', 'email'}

# scrypt cost parameters
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_KEY_LENGTH = 64

CREDENTIAL_PROVIDER = 'credential'


# =============================================================================
# PASSWORDS
# =============================================================================

def hash_password(password: str, salt: Optional[str] = None) -> str:
    """Salted scrypt hash, stored as `salt:derivedKeyHex`."""
    salt = salt or secrets.token_hex(16)
    key = hashlib.scrypt(
        password.encode('utf-8'), salt=salt.encode('utf-8'),
        n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P, dklen=_KEY_LENGTH,
    )
    return f"{salt}:{key.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    salt, sep, _ = (stored_hash or '').partition(':')
    if not sep or not salt:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored_hash)


def _check_password(password: str) -> str:
    if not password or len(password) < config.MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
    return password


# =============================================================================
# READS
# =============================================================================

def _fetch_user(cur, user_id: int) -> User:
    cur.execute("SELECT * FROM users WHERE id = %s", (user_id,))
    row = cur.fetchone()
    if not row:
        raise NotFoundError("User not found")
    return User(**row)


def _ensure_unique_email(cur, email: str) -> None:
    cur.execute("SELECT id FROM users WHERE email = %s", (email,))
    if cur.fetchone():
        raise ConflictError("Email already in use")


def list_users() -> List[User]:
    """All users by name, with assigned client and OPEN appointment counts."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT u.*,
                (SELECT COUNT(*) FROM clients c WHERE c.assigned_to = u.id) AS client_count,
                (SELECT COUNT(*) FROM appointments a
                 WHERE a.assigned_to = u.id AND a.status = %s) AS open_appointment_count
            FROM users u
            ORDER BY u.name ASC, u.id ASC
        """, (STATUS_OPEN,))
        rows = cur.fetchall()
        logger.debug(f"list_users: {len(rows)} users")
        return [User(**row) for row in rows]


def get_user(user_id: int) -> UserDetail:
    with get_db_cursor() as cur:
        user = _fetch_user(cur, user_id)

        cur.execute("""
            SELECT * FROM clients
            WHERE assigned_to = %s AND deleted_at IS NULL
            ORDER BY id ASC
        """, (user_id,))
        clients = [Client(**row) for row in cur.fetchall()]

        cur.execute("""
            SELECT * FROM appointments
            WHERE assigned_to = %s AND status = %s
            ORDER BY scheduled_at ASC, id ASC
        """, (user_id, STATUS_OPEN))
        appointments = [Appointment(**row) for row in cur.fetchall()]

    return UserDetail(user=user, clients=clients, open_appointments=appointments)


# =============================================================================
# WRITES
# =============================================================================

def create_user(name: str, email: str, password: str) -> User:
    """Create a user and its credential record in one transaction."""
    name = require_text(name, 'Name')
    email = validate_email(email)
    password_hash = hash_password(_check_password(password))

    with get_db_cursor() as cur:
        _ensure_unique_email(cur, email)

        cur.execute("""
            INSERT INTO users (name, email, banned, created_at, updated_at)
            VALUES (%s, %s, FALSE, NOW(), NOW())
            RETURNING *
        """, (name, email))
        user = User(**cur.fetchone())

        cur.execute("""
            INSERT INTO credentials (user_id, provider, password_hash, created_at, updated_at)
            VALUES (%s, %s, %s, NOW(), NOW())
        """, (user.id, CREDENTIAL_PROVIDER, password_hash))

    logger.info(f"Created user ID {user.id}: {email}")
    bus.emit(EVENT_USER_CREATED, {'user_id': user.id, 'user': user})
    return user


def update_user(user_id: int, updates: Dict[str, Any]) -> User:
    _validate_columns(updates, _USER_COLUMNS, 'user')
    updates = dict(updates)

    with get_db_cursor() as cur:
        current = _fetch_user(cur, user_id)
        if not updates:
            return current

        if 'name' in updates:
            updates['name'] = require_text(updates['name'], 'Name')
        if 'email' in updates:
            updates['email'] = validate_email(updates['email'])
            if updates['email'] != current.email:
                _ensure_unique_email(cur, updates['email'])

        cur.execute(f"""
            UPDATE users
            SET {set_clause(updates)}, updated_at = NOW()
            WHERE id = %(user_id)s
            RETURNING *
        """, dict(updates, user_id=user_id))
        user = User(**cur.fetchone())

    logger.info(f"Updated user ID {user_id}: {sorted(updates)}")
    bus.emit(EVENT_USER_UPDATED, {'user_id': user_id, 'updates': updates})
    return user


def reset_password(user_id: int, new_password: str) -> bool:
    """Overwrite the stored credential with a fresh hash."""
    password_hash = hash_password(_check_password(new_password))

    with get_db_cursor() as cur:
        _fetch_user(cur, user_id)
        cur.execute("""
            INSERT INTO credentials (user_id, provider, password_hash, created_at, updated_at)
            VALUES (%s, %s, %s, NOW(), NOW())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash, updated_at = NOW()
        """, (user_id, CREDENTIAL_PROVIDER, password_hash))

    logger.info(f"Reset password for user ID {user_id}")
    bus.emit(EVENT_USER_PASSWORD_RESET, {'user_id': user_id})
    return True


def deactivate_user(user_id: int, reason: Optional[str] = None, current_user_id: Optional[int] = None) -> User:
    """
    Ban a user. Assigned clients and appointments keep pointing at them;
    moving them is a separate transfer.
    """
    with get_db_cursor() as cur:
        _fetch_user(cur, user_id)
        if current_user_id is not None and current_user_id == user_id:
            raise BusinessRuleError("You cannot deactivate yourself")

        cur.execute("""
            UPDATE users
            SET banned = TRUE, ban_reason = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING *
        """, (reason or None, user_id))
        user = User(**cur.fetchone())

    logger.info(f"Deactivated user ID {user_id} (reason: {reason or '-'})")
    bus.emit(EVENT_USER_DEACTIVATED, {'user_id': user_id, 'reason': reason})
    return user


def reactivate_user(user_id: int) -> User:
    """Lift a ban. Already active users are returned unchanged in substance."""
    with get_db_cursor() as cur:
        _fetch_user(cur, user_id)
        cur.execute("""
            UPDATE users
            SET banned = FALSE, ban_reason = NULL, ban_expires = NULL, updated_at = NOW()
            WHERE id = %s
            RETURNING *
        """, (user_id,))
        user = User(**cur.fetchone())

    logger.info(f"Reactivated user ID {user_id}")
    bus.emit(EVENT_USER_REACTIVATED, {'user_id': user_id})
    return user
