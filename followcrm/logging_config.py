"""
Logging for the follow-up CRM.

Everything under the 'followcrm' logger tree goes to one rotating file:

  File   : logs/followcrm.log, 5 MB x 3 backups (directory from LOG_DIR)
  Level  : LOG_LEVEL env var (DEBUG / INFO / WARNING / ERROR / CRITICAL), INFO otherwise

Call configure_logging() once at startup; repeated calls are no-ops.

What ends up in the file
------------------------
CLI tracing, from @log_call on every command:

    2026-10-19 14:32:01 | DEBUG    | followcrm | CALL appointments_finalize | args=(7, ...)
    2026-10-19 14:32:01 | INFO     | followcrm | OK   appointments_finalize | 42ms
    2026-10-19 14:32:01 | WARNING  | followcrm | REFUSED appointments_cancel | business_rule: ... | 3ms
    2026-10-19 14:32:01 | ERROR    | followcrm | FAIL appointments_list | OperationalError: ... | 5ms

Audit trail, one line per committed mutation (fed by the event bus):

    2026-10-19 14:32:01 | INFO     | followcrm.audit | appointment_finalized | appointment_id=7 interaction_id=50 ...

plus whatever the engine and db modules log through logging.getLogger(__name__).
"""

import functools
import logging
import logging.handlers
import os
import time
from datetime import datetime
from pathlib import Path

from followcrm.bus.events import ALL_EVENTS, bus
from followcrm.errors import CrmError

_LOG_DIR = Path(os.environ.get("LOG_DIR") or Path(__file__).parent.parent / "logs")
_LOG_FILE = _LOG_DIR / "followcrm.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3

# Keyword arguments never written to the log in clear text
_SECRET_ARGS = frozenset({"password", "new_password"})

# Event payload values worth a log line; model objects are left out
_AUDIT_VALUE_TYPES = (int, float, str, bool, datetime, list, type(None))

_audit_logger = logging.getLogger("followcrm.audit")


def _level_from_env() -> int:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> logging.Logger:
    """Attach the rotating file handler and the audit trail. Returns the 'followcrm' logger."""
    logger = logging.getLogger("followcrm")
    if logger.handlers:
        return logger

    _LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.setLevel(_level_from_env())

    handler = logging.handlers.RotatingFileHandler(
        _LOG_FILE, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)

    attach_audit_trail(bus)
    return logger


# =============================================================================
# AUDIT TRAIL
# =============================================================================

def audit_line(event_name: str, event_data: dict) -> str:
    """`client_transferred | client_id=10 from_user_id=1 to_user_id=2`"""
    fields = " ".join(
        f"{key}={value}" for key, value in event_data.items()
        if isinstance(value, _AUDIT_VALUE_TYPES)
    )
    return f"{event_name} | {fields}" if fields else event_name


def _audit_handler(event_name: str):
    def write_audit(event_data):
        _audit_logger.info(audit_line(event_name, event_data))
    write_audit.__name__ = f"audit_{event_name}"
    return write_audit


_AUDIT_HANDLERS = {name: _audit_handler(name) for name in ALL_EVENTS}


def attach_audit_trail(event_bus) -> None:
    """Log every engine event on event_bus to 'followcrm.audit'. Safe to repeat."""
    for name, handler in _AUDIT_HANDLERS.items():
        event_bus.off(name, handler)
        event_bus.on(name, handler)


# =============================================================================
# CALL TRACING
# =============================================================================

def _format_args(args, kwargs) -> str:
    parts = [repr(a) for a in args]
    for key, value in kwargs.items():
        shown = "'***'" if key in _SECRET_ARGS and value is not None else repr(value)
        parts.append(f"{key}={shown}")
    return ", ".join(parts) if parts else "—"


def log_call(func):
    """
    Trace a CLI command.

    DEBUG CALL on entry (secret kwargs redacted), INFO OK with timing on success.
    Domain refusals (CrmError) are WARNING REFUSED with the error kind; anything
    else is ERROR FAIL. Both re-raise.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger("followcrm")
        name = func.__name__
        start = time.perf_counter()

        logger.debug(f"CALL {name} | args=({_format_args(args, kwargs)})")

        try:
            result = func(*args, **kwargs)
        except CrmError as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.warning(f"REFUSED {name} | {exc.kind}: {exc.message} | {ms}ms")
            raise
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"FAIL {name} | {type(exc).__name__}: {exc} | {ms}ms")
            raise

        ms = int((time.perf_counter() - start) * 1000)
        logger.info(f"OK   {name} | {ms}ms")
        return result

    return wrapper
