"""
PostgreSQL access for the engine.

One `with get_db_cursor() as cur:` block is one transaction: it commits when the
block exits cleanly and rolls back when anything inside raises. Engine modules
open exactly one block per operation, so a finalize or a client create is
all-or-nothing.

Sessions run in UTC; timestamps come back timezone-aware and are converted
to the configured zone only for display.
"""

import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from pathlib import Path
import logging

from followcrm.config import config

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / 'schema.sql'

_SESSION_OPTIONS = '-c timezone=UTC'


def _connect():
    return psycopg2.connect(
        config.DATABASE_URL,
        application_name='followcrm',
        connect_timeout=config.DB_CONNECT_TIMEOUT,
        options=_SESSION_OPTIONS,
    )


@contextmanager
def get_db_connection():
    """
    Yield a connection wrapped in a transaction.

        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("UPDATE clients SET notes = %s WHERE id = %s", (notes, 42))
    """
    conn = _connect()
    logger.debug("Connection opened")
    try:
        yield conn
    except Exception as e:
        conn.rollback()
        logger.error(f"Rolled back: {type(e).__name__}: {e}")
        raise
    else:
        conn.commit()
        logger.debug("Committed")
    finally:
        conn.close()


@contextmanager
def get_db_cursor(dict_cursor=True):
    """
    Yield a cursor inside its own transaction. Rows are dicts by default so they
    unpack straight into the model dataclasses: `Client(**cur.fetchone())`.
    """
    with get_db_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor if dict_cursor else None)
        try:
            yield cur
        finally:
            cur.close()


def apply_schema() -> None:
    """Run schema.sql. Every statement is IF NOT EXISTS, so re-running is harmless."""
    ddl = SCHEMA_PATH.read_text(encoding='utf-8')
    with get_db_cursor(dict_cursor=False) as cur:
        cur.execute(ddl)
    logger.info(f"Schema applied from {SCHEMA_PATH.name}")
