"""
Unit tests for followcrm/db/connection.py.
psycopg2.connect is patched; no database is needed.
"""

import pytest
from unittest.mock import MagicMock, patch

from psycopg2.extras import RealDictCursor

from followcrm.db.connection import SCHEMA_PATH, apply_schema, get_db_connection, get_db_cursor


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    with patch('followcrm.db.connection.psycopg2.connect', return_value=conn) as mock_connect:
        conn.connect_mock = mock_connect
        yield conn


def test_connection_commits_and_closes(mock_conn):
    with get_db_connection() as conn:
        assert conn is mock_conn
    mock_conn.commit.assert_called_once()
    mock_conn.rollback.assert_not_called()
    mock_conn.close.assert_called_once()


def test_connection_rolls_back_on_error(mock_conn):
    with pytest.raises(RuntimeError):
        with get_db_connection():
            raise RuntimeError("boom")
    mock_conn.rollback.assert_called_once()
    mock_conn.commit.assert_not_called()
    mock_conn.close.assert_called_once()


def test_connect_failure_propagates():
    with patch('followcrm.db.connection.psycopg2.connect', side_effect=RuntimeError("refused")):
        with pytest.raises(RuntimeError, match="refused"):
            with get_db_connection():
                pass


def test_cursor_uses_dict_rows_by_default(mock_conn):
    with get_db_cursor() as cur:
        assert cur is mock_conn.cursor.return_value
    mock_conn.cursor.assert_called_once_with(cursor_factory=RealDictCursor)
    cur.close.assert_called_once()
    mock_conn.commit.assert_called_once()


def test_cursor_closed_and_rolled_back_on_error(mock_conn):
    with pytest.raises(ValueError):
        with get_db_cursor() as cur:
            raise ValueError("bad row")
    cur.close.assert_called_once()
    mock_conn.rollback.assert_called_once()


def test_apply_schema_executes_ddl(mock_conn):
    apply_schema()
    mock_conn.cursor.assert_called_once_with(cursor_factory=None)
    ddl = mock_conn.cursor.return_value.execute.call_args[0][0]
    assert ddl == SCHEMA_PATH.read_text(encoding='utf-8')
    assert 'CREATE TABLE IF NOT EXISTS' in ddl
    mock_conn.commit.assert_called_once()


def test_connect_identifies_session(mock_conn):
    with get_db_connection():
        pass
    _, kwargs = mock_conn.connect_mock.call_args
    assert kwargs['application_name'] == 'followcrm'
    assert kwargs['options'] == '-c timezone=UTC'
    assert isinstance(kwargs['connect_timeout'], int)
