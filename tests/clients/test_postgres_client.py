"""Tests for PostgresClient - pooled connections and explicit transactions."""

from unittest.mock import MagicMock, patch
from uuid import UUID

import pytest

from clients.postgres_client import PostgresClient

TEST_URL = "postgresql://auth@localhost/auth_test"
TEST_USER_ID = UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture
def conn():
    connection = MagicMock()
    cursor = connection.cursor.return_value.__enter__.return_value
    cursor.description = [("answer",)]
    cursor.fetchall.return_value = [{"answer": 42}]
    return connection


@pytest.fixture
def db(conn):
    """PostgresClient over a mocked pool."""
    with patch("clients.postgres_client.psycopg2.pool.ThreadedConnectionPool") as pool_cls, \
            patch("clients.postgres_client.psycopg2.extras.register_default_jsonb"), \
            patch("clients.postgres_client.psycopg2.extras.register_uuid"):
        pool_cls.return_value.getconn.return_value = conn
        client = PostgresClient(TEST_URL)
        yield client
        PostgresClient.close_all_pools()


def _cursor(conn):
    return conn.cursor.return_value.__enter__.return_value


class TestExecuteMethods:
    def test_execute_returns_list_of_dicts(self, db, conn):
        assert db.execute("SELECT 42 AS answer") == [{"answer": 42}]
        conn.commit.assert_called_once()

    def test_execute_without_result_set(self, db, conn):
        _cursor(conn).description = None
        assert db.execute("UPDATE users SET is_active = true") == []

    def test_execute_single_no_rows_returns_none(self, db, conn):
        _cursor(conn).fetchall.return_value = []
        assert db.execute_single("SELECT 1 WHERE false") is None

    def test_uuid_params_converted(self, db, conn):
        db.execute_returning(
            "UPDATE users SET is_active = false WHERE id = %s RETURNING id",
            (TEST_USER_ID, [TEST_USER_ID]),
        )

        params = _cursor(conn).execute.call_args.args[1]
        assert params == (str(TEST_USER_ID), [str(TEST_USER_ID)])

    def test_named_params_converted(self, db, conn):
        db.execute_single("SELECT %(id)s", {"id": TEST_USER_ID})
        assert _cursor(conn).execute.call_args.args[1] == {"id": str(TEST_USER_ID)}


class TestTransaction:
    def test_commits_on_success(self, db, conn):
        with db.transaction() as cur:
            cur.execute("UPDATE otp_challenges SET used = true")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_rolls_back_on_error(self, db, conn):
        with pytest.raises(RuntimeError):
            with db.transaction():
                raise RuntimeError("boom")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()


class TestPools:
    def test_pool_shared_per_url(self, db):
        other = PostgresClient(TEST_URL)
        assert other._connection_pools[TEST_URL] is db._connection_pools[TEST_URL]

    def test_close_removes_pool(self, db):
        db.close()
        assert TEST_URL not in PostgresClient._connection_pools
