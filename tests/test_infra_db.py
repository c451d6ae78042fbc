"""Tests for database layer."""

import os
from unittest.mock import MagicMock, patch

import psycopg2
import pytest


class TestGetConnPasswordFallback:
    """Tests for DB_PASSWORD fallback in get_conn(). No real DB needed."""

    def test_db_password_fallback_dsn_without_password(self):
        from chatrelay.infra.db import get_conn

        env = {"DATABASE_URL": "dbname=db user=u host=h port=5432", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("chatrelay.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with(
                "dbname=db user=u host=h port=5432",
                password="from-env",
            )

    def test_db_password_not_used_when_url_has_password(self):
        from chatrelay.infra.db import get_conn

        env = {"DATABASE_URL": "postgres://u:p@h/db", "DB_PASSWORD": "from-env"}
        with patch.dict(os.environ, env, clear=True), \
             patch("chatrelay.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("postgres://u:p@h/db")

    def test_connect_timeout_passed_when_configured(self):
        from chatrelay.infra import db

        env = {"DATABASE_URL": "dbname=db user=u host=h", "DB_CONNECT_TIMEOUT": "2"}
        with patch.dict(os.environ, env, clear=True), \
             patch("chatrelay.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            db.get_conn()
            mock_connect.assert_called_once_with(
                "dbname=db user=u host=h", connect_timeout=db.CONNECT_TIMEOUT
            )

    def test_raises_without_database_url(self, monkeypatch):
        from chatrelay.infra.db import get_conn

        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            get_conn()


class TestTxnWithMockConnection:
    """Commit and rollback behavior of txn() against a mocked connection."""

    def test_commits_on_success(self):
        from chatrelay.infra.db import txn

        conn = MagicMock()
        with txn(conn) as cur:
            cur.execute("SELECT 1")

        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()
        conn.close.assert_not_called()

    def test_rollback_on_exception(self):
        from chatrelay.infra.db import txn

        conn = MagicMock()
        with pytest.raises(ValueError):
            with txn(conn):
                raise ValueError("rollback test")

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_owned_connection_closed(self):
        from chatrelay.infra.db import txn

        conn = MagicMock()
        with patch("chatrelay.infra.db.get_conn", return_value=conn):
            with txn():
                pass
        conn.close.assert_called_once()


class TestForUpdate:
    def test_appends_clause(self):
        from chatrelay.infra.db import for_update

        cur = MagicMock()
        for_update(cur, "SELECT id FROM chats WHERE phone_number = %s;", ("1555",))
        cur.execute.assert_called_once_with(
            "SELECT id FROM chats WHERE phone_number = %s FOR UPDATE", ("1555",)
        )

    def test_skip_locked(self):
        from chatrelay.infra.db import for_update

        cur = MagicMock()
        for_update(cur, "SELECT 1", skip_locked=True)
        assert cur.execute.call_args.args[0].endswith("FOR UPDATE SKIP LOCKED")

    def test_nowait_and_skip_locked_conflict(self):
        from chatrelay.infra.db import for_update

        with pytest.raises(ValueError):
            for_update(MagicMock(), "SELECT 1", nowait=True, skip_locked=True)


class TestPing:
    def test_false_when_not_configured(self, monkeypatch):
        from chatrelay.infra.db import ping

        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert ping() is False

    def test_false_when_unreachable(self, monkeypatch):
        from chatrelay.infra.db import ping

        monkeypatch.setenv("DATABASE_URL", "dbname=db host=nowhere")
        with patch("chatrelay.infra.db.psycopg2.connect", side_effect=psycopg2.OperationalError("refused")):
            assert ping() is False


# Skip integration tests if DATABASE_URL is not set
_skip_no_db = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


@_skip_no_db
class TestAgainstDatabase:
    def test_ping(self):
        from chatrelay.infra.db import ping

        assert ping() is True

    def test_fetchone(self):
        from chatrelay.infra.db import fetchone, txn

        with txn() as cur:
            row = fetchone(cur, "SELECT %s::text", ("hello",))
            assert row == ("hello",)
