"""Duplicate-insert handling of the PostgreSQL store, with the database mocked."""

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from chatrelay.storage.durable import DurableStore
from tests.helpers import bound_message


def _fake_txn(cur):
    @contextmanager
    def txn():
        yield cur

    return txn


def _executed_sql(cur):
    return [" ".join(call.args[0].split()) for call in cur.execute.call_args_list]


class TestDuplicateInsert:
    def test_lost_insert_rolls_back_contact_count(self):
        cur = MagicMock()
        message = bound_message("1555", provider_message_id="wamid.race", identity_id=7, chat_id=3)
        existing = object()

        with patch("chatrelay.storage.durable.txn", _fake_txn(cur)), \
                patch("chatrelay.storage.durable.for_update", return_value=(3, 7)), \
                patch("chatrelay.storage.durable.fetchone", side_effect=[None, existing]), \
                patch("chatrelay.storage.durable._stored_from_row") as stored_from_row:
            DurableStore().save_message(message)

        stored_from_row.assert_called_once_with(existing, "1555", duplicate=True)
        decrements = [sql for sql in _executed_sql(cur) if sql.startswith("UPDATE contacts")]
        assert decrements == [
            "UPDATE contacts SET message_count = GREATEST(message_count - 1, 0) WHERE id = %s"
        ]
        assert cur.execute.call_args.args[1] == (7,)

    def test_fresh_insert_keeps_contact_count(self):
        cur = MagicMock()
        message = bound_message("1555", provider_message_id="wamid.new", identity_id=7, chat_id=3)

        with patch("chatrelay.storage.durable.txn", _fake_txn(cur)), \
                patch("chatrelay.storage.durable.for_update", return_value=(3, 7)), \
                patch("chatrelay.storage.durable.fetchone", return_value=(42,)):
            stored = DurableStore().save_message(message)

        assert stored.id == 42
        assert not [sql for sql in _executed_sql(cur) if sql.startswith("UPDATE contacts")]
