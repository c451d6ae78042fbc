"""Messaging schema: contacts, chats and messages.

Creates the three tables the ingestion pipeline writes to, with cascading
deletes from contacts and a partial unique index on
messages.whatsapp_message_id used as the idempotency key.

Revision ID: 001_messaging_schema
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from pathlib import Path

from alembic import op

revision = "001_messaging_schema"
down_revision = None
branch_labels = None
depends_on = None

_SQL_FILE = Path(__file__).resolve().parent.parent / "sql" / "001_messaging_schema.sql"


def upgrade() -> None:
    sql = _SQL_FILE.read_text(encoding="utf-8")
    op.execute(sql)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS messages")
    op.execute("DROP TABLE IF EXISTS chats")
    op.execute("DROP TABLE IF EXISTS contacts")
