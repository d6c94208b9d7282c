"""Ad-hoc database migrations for the outbox."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_outbox_columns(conn) -> None:
    # create_all never alters an existing table; add optional columns it lacks.
    columns = {
        "concurrency_token": "TEXT",
        "max_attempts": "INTEGER NOT NULL DEFAULT 5",
        "last_attempt_at": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "outbox_op", name):
            conn.execute(text(f"ALTER TABLE outbox_op ADD COLUMN {name} {ddl_type}"))


def ensure_outbox_indexes(conn) -> None:
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_outbox_op_entity ON outbox_op (entity_type, entity_id)")
    )
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_outbox_op_drain ON outbox_op (status, priority, created_at)")
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_outbox_columns(conn)
        ensure_outbox_indexes(conn)


__all__ = ["run_all"]
