# outbox/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.outbox_op  # noqa: F401
from storage import migrations


def _enable_wal(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.close()


def make_engine(path: Optional[str | Path] = None) -> Engine:
    target = Path(path or DB_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{target.as_posix()}", echo=False)
    event.listen(engine, "connect", _enable_wal)
    return engine


def init_db(engine: Engine) -> Engine:
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)
    return engine


def session_factory(engine: Engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return factory


__all__ = ["init_db", "make_engine", "session_factory"]
