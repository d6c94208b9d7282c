from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from datetime_utils import ensure_utc, strictly_after, to_rfc3339_utc, utc_now
from services.errors import StoreClosedError, StoreUnavailableError
from services.operation import Operation, OperationKind, OperationStatus, drain_order_key
from services.operation_store import InMemoryOperationStore, SQLiteOperationStore
from storage.db import init_db, make_engine


def _op(entity_id="1", **fields):
    fields.setdefault("kind", OperationKind.UPDATE)
    fields.setdefault("entity_type", "customer")
    return Operation(entity_id=entity_id, **fields)


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path):
    if request.param == "sqlite":
        s = SQLiteOperationStore(path=tmp_path / "outbox.db")
    else:
        s = InMemoryOperationStore()
    yield s
    s.close()


def test_operation_validation():
    with pytest.raises(ValueError):
        Operation(kind="create", entity_type="", entity_id="1")
    with pytest.raises(ValueError):
        Operation(kind="create", entity_type="case", entity_id="")
    with pytest.raises(ValueError):
        Operation(kind="upsert", entity_type="case", entity_id="1")
    with pytest.raises(TypeError):
        Operation(kind="create", entity_type="case", entity_id="1", payload=["x"])

    op = Operation(kind="delete", entity_type="case", entity_id=42)
    assert op.kind is OperationKind.DELETE
    assert op.entity_id == "42"
    assert op.status is OperationStatus.PENDING
    assert op.attempt == 0


def test_put_get_roundtrip(store):
    op = _op(payload={"name": "Åsa", "lines": [1, 2]}, concurrency_token='W/"3"', priority=4)
    store.put(op)
    assert store.get(op.id) == op
    assert store.get("missing") is None


def test_put_overwrites_by_id(store):
    op = _op()
    store.put(op)
    op.status = OperationStatus.FAILED
    op.attempt = 2
    op.last_error = "boom"
    store.put(op)

    assert len(store.list_all()) == 1
    stored = store.get(op.id)
    assert stored.status is OperationStatus.FAILED
    assert stored.attempt == 2
    assert stored.last_error == "boom"


def test_returned_records_are_copies(store):
    op = _op(payload={"a": 1})
    store.put(op)
    op.payload["a"] = 2
    fetched = store.get(op.id)
    assert fetched.payload == {"a": 1}
    fetched.payload["a"] = 3
    assert store.get(op.id).payload == {"a": 1}


def test_list_by_status_and_entity(store):
    base = utc_now()
    first = _op("1", created_at=base)
    second = _op("2", created_at=base + timedelta(seconds=1), status=OperationStatus.FAILED)
    third = _op("1", entity_type="case", created_at=base + timedelta(seconds=2))
    for op in (third, second, first):
        store.put(op)

    assert [o.id for o in store.list_by_status(OperationStatus.PENDING)] == [first.id, third.id]
    assert [o.id for o in store.list_by_status("failed")] == [second.id]
    assert store.list_by_status(OperationStatus.IN_FLIGHT) == []
    assert [o.id for o in store.list_by_entity("customer")] == [first.id, second.id]
    assert [o.id for o in store.list_by_entity("customer", "2")] == [second.id]
    assert [o.id for o in store.list_all()] == [first.id, second.id, third.id]

    counts = store.count_by_status()
    assert counts == {
        OperationStatus.PENDING: 2,
        OperationStatus.IN_FLIGHT: 0,
        OperationStatus.FAILED: 1,
    }


def test_delete(store):
    op = _op()
    store.put(op)
    store.delete(op.id)
    store.delete(op.id)
    assert store.get(op.id) is None
    assert store.list_all() == []


def test_closed_store_refuses_access(store):
    store.close()
    assert store.closed
    with pytest.raises(StoreClosedError):
        store.put(_op())
    with pytest.raises(StoreUnavailableError):
        store.list_all()


def test_sqlite_store_survives_reopen(tmp_path):
    path = tmp_path / "outbox.db"
    first = SQLiteOperationStore(path=path)
    op = _op(payload={"hours": 1.5}, concurrency_token="etag-1", priority=2)
    op.last_attempt_at = utc_now()
    first.put(op)
    first.close()

    reopened = SQLiteOperationStore(path=path)
    try:
        assert reopened.get(op.id) == op
    finally:
        reopened.close()


def test_in_memory_store_survives_snapshot_reload():
    first = InMemoryOperationStore()
    op = _op(payload={"x": 1})
    first.put(op)
    snapshot = first.snapshot()
    first.close()

    reopened = InMemoryOperationStore(snapshot)
    assert reopened.get(op.id) == op


def test_sqlite_errors_become_store_unavailable(tmp_path):
    store = SQLiteOperationStore(path=tmp_path / "outbox.db")
    with store._engine.begin() as conn:
        conn.execute(text("DROP TABLE outbox_op"))
    with pytest.raises(StoreUnavailableError) as info:
        store.list_all()
    assert isinstance(info.value.__cause__, OperationalError)
    store.close()


def test_migrations_add_missing_columns_and_indexes(tmp_path):
    engine = make_engine(tmp_path / "legacy.db")
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE outbox_op (
                    id VARCHAR PRIMARY KEY,
                    kind VARCHAR NOT NULL,
                    entity_type VARCHAR NOT NULL,
                    entity_id VARCHAR NOT NULL,
                    payload VARCHAR NOT NULL,
                    priority INTEGER NOT NULL,
                    attempt INTEGER NOT NULL,
                    created_at DATETIME NOT NULL,
                    status VARCHAR NOT NULL,
                    last_error VARCHAR
                )
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO outbox_op VALUES "
                "('a', 'create', 'case', '7', '{}', 0, 1, '2024-01-01 10:00:00.000000', 'pending', NULL)"
            )
        )

    init_db(engine)
    init_db(engine)

    store = SQLiteOperationStore(engine)
    op = store.get("a")
    assert op.status is OperationStatus.PENDING
    assert op.max_attempts == 5
    assert op.concurrency_token is None
    assert op.created_at.tzinfo is not None
    assert op.created_at == ensure_utc(datetime(2024, 1, 1, 10, 0, 0))
    with engine.connect() as conn:
        names = {row[1] for row in conn.execute(text("PRAGMA index_list('outbox_op')"))}
    assert {"ix_outbox_op_entity", "ix_outbox_op_drain"} <= names
    store.close()
    engine.dispose()


def test_drain_order_key_priority_then_age():
    base = utc_now()
    low_old = _op("1", priority=1, created_at=base)
    high_new = _op("2", priority=9, created_at=base + timedelta(seconds=5))
    high_old = _op("3", priority=9, created_at=base + timedelta(seconds=1))
    ordered = sorted([low_old, high_new, high_old], key=drain_order_key)
    assert [o.entity_id for o in ordered] == ["3", "2", "1"]


def test_strictly_after_and_serialisation():
    now = utc_now()
    assert strictly_after(now, now) > now
    assert strictly_after(now - timedelta(seconds=1), now) == now
    assert strictly_after(None, now) == now

    op = _op(created_at=now)
    data = op.to_dict()
    assert data["createdAt"] == to_rfc3339_utc(now)
    assert data["createdAt"].endswith("Z")
    assert data["lastAttemptAt"] is None
    assert data["kind"] == "update"
