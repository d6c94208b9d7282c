"""Durable storage for queued operations."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models.outbox_op import OutboxOp
from services.errors import StoreClosedError, StoreUnavailableError
from services.operation import Operation, OperationStatus
from storage.db import init_db, make_engine, session_factory


class OperationStore(Protocol):
    def put(self, op: Operation) -> None: ...

    def get(self, op_id: str) -> Optional[Operation]: ...

    def list_by_status(self, status: OperationStatus) -> List[Operation]: ...

    def list_by_entity(self, entity_type: str, entity_id: Optional[str] = None) -> List[Operation]: ...

    def list_all(self) -> List[Operation]: ...

    def count_by_status(self) -> Dict[OperationStatus, int]: ...

    def delete(self, op_id: str) -> None: ...

    def close(self) -> None: ...

    @property
    def closed(self) -> bool: ...


class SQLiteOperationStore:
    """Operations persisted in SQLite through SQLModel.

    Every ``put`` commits before returning, so an intent survives a crash
    right after ``add``.
    """

    def __init__(self, engine: Optional[Engine] = None, *, path=None) -> None:
        self._owns_engine = engine is None
        self._engine = engine if engine is not None else make_engine(path)
        self._closed = False
        self._run(lambda: init_db(self._engine))
        self._session: Callable[[], Session] = session_factory(self._engine)

    @property
    def closed(self) -> bool:
        return self._closed

    def _run(self, fn):
        if self._closed:
            raise StoreClosedError("Operation store is closed")
        try:
            return fn()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"Operation store unavailable: {exc}") from exc

    def put(self, op: Operation) -> None:
        def _put() -> None:
            with self._session() as session:
                session.merge(op.to_row())
                session.commit()

        self._run(_put)

    def get(self, op_id: str) -> Optional[Operation]:
        def _get() -> Optional[Operation]:
            with self._session() as session:
                row = session.get(OutboxOp, op_id)
                return Operation.from_row(row) if row else None

        return self._run(_get)

    def _select(self, *conditions) -> List[Operation]:
        def _list() -> List[Operation]:
            stmt = select(OutboxOp)
            for condition in conditions:
                stmt = stmt.where(condition)
            stmt = stmt.order_by(OutboxOp.created_at.asc(), OutboxOp.id.asc())
            with self._session() as session:
                return [Operation.from_row(row) for row in session.exec(stmt)]

        return self._run(_list)

    def list_by_status(self, status: OperationStatus) -> List[Operation]:
        return self._select(OutboxOp.status == OperationStatus(status).value)

    def list_by_entity(self, entity_type: str, entity_id: Optional[str] = None) -> List[Operation]:
        conditions = [OutboxOp.entity_type == entity_type]
        if entity_id is not None:
            conditions.append(OutboxOp.entity_id == str(entity_id))
        return self._select(*conditions)

    def list_all(self) -> List[Operation]:
        return self._select()

    def count_by_status(self) -> Dict[OperationStatus, int]:
        def _count() -> Dict[OperationStatus, int]:
            stmt = select(OutboxOp.status, func.count()).group_by(OutboxOp.status)
            with self._session() as session:
                rows = session.exec(stmt).all()
            counts = {status: 0 for status in OperationStatus}
            for status, count in rows:
                counts[OperationStatus(status)] = int(count)
            return counts

        return self._run(_count)

    def delete(self, op_id: str) -> None:
        def _delete() -> None:
            with self._session() as session:
                row = session.get(OutboxOp, op_id)
                if row:
                    session.delete(row)
                    session.commit()

        self._run(_delete)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_engine and self._engine is not None:
            self._engine.dispose()


class InMemoryOperationStore:
    """Dict-backed store; ``snapshot`` stands in for the on-disk state."""

    def __init__(self, snapshot: Optional[Iterable[Operation]] = None) -> None:
        self._lock = threading.Lock()
        self._ops: Dict[str, Operation] = {}
        self._closed = False
        for op in snapshot or ():
            self._ops[op.id] = op.clone()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check(self) -> None:
        if self._closed:
            raise StoreClosedError("Operation store is closed")

    def snapshot(self) -> List[Operation]:
        with self._lock:
            return [op.clone() for op in self._ops.values()]

    def put(self, op: Operation) -> None:
        with self._lock:
            self._check()
            self._ops[op.id] = op.clone()

    def get(self, op_id: str) -> Optional[Operation]:
        with self._lock:
            self._check()
            op = self._ops.get(op_id)
            return op.clone() if op else None

    def _sorted(self, ops: Iterable[Operation]) -> List[Operation]:
        return [op.clone() for op in sorted(ops, key=lambda o: (o.created_at, o.id))]

    def list_by_status(self, status: OperationStatus) -> List[Operation]:
        wanted = OperationStatus(status)
        with self._lock:
            self._check()
            return self._sorted(op for op in self._ops.values() if op.status == wanted)

    def list_by_entity(self, entity_type: str, entity_id: Optional[str] = None) -> List[Operation]:
        with self._lock:
            self._check()
            return self._sorted(
                op
                for op in self._ops.values()
                if op.entity_type == entity_type and (entity_id is None or op.entity_id == str(entity_id))
            )

    def list_all(self) -> List[Operation]:
        with self._lock:
            self._check()
            return self._sorted(self._ops.values())

    def count_by_status(self) -> Dict[OperationStatus, int]:
        with self._lock:
            self._check()
            counts = {status: 0 for status in OperationStatus}
            for op in self._ops.values():
                counts[op.status] += 1
            return counts

    def delete(self, op_id: str) -> None:
        with self._lock:
            self._check()
            self._ops.pop(op_id, None)

    def close(self) -> None:
        self._closed = True


__all__ = [
    "InMemoryOperationStore",
    "OperationStore",
    "SQLiteOperationStore",
]
