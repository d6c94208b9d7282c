"""The write intent carried by the outbox."""

from __future__ import annotations

import copy
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.outbox_op import OutboxOp


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"


@dataclass
class Operation:
    """One pending write against the remote backend.

    ``payload`` is opaque to the queue. Delivered operations are deleted, so
    there is no completed status.
    """

    kind: OperationKind
    entity_type: str
    entity_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    concurrency_token: Optional[str] = None
    priority: int = 0
    attempt: int = 0
    max_attempts: int = 5
    created_at: datetime = field(default_factory=utc_now)
    last_attempt_at: Optional[datetime] = None
    status: OperationStatus = OperationStatus.PENDING
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        self.kind = OperationKind(self.kind)
        self.status = OperationStatus(self.status)
        if not self.entity_type:
            raise ValueError("entity_type is required")
        if self.entity_id is None or str(self.entity_id) == "":
            raise ValueError("entity_id is required")
        self.entity_id = str(self.entity_id)
        if not isinstance(self.payload, dict):
            raise TypeError("payload must be a mapping")

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def clone(self, **changes: Any) -> "Operation":
        clone = replace(self, **changes)
        if "payload" not in changes:
            clone.payload = copy.deepcopy(self.payload)
        return clone

    # ----- persistence -----
    def to_row(self) -> OutboxOp:
        return OutboxOp(
            id=self.id,
            kind=self.kind.value,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            payload=json.dumps(self.payload, ensure_ascii=False, sort_keys=True),
            concurrency_token=self.concurrency_token,
            priority=self.priority,
            attempt=self.attempt,
            max_attempts=self.max_attempts,
            created_at=self.created_at,
            last_attempt_at=self.last_attempt_at,
            status=self.status.value,
            last_error=self.last_error,
        )

    @classmethod
    def from_row(cls, row: OutboxOp) -> "Operation":
        try:
            payload = json.loads(row.payload) if row.payload else {}
        except json.JSONDecodeError:
            payload = {}
        return cls(
            id=row.id,
            kind=OperationKind(row.kind),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            payload=payload if isinstance(payload, dict) else {},
            concurrency_token=row.concurrency_token,
            priority=row.priority,
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            created_at=ensure_utc(row.created_at),
            last_attempt_at=ensure_utc(row.last_attempt_at),
            status=OperationStatus(row.status),
            last_error=row.last_error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "payload": copy.deepcopy(self.payload),
            "concurrencyToken": self.concurrency_token,
            "priority": self.priority,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "createdAt": to_rfc3339_utc(self.created_at),
            "lastAttemptAt": to_rfc3339_utc(self.last_attempt_at),
            "status": self.status.value,
            "lastError": self.last_error,
        }


def drain_order_key(op: Operation):
    """Higher priority first, then oldest first."""

    return (-op.priority, ensure_utc(op.created_at))


__all__ = ["Operation", "OperationKind", "OperationStatus", "drain_order_key"]
