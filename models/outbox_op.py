"""SQLModel table for queued write operations."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class OutboxOp(SQLModel, table=True):
    __tablename__ = "outbox_op"

    id: str = Field(primary_key=True)
    kind: str
    entity_type: str = Field(index=True)
    entity_id: str
    payload: str = "{}"
    concurrency_token: Optional[str] = None
    priority: int = Field(default=0)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=5)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    last_attempt_at: Optional[datetime] = None
    status: str = Field(default="pending", index=True)
    last_error: Optional[str] = None


__all__ = ["OutboxOp"]
