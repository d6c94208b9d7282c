"""ORM models exposed by the outbox."""
from .outbox_op import OutboxOp

__all__ = ["OutboxOp"]
