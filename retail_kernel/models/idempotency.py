"""
Module: retail_kernel.models.idempotency
Responsibility: ORM persistence for idempotency keys -- at-most-once
    execution records for side-effecting requests.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (scope, key) is unique.  The insert of the PENDING row is the atomic
      claim: two concurrent callers cannot both create it.

Failure modes:
    - IntegrityError on the losing side of a concurrent claim (handled by
      IdempotencyGuard.acquire).
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from retail_kernel.db.base import TrackedBase


class IdempotencyStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class IdempotencyKey(TrackedBase):
    """One claimed (scope, key) pair and its outcome."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        Index("idx_idempotency_status_locked", "status", "locked_until"),
    )

    scope: Mapped[str] = mapped_column(String(100), nullable=False)

    key: Mapped[str] = mapped_column(String(255), nullable=False)

    # Fingerprint of the request body; reuse with a different body is a conflict
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[IdempotencyStatus] = mapped_column(
        String(10),
        default=IdempotencyStatus.PENDING,
        nullable=False,
    )

    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    response_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<IdempotencyKey {self.scope}:{self.key} {self.status}>"
