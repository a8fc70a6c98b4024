"""
Idempotent unit of work (``retail_services.unit_of_work``).

Responsibility
--------------
The one protocol every orchestrated write follows:

1. Claim the idempotency key (``IdempotencyGuard.acquire``).  A replay
   short-circuits: the stored snapshot is returned and a ``*.idempotent``
   audit event is written.
2. Open ONE transaction, run the caller's work (entity resolution, engine
   calls, domain record, success audit), mark the key SUCCEEDED inside the
   same transaction, commit.
3. On any exception: the transaction is rolled back by ``session_scope``,
   the key is marked FAILED in its own transaction, a failure audit event is
   written in its own transaction, and the ORIGINAL exception is re-raised.

Architecture position
---------------------
**Services layer**.  Used by ``PosReceiptService`` and ``TelebirrService``.

Failure modes
-------------
- IdempotencyInFlightError / IdempotencyConflictError from ``acquire``
  propagate before any work runs; nothing is audited.
- A failure while releasing the key or writing the failure audit is logged
  at ERROR and does not mask the original exception.  An unreleased key
  becomes claimable again once its lock window passes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from retail_kernel.db.engine import session_scope
from retail_kernel.logging_config import LogContext, get_logger
from retail_kernel.services.auditor_service import AuditSink
from retail_kernel.services.idempotency_guard import (
    IdempotencyGuard,
    Replay,
    request_fingerprint,
)

logger = get_logger("services.unit_of_work")


@dataclass(frozen=True)
class IdempotentOutcome:
    snapshot: dict[str, Any]
    replayed: bool = False


@dataclass(frozen=True)
class AuditNames:
    """Event names and subject type used for one kind of operation."""

    subject_type: str
    replayed: str
    failed: str


class IdempotentRunner:
    """
    Runs ``work(session) -> snapshot`` at most once per (scope, key).

    Contract
    --------
    ``work`` receives an open session, must not commit, and returns a
    JSON-serializable snapshot dict.  If the snapshot carries an ``id`` it
    is used as the audit subject id.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        guard: IdempotencyGuard,
        audit: AuditSink,
    ):
        self._session_factory = session_factory
        self._guard = guard
        self._audit = audit

    def run(
        self,
        scope: str,
        key: str,
        request: dict[str, Any],
        work: Callable[[Session], dict[str, Any]],
        audit_names: AuditNames,
        actor_id: UUID | None = None,
    ) -> IdempotentOutcome:
        request_hash = request_fingerprint(request)

        with LogContext.bind(scope=scope, idempotency_key=key, actor_id=actor_id):
            claim = self._guard.acquire(scope, key, request_hash)

            if isinstance(claim, Replay):
                snapshot = claim.snapshot or {}
                self._audit.record_isolated(
                    audit_names.replayed,
                    audit_names.subject_type,
                    snapshot.get("id"),
                    after=snapshot,
                    context={"scope": scope, "idempotency_key": key},
                    actor_id=actor_id,
                )
                return IdempotentOutcome(snapshot=snapshot, replayed=True)

            try:
                with session_scope(self._session_factory) as session:
                    snapshot = work(session)
                    self._guard.mark_succeeded(session, claim, snapshot)
            except Exception as exc:
                logger.error(
                    "orchestrated_operation_failed",
                    extra={
                        "scope": scope,
                        "idempotency_key": key,
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                    },
                    exc_info=True,
                )
                self._release(claim, exc)
                self._audit.record_isolated(
                    audit_names.failed,
                    audit_names.subject_type,
                    None,
                    context={
                        "scope": scope,
                        "idempotency_key": key,
                        "error": str(exc),
                        "error_code": getattr(exc, "code", type(exc).__name__),
                        "request": request,
                    },
                    actor_id=actor_id,
                )
                raise

        return IdempotentOutcome(snapshot=snapshot, replayed=False)

    def run_atomic(
        self,
        work: Callable[[Session], dict[str, Any]],
        failed_event: str,
        subject_type: str,
        subject_id: Any,
        context: dict[str, Any] | None = None,
        actor_id: UUID | None = None,
    ) -> dict[str, Any]:
        """
        Same all-or-nothing shape without an idempotency key.

        Used for voids: the locked status check of the domain record makes
        a second void fail, so no key is needed.
        """
        with LogContext.bind(actor_id=actor_id):
            try:
                with session_scope(self._session_factory) as session:
                    return work(session)
            except Exception as exc:
                logger.error(
                    "orchestrated_operation_failed",
                    extra={
                        "subject_type": subject_type,
                        "subject_id": str(subject_id),
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                    },
                    exc_info=True,
                )
                self._audit.record_isolated(
                    failed_event,
                    subject_type,
                    subject_id,
                    context={
                        **(context or {}),
                        "error": str(exc),
                        "error_code": getattr(exc, "code", type(exc).__name__),
                    },
                    actor_id=actor_id,
                )
                raise

    def _release(self, claim, exc: BaseException) -> None:
        try:
            self._guard.mark_failed(claim, exc)
        except Exception:
            logger.error(
                "idempotency_release_failed",
                extra={"scope": claim.scope, "idempotency_key": claim.key},
                exc_info=True,
            )
