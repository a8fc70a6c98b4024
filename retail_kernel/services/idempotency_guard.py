"""
IdempotencyGuard -- at-most-once execution per (scope, key).

Responsibility:
    Claims a caller-supplied key before a side-effecting operation runs,
    answers replays with the stored response snapshot, and records the
    outcome.

Architecture position:
    Kernel > Services.  Used by retail_services.unit_of_work.run_idempotent
    and by the ``sweep-idempotency`` CLI command.

Protocol:
    1. ``acquire`` runs in its OWN short transaction and commits, so the
       PENDING claim is visible to every other caller before the business
       work starts.  The claim is an atomic INSERT against the unique
       (scope, key) constraint, made inside a savepoint; the loser of a race
       gets IntegrityError, rolls the savepoint back and inspects the
       winner's row under lock.
    2. ``mark_succeeded`` runs INSIDE the business transaction, so the key
       and the business rows commit (or roll back) together.
    3. ``mark_failed`` runs in its own transaction after the business
       transaction has rolled back, so the key can be retried.
    4. A PENDING claim carries ``locked_until``; once it passes, a crashed
       holder no longer blocks the key and the next caller reclaims it.
    5. A claim is owned only while the row is PENDING with the claim's
       ``locked_until``.  After a reclaim the stale holder can neither
       succeed (IdempotencyClaimLostError) nor fail the key.

Decision table for an existing row:
    request_hash differs          -> IdempotencyConflictError
    SUCCEEDED                     -> Replay(response_snapshot)
    PENDING, locked_until > now   -> IdempotencyInFlightError
    PENDING expired, or FAILED    -> reclaim (PENDING, new locked_until)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from retail_kernel.db.engine import session_scope
from retail_kernel.domain.clock import Clock, SystemClock
from retail_kernel.exceptions import (
    IdempotencyClaimLostError,
    IdempotencyConflictError,
    IdempotencyInFlightError,
)
from retail_kernel.logging_config import get_logger
from retail_kernel.models.idempotency import IdempotencyKey, IdempotencyStatus
from retail_kernel.utils.hashing import hash_payload, to_json_safe

logger = get_logger("services.idempotency_guard")

DEFAULT_LOCK_TTL_SECONDS = 300


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def request_fingerprint(payload: Any) -> str:
    """Stable hash of a request body for conflict detection."""
    return hash_payload(payload)


@dataclass(frozen=True)
class IdempotencyClaim:
    """The caller owns the key and must execute the operation."""

    scope: str
    key: str
    record_id: UUID
    locked_until: datetime
    reclaimed: bool = False


@dataclass(frozen=True)
class Replay:
    """The operation already succeeded; return its snapshot."""

    scope: str
    key: str
    snapshot: dict | None


class IdempotencyGuard:
    """
    Generic idempotency guard.

    Guarantees:
        - Two concurrent ``acquire`` calls for the same (scope, key) never
          both return an IdempotencyClaim while the first is within its lock
          window.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._lock_ttl = timedelta(seconds=lock_ttl_seconds)

    @staticmethod
    def _select_for_update(session: Session, scope: str, key: str):
        return session.execute(
            select(IdempotencyKey)
            .where(IdempotencyKey.scope == scope, IdempotencyKey.key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def acquire(
        self,
        scope: str,
        key: str,
        request_hash: str | None = None,
    ) -> IdempotencyClaim | Replay:
        """
        Claim (scope, key) or report a replay.

        Raises:
            IdempotencyInFlightError: another holder is within its window.
            IdempotencyConflictError: key reused with a different request.
        """
        with session_scope(self._session_factory) as session:
            return self.acquire_in_session(session, scope, key, request_hash)

    def acquire_in_session(
        self,
        session: Session,
        scope: str,
        key: str,
        request_hash: str | None = None,
    ) -> IdempotencyClaim | Replay:
        """
        Same decision as ``acquire``, made inside the caller's transaction.

        The claim becomes visible to other callers only when the caller
        commits, and disappears if the caller rolls back, so no
        ``mark_failed`` is needed.  A concurrent claimer of the same key
        blocks on the unique index until then.
        """
        now = self._clock.now()
        record = self._select_for_update(session, scope, key)

        if record is None:
            savepoint = session.begin_nested()
            try:
                record = IdempotencyKey(
                    scope=scope,
                    key=key,
                    request_hash=request_hash,
                    status=IdempotencyStatus.PENDING,
                    locked_until=now + self._lock_ttl,
                )
                session.add(record)
                session.flush()
                savepoint.commit()
            except IntegrityError:
                logger.debug(
                    "idempotency_claim_race_lost",
                    extra={"scope": scope, "idempotency_key": key},
                )
                savepoint.rollback()
                record = self._select_for_update(session, scope, key)
                if record is None:
                    raise
            else:
                logger.info(
                    "idempotency_key_acquired",
                    extra={"scope": scope, "idempotency_key": key},
                )
                return IdempotencyClaim(scope, key, record.id, record.locked_until)

        return self._decide(session, record, now, request_hash)

    def _decide(
        self,
        session: Session,
        record: IdempotencyKey,
        now: datetime,
        request_hash: str | None,
    ) -> IdempotencyClaim | Replay:
        if request_hash and record.request_hash and record.request_hash != request_hash:
            logger.warning(
                "idempotency_conflict",
                extra={"scope": record.scope, "idempotency_key": record.key},
            )
            raise IdempotencyConflictError(record.scope, record.key)

        if record.status == IdempotencyStatus.SUCCEEDED:
            logger.info(
                "idempotency_replay",
                extra={"scope": record.scope, "idempotency_key": record.key},
            )
            return Replay(record.scope, record.key, record.response_snapshot)

        locked_until = _as_utc(record.locked_until)
        if (
            record.status == IdempotencyStatus.PENDING
            and locked_until is not None
            and locked_until > now
        ):
            logger.info(
                "idempotency_in_flight",
                extra={
                    "scope": record.scope,
                    "idempotency_key": record.key,
                    "locked_until": locked_until,
                },
            )
            raise IdempotencyInFlightError(record.scope, record.key, locked_until)

        previous_status = record.status
        record.status = IdempotencyStatus.PENDING
        record.locked_until = now + self._lock_ttl
        record.request_hash = request_hash or record.request_hash
        record.last_error = None
        session.flush()

        logger.info(
            "idempotency_key_reclaimed",
            extra={
                "scope": record.scope,
                "idempotency_key": record.key,
                "previous_status": previous_status,
            },
        )
        return IdempotencyClaim(
            record.scope, record.key, record.id, record.locked_until, reclaimed=True
        )

    @staticmethod
    def _lock_claimed(session: Session, claim: IdempotencyClaim) -> IdempotencyKey:
        return session.execute(
            select(IdempotencyKey)
            .where(IdempotencyKey.id == claim.record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()

    @staticmethod
    def _owns(record: IdempotencyKey, claim: IdempotencyClaim) -> bool:
        return (
            record.status == IdempotencyStatus.PENDING
            and _as_utc(record.locked_until) == _as_utc(claim.locked_until)
        )

    def mark_succeeded(
        self,
        session: Session,
        claim: IdempotencyClaim,
        snapshot: dict | None,
    ) -> None:
        """Record success inside the caller's business transaction."""
        record = self._lock_claimed(session, claim)
        if not self._owns(record, claim):
            logger.warning(
                "idempotency_claim_lost",
                extra={"scope": claim.scope, "idempotency_key": claim.key},
            )
            raise IdempotencyClaimLostError(claim.scope, claim.key)

        record.status = IdempotencyStatus.SUCCEEDED
        record.response_snapshot = to_json_safe(snapshot) if snapshot is not None else None
        record.locked_until = None
        record.last_error = None
        session.flush()

        logger.info(
            "idempotency_key_succeeded",
            extra={"scope": claim.scope, "idempotency_key": claim.key},
        )

    def mark_failed(self, claim: IdempotencyClaim, error: BaseException | str) -> None:
        """Release the key in its own transaction so it can be retried."""
        with session_scope(self._session_factory) as session:
            record = self._lock_claimed(session, claim)
            if not self._owns(record, claim):
                logger.warning(
                    "idempotency_stale_release_ignored",
                    extra={
                        "scope": claim.scope,
                        "idempotency_key": claim.key,
                        "current_status": record.status,
                    },
                )
                return
            record.status = IdempotencyStatus.FAILED
            record.locked_until = None
            record.last_error = str(error)[:2000]

        logger.info(
            "idempotency_key_failed",
            extra={
                "scope": claim.scope,
                "idempotency_key": claim.key,
                "error": str(error),
            },
        )

    def get(self, scope: str, key: str) -> IdempotencyKey | None:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(IdempotencyKey).where(
                    IdempotencyKey.scope == scope, IdempotencyKey.key == key
                )
            ).scalar_one_or_none()

    def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Mark PENDING keys whose lock window has passed as FAILED.

        ``acquire`` already reclaims expired keys on demand; the sweep keeps
        the table honest for reporting and is run from a job or the CLI.
        """
        now = now or self._clock.now()
        with session_scope(self._session_factory) as session:
            stale = session.execute(
                select(IdempotencyKey)
                .where(
                    IdempotencyKey.status == IdempotencyStatus.PENDING,
                    IdempotencyKey.locked_until < now,
                )
                .with_for_update()
            ).scalars().all()
            for record in stale:
                record.status = IdempotencyStatus.FAILED
                record.locked_until = None
                record.last_error = "lock expired"
            count = len(stale)

        logger.info("idempotency_sweep_completed", extra={"expired_count": count})
        return count
