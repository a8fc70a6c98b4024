"""
GlPostingEngine -- double-entry journal lifecycle.

Responsibility:
    Creates DRAFT journals, appends lines, validates and posts them, and
    corrects posted journals by reversal.  The only code path that changes
    a journal's status.

Architecture position:
    Kernel > Services.  Consumes SequenceService for journal numbers and
    IdempotencyGuard for keyed posts.
    Called by the POS and Telebirr orchestrators.

Invariants enforced:
    - A journal becomes POSTED only if it has at least two lines, every
      line is one-sided, every account exists and is postable and ACTIVE,
      and sum(debit) == sum(credit).  Also re-checked by the before_flush
      listener in db/immutability.py (and a trigger on PostgreSQL).
    - post / reverse / void lock the journal row (SELECT ... FOR UPDATE) so
      the same journal is never finalized twice concurrently.  Unrelated
      journals do not contend.
    - Corrections never edit lines: ``reverse`` creates a new POSTED
      journal with debit/credit swapped, links it via reversal_of_id and
      moves the original to REVERSED.

Failure modes:
    - GlValidationError(errors): draft failed validation; stays DRAFT.
    - JournalNotDraftError: add_line / post / void on a non-DRAFT journal.
    - JournalNotPostedError: reverse on a non-POSTED journal.
    - JournalAlreadyFinalError: void of a VOIDED / REVERSED journal.
    - AccountNotFoundError: add_line with an unknown account.
    - IdempotencyInFlightError / IdempotencyConflictError: keyed post whose
      key is held by another caller or was used for another journal.

Audit relevance:
    Journal numbers come from a locked per-day counter (``YYYYMMDD`` + 3
    digit sequence).  A reversing journal is numbered ``<original>-REV``
    and referenced ``REVERSAL: <original>``.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from retail_kernel.domain.clock import Clock
from retail_kernel.exceptions import (
    AccountNotFoundError,
    GlValidationError,
    JournalAlreadyFinalError,
    JournalNotDraftError,
    JournalNotFoundError,
    JournalNotPostedError,
)
from retail_kernel.logging_config import get_logger
from retail_kernel.models.account import AccountStatus, GlAccount
from retail_kernel.models.journal import GlJournal, GlLine, JournalStatus
from retail_kernel.services.base import BaseService
from retail_kernel.services.idempotency_guard import (
    IdempotencyGuard,
    Replay,
    request_fingerprint,
)
from retail_kernel.services.sequence_service import SequenceService

logger = get_logger("services.gl_posting")

ZERO = Decimal("0")


@dataclass(frozen=True)
class JournalLineInput:
    """One line to append; identify the account by code or id."""

    account_code: str | None = None
    account_id: UUID | None = None
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    memo: str | None = None
    dimensions: dict[str, Any] | None = None
    line_no: int | None = None


@dataclass(frozen=True)
class JournalHeader:
    journal_date: date | None = None
    currency: str | None = None
    fx_rate: Decimal = Decimal("1")
    source: str | None = None
    reference: str | None = None
    memo: str | None = None
    branch_id: UUID | None = None
    journal_no: str | None = None
    lines: Sequence[JournalLineInput] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of reverse / void."""

    original_journal_id: UUID
    original_status: JournalStatus
    reversal_journal_id: UUID | None
    reversal_journal_no: str | None


def _to_amount(value: Any) -> Decimal:
    if value is None:
        return ZERO
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise GlValidationError(None, [f"Invalid amount: {value!r}"]) from exc


def _fmt(amount: Decimal) -> str:
    return f"{amount:.2f}"


class GlPostingEngine(BaseService):
    """
    General-ledger posting engine.

    Non-goals:
        - Does NOT commit.
        - Does NOT choose accounts; callers pass codes (from the posting
          rule table) or ids.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        base_currency: str = "ETB",
        idempotency_guard: IdempotencyGuard | None = None,
    ):
        super().__init__(session, clock)
        self._base_currency = base_currency
        self._sequence = SequenceService(session)
        self._guard = idempotency_guard or IdempotencyGuard(clock=self.clock)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_journal(self, journal_id: UUID) -> GlJournal:
        journal = self.session.get(GlJournal, journal_id)
        if journal is None:
            raise JournalNotFoundError(str(journal_id))
        return journal

    def _lock_journal(self, journal: GlJournal | UUID) -> GlJournal:
        journal_id = journal.id if isinstance(journal, GlJournal) else journal
        locked = self.session.execute(
            select(GlJournal)
            .where(GlJournal.id == journal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if locked is None:
            raise JournalNotFoundError(str(journal_id))
        return locked

    def _resolve_account(self, account_code: str | None, account_id: UUID | None) -> GlAccount:
        if account_id is not None:
            account = self.session.get(GlAccount, account_id)
        elif account_code is not None:
            account = self.session.execute(
                select(GlAccount).where(GlAccount.code == account_code)
            ).scalar_one_or_none()
        else:
            raise GlValidationError(None, ["Line requires an account code or id"])
        if account is None:
            raise AccountNotFoundError(str(account_code or account_id))
        return account

    def next_journal_no(self, journal_date: date) -> str:
        """``YYYYMMDD`` followed by a zero-padded per-day sequence."""
        day = journal_date.strftime("%Y%m%d")
        seq = self._sequence.next_value(f"{SequenceService.JOURNAL_NO_PREFIX}:{day}")
        return f"{day}{seq:03d}"

    # ------------------------------------------------------------------
    # Draft construction
    # ------------------------------------------------------------------

    def create_journal(self, header: JournalHeader, actor_id: UUID | None = None) -> GlJournal:
        """Insert a DRAFT journal and any initial lines."""
        journal_date = header.journal_date or self.clock.today()
        journal = GlJournal(
            journal_no=header.journal_no or self.next_journal_no(journal_date),
            journal_date=journal_date,
            currency=header.currency or self._base_currency,
            fx_rate=_to_amount(header.fx_rate) if header.fx_rate is not None else Decimal("1"),
            source=header.source,
            reference=header.reference,
            memo=header.memo,
            branch_id=header.branch_id,
            status=JournalStatus.DRAFT,
            created_by_id=actor_id,
        )
        self.session.add(journal)
        self.session.flush()

        for line in header.lines:
            self.add_line(
                journal,
                account_code=line.account_code,
                account_id=line.account_id,
                debit=line.debit,
                credit=line.credit,
                memo=line.memo,
                dimensions=line.dimensions,
                line_no=line.line_no,
                actor_id=actor_id,
            )

        logger.info(
            "journal_created",
            extra={
                "journal_id": journal.id,
                "journal_no": journal.journal_no,
                "source": journal.source,
                "line_count": len(journal.lines),
            },
        )
        return journal

    def add_line(
        self,
        journal: GlJournal,
        account_code: str | None = None,
        debit: Any = ZERO,
        credit: Any = ZERO,
        memo: str | None = None,
        dimensions: dict[str, Any] | None = None,
        line_no: int | None = None,
        account_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> GlLine:
        """Append a one-sided line to a DRAFT journal."""
        if journal.status != JournalStatus.DRAFT:
            raise JournalNotDraftError(str(journal.id), journal.status, "edited")

        debit = _to_amount(debit)
        credit = _to_amount(credit)
        if debit < 0 or credit < 0:
            raise GlValidationError(str(journal.id), ["Line amounts cannot be negative"])
        if (debit > 0) == (credit > 0):
            raise GlValidationError(
                str(journal.id),
                ["Line must have exactly one of debit or credit greater than zero"],
            )

        account = self._resolve_account(account_code, account_id)
        if line_no is None:
            line_no = max((line.line_no for line in journal.lines), default=0) + 1

        line = GlLine(
            line_no=line_no,
            account_id=account.id,
            debit=debit,
            credit=credit,
            memo=memo,
            dimensions=dimensions or None,
            created_by_id=actor_id,
        )
        journal.lines.append(line)
        self.session.flush()

        logger.debug(
            "journal_line_added",
            extra={
                "journal_id": journal.id,
                "line_no": line_no,
                "account_code": account.code,
                "debit": debit,
                "credit": credit,
            },
        )
        return line

    # ------------------------------------------------------------------
    # Validation and posting
    # ------------------------------------------------------------------

    def validate_draft(self, journal: GlJournal) -> list[str]:
        """Every reason the journal cannot be posted; empty if it can."""
        errors: list[str] = []

        if journal.status != JournalStatus.DRAFT:
            errors.append("Only draft journals can be posted")

        lines = list(journal.lines)
        if len(lines) < 2:
            errors.append("Journal must have at least two lines")

        total_debit = ZERO
        total_credit = ZERO
        for line in lines:
            debit = line.debit or ZERO
            credit = line.credit or ZERO
            total_debit += debit
            total_credit += credit

            if debit < 0 or credit < 0:
                errors.append(f"Line {line.line_no}: amounts cannot be negative")
            elif debit == 0 and credit == 0:
                errors.append(f"Line {line.line_no}: either debit or credit must be greater than zero")
            elif debit > 0 and credit > 0:
                errors.append(f"Line {line.line_no}: cannot have both debit and credit")

            account = line.account or self.session.get(GlAccount, line.account_id)
            if account is None:
                errors.append(f"Line {line.line_no}: account not found")
            elif not account.is_postable:
                errors.append(f"Line {line.line_no}: account {account.code} is not postable")
            elif account.status != AccountStatus.ACTIVE:
                errors.append(f"Line {line.line_no}: account {account.code} is not active")

        if total_debit != total_credit:
            errors.append(
                f"Journal debits ({_fmt(total_debit)}) must equal credits ({_fmt(total_credit)})"
            )

        return errors

    def post(
        self,
        journal: GlJournal | UUID,
        actor_id: UUID | None = None,
        idempotency_scope_key: str | None = None,
    ) -> GlJournal:
        """
        Validate and post a DRAFT journal.

        With ``idempotency_scope_key`` (``"scope:key"``) the post runs at
        most once per key: the claim is taken in the caller's transaction,
        a repeat returns the journal recorded for the key, and a failure
        rolls the claim back with the post.

        Raises:
            JournalNotDraftError: journal is not DRAFT.
            GlValidationError: validation failed; journal stays DRAFT.
            IdempotencyInFlightError: another holder owns the key.
            IdempotencyConflictError: the key was used for another journal.
        """
        if idempotency_scope_key is None:
            return self._post(journal, actor_id)

        scope, sep, key = idempotency_scope_key.partition(":")
        if not (sep and scope and key):
            raise ValueError(
                f"idempotency_scope_key must be 'scope:key', got {idempotency_scope_key!r}"
            )
        journal_id = journal.id if isinstance(journal, GlJournal) else journal

        with self.session.begin_nested():
            claim = self._guard.acquire_in_session(
                self.session, scope, key, request_fingerprint({"journal_id": str(journal_id)})
            )
            if isinstance(claim, Replay):
                logger.info(
                    "journal_post_replayed",
                    extra={"scope": scope, "idempotency_key": key, "journal_id": journal_id},
                )
                return self.get_journal(UUID(claim.snapshot["journal_id"]))

            posted = self._post(journal, actor_id)
            self._guard.mark_succeeded(
                self.session,
                claim,
                {
                    "journal_id": str(posted.id),
                    "journal_no": posted.journal_no,
                    "status": posted.status.value,
                },
            )
        return posted

    def _post(self, journal: GlJournal | UUID, actor_id: UUID | None) -> GlJournal:
        with self.session.begin_nested():
            locked = self._lock_journal(journal)
            if locked.status != JournalStatus.DRAFT:
                raise JournalNotDraftError(str(locked.id), locked.status, "posted")

            errors = self.validate_draft(locked)
            if errors:
                logger.warning(
                    "journal_validation_failed",
                    extra={"journal_id": locked.id, "errors": errors},
                )
                raise GlValidationError(str(locked.id), errors)

            locked.status = JournalStatus.POSTED
            locked.posted_at = self.clock.now()
            locked.posted_by = actor_id
            locked.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "journal_posted",
            extra={
                "journal_id": locked.id,
                "journal_no": locked.journal_no,
                "total_debit": locked.total_debit,
                "total_credit": locked.total_credit,
            },
        )
        return locked

    def _post_reversal_of(
        self,
        original: GlJournal,
        memo: str | None,
        actor_id: UUID | None,
    ) -> GlJournal:
        """Create and post the mirror journal of a POSTED original."""
        reversal = self.create_journal(
            JournalHeader(
                journal_date=self.clock.today(),
                currency=original.currency,
                fx_rate=original.fx_rate,
                source=original.source,
                reference=f"REVERSAL: {original.journal_no}",
                memo=(
                    f"Reversal of {original.journal_no}: {memo}"
                    if memo
                    else f"Reversal of {original.journal_no}"
                ),
                branch_id=original.branch_id,
                journal_no=f"{original.journal_no}-REV",
                lines=tuple(
                    JournalLineInput(
                        account_id=line.account_id,
                        debit=line.credit,
                        credit=line.debit,
                        memo=f"Reversal: {line.memo or ''}".rstrip(),
                        dimensions=dict(line.dimensions) if line.dimensions else None,
                    )
                    for line in original.lines
                ),
            ),
            actor_id=actor_id,
        )
        reversal.reversal_of_id = original.id
        self.session.flush()
        return self.post(reversal, actor_id=actor_id)

    def reverse(
        self,
        journal: GlJournal | UUID,
        memo: str | None = None,
        actor_id: UUID | None = None,
    ) -> ReversalResult:
        """
        Reverse a POSTED journal.

        Postconditions:
            - A new POSTED journal mirrors the original's lines.
            - The original is REVERSED.
        """
        with self.session.begin_nested():
            original = self._lock_journal(journal)
            if original.status != JournalStatus.POSTED:
                raise JournalNotPostedError(str(original.id), original.status)

            reversal = self._post_reversal_of(original, memo, actor_id)
            original.status = JournalStatus.REVERSED
            original.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "journal_reversed",
            extra={
                "journal_id": original.id,
                "journal_no": original.journal_no,
                "reversal_journal_id": reversal.id,
                "reversal_journal_no": reversal.journal_no,
            },
        )
        return ReversalResult(
            original_journal_id=original.id,
            original_status=JournalStatus.REVERSED,
            reversal_journal_id=reversal.id,
            reversal_journal_no=reversal.journal_no,
        )

    def void(
        self,
        journal: GlJournal | UUID,
        reason: str | None = None,
        actor_id: UUID | None = None,
        allow_posted: bool = False,
    ) -> ReversalResult:
        """
        Void a journal.

        DRAFT -> VOIDED with the reason appended to the memo.  A POSTED
        journal can be voided only with ``allow_posted``: a reversing
        journal is posted and the original becomes VOIDED.
        """
        with self.session.begin_nested():
            original = self._lock_journal(journal)

            if original.status in (JournalStatus.VOIDED, JournalStatus.REVERSED):
                raise JournalAlreadyFinalError(str(original.id), original.status)

            reversal = None
            if original.status == JournalStatus.DRAFT:
                note = f"VOIDED: {reason}" if reason else "VOIDED"
                original.memo = f"{original.memo}\n{note}" if original.memo else note
            elif allow_posted:
                reversal = self._post_reversal_of(original, reason, actor_id)
            else:
                raise JournalNotDraftError(str(original.id), original.status, "voided")

            original.status = JournalStatus.VOIDED
            original.updated_by_id = actor_id
            self.session.flush()

        logger.info(
            "journal_voided",
            extra={
                "journal_id": original.id,
                "journal_no": original.journal_no,
                "reversal_journal_id": reversal.id if reversal else None,
                "reason": reason,
            },
        )
        return ReversalResult(
            original_journal_id=original.id,
            original_status=JournalStatus.VOIDED,
            reversal_journal_id=reversal.id if reversal else None,
            reversal_journal_no=reversal.journal_no if reversal else None,
        )
