"""
Telebirr Service (``retail_services.telebirr.service``).

Responsibility
--------------
Posts Telebirr agent-settlement transactions (TOPUP, ISSUE, REPAY, LOAN)
to the general ledger, at most once per idempotency key, and voids them.

Architecture
------------
Layer: **Services** -- orchestration.  Composes ``IdempotentRunner``,
``GlPostingEngine``, ``LedgerSelector`` and ``AuditSink``.  Account codes
come from the posting-rule table (``retail_config``); ``BANK`` resolves to
the GL account of the bank account named in the request.

Posting (with the shipped rule table)::

    TOPUP   Dr BANK   Cr 1200
    ISSUE   Dr 1200   Cr 1300 [Agent: SC<short_code>]
    LOAN    Dr 1200   Cr 1300 [Agent: SC<short_code>]
    REPAY   Dr 1300 [Agent: SC<short_code>]   Cr BANK

Lines on the agent subledger account carry the agent dimension, so the
agent's outstanding balance is read from the ledger:
credits minus debits on that account for that dimension.

Invariants
----------
- One TelebirrTransaction, one POSTED journal and one audit event per
  idempotency key, committed together or not at all.
- The transaction's own unique idempotency_key is a second dedup layer
  behind the guard.
- Void reverses the journal (original becomes VOIDED) and marks the
  transaction Voided; a second void fails.

Failure Modes
-------------
- ValidationError before anything is claimed.
- EntityNotFoundError / EntityInactiveError for agent or bank account.
- GlValidationError if the rule table points at an unpostable account.
- Every failure after the claim rolls back, releases the key and audits
  ``telebirr.transaction.failed``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from retail_config.loader import PostingRules, load_posting_rules, render_dimension
from retail_config.settings import Settings
from retail_kernel.db.engine import session_scope
from retail_kernel.domain.clock import Clock, SystemClock
from retail_kernel.exceptions import (
    EntityInactiveError,
    EntityNotFoundError,
    InvalidStatusTransitionError,
)
from retail_kernel.logging_config import get_logger
from retail_kernel.selectors.ledger_selector import LedgerSelector
from retail_kernel.services.auditor_service import AuditSink
from retail_kernel.services.gl_posting import (
    GlPostingEngine,
    JournalHeader,
    JournalLineInput,
)
from retail_kernel.services.idempotency_guard import IdempotencyGuard
from retail_services.telebirr.models import (
    LINE_MEMOS,
    TelebirrRequest,
    TelebirrResult,
    journal_memo,
    validate_request,
)
from retail_services.telebirr.orm import (
    BankAccount,
    TelebirrAgent,
    TelebirrTransaction,
    TelebirrTxStatus,
    TelebirrTxType,
)
from retail_services.unit_of_work import AuditNames, IdempotentRunner

logger = get_logger("services.telebirr")

SCOPE = "telebirr_transactions"
SUBJECT_TYPE = "telebirr_transaction"
JOURNAL_SOURCE = "TELEBIRR"
AGENT_SUBLEDGER = "agents"

TRANSACTION_AUDIT = AuditNames(
    subject_type=SUBJECT_TYPE,
    replayed="telebirr.transaction.idempotent",
    failed="telebirr.transaction.failed",
)


def _result(tx: TelebirrTransaction, reversal_journal_id: UUID | None = None) -> TelebirrResult:
    return TelebirrResult(
        transaction_id=tx.id,
        tx_type=TelebirrTxType(tx.tx_type),
        status=TelebirrTxStatus(tx.status),
        amount=tx.amount,
        currency=tx.currency,
        gl_journal_id=tx.gl_journal_id,
        idempotency_key=tx.idempotency_key,
        agent_short_code=tx.agent.short_code if tx.agent else None,
        bank_external_number=tx.bank_account.external_number if tx.bank_account else None,
        reversal_journal_id=reversal_journal_id,
    )


class TelebirrService:
    """
    Orchestrates Telebirr postings.

    Contract
    --------
    ``post_*`` return a ``TelebirrResult``; ``replayed`` is True when the
    key had already succeeded and nothing new was written.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        posting_rules: PostingRules | None = None,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        guard: IdempotencyGuard | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or Settings.from_env()
        self._rules = posting_rules or load_posting_rules(self._settings.posting_rules_path)
        self._clock = clock or SystemClock()
        self._audit = audit or AuditSink(session_factory, self._clock)
        self._guard = guard or IdempotencyGuard(
            session_factory,
            self._clock,
            lock_ttl_seconds=self._settings.idempotency_lock_timeout,
        )
        self._runner = IdempotentRunner(session_factory, self._guard, self._audit)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def post_topup(self, request: TelebirrRequest, actor_id: UUID | None = None) -> TelebirrResult:
        """Buy e-float from head office: Dr bank, Cr distributor."""
        return self._execute(TelebirrTxType.TOPUP, request, actor_id)

    def post_issue(self, request: TelebirrRequest, actor_id: UUID | None = None) -> TelebirrResult:
        """Give e-float to an agent."""
        return self._execute(TelebirrTxType.ISSUE, request, actor_id)

    def post_repay(self, request: TelebirrRequest, actor_id: UUID | None = None) -> TelebirrResult:
        """Agent settles into a bank account."""
        return self._execute(TelebirrTxType.REPAY, request, actor_id)

    def post_loan(self, request: TelebirrRequest, actor_id: UUID | None = None) -> TelebirrResult:
        """E-float now, pay later."""
        return self._execute(TelebirrTxType.LOAN, request, actor_id)

    def post(
        self,
        tx_type: TelebirrTxType | str,
        request: TelebirrRequest,
        actor_id: UUID | None = None,
    ) -> TelebirrResult:
        return self._execute(TelebirrTxType(tx_type), request, actor_id)

    # ------------------------------------------------------------------
    # Entity resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_agent(session: Session, short_code: str | None) -> TelebirrAgent | None:
        if not short_code:
            return None
        agent = session.execute(
            select(TelebirrAgent).where(TelebirrAgent.short_code == short_code)
        ).scalar_one_or_none()
        if agent is None:
            raise EntityNotFoundError("Agent", short_code)
        if not agent.is_active:
            raise EntityInactiveError("Agent", short_code)
        return agent

    @staticmethod
    def _resolve_bank_account(session: Session, external_number: str | None) -> BankAccount | None:
        if not external_number:
            return None
        bank_account = session.execute(
            select(BankAccount).where(BankAccount.external_number == external_number)
        ).scalar_one_or_none()
        if bank_account is None:
            raise EntityNotFoundError("Bank account", external_number)
        if not bank_account.is_active:
            raise EntityInactiveError("Bank account", external_number)
        return bank_account

    # ------------------------------------------------------------------
    # Posting lines
    # ------------------------------------------------------------------

    def _posting_lines(
        self,
        tx_type: TelebirrTxType,
        amount: Decimal,
        agent: TelebirrAgent | None,
        bank_account: BankAccount | None,
    ) -> tuple[JournalLineInput, ...]:
        rule = self._rules.telebirr_rule(tx_type.value)
        debit_code, credit_code = rule.resolve(
            bank_account.gl_account.code if bank_account is not None else None
        )

        context = {"short_code": agent.short_code if agent else ""}
        subledger = self._rules.subledger(AGENT_SUBLEDGER)

        def dimensions_for(code: str) -> dict[str, Any] | None:
            if agent is None or subledger is None or code != subledger.account_code:
                return None
            return subledger.dimension_for({"short_code": agent.short_code})

        debit_memo, credit_memo = LINE_MEMOS[tx_type]
        return (
            JournalLineInput(
                account_code=debit_code,
                debit=amount,
                memo=render_dimension(debit_memo, context),
                dimensions=dimensions_for(debit_code),
            ),
            JournalLineInput(
                account_code=credit_code,
                credit=amount,
                memo=render_dimension(credit_memo, context),
                dimensions=dimensions_for(credit_code),
            ),
        )

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def _execute(
        self,
        tx_type: TelebirrTxType,
        request: TelebirrRequest,
        actor_id: UUID | None,
    ) -> TelebirrResult:
        amount = validate_request(tx_type, request)
        currency = request.currency or self._settings.base_currency

        def work(session: Session) -> dict[str, Any]:
            existing = session.execute(
                select(TelebirrTransaction).where(
                    TelebirrTransaction.idempotency_key == request.idempotency_key
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "telebirr_transaction_already_recorded",
                    extra={"transaction_id": existing.id, "idempotency_key": request.idempotency_key},
                )
                return _result(existing).to_snapshot()

            agent = self._resolve_agent(session, request.agent_short_code)
            bank_account = self._resolve_bank_account(session, request.bank_external_number)

            gl = GlPostingEngine(session, self._clock, self._settings.base_currency)
            journal = gl.create_journal(
                JournalHeader(
                    currency=currency,
                    source=JOURNAL_SOURCE,
                    reference=request.external_ref,
                    memo=journal_memo(tx_type, request),
                    lines=self._posting_lines(tx_type, amount, agent, bank_account),
                ),
                actor_id=actor_id,
            )
            gl.post(journal, actor_id=actor_id)

            tx = TelebirrTransaction(
                tx_type=tx_type,
                agent_id=agent.id if agent else None,
                bank_account_id=bank_account.id if bank_account else None,
                amount=amount,
                currency=currency,
                idempotency_key=request.idempotency_key,
                gl_journal_id=journal.id,
                status=TelebirrTxStatus.POSTED,
                remarks=request.remarks,
                external_ref=request.external_ref,
                posted_at=self._clock.now(),
                created_by_id=actor_id,
            )
            tx.agent = agent
            tx.bank_account = bank_account
            session.add(tx)
            session.flush()

            result = _result(tx)
            self._audit.record(
                session,
                "telebirr.transaction.created",
                SUBJECT_TYPE,
                tx.id,
                after={**result.to_snapshot(), "journal_no": journal.journal_no},
                context={"request": request.as_payload(tx_type)},
                actor_id=actor_id,
            )
            logger.info(
                "telebirr_transaction_posted",
                extra={
                    "transaction_id": tx.id,
                    "tx_type": tx_type.value,
                    "amount": amount,
                    "journal_id": journal.id,
                    "journal_no": journal.journal_no,
                },
            )
            return result.to_snapshot()

        outcome = self._runner.run(
            SCOPE,
            request.idempotency_key,
            request.as_payload(tx_type),
            work,
            TRANSACTION_AUDIT,
            actor_id=actor_id,
        )
        return TelebirrResult.from_snapshot(outcome.snapshot, replayed=outcome.replayed)

    def void_transaction(
        self,
        transaction_id: UUID,
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> TelebirrResult:
        """
        Void a posted transaction: its journal is reversed and VOIDED.

        Raises:
            EntityNotFoundError: unknown transaction.
            InvalidStatusTransitionError: already voided.
        """

        def work(session: Session) -> dict[str, Any]:
            tx = session.execute(
                select(TelebirrTransaction)
                .where(TelebirrTransaction.id == transaction_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if tx is None:
                raise EntityNotFoundError("Telebirr transaction", str(transaction_id))
            if tx.status != TelebirrTxStatus.POSTED:
                raise InvalidStatusTransitionError(
                    "telebirr_transaction",
                    getattr(tx.status, "value", tx.status),
                    TelebirrTxStatus.VOIDED.value,
                )

            gl = GlPostingEngine(session, self._clock, self._settings.base_currency)
            voided = gl.void(tx.gl_journal_id, reason=reason, actor_id=actor_id, allow_posted=True)

            tx.status = TelebirrTxStatus.VOIDED
            tx.voided_at = self._clock.now()
            tx.voided_by = actor_id
            tx.void_reason = reason
            tx.updated_by_id = actor_id
            session.flush()

            result = _result(tx, reversal_journal_id=voided.reversal_journal_id)
            self._audit.record(
                session,
                "telebirr.transaction.voided",
                SUBJECT_TYPE,
                tx.id,
                before={"status": TelebirrTxStatus.POSTED.value},
                after=result.to_snapshot(),
                context={"reason": reason},
                actor_id=actor_id,
            )
            logger.info(
                "telebirr_transaction_voided",
                extra={
                    "transaction_id": tx.id,
                    "journal_id": tx.gl_journal_id,
                    "reversal_journal_id": voided.reversal_journal_id,
                },
            )
            return result.to_snapshot()

        snapshot = self._runner.run_atomic(
            work,
            "telebirr.transaction.void_failed",
            SUBJECT_TYPE,
            transaction_id,
            context={"reason": reason},
            actor_id=actor_id,
        )
        return TelebirrResult.from_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def agent_outstanding_balance(self, short_code: str, session: Session | None = None) -> Decimal:
        """
        E-float issued to the agent and not yet repaid.

        Read from the agent subledger account: credits (ISSUE, LOAN) minus
        debits (REPAY) on lines carrying the agent's dimension.  Voided
        transactions net to zero through their reversing journals.
        """
        subledger = self._rules.subledger(AGENT_SUBLEDGER)
        if subledger is None:
            return Decimal("0")
        dimension = subledger.dimension_for({"short_code": short_code})

        if session is not None:
            balance = LedgerSelector(session).account_balance(subledger.account_code, dimension)
        else:
            with session_scope(self._session_factory) as own_session:
                balance = LedgerSelector(own_session).account_balance(
                    subledger.account_code, dimension
                )
        return balance.credit_total - balance.debit_total
