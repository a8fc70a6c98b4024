"""
POS Receipt Service (``retail_services.pos.service``).

Responsibility
--------------
Turns a checkout into a posted receipt: stock issued per line, one
balanced GL journal, one audit event, all in one transaction and at most
once per idempotency key.  Voids undo all three.

Architecture
------------
Layer: **Services** -- orchestration.  Composes ``IdempotentRunner``,
``InventoryLedger``, ``GlPostingEngine`` and ``AuditSink``.  Holds no
business rules of its own beyond totals, the receipt status table and
the POS posting template.

Posting template (accounts from the posting-rule table)::

    Dr cash_receipt      grand_total
    Dr discount_expense  discount_total
        Cr sales_revenue     subtotal
        Cr tax_payable       tax_total

Zero-amount lines are omitted.  Debits equal credits because
grand_total = subtotal + tax_total - discount_total.

Invariants
----------
- Stock movement ref per line is ``"<receipt_id>:<line_no>"``; the void
  ref is ``"<receipt_id>:<line_no>:void"``.
- paid_total defaults to grand_total and may not be below it.
- A receipt is voided at most once (row lock + status table).

Failure Modes
-------------
- ValidationError before anything is claimed or written.
- EntityNotFoundError / EntityInactiveError for branch or product.
- InsufficientStockError from the inventory ledger: the whole receipt
  rolls back, the key is released, ``pos.receipt.failed`` is audited.
- InvalidStatusTransitionError on a second void.

Usage::

    service = PosReceiptService(session_factory, settings=settings)
    result = service.process_receipt(
        ReceiptRequest(
            idempotency_key="till-7:000123",
            branch_id=branch.id,
            lines=(ReceiptLineRequest(product.id, Decimal("2"), Decimal("50")),),
        ),
        actor_id=cashier_id,
    )
"""

from __future__ import annotations

import secrets
import string
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from retail_config.loader import PostingRules, load_posting_rules
from retail_config.settings import Settings
from retail_kernel.domain.clock import Clock, SystemClock
from retail_kernel.exceptions import (
    EntityInactiveError,
    EntityNotFoundError,
    ValidationError,
)
from retail_kernel.logging_config import get_logger
from retail_kernel.models.catalog import Branch, Product
from retail_kernel.services.auditor_service import AuditSink
from retail_kernel.services.capability import CapabilityChecker
from retail_kernel.services.gl_posting import (
    GlPostingEngine,
    JournalHeader,
    JournalLineInput,
)
from retail_kernel.services.idempotency_guard import IdempotencyGuard
from retail_kernel.services.inventory_ledger import InventoryLedger, MovementContext
from retail_services.pos.models import (
    ReceiptLineRequest,
    ReceiptRequest,
    ReceiptResult,
    ReceiptTotals,
    calculate_totals,
    validate_receipt_transition,
)
from retail_services.pos.orm import Receipt, ReceiptLine, ReceiptStatus
from retail_services.unit_of_work import AuditNames, IdempotentRunner

logger = get_logger("services.pos")

SCOPE = "pos_receipts"
SUBJECT_TYPE = "receipt"
JOURNAL_SOURCE = "POS"

RECEIPT_AUDIT = AuditNames(
    subject_type=SUBJECT_TYPE,
    replayed="pos.receipt.idempotent",
    failed="pos.receipt.failed",
)

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
_NUMBER_ATTEMPTS = 5


def generate_receipt_number() -> str:
    """``REC-`` followed by 8 random uppercase alphanumerics."""
    return "REC-" + "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(8))


def line_movement_ref(receipt_id: UUID, line_no: int) -> str:
    return f"{receipt_id}:{line_no}"


def void_movement_ref(receipt_id: UUID, line_no: int) -> str:
    return f"{receipt_id}:{line_no}:void"


class PosReceiptService:
    """
    Orchestrates POS receipts.

    Contract
    --------
    Each public method owns its transaction boundary through
    ``IdempotentRunner``.  Engines only flush.

    Non-goals
    ---------
    - Payment capture, vouchers and loyalty points are handled elsewhere.
    - Refunds: the status table admits posted -> refunded but no refund
      workflow is offered here.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings | None = None,
        posting_rules: PostingRules | None = None,
        clock: Clock | None = None,
        capability_checker: CapabilityChecker | None = None,
        audit: AuditSink | None = None,
        guard: IdempotencyGuard | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or Settings.from_env()
        self._rules = posting_rules or load_posting_rules(self._settings.posting_rules_path)
        self._clock = clock or SystemClock()
        self._capabilities = capability_checker
        self._audit = audit or AuditSink(session_factory, self._clock)
        self._guard = guard or IdempotencyGuard(
            session_factory,
            self._clock,
            lock_ttl_seconds=self._settings.idempotency_lock_timeout,
        )
        self._runner = IdempotentRunner(session_factory, self._guard, self._audit)

    @property
    def gl_posting_enabled(self) -> bool:
        return self._settings.pos_gl_posting_enabled and self._rules.pos.enabled

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, request: ReceiptRequest) -> tuple[tuple[ReceiptLineRequest, ...], ReceiptTotals, Decimal]:
        if not request.idempotency_key or not request.idempotency_key.strip():
            raise ValidationError("Idempotency key is required", field="idempotency_key")
        if not request.lines:
            raise ValidationError("Receipt must have at least one line", field="lines")

        lines = tuple(line.validated(no) for no, line in enumerate(request.lines, start=1))
        totals = calculate_totals(lines)
        if totals.grand_total < 0:
            raise ValidationError("Discounts cannot exceed the receipt total", field="discount")

        paid_total = totals.grand_total if request.paid_total is None else Decimal(str(request.paid_total))
        if paid_total < totals.grand_total:
            raise ValidationError(
                f"Paid total ({paid_total}) is less than grand total ({totals.grand_total})",
                field="paid_total",
            )
        return lines, totals, paid_total

    @staticmethod
    def _resolve_branch(session: Session, branch_id: UUID) -> Branch:
        branch = session.get(Branch, branch_id)
        if branch is None:
            raise EntityNotFoundError("Branch", str(branch_id))
        if not branch.is_active:
            raise EntityInactiveError("Branch", branch.code)
        return branch

    @staticmethod
    def _resolve_products(session: Session, lines: tuple[ReceiptLineRequest, ...]) -> None:
        for product_id in {line.product_id for line in lines}:
            product = session.get(Product, product_id)
            if product is None:
                raise EntityNotFoundError("Product", str(product_id))
            if not product.is_active:
                raise EntityInactiveError("Product", product.sku)

    @staticmethod
    def _unique_number(session: Session) -> str:
        for _ in range(_NUMBER_ATTEMPTS):
            number = generate_receipt_number()
            taken = session.execute(
                select(Receipt.id).where(Receipt.number == number)
            ).first()
            if taken is None:
                return number
        raise ValidationError("Could not allocate a unique receipt number", field="number")

    # ------------------------------------------------------------------
    # GL
    # ------------------------------------------------------------------

    def _journal_lines(self, totals: ReceiptTotals, number: str) -> tuple[JournalLineInput, ...]:
        rules = self._rules.pos
        candidates = (
            JournalLineInput(account_code=rules.cash_receipt, debit=totals.grand_total, memo=f"Cash {number}"),
            JournalLineInput(account_code=rules.discount_expense, debit=totals.discount_total, memo=f"Discount {number}"),
            JournalLineInput(account_code=rules.sales_revenue, credit=totals.subtotal, memo=f"Sales {number}"),
            JournalLineInput(account_code=rules.tax_payable, credit=totals.tax_total, memo=f"Tax {number}"),
        )
        return tuple(line for line in candidates if line.debit > 0 or line.credit > 0)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_receipt(self, request: ReceiptRequest, actor_id: UUID | None = None) -> ReceiptResult:
        """
        Create a posted receipt, or replay the one created for this key.

        Raises:
            ValidationError, EntityNotFoundError, EntityInactiveError,
            InsufficientStockError, GlValidationError,
            IdempotencyInFlightError, IdempotencyConflictError.
        """
        lines, totals, paid_total = self._validate(request)
        currency = request.currency or self._settings.base_currency

        def work(session: Session) -> dict[str, Any]:
            self._resolve_branch(session, request.branch_id)
            self._resolve_products(session, lines)

            receipt = Receipt(
                number=self._unique_number(session),
                branch_id=request.branch_id,
                status=ReceiptStatus.DRAFT,
                currency=currency,
                subtotal=totals.subtotal,
                tax_total=totals.tax_total,
                discount_total=totals.discount_total,
                grand_total=totals.grand_total,
                paid_total=paid_total,
                payment_method=request.payment_method,
                receipt_meta=dict(request.meta) or None,
                idempotency_key=request.idempotency_key,
                created_by_id=actor_id,
            )
            session.add(receipt)
            session.flush()

            ledger = InventoryLedger(session, self._capabilities, self._clock)
            ctx = MovementContext(actor_id=actor_id, meta={"receipt_number": receipt.number})
            for line_no, line in enumerate(lines, start=1):
                ref = line_movement_ref(receipt.id, line_no)
                ledger.issue_stock(line.product_id, request.branch_id, line.qty, ref=ref, ctx=ctx)
                receipt.lines.append(
                    ReceiptLine(
                        line_no=line_no,
                        product_id=line.product_id,
                        qty=line.qty,
                        price=line.price,
                        tax_amount=line.tax_amount,
                        discount=line.discount,
                        line_total=line.line_total,
                        stock_movement_ref=ref,
                        created_by_id=actor_id,
                    )
                )

            journal_lines = self._journal_lines(totals, receipt.number)
            if self.gl_posting_enabled and journal_lines:
                gl = GlPostingEngine(session, self._clock, self._settings.base_currency)
                journal = gl.create_journal(
                    JournalHeader(
                        currency=currency,
                        source=JOURNAL_SOURCE,
                        reference=receipt.number,
                        memo=f"Receipt {receipt.number}",
                        branch_id=request.branch_id,
                        lines=journal_lines,
                    ),
                    actor_id=actor_id,
                )
                gl.post(journal, actor_id=actor_id)
                receipt.gl_journal_id = journal.id

            validate_receipt_transition(receipt.status, ReceiptStatus.POSTED)
            receipt.status = ReceiptStatus.POSTED
            receipt.posted_at = self._clock.now()
            receipt.posted_by = actor_id
            session.flush()

            result = ReceiptResult(
                receipt_id=receipt.id,
                number=receipt.number,
                status=ReceiptStatus.POSTED,
                grand_total=receipt.grand_total,
                paid_total=receipt.paid_total,
                gl_journal_id=receipt.gl_journal_id,
            )
            self._audit.record(
                session,
                "pos.receipt.created",
                SUBJECT_TYPE,
                receipt.id,
                after={
                    **result.to_snapshot(),
                    "subtotal": receipt.subtotal,
                    "tax_total": receipt.tax_total,
                    "discount_total": receipt.discount_total,
                    "line_count": len(lines),
                },
                context={"idempotency_key": request.idempotency_key, "branch_id": request.branch_id},
                actor_id=actor_id,
            )
            logger.info(
                "receipt_posted",
                extra={
                    "receipt_id": receipt.id,
                    "receipt_number": receipt.number,
                    "grand_total": receipt.grand_total,
                    "gl_journal_id": receipt.gl_journal_id,
                },
            )
            return result.to_snapshot()

        outcome = self._runner.run(
            SCOPE,
            request.idempotency_key,
            request.as_payload(),
            work,
            RECEIPT_AUDIT,
            actor_id=actor_id,
        )
        return ReceiptResult.from_snapshot(outcome.snapshot, replayed=outcome.replayed)

    def void_receipt(
        self,
        receipt_id: UUID,
        actor_id: UUID | None = None,
        reason: str | None = None,
    ) -> ReceiptResult:
        """
        Void a receipt: stock back in, GL reversed, status voided.

        Raises:
            EntityNotFoundError: unknown receipt.
            InvalidStatusTransitionError: receipt already voided / refunded.
        """

        def work(session: Session) -> dict[str, Any]:
            receipt = session.execute(
                select(Receipt)
                .where(Receipt.id == receipt_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if receipt is None:
                raise EntityNotFoundError("Receipt", str(receipt_id))

            previous_status = ReceiptStatus(receipt.status)
            validate_receipt_transition(previous_status, ReceiptStatus.VOIDED)

            reversal_journal_id = None
            if previous_status == ReceiptStatus.POSTED:
                ledger = InventoryLedger(session, self._capabilities, self._clock)
                ctx = MovementContext(
                    actor_id=actor_id,
                    meta={"receipt_number": receipt.number, "void_reason": reason},
                )
                for line in receipt.lines:
                    ledger.receive_stock(
                        line.product_id,
                        receipt.branch_id,
                        line.qty,
                        ref=void_movement_ref(receipt.id, line.line_no),
                        ctx=ctx,
                    )

                if receipt.gl_journal_id is not None:
                    gl = GlPostingEngine(session, self._clock, self._settings.base_currency)
                    reversal = gl.reverse(
                        receipt.gl_journal_id,
                        memo=f"Void receipt {receipt.number}" + (f": {reason}" if reason else ""),
                        actor_id=actor_id,
                    )
                    reversal_journal_id = reversal.reversal_journal_id

            receipt.status = ReceiptStatus.VOIDED
            receipt.voided_at = self._clock.now()
            receipt.voided_by = actor_id
            receipt.void_reason = reason
            receipt.updated_by_id = actor_id
            session.flush()

            result = ReceiptResult(
                receipt_id=receipt.id,
                number=receipt.number,
                status=ReceiptStatus.VOIDED,
                grand_total=receipt.grand_total,
                paid_total=receipt.paid_total,
                gl_journal_id=receipt.gl_journal_id,
                reversal_journal_id=reversal_journal_id,
            )
            self._audit.record(
                session,
                "pos.receipt.voided",
                SUBJECT_TYPE,
                receipt.id,
                before={"status": previous_status.value},
                after=result.to_snapshot(),
                context={"reason": reason},
                actor_id=actor_id,
            )
            logger.info(
                "receipt_voided",
                extra={
                    "receipt_id": receipt.id,
                    "receipt_number": receipt.number,
                    "reversal_journal_id": reversal_journal_id,
                },
            )
            return result.to_snapshot()

        snapshot = self._runner.run_atomic(
            work,
            "pos.receipt.void_failed",
            SUBJECT_TYPE,
            receipt_id,
            context={"reason": reason},
            actor_id=actor_id,
        )
        return ReceiptResult.from_snapshot(snapshot)

    def get_receipt(self, session: Session, receipt_id: UUID) -> Receipt:
        receipt = session.get(Receipt, receipt_id)
        if receipt is None:
            raise EntityNotFoundError("Receipt", str(receipt_id))
        return receipt
