"""
PosReceiptService tests.

Tests cover:
- A posted receipt issues stock, posts one balanced journal, audits once
- Replay by idempotency key, conflict on a changed payload
- All-or-nothing failure: nothing persisted, key released, failure audited
- Validation runs before anything is claimed
- GL posting switched off by settings
- Void: stock returned, journal reversed, second void rejected
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from retail_config.settings import Settings
from retail_kernel.db.engine import session_scope
from retail_kernel.exceptions import (
    EntityInactiveError,
    EntityNotFoundError,
    IdempotencyConflictError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    ValidationError,
)
from retail_kernel.models.audit_event import AuditEvent
from retail_kernel.models.idempotency import IdempotencyKey, IdempotencyStatus
from retail_kernel.models.inventory import MovementType
from retail_kernel.models.journal import GlJournal, JournalStatus
from retail_kernel.selectors.inventory_selector import InventorySelector
from retail_kernel.services.auditor_service import AuditorService
from retail_kernel.services.inventory_ledger import InventoryLedger
from retail_services.pos.models import (
    ReceiptLineRequest,
    ReceiptRequest,
    calculate_totals,
    validate_receipt_transition,
)
from retail_services.pos.orm import Receipt, ReceiptStatus
from retail_services.pos.service import (
    SCOPE,
    PosReceiptService,
    generate_receipt_number,
    line_movement_ref,
)


@pytest.fixture
def service(committed_factory, settings, posting_rules, clock):
    return PosReceiptService(
        committed_factory, settings=settings, posting_rules=posting_rules, clock=clock
    )


def _coffee_request(world, key="till-1:0001", **overrides) -> ReceiptRequest:
    fields = dict(
        idempotency_key=key,
        branch_id=world.branch.id,
        lines=(
            ReceiptLineRequest(
                product_id=world.product.id,
                qty=Decimal("1"),
                price=Decimal("100"),
                tax_amount=Decimal("15"),
                discount=Decimal("5"),
            ),
        ),
    )
    fields.update(overrides)
    return ReceiptRequest(**fields)


def _on_hand(factory, product, branch) -> Decimal:
    with session_scope(factory) as sess:
        return InventoryLedger(sess).get_item(product.id, branch.id).on_hand


def _journal_lines(factory, journal_id) -> list[tuple[str, Decimal, Decimal]]:
    with session_scope(factory) as sess:
        journal = sess.get(GlJournal, journal_id)
        return [(line.account.code, line.debit, line.credit) for line in journal.lines]


def _journal_status(factory, journal_id) -> JournalStatus:
    with session_scope(factory) as sess:
        return JournalStatus(sess.get(GlJournal, journal_id).status)


def _events(factory, event_name) -> list[AuditEvent]:
    with session_scope(factory) as sess:
        return list(
            sess.execute(
                select(AuditEvent).where(AuditEvent.event_name == event_name)
            ).scalars()
        )


def _count(factory, model) -> int:
    with session_scope(factory) as sess:
        return sess.execute(select(func.count()).select_from(model)).scalar_one()


# =========================================================================
# Pure helpers
# =========================================================================


class TestReceiptModels:
    def test_totals(self):
        lines = (
            ReceiptLineRequest(uuid4(), Decimal("2"), Decimal("50"), Decimal("15"), Decimal("0")),
            ReceiptLineRequest(uuid4(), Decimal("1"), Decimal("20"), Decimal("0"), Decimal("5")),
        )
        totals = calculate_totals(lines)
        assert totals.subtotal == Decimal("120")
        assert totals.tax_total == Decimal("15")
        assert totals.discount_total == Decimal("5")
        assert totals.grand_total == Decimal("130")

    def test_receipt_number_format(self):
        number = generate_receipt_number()
        assert number.startswith("REC-")
        assert len(number) == 12
        assert number[4:].isalnum() and number[4:].upper() == number[4:]

    def test_status_table(self):
        validate_receipt_transition(ReceiptStatus.DRAFT, ReceiptStatus.POSTED)
        validate_receipt_transition(ReceiptStatus.POSTED, ReceiptStatus.VOIDED)
        with pytest.raises(InvalidStatusTransitionError):
            validate_receipt_transition(ReceiptStatus.VOIDED, ReceiptStatus.POSTED)
        with pytest.raises(InvalidStatusTransitionError):
            validate_receipt_transition(ReceiptStatus.REFUNDED, ReceiptStatus.VOIDED)

    def test_line_rejects_zero_quantity(self):
        line = ReceiptLineRequest(uuid4(), Decimal("0"), Decimal("10"))
        with pytest.raises(ValidationError, match="quantity must be positive"):
            line.validated(1)


# =========================================================================
# Processing
# =========================================================================


class TestProcessReceipt:
    def test_receipt_posts_stock_journal_and_audit(
        self, committed_factory, world, service, test_actor_id
    ):
        world.stock(committed_factory, 10)

        result = service.process_receipt(_coffee_request(world), actor_id=test_actor_id)

        assert result.status == ReceiptStatus.POSTED
        assert not result.replayed
        assert result.grand_total == Decimal("110")
        assert result.paid_total == Decimal("110")
        assert result.number.startswith("REC-")
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("9")

        lines = sorted(_journal_lines(committed_factory, result.gl_journal_id))
        assert lines == [
            ("1001", Decimal("110"), Decimal("0")),
            ("2001", Decimal("0"), Decimal("15")),
            ("4000", Decimal("0"), Decimal("100")),
            ("5001", Decimal("5"), Decimal("0")),
        ]
        assert _journal_status(committed_factory, result.gl_journal_id) == JournalStatus.POSTED

        created = _events(committed_factory, "pos.receipt.created")
        assert len(created) == 1
        assert created[0].subject_id == str(result.receipt_id)
        assert created[0].actor_id == test_actor_id

    def test_receipt_row_and_line_refs(self, committed_factory, world, service):
        world.stock(committed_factory, 10)
        world.stock(committed_factory, 10, product=world.other_product)
        request = _coffee_request(
            world,
            lines=(
                ReceiptLineRequest(world.product.id, Decimal("2"), Decimal("40")),
                ReceiptLineRequest(world.other_product.id, Decimal("3"), Decimal("10")),
            ),
        )

        result = service.process_receipt(request)

        with session_scope(committed_factory) as sess:
            receipt = service.get_receipt(sess, result.receipt_id)
            assert receipt.status == ReceiptStatus.POSTED
            assert receipt.subtotal == Decimal("110")
            assert receipt.idempotency_key == request.idempotency_key
            assert [line.stock_movement_ref for line in receipt.lines] == [
                line_movement_ref(receipt.id, 1),
                line_movement_ref(receipt.id, 2),
            ]
            movements = InventorySelector(sess).movements_by_ref(line_movement_ref(receipt.id, 2))
            assert len(movements) == 1
            assert movements[0].type == MovementType.ISSUE
            assert movements[0].qty == Decimal("-3")

    def test_replay_returns_same_receipt(self, committed_factory, world, service):
        world.stock(committed_factory, 10)
        request = _coffee_request(world)

        first = service.process_receipt(request)
        second = service.process_receipt(request)

        assert second.replayed
        assert second.receipt_id == first.receipt_id
        assert second.number == first.number
        assert second.grand_total == first.grand_total
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("9")
        assert _count(committed_factory, Receipt) == 1

        with session_scope(committed_factory) as sess:
            trace = AuditorService(sess).get_trace("receipt", first.receipt_id)
        assert trace.event_names == ("pos.receipt.created", "pos.receipt.idempotent")

    def test_changed_payload_with_same_key_conflicts(self, committed_factory, world, service):
        world.stock(committed_factory, 10)
        service.process_receipt(_coffee_request(world))

        changed = _coffee_request(
            world,
            lines=(ReceiptLineRequest(world.product.id, Decimal("1"), Decimal("90")),),
        )
        with pytest.raises(IdempotencyConflictError):
            service.process_receipt(changed)
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("9")

    def test_zero_total_receipt_has_no_journal(self, committed_factory, world, service):
        world.stock(committed_factory, 5)
        request = _coffee_request(
            world,
            lines=(ReceiptLineRequest(world.product.id, Decimal("1"), Decimal("0")),),
        )

        result = service.process_receipt(request)

        assert result.gl_journal_id is None
        assert result.grand_total == Decimal("0")
        assert _count(committed_factory, GlJournal) == 0

    def test_gl_posting_disabled(self, committed_factory, world, posting_rules, clock):
        world.stock(committed_factory, 5)
        service = PosReceiptService(
            committed_factory,
            settings=Settings(pos_gl_posting_enabled=False),
            posting_rules=posting_rules,
            clock=clock,
        )
        assert not service.gl_posting_enabled

        result = service.process_receipt(_coffee_request(world))

        assert result.status == ReceiptStatus.POSTED
        assert result.gl_journal_id is None
        assert _count(committed_factory, GlJournal) == 0
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("4")

    def test_gl_posting_disabled_in_rules(self, committed_factory, world, settings, posting_rules, clock):
        world.stock(committed_factory, 5)
        rules = replace(posting_rules, pos=replace(posting_rules.pos, enabled=False))
        service = PosReceiptService(committed_factory, settings=settings, posting_rules=rules, clock=clock)

        assert service.process_receipt(_coffee_request(world)).gl_journal_id is None


# =========================================================================
# Failures
# =========================================================================


class TestReceiptFailures:
    def test_insufficient_stock_rolls_back_everything(self, committed_factory, world, service):
        world.stock(committed_factory, 1)
        request = _coffee_request(
            world,
            lines=(
                ReceiptLineRequest(world.product.id, Decimal("1"), Decimal("10")),
                ReceiptLineRequest(world.product.id, Decimal("1"), Decimal("10")),
            ),
        )

        with pytest.raises(InsufficientStockError) as exc_info:
            service.process_receipt(request)

        assert exc_info.value.requested == Decimal("1")
        assert exc_info.value.available == Decimal("0")
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("1")
        assert _count(committed_factory, Receipt) == 0
        assert _count(committed_factory, GlJournal) == 0

        with session_scope(committed_factory) as sess:
            key = sess.execute(
                select(IdempotencyKey).where(
                    IdempotencyKey.scope == SCOPE,
                    IdempotencyKey.key == request.idempotency_key,
                )
            ).scalar_one()
            assert key.status == IdempotencyStatus.FAILED
            assert "Not enough available stock" in key.last_error

        failed = _events(committed_factory, "pos.receipt.failed")
        assert len(failed) == 1
        assert failed[0].context["error_code"] == "INSUFFICIENT_STOCK"
        assert _events(committed_factory, "pos.receipt.created") == []

    def test_failed_key_can_be_retried_after_restock(self, committed_factory, world, service):
        world.stock(committed_factory, 0)
        request = _coffee_request(world)
        with pytest.raises(InsufficientStockError):
            service.process_receipt(request)

        with session_scope(committed_factory) as sess:
            InventoryLedger(sess).receive_stock(
                world.product.id, world.branch.id, Decimal("3"), ref="restock-1"
            )

        result = service.process_receipt(request)
        assert not result.replayed
        assert result.status == ReceiptStatus.POSTED
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("2")

    def test_validation_errors_claim_nothing(self, committed_factory, world, service):
        with pytest.raises(ValidationError, match="Idempotency key is required"):
            service.process_receipt(_coffee_request(world, key="  "))
        with pytest.raises(ValidationError, match="at least one line"):
            service.process_receipt(_coffee_request(world, lines=()))
        with pytest.raises(ValidationError, match=r"Paid total \(100\) is less than grand total \(110\)"):
            service.process_receipt(_coffee_request(world, paid_total=Decimal("100")))

        assert _count(committed_factory, IdempotencyKey) == 0
        assert _count(committed_factory, AuditEvent) == 0

    def test_overpayment_is_recorded(self, committed_factory, world, service):
        world.stock(committed_factory, 1)
        result = service.process_receipt(_coffee_request(world, paid_total=Decimal("120")))
        assert result.paid_total == Decimal("120")
        assert result.grand_total == Decimal("110")

    def test_inactive_branch_rejected(self, committed_factory, world, service):
        request = _coffee_request(world, branch_id=world.inactive_branch.id)
        with pytest.raises(EntityInactiveError, match="CLOSED"):
            service.process_receipt(request)
        assert _count(committed_factory, Receipt) == 0

    def test_unknown_product_rejected(self, committed_factory, world, service):
        request = _coffee_request(
            world, lines=(ReceiptLineRequest(uuid4(), Decimal("1"), Decimal("10")),)
        )
        with pytest.raises(EntityNotFoundError, match="Product not found"):
            service.process_receipt(request)

    def test_inactive_product_rejected(self, committed_factory, world, service):
        request = _coffee_request(
            world,
            lines=(ReceiptLineRequest(world.inactive_product.id, Decimal("1"), Decimal("10")),),
        )
        with pytest.raises(EntityInactiveError, match="SKU-OLD"):
            service.process_receipt(request)


# =========================================================================
# Void
# =========================================================================


class TestVoidReceipt:
    def test_void_restores_stock_and_reverses_journal(
        self, committed_factory, world, service, test_actor_id
    ):
        world.stock(committed_factory, 10)
        posted = service.process_receipt(_coffee_request(world))

        voided = service.void_receipt(posted.receipt_id, actor_id=test_actor_id, reason="wrong item")

        assert voided.status == ReceiptStatus.VOIDED
        assert voided.reversal_journal_id is not None
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("10")
        assert _journal_status(committed_factory, posted.gl_journal_id) == JournalStatus.REVERSED
        assert _journal_status(committed_factory, voided.reversal_journal_id) == JournalStatus.POSTED

        reversal_lines = sorted(_journal_lines(committed_factory, voided.reversal_journal_id))
        assert reversal_lines == [
            ("1001", Decimal("0"), Decimal("110")),
            ("2001", Decimal("15"), Decimal("0")),
            ("4000", Decimal("100"), Decimal("0")),
            ("5001", Decimal("0"), Decimal("5")),
        ]

        with session_scope(committed_factory) as sess:
            receipt = service.get_receipt(sess, posted.receipt_id)
            assert receipt.void_reason == "wrong item"
            assert receipt.voided_by == test_actor_id
            trace = AuditorService(sess).get_trace("receipt", posted.receipt_id)
        assert trace.event_names == ("pos.receipt.created", "pos.receipt.voided")

    def test_second_void_rejected(self, committed_factory, world, service):
        world.stock(committed_factory, 10)
        posted = service.process_receipt(_coffee_request(world))
        service.void_receipt(posted.receipt_id)

        with pytest.raises(InvalidStatusTransitionError):
            service.void_receipt(posted.receipt_id)

        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("10")
        failed = _events(committed_factory, "pos.receipt.void_failed")
        assert len(failed) == 1
        assert failed[0].subject_id == str(posted.receipt_id)

    def test_void_unknown_receipt(self, committed_factory, world, service):
        with pytest.raises(EntityNotFoundError):
            service.void_receipt(uuid4())

    def test_void_without_journal(self, committed_factory, world, posting_rules, clock):
        world.stock(committed_factory, 2)
        service = PosReceiptService(
            committed_factory,
            settings=Settings(pos_gl_posting_enabled=False),
            posting_rules=posting_rules,
            clock=clock,
        )
        posted = service.process_receipt(_coffee_request(world))

        voided = service.void_receipt(posted.receipt_id)

        assert voided.reversal_journal_id is None
        assert _on_hand(committed_factory, world.product, world.branch) == Decimal("2")
