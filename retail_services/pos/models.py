"""
POS Domain Models (``retail_services.pos.models``).

Frozen request / result value objects for the POS receipt workflow, the
receipt status transition table, and the pure total calculations.  No I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from retail_kernel.exceptions import InvalidStatusTransitionError, ValidationError
from retail_services.pos.orm import ReceiptStatus

ZERO = Decimal("0")

RECEIPT_TRANSITIONS: dict[ReceiptStatus, frozenset[ReceiptStatus]] = {
    ReceiptStatus.DRAFT: frozenset({ReceiptStatus.POSTED, ReceiptStatus.VOIDED}),
    ReceiptStatus.POSTED: frozenset({ReceiptStatus.REFUNDED, ReceiptStatus.VOIDED}),
    ReceiptStatus.VOIDED: frozenset(),
    ReceiptStatus.REFUNDED: frozenset(),
}


def validate_receipt_transition(current: ReceiptStatus | str, target: ReceiptStatus | str) -> None:
    """
    Raises:
        InvalidStatusTransitionError: target is not reachable from current.
    """
    current = ReceiptStatus(current)
    target = ReceiptStatus(target)
    if target not in RECEIPT_TRANSITIONS[current]:
        raise InvalidStatusTransitionError("receipt", current.value, target.value)


def _amount(name: str, value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name) from exc
    if not amount.is_finite():
        raise ValidationError(f"{name} must be a finite number", field=name)
    return amount


@dataclass(frozen=True)
class ReceiptLineRequest:
    product_id: UUID
    qty: Decimal
    price: Decimal
    tax_amount: Decimal = ZERO
    discount: Decimal = ZERO

    def validated(self, line_no: int) -> "ReceiptLineRequest":
        qty = _amount(f"lines[{line_no}].qty", self.qty)
        price = _amount(f"lines[{line_no}].price", self.price)
        tax = _amount(f"lines[{line_no}].tax_amount", self.tax_amount)
        discount = _amount(f"lines[{line_no}].discount", self.discount)
        if qty <= 0:
            raise ValidationError(f"Line {line_no}: quantity must be positive", field="qty")
        if price < 0 or tax < 0 or discount < 0:
            raise ValidationError(
                f"Line {line_no}: price, tax and discount cannot be negative",
                field="price",
            )
        return ReceiptLineRequest(self.product_id, qty, price, tax, discount)

    @property
    def line_total(self) -> Decimal:
        return self.qty * self.price + self.tax_amount - self.discount


@dataclass(frozen=True)
class ReceiptRequest:
    idempotency_key: str
    branch_id: UUID
    lines: tuple[ReceiptLineRequest, ...]
    currency: str | None = None
    paid_total: Decimal | None = None
    payment_method: str | None = "cash"
    meta: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        """Canonical request body used for the idempotency fingerprint."""
        return {
            "branch_id": self.branch_id,
            "currency": self.currency,
            "paid_total": self.paid_total,
            "payment_method": self.payment_method,
            "lines": [
                {
                    "product_id": line.product_id,
                    "qty": line.qty,
                    "price": line.price,
                    "tax_amount": line.tax_amount,
                    "discount": line.discount,
                }
                for line in self.lines
            ],
        }


@dataclass(frozen=True)
class ReceiptTotals:
    subtotal: Decimal
    tax_total: Decimal
    discount_total: Decimal
    grand_total: Decimal


def calculate_totals(lines: tuple[ReceiptLineRequest, ...] | list[ReceiptLineRequest]) -> ReceiptTotals:
    """subtotal = sum(qty * price); grand_total = subtotal + tax - discount."""
    subtotal = sum((line.qty * line.price for line in lines), ZERO)
    tax_total = sum((line.tax_amount for line in lines), ZERO)
    discount_total = sum((line.discount for line in lines), ZERO)
    return ReceiptTotals(
        subtotal=subtotal,
        tax_total=tax_total,
        discount_total=discount_total,
        grand_total=subtotal + tax_total - discount_total,
    )


@dataclass(frozen=True)
class ReceiptResult:
    """What process_receipt / void_receipt return (and what a replay returns)."""

    receipt_id: UUID
    number: str
    status: ReceiptStatus
    grand_total: Decimal
    paid_total: Decimal
    gl_journal_id: UUID | None
    reversal_journal_id: UUID | None = None
    replayed: bool = False

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.receipt_id),
            "number": self.number,
            "status": self.status.value,
            "grand_total": str(self.grand_total),
            "paid_total": str(self.paid_total),
            "gl_journal_id": str(self.gl_journal_id) if self.gl_journal_id else None,
            "reversal_journal_id": (
                str(self.reversal_journal_id) if self.reversal_journal_id else None
            ),
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any], replayed: bool = False) -> "ReceiptResult":
        return cls(
            receipt_id=UUID(snapshot["id"]),
            number=snapshot["number"],
            status=ReceiptStatus(snapshot["status"]),
            grand_total=Decimal(snapshot["grand_total"]),
            paid_total=Decimal(snapshot["paid_total"]),
            gl_journal_id=UUID(snapshot["gl_journal_id"]) if snapshot.get("gl_journal_id") else None,
            reversal_journal_id=(
                UUID(snapshot["reversal_journal_id"])
                if snapshot.get("reversal_journal_id")
                else None
            ),
            replayed=replayed,
        )
