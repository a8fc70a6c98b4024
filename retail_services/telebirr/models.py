"""
Telebirr Domain Models (``retail_services.telebirr.models``).

Frozen request / result value objects and the payload validation rules
for the Telebirr workflow.  No I/O.

Validation rules
----------------
- amount > 0 and an idempotency key, always.
- ISSUE / LOAN: agent short code and remarks.
- TOPUP / REPAY: bank external number.
- REPAY: agent short code as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from retail_kernel.exceptions import ValidationError
from retail_services.telebirr.orm import TelebirrTxStatus, TelebirrTxType

AGENT_REQUIRED = frozenset({TelebirrTxType.ISSUE, TelebirrTxType.LOAN, TelebirrTxType.REPAY})
REMARKS_REQUIRED = frozenset({TelebirrTxType.ISSUE, TelebirrTxType.LOAN})
BANK_REQUIRED = frozenset({TelebirrTxType.TOPUP, TelebirrTxType.REPAY})

# (debit line memo, credit line memo)
LINE_MEMOS: dict[TelebirrTxType, tuple[str, str]] = {
    TelebirrTxType.TOPUP: ("Topup from bank", "Topup to distributor"),
    TelebirrTxType.ISSUE: ("Issue to agent: {short_code}", "Issue from distributor"),
    TelebirrTxType.REPAY: ("Repayment from agent: {short_code}", "Repayment to bank"),
    TelebirrTxType.LOAN: ("Loan to agent: {short_code}", "Loan from distributor"),
}


@dataclass(frozen=True)
class TelebirrRequest:
    idempotency_key: str
    amount: Decimal
    agent_short_code: str | None = None
    bank_external_number: str | None = None
    remarks: str | None = None
    external_ref: str | None = None
    currency: str | None = None

    def as_payload(self, tx_type: TelebirrTxType) -> dict[str, Any]:
        return {
            "tx_type": tx_type.value,
            "amount": self.amount,
            "agent_short_code": self.agent_short_code,
            "bank_external_number": self.bank_external_number,
            "remarks": self.remarks,
            "external_ref": self.external_ref,
            "currency": self.currency,
        }


def _present(value: str | None) -> bool:
    return value is not None and str(value).strip() != ""


def validate_request(tx_type: TelebirrTxType, request: TelebirrRequest) -> Decimal:
    """
    Check the payload shape; return the amount as Decimal.

    Raises:
        ValidationError: first rule violated.
    """
    try:
        amount = Decimal(str(request.amount)) if request.amount is not None else None
    except (InvalidOperation, ValueError):
        amount = None
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be positive", field="amount")

    if not _present(request.idempotency_key):
        raise ValidationError("Idempotency key is required", field="idempotency_key")

    if tx_type in AGENT_REQUIRED and not _present(request.agent_short_code):
        raise ValidationError(
            f"Agent short code is required for {tx_type.value}", field="agent_short_code"
        )
    if tx_type in REMARKS_REQUIRED and not _present(request.remarks):
        raise ValidationError(f"Remarks are required for {tx_type.value}", field="remarks")
    if tx_type in BANK_REQUIRED and not _present(request.bank_external_number):
        raise ValidationError(
            f"Bank external number is required for {tx_type.value}",
            field="bank_external_number",
        )
    return amount


def journal_memo(tx_type: TelebirrTxType, request: TelebirrRequest) -> str:
    memo = f"Telebirr {tx_type.value}"
    if request.agent_short_code:
        memo += f" - Agent: {request.agent_short_code}"
    if request.external_ref:
        memo += f" - Ref: {request.external_ref}"
    return memo


@dataclass(frozen=True)
class TelebirrResult:
    transaction_id: UUID
    tx_type: TelebirrTxType
    status: TelebirrTxStatus
    amount: Decimal
    currency: str
    gl_journal_id: UUID
    idempotency_key: str
    agent_short_code: str | None = None
    bank_external_number: str | None = None
    reversal_journal_id: UUID | None = None
    replayed: bool = False

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.transaction_id),
            "tx_type": self.tx_type.value,
            "status": self.status.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "gl_journal_id": str(self.gl_journal_id),
            "idempotency_key": self.idempotency_key,
            "agent_short_code": self.agent_short_code,
            "bank_external_number": self.bank_external_number,
            "reversal_journal_id": (
                str(self.reversal_journal_id) if self.reversal_journal_id else None
            ),
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any], replayed: bool = False) -> "TelebirrResult":
        return cls(
            transaction_id=UUID(snapshot["id"]),
            tx_type=TelebirrTxType(snapshot["tx_type"]),
            status=TelebirrTxStatus(snapshot["status"]),
            amount=Decimal(snapshot["amount"]),
            currency=snapshot["currency"],
            gl_journal_id=UUID(snapshot["gl_journal_id"]),
            idempotency_key=snapshot["idempotency_key"],
            agent_short_code=snapshot.get("agent_short_code"),
            bank_external_number=snapshot.get("bank_external_number"),
            reversal_journal_id=(
                UUID(snapshot["reversal_journal_id"])
                if snapshot.get("reversal_journal_id")
                else None
            ),
            replayed=replayed,
        )
