"""POS receipt workflow: receipts, stock issue, GL posting, void."""

from retail_services.pos.models import (
    RECEIPT_TRANSITIONS,
    ReceiptLineRequest,
    ReceiptRequest,
    ReceiptResult,
    ReceiptTotals,
    calculate_totals,
    validate_receipt_transition,
)
from retail_services.pos.orm import Receipt, ReceiptLine, ReceiptStatus
from retail_services.pos.service import PosReceiptService, generate_receipt_number

__all__ = [
    "PosReceiptService",
    "RECEIPT_TRANSITIONS",
    "Receipt",
    "ReceiptLine",
    "ReceiptLineRequest",
    "ReceiptRequest",
    "ReceiptResult",
    "ReceiptStatus",
    "ReceiptTotals",
    "calculate_totals",
    "generate_receipt_number",
    "validate_receipt_transition",
]
