"""Telebirr agent settlement: TOPUP, ISSUE, REPAY, LOAN and void."""

from retail_services.telebirr.models import TelebirrRequest, TelebirrResult, validate_request
from retail_services.telebirr.orm import (
    AgentStatus,
    BankAccount,
    TelebirrAgent,
    TelebirrTransaction,
    TelebirrTxStatus,
    TelebirrTxType,
)
from retail_services.telebirr.service import TelebirrService

__all__ = [
    "AgentStatus",
    "BankAccount",
    "TelebirrAgent",
    "TelebirrRequest",
    "TelebirrResult",
    "TelebirrService",
    "TelebirrTransaction",
    "TelebirrTxStatus",
    "TelebirrTxType",
    "validate_request",
]
