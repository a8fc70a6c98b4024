"""Selectors for the retail kernel (read side)."""

from retail_kernel.selectors.inventory_selector import (
    InventorySelector,
    MovementDTO,
    ReplayedQuantities,
)
from retail_kernel.selectors.ledger_selector import AccountBalance, LedgerSelector

__all__ = [
    "AccountBalance",
    "InventorySelector",
    "LedgerSelector",
    "MovementDTO",
    "ReplayedQuantities",
]
