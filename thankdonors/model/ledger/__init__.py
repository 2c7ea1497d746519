# model/ledger/__init__.py
from ._postgres import (
    AUTO_TOPUP_AMOUNT, AUTO_TOPUP_THRESHOLD, INITIAL_CREDIT,
    TX_TOPUP, TX_USAGE,
    apply_transaction, credit, deduct, get_balance, list_transactions,
)

__all__ = [
    "AUTO_TOPUP_AMOUNT", "AUTO_TOPUP_THRESHOLD", "INITIAL_CREDIT",
    "TX_TOPUP", "TX_USAGE",
    "apply_transaction", "credit", "deduct", "get_balance",
    "list_transactions",
]
