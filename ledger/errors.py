from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INACTIVE_ACCOUNT = "inactive_account"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class LedgerError(Exception):
    """Base error; ``kind`` is what the HTTP layer maps to a status code."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND


class InvalidInputError(LedgerError):
    kind = ErrorKind.INVALID_INPUT


class InsufficientFundsError(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, balance: Decimal, account_id: Optional[int] = None):
        super().__init__(
            f"Insufficient funds. Current balance: {balance}",
            balance=str(balance),
            account_id=account_id,
        )
        self.balance = balance


class InactiveAccountError(LedgerError):
    kind = ErrorKind.INACTIVE_ACCOUNT

    def __init__(self, side: str, account_id: int, status: str):
        super().__init__(
            f"{side.capitalize()} account is not active",
            side=side,
            account_id=account_id,
            status=status,
        )
        self.side = side


class ConflictError(LedgerError):
    kind = ErrorKind.CONFLICT


class InternalError(LedgerError):
    kind = ErrorKind.INTERNAL


class LockTimeoutError(InternalError):
    """Account locks could not be acquired in time; nothing was written."""
