from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

CENT = Decimal("0.01")
# largest value a NUMERIC(18, 2) column holds
MAX_AMOUNT = Decimal("9999999999999999.99")


def within_cents(value: Decimal) -> bool:
    """True when ``value`` has no nonzero digit past the second decimal place.

    Works on the digit tuple, so it holds for magnitudes ``quantize`` rejects.
    """
    _, digits, exponent = value.as_tuple()
    if exponent >= -2:
        return True
    return not any(digits[exponent + 2:])


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    FROZEN = "frozen"


class TransactionType(str, Enum):
    TRANSFER = "transfer"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


############################ records ############################

class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    account_number: str
    balance: Decimal
    currency: str
    status: AccountStatus
    version: int = 0  # bumped on every balance mutation
    created_at: datetime
    updated_at: datetime


class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    from_account_id: int
    to_account_id: int
    amount: Decimal
    currency: str
    type: TransactionType
    status: TransactionStatus
    description: str = ""
    created_at: datetime


class NewTransaction(BaseModel):
    """A transaction record before the log assigns its id."""

    from_account_id: int
    to_account_id: int
    amount: Decimal
    currency: str
    type: TransactionType = TransactionType.TRANSFER
    status: TransactionStatus = TransactionStatus.COMPLETED
    description: str = ""


############################ requests ############################

class UserCreate(BaseModel):
    name: str
    email: str


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class AccountCreate(BaseModel):
    user_id: int
    account_number: str
    balance: Decimal
    currency: str = "USD"


class AccountUpdate(BaseModel):
    status: AccountStatus


class TransferRequest(BaseModel):
    from_account_id: int
    to_account_id: int
    amount: Decimal
    description: str = ""


############################ responses ############################

class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
