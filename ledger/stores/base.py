"""
Per-entity store interfaces and the storage handle that owns them.

A ``Storage`` exposes autocommit stores (``storage.accounts`` and friends)
and opens units of work. Writes made through a unit of work's stores land
together when the ``async with`` block exits normally and are discarded if
it raises.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import AsyncContextManager, Dict, Iterable, List, Optional

from ..models import Account, AccountStatus, NewTransaction, Transaction, User


class UserStore(ABC):
    @abstractmethod
    async def create(self, name: str, email: str) -> User:
        """Insert a user. Raises ConflictError if the email is taken."""

    @abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    async def list_all(self) -> List[User]: ...

    @abstractmethod
    async def update(
        self, user_id: int, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    @abstractmethod
    async def delete(self, user_id: int) -> bool:
        """Delete a user. Raises ConflictError while the user owns accounts."""


class AccountStore(ABC):
    @abstractmethod
    async def get_by_id(self, account_id: int) -> Optional[Account]: ...

    @abstractmethod
    async def get_by_number(self, account_number: str) -> Optional[Account]: ...

    @abstractmethod
    async def list_by_user(self, user_id: int) -> List[Account]: ...

    @abstractmethod
    async def create(
        self, user_id: int, account_number: str, balance: Decimal, currency: str
    ) -> Account:
        """Insert an account. Raises ConflictError on a duplicate number."""

    @abstractmethod
    async def update_status(self, account_id: int, status: AccountStatus) -> Optional[Account]: ...

    @abstractmethod
    async def delete(self, account_id: int) -> bool:
        """Delete an empty account. Raises ConflictError if its balance is nonzero."""

    @abstractmethod
    async def debit(self, account_id: int, amount: Decimal) -> Decimal:
        """Subtract ``amount`` and return the new balance.

        Raises NotFoundError if the account is absent and
        InsufficientFundsError if the balance would go negative. The check
        and the write are one atomic step.
        """

    @abstractmethod
    async def credit(self, account_id: int, amount: Decimal) -> Decimal:
        """Add ``amount`` and return the new balance."""


class TransactionLog(ABC):
    @abstractmethod
    async def append(self, record: NewTransaction) -> Transaction: ...

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]: ...

    @abstractmethod
    async def list_by_account(
        self, account_id: int, limit: Optional[int] = None
    ) -> List[Transaction]:
        """Transactions where the account is either side, newest first."""


class UnitOfWork(ABC):
    users: UserStore
    accounts: AccountStore
    transactions: TransactionLog

    @abstractmethod
    async def lock_accounts(self, account_ids: Iterable[int]) -> Dict[int, Optional[Account]]:
        """Lock accounts one by one in ascending id order.

        Locks are held until the unit of work ends. Returns the locked rows
        as read under the lock (None for ids that do not exist). Raises
        LockTimeoutError if a lock is not granted within the timeout.
        """


class Storage(ABC):
    users: UserStore
    accounts: AccountStore
    transactions: TransactionLog

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    def unit_of_work(self, lock_timeout: Optional[float] = None) -> AsyncContextManager[UnitOfWork]: ...
