"""
Process-local storage backend.

Rows live in plain dicts. A unit of work stages writes and deletes in
``StagedTable``s over the committed dicts and applies them on successful
exit, so a failed unit leaves nothing behind. Each account has an
``asyncio.Lock``; a unit of work holds the locks it took until it ends.
"""

import asyncio
import itertools
from collections import defaultdict
from collections.abc import MutableMapping
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Collection, Dict, Iterable, List, Optional

from ..errors import (
    ConflictError,
    InsufficientFundsError,
    LockTimeoutError,
    NotFoundError,
)
from ..logging_config import get_logger
from ..models import Account, AccountStatus, NewTransaction, Transaction, User
from .base import AccountStore, Storage, TransactionLog, UnitOfWork, UserStore

logger = get_logger("ledger.stores.memory")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryState:
    """Committed rows, id sequences and per-account locks."""

    def __init__(self):
        self.users: Dict[int, User] = {}
        self.accounts: Dict[int, Account] = {}
        self.transactions: Dict[int, Transaction] = {}
        self.sequences = defaultdict(lambda: itertools.count(1))
        self.account_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def next_id(self, table: str) -> int:
        return next(self.sequences[table])


class MemoryUserStore(UserStore):
    def __init__(self, state: MemoryState, users: MutableMapping[int, User], accounts):
        self._state = state
        self._users = users
        self._accounts = accounts

    def _email_taken(self, email: str, exclude: Optional[int] = None) -> bool:
        return any(u.email == email and u.id != exclude for u in self._users.values())

    async def create(self, name: str, email: str) -> User:
        if self._email_taken(email):
            raise ConflictError("Email already exists", email=email)
        now = _now()
        user = User(id=self._state.next_id("users"), name=name, email=email,
                    created_at=now, updated_at=now)
        self._users[user.id] = user
        return user

    async def get_by_id(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.email == email), None)

    async def list_all(self) -> List[User]:
        return sorted(self._users.values(), key=lambda u: u.id)

    async def update(
        self, user_id: int, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        user = self._users.get(user_id)
        if user is None:
            return None
        if email is not None and self._email_taken(email, exclude=user_id):
            raise ConflictError("Email already exists", email=email)
        changes = {"updated_at": _now()}
        if name is not None:
            changes["name"] = name
        if email is not None:
            changes["email"] = email
        updated = user.model_copy(update=changes)
        self._users[user_id] = updated
        return updated

    async def delete(self, user_id: int) -> bool:
        if user_id not in self._users:
            return False
        if any(a.user_id == user_id for a in self._accounts.values()):
            raise ConflictError("User still owns accounts", user_id=user_id)
        del self._users[user_id]
        return True


class MemoryAccountStore(AccountStore):
    def __init__(
        self,
        state: MemoryState,
        accounts: MutableMapping[int, Account],
        users: MutableMapping[int, User],
        held: Collection[int] = (),
    ):
        self._state = state
        self._accounts = accounts
        self._users = users
        self._held = held

    def _exclusive(self, account_id: int):
        # inside a unit of work the account may already be locked by us
        if account_id in self._held:
            return nullcontext()
        return self._state.account_locks[account_id]

    async def get_by_id(self, account_id: int) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def get_by_number(self, account_number: str) -> Optional[Account]:
        return next(
            (a for a in self._accounts.values() if a.account_number == account_number), None
        )

    async def list_by_user(self, user_id: int) -> List[Account]:
        return sorted(
            (a for a in self._accounts.values() if a.user_id == user_id), key=lambda a: a.id
        )

    async def create(
        self, user_id: int, account_number: str, balance: Decimal, currency: str
    ) -> Account:
        if user_id not in self._users:
            raise NotFoundError("User not found", user_id=user_id)
        if await self.get_by_number(account_number) is not None:
            raise ConflictError("Account number already exists", account_number=account_number)
        now = _now()
        account = Account(
            id=self._state.next_id("accounts"),
            user_id=user_id,
            account_number=account_number,
            balance=balance,
            currency=currency,
            status=AccountStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self._accounts[account.id] = account
        return account

    async def update_status(self, account_id: int, status: AccountStatus) -> Optional[Account]:
        async with self._exclusive(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                return None
            updated = account.model_copy(update={"status": status, "updated_at": _now()})
            self._accounts[account_id] = updated
            return updated

    async def delete(self, account_id: int) -> bool:
        async with self._exclusive(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                return False
            if account.balance != 0:
                raise ConflictError(
                    "Account with a nonzero balance cannot be deleted",
                    account_id=account_id, balance=str(account.balance),
                )
            del self._accounts[account_id]
            return True

    async def _adjust(self, account_id: int, delta: Decimal) -> Decimal:
        async with self._exclusive(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                raise NotFoundError("Account not found", account_id=account_id)
            new_balance = account.balance + delta
            if new_balance < 0:
                raise InsufficientFundsError(account.balance, account_id)
            self._accounts[account_id] = account.model_copy(
                update={
                    "balance": new_balance,
                    "version": account.version + 1,
                    "updated_at": _now(),
                }
            )
            return new_balance

    async def debit(self, account_id: int, amount: Decimal) -> Decimal:
        return await self._adjust(account_id, -amount)

    async def credit(self, account_id: int, amount: Decimal) -> Decimal:
        return await self._adjust(account_id, amount)


class MemoryTransactionLog(TransactionLog):
    def __init__(self, state: MemoryState, transactions: MutableMapping[int, Transaction]):
        self._state = state
        self._transactions = transactions

    async def append(self, record: NewTransaction) -> Transaction:
        transaction = Transaction(
            id=self._state.next_id("transactions"),
            created_at=_now(),
            **record.model_dump(),
        )
        self._transactions[transaction.id] = transaction
        return transaction

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return self._transactions.get(transaction_id)

    async def list_by_account(
        self, account_id: int, limit: Optional[int] = None
    ) -> List[Transaction]:
        matches = sorted(
            (
                t for t in self._transactions.values()
                if account_id in (t.from_account_id, t.to_account_id)
            ),
            key=lambda t: (t.created_at, t.id),
            reverse=True,
        )
        return matches if limit is None else matches[:limit]


class StagedTable(MutableMapping):
    """Writes and deletes staged over a committed table until ``commit``."""

    def __init__(self, committed: Dict[int, Any]):
        self._committed = committed
        self._written: Dict[int, Any] = {}
        self._deleted = set()

    def __getitem__(self, key):
        if key in self._written:
            return self._written[key]
        if key in self._deleted:
            raise KeyError(key)
        return self._committed[key]

    def __setitem__(self, key, value):
        self._written[key] = value
        self._deleted.discard(key)

    def __delitem__(self, key):
        if key not in self:
            raise KeyError(key)
        self._written.pop(key, None)
        if key in self._committed:
            self._deleted.add(key)

    def __iter__(self):
        yield from self._written
        for key in self._committed:
            if key not in self._written and key not in self._deleted:
                yield key

    def __len__(self):
        return sum(1 for _ in self)

    def commit(self) -> None:
        for key in self._deleted:
            self._committed.pop(key, None)
        self._committed.update(self._written)


def _release_if_granted(lock: asyncio.Lock):
    def callback(acquiring: asyncio.Future):
        if not acquiring.cancelled() and acquiring.exception() is None:
            lock.release()

    return callback


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, state: MemoryState, lock_timeout: Optional[float] = None):
        self._state = state
        self._lock_timeout = lock_timeout
        self._held_locks: List[asyncio.Lock] = []
        self._held_ids = set()

        self._tables = [
            StagedTable(state.users),
            StagedTable(state.accounts),
            StagedTable(state.transactions),
        ]
        users, accounts, transactions = self._tables

        self.users = MemoryUserStore(state, users, accounts)
        self.accounts = MemoryAccountStore(state, accounts, users, held=self._held_ids)
        self.transactions = MemoryTransactionLog(state, transactions)
        self._accounts_view = accounts

    async def lock_accounts(self, account_ids: Iterable[int]) -> Dict[int, Optional[Account]]:
        for account_id in sorted(set(account_ids)):
            if account_id in self._held_ids:
                continue
            lock = self._state.account_locks[account_id]
            await self._acquire(lock, account_id)
            self._held_locks.append(lock)
            self._held_ids.add(account_id)
        return {i: self._accounts_view.get(i) for i in sorted(set(account_ids))}

    async def _acquire(self, lock: asyncio.Lock, account_id: int) -> None:
        acquiring = asyncio.ensure_future(lock.acquire())
        try:
            await asyncio.wait({acquiring}, timeout=self._lock_timeout)
        except BaseException:
            self._abandon(acquiring, lock)
            raise
        if acquiring.done():
            acquiring.result()
            return

        self._abandon(acquiring, lock)
        logger.warning("Lock on account %s not granted within %ss",
                       account_id, self._lock_timeout)
        raise LockTimeoutError("Could not lock accounts in time", account_id=account_id)

    @staticmethod
    def _abandon(acquiring: asyncio.Future, lock: asyncio.Lock) -> None:
        # the grant can land in the same step as the cancel; give it back then
        acquiring.cancel()
        acquiring.add_done_callback(_release_if_granted(lock))

    def commit(self) -> None:
        for table in self._tables:
            table.commit()

    def release(self) -> None:
        while self._held_locks:
            self._held_locks.pop().release()
        self._held_ids.clear()


class MemoryStorage(Storage):
    def __init__(self, state: Optional[MemoryState] = None):
        self.state = state or MemoryState()
        self.users = MemoryUserStore(self.state, self.state.users, self.state.accounts)
        self.accounts = MemoryAccountStore(self.state, self.state.accounts, self.state.users)
        self.transactions = MemoryTransactionLog(self.state, self.state.transactions)

    @asynccontextmanager
    async def unit_of_work(self, lock_timeout: Optional[float] = None):
        uow = MemoryUnitOfWork(self.state, lock_timeout)
        try:
            yield uow
            # pending writes are simply dropped if the block raised
            uow.commit()
        finally:
            uow.release()
