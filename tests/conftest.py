"""Pytest configuration and fixtures."""

import asyncio
import itertools
from decimal import Decimal

import pytest

from ledger.models import AccountStatus
from ledger.services.transfer import TransferEngine
from ledger.stores.memory import MemoryAccountStore, MemoryStorage


@pytest.fixture
def storage() -> MemoryStorage:
    """Fresh in-memory storage for each test."""
    return MemoryStorage()


@pytest.fixture
def engine(storage) -> TransferEngine:
    return TransferEngine(storage, lock_timeout=5)


@pytest.fixture
def make_accounts(storage):
    """Async factory: one user owning one account per balance given."""
    numbers = itertools.count(1)

    async def _make(*balances, currency="USD", statuses=None):
        n = next(numbers)
        user = await storage.users.create(f"Owner {n}", f"owner{n}@example.com")
        accounts = []
        for i, balance in enumerate(balances):
            account = await storage.accounts.create(
                user.id, f"ACC{n:03d}{i:03d}", Decimal(balance), currency
            )
            if statuses and statuses[i] != AccountStatus.ACTIVE:
                account = await storage.accounts.update_status(account.id, statuses[i])
            accounts.append(account)
        return accounts

    return _make


@pytest.fixture
def interleaved(monkeypatch):
    """Yield to the event loop on every account read and debit.

    Concurrent transfers then genuinely interleave: they validate against
    the same snapshot and contend for the account locks.
    """

    def yielding(method):
        async def wrapper(self, *args, **kwargs):
            await asyncio.sleep(0)
            return await method(self, *args, **kwargs)

        return wrapper

    monkeypatch.setattr(MemoryAccountStore, "get_by_id", yielding(MemoryAccountStore.get_by_id))
    monkeypatch.setattr(MemoryAccountStore, "debit", yielding(MemoryAccountStore.debit))


@pytest.fixture
def read_balances(storage):
    """Async helper returning the committed balances of the given accounts."""

    async def _read(*accounts):
        return [(await storage.accounts.get_by_id(a.id)).balance for a in accounts]

    return _read
