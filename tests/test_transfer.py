"""Tests for TransferEngine against the in-memory storage."""

import asyncio
from decimal import Decimal

import pytest

from ledger.errors import (
    ErrorKind,
    InactiveAccountError,
    InsufficientFundsError,
    InternalError,
    InvalidInputError,
    LockTimeoutError,
    NotFoundError,
)
from ledger.models import AccountStatus, TransactionStatus, TransactionType
from ledger.services.transfer import TransferEngine, parse_amount
from ledger.stores.memory import MemoryAccountStore, MemoryTransactionLog


class TestScenarios:
    def test_successful_transfer(self, storage, engine, make_accounts, read_balances):
        async def scenario():
            a, b = await make_accounts("100", "10")
            txn = await engine.transfer(a.id, b.id, Decimal("40"), "rent")

            assert await read_balances(a, b) == [Decimal("60.00"), Decimal("50.00")]
            assert txn.status == TransactionStatus.COMPLETED
            assert txn.type == TransactionType.TRANSFER
            assert txn.amount == Decimal("40.00")
            assert txn.from_account_id == a.id
            assert txn.to_account_id == b.id
            assert txn.description == "rent"
            assert txn.currency == "USD"

        asyncio.run(scenario())

    def test_insufficient_funds(self, storage, engine, make_accounts, read_balances):
        async def scenario():
            a, b = await make_accounts("100", "10")
            with pytest.raises(InsufficientFundsError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("150"))

            assert excinfo.value.kind == ErrorKind.INSUFFICIENT_FUNDS
            assert excinfo.value.balance == Decimal("100")
            assert "Current balance: 100" in excinfo.value.message
            assert excinfo.value.details["state"] == "rejected"
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]
            assert await storage.transactions.list_by_account(a.id) == []

        asyncio.run(scenario())

    def test_negative_amount(self, storage, engine, make_accounts, read_balances):
        async def scenario():
            a, b = await make_accounts("100", "10")
            with pytest.raises(InvalidInputError):
                await engine.transfer(a.id, b.id, Decimal("-5"))
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]

        asyncio.run(scenario())

    def test_unknown_account(self, engine, make_accounts):
        async def scenario():
            (a,) = await make_accounts("100")
            with pytest.raises(NotFoundError) as source_missing:
                await engine.transfer(999, a.id, Decimal("1"))
            with pytest.raises(NotFoundError) as destination_missing:
                await engine.transfer(a.id, 999, Decimal("1"))

            assert source_missing.value.details["side"] == "source"
            assert destination_missing.value.details["side"] == "destination"

        asyncio.run(scenario())

    def test_two_concurrent_transfers_draining_one_source(
        self, storage, engine, make_accounts, read_balances
    ):
        async def scenario():
            a, b, c = await make_accounts("100", "0", "0")
            results = await asyncio.gather(
                engine.transfer(a.id, b.id, Decimal("60")),
                engine.transfer(a.id, c.id, Decimal("60")),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, Exception)]

            assert len(failures) == 1
            assert isinstance(failures[0], InsufficientFundsError)
            assert (await read_balances(a))[0] == Decimal("40.00")
            assert len(await storage.transactions.list_by_account(a.id)) == 1

        asyncio.run(scenario())

    def test_frozen_destination(self, storage, engine, make_accounts, read_balances):
        async def scenario():
            a, b = await make_accounts(
                "100", "10", statuses=[AccountStatus.ACTIVE, AccountStatus.FROZEN]
            )
            with pytest.raises(InactiveAccountError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("10"))

            assert excinfo.value.side == "destination"
            assert excinfo.value.details["status"] == "frozen"
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]

        asyncio.run(scenario())


class TestValidation:
    def test_inactive_source(self, engine, make_accounts):
        async def scenario():
            a, b = await make_accounts(
                "100", "10", statuses=[AccountStatus.INACTIVE, AccountStatus.ACTIVE]
            )
            with pytest.raises(InactiveAccountError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("10"))
            assert excinfo.value.side == "source"

        asyncio.run(scenario())

    def test_same_account(self, engine, make_accounts):
        async def scenario():
            (a,) = await make_accounts("100")
            with pytest.raises(InvalidInputError):
                await engine.transfer(a.id, a.id, Decimal("10"))

        asyncio.run(scenario())

    def test_currency_mismatch(self, engine, make_accounts):
        async def scenario():
            (usd,) = await make_accounts("100")
            (eur,) = await make_accounts("100", currency="EUR")
            with pytest.raises(InvalidInputError, match="Currency mismatch"):
                await engine.transfer(usd.id, eur.id, Decimal("10"))

        asyncio.run(scenario())

    def test_not_found_is_reported_before_bad_amount(self, engine):
        with pytest.raises(NotFoundError):
            asyncio.run(engine.transfer(1, 2, Decimal("-5")))

    @pytest.mark.parametrize(
        "amount",
        [0, "0.00", "-0.01", "abc", "NaN", "Infinity", "1.005", "-1E+30",
         "123456789012345678901234567890.001"],
    )
    def test_parse_amount_rejects(self, amount):
        with pytest.raises(InvalidInputError):
            parse_amount(amount)

    def test_parse_amount_keeps_huge_values_exact(self):
        assert parse_amount("1E+30") == Decimal("1E+30")
        assert parse_amount("1.500") == Decimal("1.50")

    def test_amount_beyond_any_balance_is_insufficient_funds(
        self, storage, engine, make_accounts, read_balances
    ):
        async def scenario():
            a, b = await make_accounts("100", "10")
            with pytest.raises(InsufficientFundsError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("1E+30"))

            assert excinfo.value.balance == Decimal("100")
            assert excinfo.value.details["state"] == "rejected"
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]

        asyncio.run(scenario())

    def test_parse_amount_rejects_float(self):
        with pytest.raises(InvalidInputError, match="not float"):
            parse_amount(0.1)

    @pytest.mark.parametrize(
        "amount,expected",
        [(5, Decimal("5.00")), ("0.1", Decimal("0.10")), (Decimal("12.50"), Decimal("12.50"))],
    )
    def test_parse_amount_accepts(self, amount, expected):
        value = parse_amount(amount)
        assert value == expected
        assert value.as_tuple().exponent == -2


class TestAtomicity:
    def test_storage_failure_while_loading_is_internal(
        self, storage, engine, make_accounts, read_balances, monkeypatch
    ):
        async def unreachable(self, account_id):
            raise ConnectionError("db down")

        async def scenario():
            a, b = await make_accounts("100", "10")
            monkeypatch.setattr(MemoryAccountStore, "get_by_id", unreachable)

            with pytest.raises(InternalError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("40"))

            assert excinfo.value.kind == ErrorKind.INTERNAL
            assert excinfo.value.details["state"] == "rejected"
            assert isinstance(excinfo.value.__cause__, ConnectionError)
            monkeypatch.undo()
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]

        asyncio.run(scenario())

    def test_log_failure_rolls_back_balances(
        self, storage, engine, make_accounts, read_balances, monkeypatch
    ):
        async def broken_append(self, record):
            raise RuntimeError("disk full")

        async def scenario():
            a, b = await make_accounts("100", "10")
            monkeypatch.setattr(MemoryTransactionLog, "append", broken_append)

            with pytest.raises(InternalError) as excinfo:
                await engine.transfer(a.id, b.id, Decimal("40"))

            assert excinfo.value.details["state"] == "aborted"
            assert isinstance(excinfo.value.__cause__, RuntimeError)
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]
            assert storage.state.transactions == {}

        asyncio.run(scenario())

    def test_credit_failure_rolls_back_debit(
        self, storage, engine, make_accounts, read_balances, monkeypatch
    ):
        async def broken_credit(self, account_id, amount):
            raise ConnectionError("connection reset")

        async def scenario():
            a, b = await make_accounts("100", "10")
            monkeypatch.setattr(MemoryAccountStore, "credit", broken_credit)

            with pytest.raises(InternalError):
                await engine.transfer(a.id, b.id, Decimal("40"))

            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]
            assert (await storage.accounts.get_by_id(a.id)).version == 0

        asyncio.run(scenario())

    def test_aborted_transfer_can_be_retried(
        self, storage, engine, make_accounts, read_balances, monkeypatch
    ):
        calls = []
        original_append = MemoryTransactionLog.append

        async def flaky_append(self, record):
            calls.append(record)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return await original_append(self, record)

        async def scenario():
            a, b = await make_accounts("100", "10")
            monkeypatch.setattr(MemoryTransactionLog, "append", flaky_append)

            with pytest.raises(InternalError):
                await engine.transfer(a.id, b.id, Decimal("40"))
            txn = await engine.transfer(a.id, b.id, Decimal("40"))

            assert await read_balances(a, b) == [Decimal("60.00"), Decimal("50.00")]
            assert [t.id for t in await storage.transactions.list_by_account(a.id)] == [txn.id]

        asyncio.run(scenario())

    def test_lock_timeout_aborts_without_writes(self, storage, make_accounts, read_balances):
        async def scenario():
            a, b = await make_accounts("100", "10")
            engine = TransferEngine(storage, lock_timeout=0.05)

            lock = storage.state.account_locks[b.id]
            await lock.acquire()
            try:
                with pytest.raises(LockTimeoutError) as excinfo:
                    await engine.transfer(a.id, b.id, Decimal("40"))
            finally:
                lock.release()

            assert excinfo.value.kind == ErrorKind.INTERNAL
            assert excinfo.value.details["state"] == "aborted"
            assert await read_balances(a, b) == [Decimal("100"), Decimal("10")]
            # the lock on ``a`` taken before timing out was released
            assert not storage.state.account_locks[a.id].locked()

        asyncio.run(scenario())


class TestConcurrency:
    def test_balance_rechecked_under_lock(
        self, storage, engine, make_accounts, read_balances, interleaved
    ):
        async def scenario():
            a, b, c = await make_accounts("100", "0", "0")
            results = await asyncio.gather(
                engine.transfer(a.id, b.id, Decimal("60")),
                engine.transfer(a.id, c.id, Decimal("60")),
                return_exceptions=True,
            )
            failures = [r for r in results if isinstance(r, Exception)]

            assert len(failures) == 1
            assert isinstance(failures[0], InsufficientFundsError)
            # both passed validation; the loser was stopped by the re-check
            assert failures[0].details["state"] == "aborted"
            assert await read_balances(a, b, c) in (
                [Decimal("40.00"), Decimal("60.00"), Decimal("0")],
                [Decimal("40.00"), Decimal("0"), Decimal("60.00")],
            )

        asyncio.run(scenario())

    def test_many_transfers_never_overdraw(
        self, storage, engine, make_accounts, read_balances, interleaved
    ):
        async def scenario():
            source, *targets = await make_accounts("100", *["0"] * 10)
            results = await asyncio.gather(
                *(engine.transfer(source.id, t.id, Decimal("30")) for t in targets),
                return_exceptions=True,
            )
            succeeded = [r for r in results if not isinstance(r, Exception)]
            failed = [r for r in results if isinstance(r, Exception)]

            assert len(succeeded) == 3
            assert all(isinstance(f, InsufficientFundsError) for f in failed)
            assert (await read_balances(source))[0] == Decimal("10.00")
            assert sum(await read_balances(*targets)) == Decimal("90.00")

        asyncio.run(scenario())

    def test_opposite_directions_do_not_deadlock(
        self, storage, engine, make_accounts, read_balances, interleaved
    ):
        async def scenario():
            a, b = await make_accounts("500", "500")
            transfers = []
            for i in range(20):
                if i % 2:
                    transfers.append(engine.transfer(a.id, b.id, Decimal("7")))
                else:
                    transfers.append(engine.transfer(b.id, a.id, Decimal("3")))
            await asyncio.wait_for(asyncio.gather(*transfers), timeout=5)

            # 10 x 7 from a to b, 10 x 3 from b to a
            assert await read_balances(a, b) == [Decimal("460.00"), Decimal("540.00")]

        asyncio.run(scenario())

    def test_conservation_across_random_transfers(
        self, storage, engine, make_accounts, read_balances, interleaved
    ):
        async def scenario():
            accounts = await make_accounts("100", "250", "75.50", "0", "30")
            total = sum(a.balance for a in accounts)
            transfers = []
            for i in range(40):
                source = accounts[i % len(accounts)]
                destination = accounts[(i * 3 + 1) % len(accounts)]
                if source.id == destination.id:
                    continue
                transfers.append(
                    engine.transfer(source.id, destination.id, Decimal("12.25"))
                )
            results = await asyncio.gather(*transfers, return_exceptions=True)

            assert all(
                not isinstance(r, Exception) or isinstance(r, InsufficientFundsError)
                for r in results
            )
            final = await read_balances(*accounts)
            assert sum(final) == total
            assert all(balance >= 0 for balance in final)

            committed = len([r for r in results if not isinstance(r, Exception)])
            logged = {
                t.id
                for a in accounts
                for t in await storage.transactions.list_by_account(a.id)
            }
            assert len(logged) == committed

        asyncio.run(scenario())

    def test_disjoint_pairs_proceed_in_parallel(self, storage, engine, make_accounts):
        async def scenario():
            a, b, c, d = await make_accounts("100", "0", "100", "0")
            # hold a's lock: a transfer between c and d must still go through
            lock = storage.state.account_locks[a.id]
            await lock.acquire()
            try:
                txn = await asyncio.wait_for(engine.transfer(c.id, d.id, Decimal("5")), 1)
            finally:
                lock.release()
            assert txn.amount == Decimal("5.00")

        asyncio.run(scenario())


class TestReads:
    def test_completed_transaction_reads_back_identically(self, storage, engine, make_accounts):
        async def scenario():
            a, b = await make_accounts("100", "10")
            txn = await engine.transfer(a.id, b.id, Decimal("1.50"))
            first = await storage.transactions.get_by_id(txn.id)
            await engine.transfer(b.id, a.id, Decimal("0.50"))
            second = await storage.transactions.get_by_id(txn.id)

            assert first == second == txn

        asyncio.run(scenario())

    def test_version_bumped_per_mutation(self, storage, engine, make_accounts):
        async def scenario():
            a, b = await make_accounts("100", "10")
            await engine.transfer(a.id, b.id, Decimal("1"))
            await engine.transfer(a.id, b.id, Decimal("1"))

            assert (await storage.accounts.get_by_id(a.id)).version == 2
            assert (await storage.accounts.get_by_id(b.id)).version == 2

        asyncio.run(scenario())
