from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import asyncpg

from ..database import Database
from ..errors import (
    ConflictError,
    InsufficientFundsError,
    LockTimeoutError,
    NotFoundError,
)
from ..logging_config import get_logger
from ..models import Account, AccountStatus, NewTransaction, Transaction, User
from .base import AccountStore, Storage, TransactionLog, UnitOfWork, UserStore

logger = get_logger("ledger.stores.postgres")

USER_COLUMNS = "id, name, email, created_at, updated_at"
ACCOUNT_COLUMNS = (
    "id, user_id, account_number, balance, currency, status, version, created_at, updated_at"
)
TRANSACTION_COLUMNS = (
    "id, from_account_id, to_account_id, amount, currency, type, status, description, created_at"
)


# ``executor`` below is either a Database (autocommit through the pool) or an
# asyncpg connection inside an open transaction.


class PostgresUserStore(UserStore):
    def __init__(self, executor):
        self._db = executor

    async def create(self, name: str, email: str) -> User:
        try:
            row = await self._db.fetchrow(
                f"INSERT INTO users (name, email) VALUES ($1, $2) RETURNING {USER_COLUMNS}",
                name, email,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError("Email already exists", email=email) from exc
        return User(**dict(row))

    async def get_by_id(self, user_id: int) -> Optional[User]:
        row = await self._db.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE id = $1", user_id)
        return User(**dict(row)) if row else None

    async def get_by_email(self, email: str) -> Optional[User]:
        row = await self._db.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE email = $1", email)
        return User(**dict(row)) if row else None

    async def list_all(self) -> List[User]:
        rows = await self._db.fetch(f"SELECT {USER_COLUMNS} FROM users ORDER BY id")
        return [User(**dict(row)) for row in rows]

    async def update(
        self, user_id: int, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        try:
            row = await self._db.fetchrow(
                f"""
                UPDATE users
                SET name = COALESCE($2, name), email = COALESCE($3, email), updated_at = now()
                WHERE id = $1
                RETURNING {USER_COLUMNS}
                """,
                user_id, name, email,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError("Email already exists", email=email) from exc
        return User(**dict(row)) if row else None

    async def delete(self, user_id: int) -> bool:
        try:
            result = await self._db.execute("DELETE FROM users WHERE id = $1", user_id)
        except asyncpg.ForeignKeyViolationError as exc:
            raise ConflictError("User still owns accounts", user_id=user_id) from exc
        return result != "DELETE 0"


class PostgresAccountStore(AccountStore):
    def __init__(self, executor):
        self._db = executor

    async def get_by_id(self, account_id: int) -> Optional[Account]:
        row = await self._db.fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = $1", account_id
        )
        return Account(**dict(row)) if row else None

    async def get_by_number(self, account_number: str) -> Optional[Account]:
        row = await self._db.fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE account_number = $1", account_number
        )
        return Account(**dict(row)) if row else None

    async def list_by_user(self, user_id: int) -> List[Account]:
        rows = await self._db.fetch(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE user_id = $1 ORDER BY id", user_id
        )
        return [Account(**dict(row)) for row in rows]

    async def create(
        self, user_id: int, account_number: str, balance: Decimal, currency: str
    ) -> Account:
        try:
            row = await self._db.fetchrow(
                f"""
                INSERT INTO accounts (user_id, account_number, balance, currency, status)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {ACCOUNT_COLUMNS}
                """,
                user_id, account_number, balance, currency, AccountStatus.ACTIVE.value,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(
                "Account number already exists", account_number=account_number
            ) from exc
        except asyncpg.ForeignKeyViolationError as exc:
            raise NotFoundError("User not found", user_id=user_id) from exc
        return Account(**dict(row))

    async def update_status(self, account_id: int, status: AccountStatus) -> Optional[Account]:
        row = await self._db.fetchrow(
            f"""
            UPDATE accounts SET status = $2, updated_at = now()
            WHERE id = $1
            RETURNING {ACCOUNT_COLUMNS}
            """,
            account_id, status.value,
        )
        return Account(**dict(row)) if row else None

    async def delete(self, account_id: int) -> bool:
        result = await self._db.execute(
            "DELETE FROM accounts WHERE id = $1 AND balance = 0", account_id
        )
        if result != "DELETE 0":
            return True
        balance = await self._db.fetchval("SELECT balance FROM accounts WHERE id = $1", account_id)
        if balance is None:
            return False
        raise ConflictError(
            "Account with a nonzero balance cannot be deleted",
            account_id=account_id, balance=str(balance),
        )

    async def debit(self, account_id: int, amount: Decimal) -> Decimal:
        # the balance guard and the write are one statement, so a concurrent
        # debit can never slip between the check and the update
        new_balance = await self._db.fetchval(
            """
            UPDATE accounts
            SET balance = balance - $2, version = version + 1, updated_at = now()
            WHERE id = $1 AND balance >= $2
            RETURNING balance
            """,
            account_id, amount,
        )
        if new_balance is not None:
            return new_balance

        balance = await self._db.fetchval("SELECT balance FROM accounts WHERE id = $1", account_id)
        if balance is None:
            raise NotFoundError("Account not found", account_id=account_id)
        raise InsufficientFundsError(balance, account_id)

    async def credit(self, account_id: int, amount: Decimal) -> Decimal:
        new_balance = await self._db.fetchval(
            """
            UPDATE accounts
            SET balance = balance + $2, version = version + 1, updated_at = now()
            WHERE id = $1
            RETURNING balance
            """,
            account_id, amount,
        )
        if new_balance is None:
            raise NotFoundError("Account not found", account_id=account_id)
        return new_balance


class PostgresTransactionLog(TransactionLog):
    def __init__(self, executor):
        self._db = executor

    async def append(self, record: NewTransaction) -> Transaction:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO transactions
                (from_account_id, to_account_id, amount, currency, type, status, description)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {TRANSACTION_COLUMNS}
            """,
            record.from_account_id,
            record.to_account_id,
            record.amount,
            record.currency,
            record.type.value,
            record.status.value,
            record.description,
        )
        return Transaction(**dict(row))

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        row = await self._db.fetchrow(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE id = $1", transaction_id
        )
        return Transaction(**dict(row)) if row else None

    async def list_by_account(
        self, account_id: int, limit: Optional[int] = None
    ) -> List[Transaction]:
        # LIMIT NULL means no limit
        rows = await self._db.fetch(
            f"""
            SELECT {TRANSACTION_COLUMNS} FROM transactions
            WHERE from_account_id = $1 OR to_account_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2
            """,
            account_id, limit,
        )
        return [Transaction(**dict(row)) for row in rows]


class PostgresUnitOfWork(UnitOfWork):
    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn
        self.users = PostgresUserStore(conn)
        self.accounts = PostgresAccountStore(conn)
        self.transactions = PostgresTransactionLog(conn)

    async def lock_accounts(self, account_ids: Iterable[int]) -> Dict[int, Optional[Account]]:
        # one row at a time in ascending id order; a single
        # "WHERE id = ANY(...) FOR UPDATE" does not guarantee the lock order
        locked: Dict[int, Optional[Account]] = {}
        for account_id in sorted(set(account_ids)):
            row = await self._conn.fetchrow(
                f"SELECT {ACCOUNT_COLUMNS} FROM accounts WHERE id = $1 FOR UPDATE", account_id
            )
            locked[account_id] = Account(**dict(row)) if row else None
        return locked


class PostgresStorage(Storage):
    def __init__(self, database: Database):
        self.database = database
        self.users = PostgresUserStore(database)
        self.accounts = PostgresAccountStore(database)
        self.transactions = PostgresTransactionLog(database)

    async def connect(self) -> None:
        await self.database.init_pool()
        await self.database.initialize_db()

    async def close(self) -> None:
        await self.database.close_pool()

    @asynccontextmanager
    async def unit_of_work(self, lock_timeout: Optional[float] = None):
        async with self.database.get_connection() as conn:
            async with conn.transaction():
                if lock_timeout:
                    await conn.execute(f"SET LOCAL lock_timeout = '{int(lock_timeout * 1000)}ms'")
                try:
                    yield PostgresUnitOfWork(conn)
                except asyncpg.LockNotAvailableError as exc:
                    logger.warning("Row lock not granted within %ss", lock_timeout)
                    raise LockTimeoutError("Could not lock accounts in time") from exc
