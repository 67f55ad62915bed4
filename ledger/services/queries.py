from typing import List, Optional

from ..errors import NotFoundError
from ..models import Account, Transaction
from ..stores.base import Storage


class QueryService:
    """Read-only lookups for the request layer. Never takes locks."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def get_account(self, account_id: int) -> Account:
        account = await self.storage.accounts.get_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found", account_id=account_id)
        return account

    async def get_account_by_number(self, account_number: str) -> Account:
        account = await self.storage.accounts.get_by_number(account_number.strip())
        if account is None:
            raise NotFoundError("Account not found", account_number=account_number)
        return account

    async def get_user_accounts(self, user_id: int) -> List[Account]:
        if await self.storage.users.get_by_id(user_id) is None:
            raise NotFoundError("User not found", user_id=user_id)
        return await self.storage.accounts.list_by_user(user_id)

    async def get_transaction(self, transaction_id: int) -> Transaction:
        transaction = await self.storage.transactions.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        return transaction

    async def get_account_transactions(
        self, account_id: int, limit: Optional[int] = None
    ) -> List[Transaction]:
        await self.get_account(account_id)
        return await self.storage.transactions.list_by_account(account_id, limit)
