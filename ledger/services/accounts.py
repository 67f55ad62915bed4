from decimal import Decimal

from ..errors import InvalidInputError, NotFoundError
from ..logging_config import get_logger
from ..models import CENT, MAX_AMOUNT, Account, AccountStatus, within_cents
from ..stores.base import Storage

logger = get_logger("ledger.services.accounts")


class AccountService:
    """Account creation and maintenance.

    Balances are set once at creation; afterwards only transfers move them.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    async def create_account(
        self, user_id: int, account_number: str, balance: Decimal, currency: str = "USD"
    ) -> Account:
        if await self.storage.users.get_by_id(user_id) is None:
            raise NotFoundError("User not found", user_id=user_id)

        account_number = (account_number or "").strip()
        if not account_number:
            raise InvalidInputError("Account number is required")

        if balance is None or not balance.is_finite() or balance < 0:
            raise InvalidInputError("Balance cannot be negative", balance=str(balance))
        if balance > MAX_AMOUNT:
            raise InvalidInputError("Balance is too large", balance=str(balance))
        if not within_cents(balance):
            raise InvalidInputError("Balance cannot have more than 2 decimal places")

        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidInputError("Currency must be a 3-letter code", currency=currency)

        account = await self.storage.accounts.create(
            user_id, account_number, balance.quantize(CENT), currency
        )
        logger.info("Created account id=%s number=%s for user=%s", account.id,
                    account.account_number, user_id)
        return account

    async def update_account(self, account_id: int, status: AccountStatus) -> Account:
        account = await self.storage.accounts.update_status(account_id, status)
        if account is None:
            raise NotFoundError("Account not found", account_id=account_id)
        logger.info("Account id=%s status -> %s", account_id, status.value)
        return account

    async def delete_account(self, account_id: int) -> bool:
        """Delete an empty account; False when it does not exist."""
        deleted = await self.storage.accounts.delete(account_id)
        if deleted:
            logger.info("Deleted account id=%s", account_id)
        return deleted
