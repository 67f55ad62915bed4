"""
Fund transfers between two accounts.

A transfer moves through ``validating -> locking -> applying -> committed``.
Validation failures end in ``rejected`` before anything is touched; failures
after validation end in ``aborted`` and the unit of work discards every write
made so far. On success exactly one ``completed`` transaction exists and both
balances have moved; on failure neither has happened.
"""

import time
from contextlib import nullcontext
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Tuple, Union

from ..errors import (
    InactiveAccountError,
    InsufficientFundsError,
    InternalError,
    InvalidInputError,
    LedgerError,
    NotFoundError,
)
from ..logging_config import get_logger
from ..models import (
    CENT,
    MAX_AMOUNT,
    Account,
    AccountStatus,
    NewTransaction,
    Transaction,
    TransactionType,
    within_cents,
)
from ..stores.base import Storage

logger = get_logger("ledger.services.transfer")

AmountLike = Union[Decimal, int, str]


class TransferState(str, Enum):
    VALIDATING = "validating"
    LOCKING = "locking"
    APPLYING = "applying"
    COMMITTED = "committed"
    REJECTED = "rejected"
    ABORTED = "aborted"


def parse_amount(amount: AmountLike) -> Decimal:
    """Return ``amount`` as a positive Decimal with cent precision."""
    if isinstance(amount, (float, bool)):
        raise InvalidInputError("Amount must be a decimal value, not " + type(amount).__name__)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise InvalidInputError("Amount must be a decimal number", amount=str(amount)) from exc

    if not value.is_finite():
        raise InvalidInputError("Amount must be a finite number", amount=str(amount))
    if value <= 0:
        raise InvalidInputError("Amount must be greater than zero", amount=str(value))
    if not within_cents(value):
        raise InvalidInputError("Amount cannot have more than 2 decimal places", amount=str(value))
    if value > MAX_AMOUNT:
        # exceeds any balance, so the funds check turns it away
        return value
    return value.quantize(CENT)


def _require_accounts(
    source: Optional[Account], destination: Optional[Account], from_id: int, to_id: int
) -> Tuple[Account, Account]:
    if source is None:
        raise NotFoundError("Source account not found", side="source", account_id=from_id)
    if destination is None:
        raise NotFoundError(
            "Destination account not found", side="destination", account_id=to_id
        )
    return source, destination


def _check_funds_and_status(source: Account, destination: Account, amount: Decimal):
    if source.balance < amount:
        raise InsufficientFundsError(source.balance, source.id)
    if source.status != AccountStatus.ACTIVE:
        raise InactiveAccountError("source", source.id, source.status.value)
    if destination.status != AccountStatus.ACTIVE:
        raise InactiveAccountError("destination", destination.id, destination.status.value)


class TransferEngine:
    def __init__(self, storage: Storage, account_lock=None, lock_timeout: Optional[float] = None):
        """
        ``account_lock`` is an optional cross-process lock with a
        ``hold(account_ids)`` async context manager (see ``RedisAccountLock``).
        ``lock_timeout`` bounds how long row locks are waited for.
        """
        self.storage = storage
        self.account_lock = account_lock
        self.lock_timeout = lock_timeout

    async def transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        amount: AmountLike,
        description: str = "",
    ) -> Transaction:
        start_time = time.perf_counter()
        self._enter(TransferState.VALIDATING, from_account_id, to_account_id)

        try:
            source, destination, value = await self._validate(
                from_account_id, to_account_id, amount
            )
        except LedgerError as exc:
            self._fail(TransferState.REJECTED, exc, from_account_id, to_account_id, start_time)
            raise
        except Exception as exc:
            logger.exception(
                "Transfer %s -> %s rejected by a storage failure", from_account_id, to_account_id
            )
            raise InternalError(
                "Transfer rejected due to a storage failure",
                state=TransferState.REJECTED.value,
            ) from exc

        try:
            transaction = await self._apply(source, destination, value, description)
        except LedgerError as exc:
            self._fail(TransferState.ABORTED, exc, from_account_id, to_account_id, start_time)
            raise
        except Exception as exc:
            logger.exception(
                "Transfer %s -> %s aborted by a storage failure", from_account_id, to_account_id
            )
            raise InternalError(
                "Transfer aborted due to a storage failure",
                state=TransferState.ABORTED.value,
            ) from exc

        logger.info(
            "Transfer committed txn=%s from=%s to=%s amount=%s (%.3fs)",
            transaction.id, from_account_id, to_account_id, value,
            time.perf_counter() - start_time,
        )
        return transaction

    async def _validate(
        self, from_account_id: int, to_account_id: int, amount: AmountLike
    ) -> Tuple[Account, Account, Decimal]:
        source, destination = _require_accounts(
            await self.storage.accounts.get_by_id(from_account_id),
            await self.storage.accounts.get_by_id(to_account_id),
            from_account_id,
            to_account_id,
        )
        value = parse_amount(amount)
        if source.id == destination.id:
            raise InvalidInputError("Cannot transfer to the same account", account_id=source.id)
        if source.currency != destination.currency:
            raise InvalidInputError(
                "Currency mismatch between accounts",
                source_currency=source.currency,
                destination_currency=destination.currency,
            )
        _check_funds_and_status(source, destination, value)
        return source, destination, value

    async def _apply(
        self,
        source: Account,
        destination: Account,
        amount: Decimal,
        description: str,
    ) -> Transaction:
        account_ids = (source.id, destination.id)
        held = self.account_lock.hold(account_ids) if self.account_lock else nullcontext()

        self._enter(TransferState.LOCKING, source.id, destination.id)
        async with held:
            async with self.storage.unit_of_work(lock_timeout=self.lock_timeout) as uow:
                locked = await uow.lock_accounts(account_ids)

                # balances may have moved since validation
                source, destination = _require_accounts(
                    locked[source.id], locked[destination.id], source.id, destination.id
                )
                _check_funds_and_status(source, destination, amount)

                self._enter(TransferState.APPLYING, source.id, destination.id)
                await uow.accounts.debit(source.id, amount)
                await uow.accounts.credit(destination.id, amount)
                transaction = await uow.transactions.append(
                    NewTransaction(
                        from_account_id=source.id,
                        to_account_id=destination.id,
                        amount=amount,
                        currency=source.currency,
                        type=TransactionType.TRANSFER,
                        description=description,
                    )
                )
        self._enter(TransferState.COMMITTED, source.id, destination.id)
        return transaction

    def _enter(self, state: TransferState, from_id, to_id):
        logger.debug("Transfer %s -> %s: %s", from_id, to_id, state.value)

    def _fail(self, state: TransferState, exc: LedgerError, from_id, to_id, start_time: float):
        exc.details.setdefault("state", state.value)
        logger.warning(
            "Transfer %s -> %s %s: %s (%.3fs)",
            from_id, to_id, state.value, exc.message, time.perf_counter() - start_time,
        )
