import uuid
from datetime import datetime
from typing import List, Optional
import structlog

from config import Settings, get_settings
from exceptions import (
    AccountNotFoundError,
    AlreadyUnregisteredError,
    BalanceNotEmptyError,
    CancelWindowExpiredError,
    InsufficientBalanceError,
    InvalidRequestError,
    MaxAccountsPerUserError,
    OwnershipMismatchError,
    PartialCancelNotAllowedError,
    TransactionAccountMismatchError,
    TransactionNotFoundError,
    UserNotFoundError,
)
from locks import ACCOUNT_SEQUENCE_KEY, LockManager
from models import (
    Account,
    AccountRecord,
    AccountStatus,
    AccountUser,
    Transaction,
    TransactionRecord,
    TransactionResultType,
    TransactionType,
)
from repositories import (
    AccountRepository,
    AccountUserRepository,
    IdempotencyRepository,
    TransactionRepository,
    now,
)

# Configure structured logging
logger = structlog.get_logger()


def years_before(moment: datetime, years: int) -> datetime:
    """Same wall-clock moment ``years`` earlier; Feb 29 falls back to Feb 28."""
    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


async def _get_account_user(repo: AccountUserRepository, user_id: int) -> AccountUser:
    user = await repo.find_by_id(user_id)
    if user is None:
        logger.warning("User not found", user_id=user_id)
        raise UserNotFoundError()
    return user


def _check_amount(amount: int) -> None:
    if amount <= 0:
        logger.warning("Non-positive amount", amount=amount)
        raise InvalidRequestError("Amount must be positive")


async def _get_account(repo: AccountRepository, account_number: str) -> Account:
    account = await repo.find_by_account_number(account_number)
    if account is None:
        logger.warning("Account not found", account_number=account_number)
        raise AccountNotFoundError()
    return account


class AccountService:
    def __init__(
        self,
        account_user_repo: AccountUserRepository,
        account_repo: AccountRepository,
        lock_manager: LockManager,
        settings: Optional[Settings] = None
    ):
        self.account_user_repo = account_user_repo
        self.account_repo = account_repo
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()

    async def create_account(self, user_id: int, initial_balance: int) -> AccountRecord:
        """Open a new account for the user with the next account number."""
        if initial_balance < 0:
            logger.warning("Negative initial balance", user_id=user_id, initial_balance=initial_balance)
            raise InvalidRequestError("Initial balance must not be negative")
        user = await _get_account_user(self.account_user_repo, user_id)

        # Allocation of the next number must not interleave with another creation
        async with self.lock_manager.hold(ACCOUNT_SEQUENCE_KEY):
            if await self.account_repo.count_by_user(user) >= self.settings.max_accounts_per_user:
                logger.warning(
                    "Max accounts per user reached",
                    user_id=user_id,
                    max_accounts=self.settings.max_accounts_per_user
                )
                raise MaxAccountsPerUserError()

            latest = await self.account_repo.find_latest()
            if latest is None:
                account_number = self.settings.initial_account_number
            else:
                account_number = str(int(latest.account_number) + 1)

            account = await self.account_repo.save(Account(
                account_number=account_number,
                account_user_id=user.id,
                account_status=AccountStatus.IN_USE,
                balance=initial_balance,
                registered_at=now(),
            ))

        logger.info(
            "Account created",
            user_id=user_id,
            account_number=account.account_number,
            balance=account.balance
        )
        return AccountRecord.from_entity(account)

    async def delete_account(self, user_id: int, account_number: str) -> AccountRecord:
        """Close an empty account owned by the user."""
        user = await _get_account_user(self.account_user_repo, user_id)

        async with self.lock_manager.hold(account_number):
            account = await _get_account(self.account_repo, account_number)
            self._validate_delete_account(user, account)

            account.account_status = AccountStatus.UNREGISTERED
            account.unregistered_at = now()
            account = await self.account_repo.save(account)

        logger.info("Account unregistered", user_id=user_id, account_number=account_number)
        return AccountRecord.from_entity(account)

    def _validate_delete_account(self, user: AccountUser, account: Account) -> None:
        if user.id != account.account_user_id:
            logger.warning(
                "Account owner mismatch",
                user_id=user.id,
                account_number=account.account_number
            )
            raise OwnershipMismatchError()
        if account.account_status == AccountStatus.UNREGISTERED:
            logger.warning("Account already unregistered", account_number=account.account_number)
            raise AlreadyUnregisteredError()
        if account.balance > 0:
            logger.warning(
                "Cannot unregister account with balance",
                account_number=account.account_number,
                balance=account.balance
            )
            raise BalanceNotEmptyError()

    async def get_accounts_by_user(self, user_id: int) -> List[AccountRecord]:
        user = await _get_account_user(self.account_user_repo, user_id)
        accounts = await self.account_repo.find_by_user(user)
        return [AccountRecord.from_entity(a) for a in accounts]

    async def get_account(self, account_id: int) -> AccountRecord:
        if account_id < 0:
            raise InvalidRequestError("Account id must not be negative")
        account = await self.account_repo.find_by_id(account_id)
        if account is None:
            logger.warning("Account not found", account_id=account_id)
            raise AccountNotFoundError()
        return AccountRecord.from_entity(account)


class TransactionService:
    """Balance use and cancellation, each writing one ledger row.

    ``use_balance`` and ``cancel_balance`` run entirely under the lock of the
    target account number. Failed attempts are not recorded here; callers
    record them with ``save_failed_use_transaction`` and
    ``save_failed_cancel_transaction``.
    """

    def __init__(
        self,
        account_user_repo: AccountUserRepository,
        account_repo: AccountRepository,
        transaction_repo: TransactionRepository,
        idempotency_repo: IdempotencyRepository,
        lock_manager: LockManager,
        settings: Optional[Settings] = None
    ):
        self.account_user_repo = account_user_repo
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo
        self.idempotency_repo = idempotency_repo
        self.lock_manager = lock_manager
        self.settings = settings or get_settings()

    async def use_balance(
        self,
        user_id: int,
        account_number: str,
        amount: int,
        idempotency_key: Optional[str] = None
    ) -> TransactionRecord:
        logger.info(
            "Processing balance use",
            user_id=user_id,
            account_number=account_number,
            amount=amount,
            idempotency_key=idempotency_key
        )

        async with self.lock_manager.hold(account_number):
            key = self._scoped_key(TransactionType.USE, account_number, idempotency_key)
            existing = await self._find_existing(key)
            if existing:
                return existing

            user = await _get_account_user(self.account_user_repo, user_id)
            account = await _get_account(self.account_repo, account_number)

            self._validate_use_balance(user, account, amount)

            account.use_balance(amount)
            account = await self.account_repo.save(account)

            record = TransactionRecord.from_entity(await self._save_transaction(
                TransactionType.USE, TransactionResultType.SUCCESS, account, amount
            ))
            if key:
                await self.idempotency_repo.store_transaction(key, record)

        logger.info(
            "Balance used",
            transaction_id=record.transaction_id,
            account_number=account_number,
            amount=amount,
            new_balance=record.balance_snapshot
        )
        return record

    def _validate_use_balance(self, user: AccountUser, account: Account, amount: int) -> None:
        _check_amount(amount)
        if user.id != account.account_user_id:
            logger.warning("Account owner mismatch", user_id=user.id, account_number=account.account_number)
            raise OwnershipMismatchError()
        if account.account_status == AccountStatus.UNREGISTERED:
            logger.warning("Account already unregistered", account_number=account.account_number)
            raise AlreadyUnregisteredError()
        if amount > account.balance:
            logger.warning(
                "Insufficient balance",
                account_number=account.account_number,
                current_balance=account.balance,
                requested_amount=amount
            )
            raise InsufficientBalanceError()

    async def save_failed_use_transaction(self, account_number: str, amount: int) -> TransactionRecord:
        _check_amount(amount)
        account = await _get_account(self.account_repo, account_number)
        transaction = await self._save_transaction(
            TransactionType.USE, TransactionResultType.FAIL, account, amount
        )
        logger.info(
            "Failed balance use recorded",
            transaction_id=transaction.transaction_id,
            account_number=account_number,
            amount=amount
        )
        return TransactionRecord.from_entity(transaction)

    async def cancel_balance(
        self,
        transaction_id: str,
        account_number: str,
        amount: int,
        idempotency_key: Optional[str] = None
    ) -> TransactionRecord:
        logger.info(
            "Processing balance cancel",
            original_transaction_id=transaction_id,
            account_number=account_number,
            amount=amount,
            idempotency_key=idempotency_key
        )

        async with self.lock_manager.hold(account_number):
            key = self._scoped_key(TransactionType.CANCEL, account_number, idempotency_key)
            existing = await self._find_existing(key)
            if existing:
                return existing

            original = await self.transaction_repo.find_by_transaction_id(transaction_id)
            if original is None:
                logger.warning("Transaction not found", transaction_id=transaction_id)
                raise TransactionNotFoundError()
            account = await _get_account(self.account_repo, account_number)

            self._validate_cancel_balance(original, account, amount)

            account.cancel_balance(amount)
            account = await self.account_repo.save(account)

            record = TransactionRecord.from_entity(await self._save_transaction(
                TransactionType.CANCEL, TransactionResultType.SUCCESS, account, amount
            ))
            if key:
                await self.idempotency_repo.store_transaction(key, record)

        logger.info(
            "Balance cancelled",
            transaction_id=record.transaction_id,
            original_transaction_id=transaction_id,
            account_number=account_number,
            amount=amount,
            new_balance=record.balance_snapshot
        )
        return record

    def _validate_cancel_balance(self, original: Transaction, account: Account, amount: int) -> None:
        # The original row is matched by account and amount only; its type and
        # result are not checked, and it may be cancelled more than once.
        _check_amount(amount)
        if original.account_id != account.id:
            logger.warning(
                "Transaction account mismatch",
                transaction_id=original.transaction_id,
                account_number=account.account_number
            )
            raise TransactionAccountMismatchError()
        if original.amount != amount:
            logger.warning(
                "Partial cancel requested",
                transaction_id=original.transaction_id,
                original_amount=original.amount,
                requested_amount=amount
            )
            raise PartialCancelNotAllowedError()
        if original.transacted_at < years_before(now(), self.settings.cancel_window_years):
            logger.warning(
                "Transaction too old to cancel",
                transaction_id=original.transaction_id,
                transacted_at=original.transacted_at.isoformat()
            )
            raise CancelWindowExpiredError()
        if account.account_status == AccountStatus.UNREGISTERED:
            logger.warning("Account already unregistered", account_number=account.account_number)
            raise AlreadyUnregisteredError()

    async def save_failed_cancel_transaction(self, account_number: str, amount: int) -> TransactionRecord:
        _check_amount(amount)
        account = await _get_account(self.account_repo, account_number)
        transaction = await self._save_transaction(
            TransactionType.CANCEL, TransactionResultType.FAIL, account, amount
        )
        logger.info(
            "Failed balance cancel recorded",
            transaction_id=transaction.transaction_id,
            account_number=account_number,
            amount=amount
        )
        return TransactionRecord.from_entity(transaction)

    async def query_transaction(self, transaction_id: str) -> TransactionRecord:
        transaction = await self.transaction_repo.find_by_transaction_id(transaction_id)
        if transaction is None:
            logger.warning("Transaction not found", transaction_id=transaction_id)
            raise TransactionNotFoundError()
        return TransactionRecord.from_entity(transaction)

    async def _save_transaction(
        self,
        transaction_type: TransactionType,
        result_type: TransactionResultType,
        account: Account,
        amount: int
    ) -> Transaction:
        return await self.transaction_repo.save(Transaction(
            transaction_type=transaction_type,
            transaction_result_type=result_type,
            account_id=account.id,
            account_number=account.account_number,
            amount=amount,
            balance_snapshot=account.balance,
            transaction_id=uuid.uuid4().hex,
            transacted_at=now(),
        ))

    @staticmethod
    def _scoped_key(
        transaction_type: TransactionType,
        account_number: str,
        idempotency_key: Optional[str]
    ) -> Optional[str]:
        if idempotency_key is None:
            return None
        return f"{transaction_type.value}:{account_number}:{idempotency_key}"

    async def _find_existing(self, key: Optional[str]) -> Optional[TransactionRecord]:
        if key is None:
            return None
        existing = await self.idempotency_repo.get_transaction(key)
        if existing:
            logger.info(
                "Returning existing transaction due to idempotency",
                idempotency_key=key,
                transaction_id=existing.transaction_id
            )
        return existing


# Factory functions for dependency injection
def get_account_service(
    account_user_repo: AccountUserRepository,
    account_repo: AccountRepository,
    lock_manager: LockManager
) -> AccountService:
    return AccountService(account_user_repo, account_repo, lock_manager)


def get_transaction_service(
    account_user_repo: AccountUserRepository,
    account_repo: AccountRepository,
    transaction_repo: TransactionRepository,
    idempotency_repo: IdempotencyRepository,
    lock_manager: LockManager
) -> TransactionService:
    return TransactionService(
        account_user_repo, account_repo, transaction_repo, idempotency_repo, lock_manager
    )
