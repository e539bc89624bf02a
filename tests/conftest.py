import os

# Must be set before the application modules read their settings
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime
from typing import Optional

import pytest

from locks import LockManager, reset_lock_manager
from models import Account, AccountStatus, AccountUser, Transaction, TransactionResultType, TransactionType
from repositories import (
    AccountRepository,
    get_account_repository,
    get_account_user_repository,
    get_idempotency_repository,
    get_transaction_repository,
    now,
    reset_repositories,
)
from services import AccountService, TransactionService


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories and locks before each test."""
    reset_repositories()
    reset_lock_manager()


@pytest.fixture
def lock_manager():
    return LockManager(wait_timeout=1.0)


@pytest.fixture
def account_service(lock_manager):
    return AccountService(get_account_user_repository(), get_account_repository(), lock_manager)


@pytest.fixture
def transaction_service(lock_manager):
    return TransactionService(
        get_account_user_repository(),
        get_account_repository(),
        get_transaction_repository(),
        get_idempotency_repository(),
        lock_manager,
    )


def add_user(user_id: int, name: str = "Kevin") -> AccountUser:
    return get_account_user_repository().add(AccountUser(id=user_id, name=name))


async def add_account(
    user_id: int,
    account_number: str,
    balance: int,
    account_status: AccountStatus = AccountStatus.IN_USE,
    account_repo: Optional[AccountRepository] = None
) -> Account:
    return await (account_repo or get_account_repository()).save(Account(
        account_number=account_number,
        account_user_id=user_id,
        account_status=account_status,
        balance=balance,
        registered_at=now(),
    ))


async def add_use_transaction(
    account: Account,
    amount: int,
    transacted_at: Optional[datetime] = None,
    transaction_id: str = "original-transaction"
) -> Transaction:
    return await get_transaction_repository().save(Transaction(
        transaction_type=TransactionType.USE,
        transaction_result_type=TransactionResultType.SUCCESS,
        account_id=account.id,
        account_number=account.account_number,
        amount=amount,
        balance_snapshot=account.balance,
        transaction_id=transaction_id,
        transacted_at=transacted_at or now(),
    ))
