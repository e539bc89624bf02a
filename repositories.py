from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from datetime import datetime
from zoneinfo import ZoneInfo

from config import get_settings
from models import Account, AccountUser, Transaction, TransactionRecord


def now() -> datetime:
    """Current time in the configured timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone))


class AccountUserRepository(ABC):
    @abstractmethod
    async def find_by_id(self, user_id: int) -> Optional[AccountUser]:
        """Get user by id. Returns None if user doesn't exist."""
        pass


class AccountRepository(ABC):
    @abstractmethod
    async def find_by_id(self, account_id: int) -> Optional[Account]:
        """Get account by id. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def find_by_account_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def find_latest(self) -> Optional[Account]:
        """Get the most recently inserted account."""
        pass

    @abstractmethod
    async def count_by_user(self, user: AccountUser) -> int:
        """Count accounts owned by user, closed ones included."""
        pass

    @abstractmethod
    async def find_by_user(self, user: AccountUser) -> List[Account]:
        """Get all accounts owned by user."""
        pass

    @abstractmethod
    async def save(self, account: Account) -> Account:
        """Insert or update account."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass


class TransactionRepository(ABC):
    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        """Get ledger row by transaction id. Returns None if it doesn't exist."""
        pass

    @abstractmethod
    async def save(self, transaction: Transaction) -> Transaction:
        """Append ledger row."""
        pass

    @abstractmethod
    async def get_transactions_count(self) -> int:
        """Get total number of ledger rows."""
        pass


class IdempotencyRepository(ABC):
    @abstractmethod
    async def get_transaction(self, idempotency_key: str) -> Optional[TransactionRecord]:
        """Get stored transaction by idempotency key."""
        pass

    @abstractmethod
    async def store_transaction(self, idempotency_key: str, record: TransactionRecord) -> None:
        """Store transaction record for idempotency."""
        pass


class InMemoryAccountUserRepository(AccountUserRepository):
    def __init__(self):
        self.users: Dict[int, AccountUser] = {}
        for name in ("Pororo", "Lupi", "Eddie"):
            self.add(AccountUser(name=name))

    def add(self, user: AccountUser) -> AccountUser:
        """Register a user (users are managed outside this service)."""
        if user.id is None:
            user.id = max(self.users, default=0) + 1
        timestamp = now()
        user.created_at = user.created_at or timestamp
        user.updated_at = timestamp
        self.users[user.id] = user.model_copy()
        return user

    async def find_by_id(self, user_id: int) -> Optional[AccountUser]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None


class InMemoryAccountRepository(AccountRepository):
    """Rows are copied in and out so callers never share state with the store."""

    def __init__(self):
        self.accounts: Dict[int, Account] = {}
        self.by_number: Dict[str, int] = {}
        self._next_id = 1

    async def find_by_id(self, account_id: int) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def find_by_account_number(self, account_number: str) -> Optional[Account]:
        account_id = self.by_number.get(account_number)
        if account_id is None:
            return None
        return self.accounts[account_id].model_copy()

    async def find_latest(self) -> Optional[Account]:
        if not self.accounts:
            return None
        return self.accounts[max(self.accounts)].model_copy()

    async def count_by_user(self, user: AccountUser) -> int:
        return sum(1 for a in self.accounts.values() if a.account_user_id == user.id)

    async def find_by_user(self, user: AccountUser) -> List[Account]:
        return [
            a.model_copy() for a in self.accounts.values()
            if a.account_user_id == user.id
        ]

    async def save(self, account: Account) -> Account:
        timestamp = now()
        if account.id is None:
            if account.account_number in self.by_number:
                raise ValueError(f"Account number {account.account_number} already exists")
            account.id = self._next_id
            self._next_id += 1
            account.created_at = timestamp
        account.updated_at = timestamp
        self.accounts[account.id] = account.model_copy()
        self.by_number[account.account_number] = account.id
        return account.model_copy()

    async def get_accounts_count(self) -> int:
        return len(self.accounts)


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self):
        self.transactions: Dict[str, Transaction] = {}
        self._next_id = 1

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[Transaction]:
        transaction = self.transactions.get(transaction_id)
        return transaction.model_copy() if transaction else None

    async def save(self, transaction: Transaction) -> Transaction:
        if transaction.id is not None or transaction.transaction_id in self.transactions:
            raise ValueError(f"Transaction {transaction.transaction_id} is append-only")
        timestamp = now()
        transaction.id = self._next_id
        self._next_id += 1
        transaction.created_at = timestamp
        transaction.updated_at = timestamp
        self.transactions[transaction.transaction_id] = transaction.model_copy()
        return transaction.model_copy()

    async def get_transactions_count(self) -> int:
        return len(self.transactions)


class InMemoryIdempotencyRepository(IdempotencyRepository):
    def __init__(self):
        self.store: Dict[str, TransactionRecord] = {}

    async def get_transaction(self, idempotency_key: str) -> Optional[TransactionRecord]:
        return self.store.get(idempotency_key)

    async def store_transaction(self, idempotency_key: str, record: TransactionRecord) -> None:
        self.store[idempotency_key] = record

    def clear(self) -> None:
        """Clear all stored transactions (for testing)."""
        self.store.clear()


# Singleton instances (em produção, usar dependency injection)
_account_user_repo = InMemoryAccountUserRepository()
_account_repo = InMemoryAccountRepository()
_transaction_repo = InMemoryTransactionRepository()
_idempotency_repo = InMemoryIdempotencyRepository()


def get_account_user_repository() -> AccountUserRepository:
    return _account_user_repo


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transaction_repository() -> TransactionRepository:
    return _transaction_repo


def get_idempotency_repository() -> IdempotencyRepository:
    return _idempotency_repo


# Para testes
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _account_user_repo, _account_repo, _transaction_repo, _idempotency_repo
    _account_user_repo = InMemoryAccountUserRepository()
    _account_repo = InMemoryAccountRepository()
    _transaction_repo = InMemoryTransactionRepository()
    _idempotency_repo = InMemoryIdempotencyRepository()
