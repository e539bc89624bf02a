from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import Optional
from datetime import datetime
import re

from config import get_settings
from exceptions import InsufficientBalanceError, InvalidRequestError

ACCOUNT_NUMBER_PATTERN = r'^[0-9]{10}$'


class AccountStatus(str, Enum):
    IN_USE = "IN_USE"
    UNREGISTERED = "UNREGISTERED"


class TransactionType(str, Enum):
    USE = "USE"
    CANCEL = "CANCEL"


class TransactionResultType(str, Enum):
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


# Entities

class AccountUser(BaseModel):
    id: Optional[int] = None
    name: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Account(BaseModel):
    id: Optional[int] = None
    account_number: str
    account_user_id: int
    account_status: AccountStatus = AccountStatus.IN_USE
    balance: int = Field(..., ge=0)
    registered_at: datetime
    unregistered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def use_balance(self, amount: int) -> None:
        if amount <= 0:
            raise InvalidRequestError("Amount must be positive")
        if amount > self.balance:
            raise InsufficientBalanceError()
        self.balance -= amount

    def cancel_balance(self, amount: int) -> None:
        if amount <= 0:
            raise InvalidRequestError("Amount must be positive")
        self.balance += amount


class Transaction(BaseModel):
    """Append-only ledger row for one attempted use or cancel."""

    id: Optional[int] = None
    transaction_type: TransactionType
    transaction_result_type: TransactionResultType
    account_id: int
    account_number: str
    amount: int = Field(..., gt=0)
    balance_snapshot: int
    transaction_id: str
    transacted_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Service projections

class AccountRecord(BaseModel):
    id: int
    user_id: int
    account_number: str
    account_status: AccountStatus
    balance: int
    registered_at: datetime
    unregistered_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, account: Account) -> "AccountRecord":
        return cls(
            id=account.id,
            user_id=account.account_user_id,
            account_number=account.account_number,
            account_status=account.account_status,
            balance=account.balance,
            registered_at=account.registered_at,
            unregistered_at=account.unregistered_at,
        )


class TransactionRecord(BaseModel):
    account_number: str
    transaction_type: TransactionType
    transaction_result_type: TransactionResultType
    amount: int
    balance_snapshot: int
    transaction_id: str
    transacted_at: datetime

    @classmethod
    def from_entity(cls, transaction: Transaction) -> "TransactionRecord":
        return cls(
            account_number=transaction.account_number,
            transaction_type=transaction.transaction_type,
            transaction_result_type=transaction.transaction_result_type,
            amount=transaction.amount,
            balance_snapshot=transaction.balance_snapshot,
            transaction_id=transaction.transaction_id,
            transacted_at=transaction.transacted_at,
        )


# API schemas

def _validate_amount(v: int) -> int:
    settings = get_settings()
    if v < settings.min_transaction_amount:
        raise ValueError(f'Amount must be at least {settings.min_transaction_amount}')
    if v > settings.max_transaction_amount:
        raise ValueError(f'Amount must be at most {settings.max_transaction_amount}')
    return v


def _validate_idempotency_key(v: Optional[str]) -> Optional[str]:
    if v is not None and not re.match(r'^[a-zA-Z0-9_-]+$', v):
        raise ValueError('Idempotency key must contain only alphanumeric characters, underscores, and hyphens')
    return v


class CreateAccountRequest(BaseModel):
    userId: int = Field(..., ge=1, description="Owner user identifier")
    initialBalance: int = Field(..., ge=0, description="Opening balance in minor units")


class CreateAccountResponse(BaseModel):
    userId: int
    accountNumber: str
    registeredAt: datetime

    @classmethod
    def from_record(cls, record: AccountRecord) -> "CreateAccountResponse":
        return cls(
            userId=record.user_id,
            accountNumber=record.account_number,
            registeredAt=record.registered_at,
        )


class DeleteAccountRequest(BaseModel):
    userId: int = Field(..., ge=1, description="Owner user identifier")
    accountNumber: str = Field(..., pattern=ACCOUNT_NUMBER_PATTERN, description="10 digit account number")


class DeleteAccountResponse(BaseModel):
    userId: int
    accountNumber: str
    unregisteredAt: Optional[datetime]

    @classmethod
    def from_record(cls, record: AccountRecord) -> "DeleteAccountResponse":
        return cls(
            userId=record.user_id,
            accountNumber=record.account_number,
            unregisteredAt=record.unregistered_at,
        )


class AccountInfo(BaseModel):
    accountNumber: str
    balance: int


class AccountDetailResponse(BaseModel):
    id: int
    userId: int
    accountNumber: str
    accountStatus: AccountStatus
    balance: int
    registeredAt: datetime
    unregisteredAt: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: AccountRecord) -> "AccountDetailResponse":
        return cls(
            id=record.id,
            userId=record.user_id,
            accountNumber=record.account_number,
            accountStatus=record.account_status,
            balance=record.balance,
            registeredAt=record.registered_at,
            unregisteredAt=record.unregistered_at,
        )


class UseBalanceRequest(BaseModel):
    userId: int = Field(..., ge=1, description="Requesting user identifier")
    accountNumber: str = Field(..., pattern=ACCOUNT_NUMBER_PATTERN, description="10 digit account number")
    amount: int = Field(..., description="Amount to use in minor units")
    idempotencyKey: Optional[str] = Field(
        None,
        min_length=1,
        max_length=100,
        description="Optional key to make retries safe"
    )

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        return _validate_amount(v)

    @field_validator('idempotencyKey')
    @classmethod
    def validate_idempotency_key(cls, v):
        return _validate_idempotency_key(v)


class CancelBalanceRequest(BaseModel):
    transactionId: str = Field(..., min_length=1, max_length=64, description="Transaction to cancel")
    accountNumber: str = Field(..., pattern=ACCOUNT_NUMBER_PATTERN, description="10 digit account number")
    amount: int = Field(..., description="Amount to cancel; must equal the original amount")
    idempotencyKey: Optional[str] = Field(
        None,
        min_length=1,
        max_length=100,
        description="Optional key to make retries safe"
    )

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        return _validate_amount(v)

    @field_validator('idempotencyKey')
    @classmethod
    def validate_idempotency_key(cls, v):
        return _validate_idempotency_key(v)


class TransactionResponse(BaseModel):
    accountNumber: str
    transactionResult: TransactionResultType
    transactionId: str
    amount: int
    balanceSnapshot: int
    transactedAt: datetime

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "TransactionResponse":
        return cls(
            accountNumber=record.account_number,
            transactionResult=record.transaction_result_type,
            transactionId=record.transaction_id,
            amount=record.amount,
            balanceSnapshot=record.balance_snapshot,
            transactedAt=record.transacted_at,
        )


class QueryTransactionResponse(TransactionResponse):
    transactionType: TransactionType

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "QueryTransactionResponse":
        return cls(
            accountNumber=record.account_number,
            transactionType=record.transaction_type,
            transactionResult=record.transaction_result_type,
            transactionId=record.transaction_id,
            amount=record.amount,
            balanceSnapshot=record.balance_snapshot,
            transactedAt=record.transacted_at,
        )


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    transactions_recorded: int = Field(..., description="Total ledger rows recorded")
