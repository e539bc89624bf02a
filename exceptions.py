"""Domain errors raised by the account and transaction services."""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    INVALID_REQUEST = "INVALID_REQUEST"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    USER_ACCOUNT_UN_MATCH = "USER_ACCOUNT_UN_MATCH"
    TRANSACTION_ACCOUNT_UN_MATCH = "TRANSACTION_ACCOUNT_UN_MATCH"
    MAX_ACCOUNT_PER_USER = "MAX_ACCOUNT_PER_USER"
    ACCOUNT_ALREADY_UNREGISTERED = "ACCOUNT_ALREADY_UNREGISTERED"
    BALANCE_NOT_EMPTY = "BALANCE_NOT_EMPTY"
    AMOUNT_EXCEED_BALANCE = "AMOUNT_EXCEED_BALANCE"
    CANCEL_MUST_FULLY = "CANCEL_MUST_FULLY"
    TOO_OLD_TO_CANCEL = "TOO_OLD_TO_CANCEL"
    ACCOUNT_TRANSACTION_LOCK = "ACCOUNT_TRANSACTION_LOCK"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @property
    def status_code(self) -> int:
        return _STATUS_CODES.get(self, 400)


_DESCRIPTIONS = {
    ErrorCode.INTERNAL_SERVER_ERROR: "Internal server error",
    ErrorCode.INVALID_REQUEST: "Invalid request",
    ErrorCode.USER_NOT_FOUND: "User not found",
    ErrorCode.ACCOUNT_NOT_FOUND: "Account not found",
    ErrorCode.TRANSACTION_NOT_FOUND: "Transaction not found",
    ErrorCode.USER_ACCOUNT_UN_MATCH: "Account does not belong to the user",
    ErrorCode.TRANSACTION_ACCOUNT_UN_MATCH: "Transaction does not belong to the account",
    ErrorCode.MAX_ACCOUNT_PER_USER: "User already owns the maximum number of accounts",
    ErrorCode.ACCOUNT_ALREADY_UNREGISTERED: "Account is already unregistered",
    ErrorCode.BALANCE_NOT_EMPTY: "Account balance is not empty",
    ErrorCode.AMOUNT_EXCEED_BALANCE: "Amount exceeds account balance",
    ErrorCode.CANCEL_MUST_FULLY: "Partial cancellation is not allowed",
    ErrorCode.TOO_OLD_TO_CANCEL: "Transaction is too old to cancel",
    ErrorCode.ACCOUNT_TRANSACTION_LOCK: "Another transaction is in progress on this account",
}

_STATUS_CODES = {
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.ACCOUNT_NOT_FOUND: 404,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.ACCOUNT_TRANSACTION_LOCK: 409,
}


class AccountException(Exception):
    """Base class for account domain errors."""

    error_code: ErrorCode = ErrorCode.INVALID_REQUEST
    retryable: bool = False

    def __init__(self, error_message: Optional[str] = None):
        self.error_message = error_message or self.error_code.description
        super().__init__(self.error_message)


class InvalidRequestError(AccountException):
    error_code = ErrorCode.INVALID_REQUEST


class UserNotFoundError(AccountException):
    error_code = ErrorCode.USER_NOT_FOUND


class AccountNotFoundError(AccountException):
    error_code = ErrorCode.ACCOUNT_NOT_FOUND


class TransactionNotFoundError(AccountException):
    error_code = ErrorCode.TRANSACTION_NOT_FOUND


class OwnershipMismatchError(AccountException):
    """Raised when an account's owner is not the requesting user."""

    error_code = ErrorCode.USER_ACCOUNT_UN_MATCH


class TransactionAccountMismatchError(OwnershipMismatchError):
    """Raised when the original transaction was made on another account."""

    error_code = ErrorCode.TRANSACTION_ACCOUNT_UN_MATCH


class MaxAccountsPerUserError(AccountException):
    error_code = ErrorCode.MAX_ACCOUNT_PER_USER


class AlreadyUnregisteredError(AccountException):
    error_code = ErrorCode.ACCOUNT_ALREADY_UNREGISTERED


class BalanceNotEmptyError(AccountException):
    error_code = ErrorCode.BALANCE_NOT_EMPTY


class InsufficientBalanceError(AccountException):
    error_code = ErrorCode.AMOUNT_EXCEED_BALANCE


class PartialCancelNotAllowedError(AccountException):
    error_code = ErrorCode.CANCEL_MUST_FULLY


class CancelWindowExpiredError(AccountException):
    error_code = ErrorCode.TOO_OLD_TO_CANCEL


class AccountLockTimeoutError(AccountException):
    """Raised when an account lock could not be obtained in time.

    Unlike the other domain errors this one is transient: the caller may retry.
    """

    error_code = ErrorCode.ACCOUNT_TRANSACTION_LOCK
    retryable = True
