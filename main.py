from fastapi import FastAPI, HTTPException, Request, Depends, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Awaitable, Callable, List
import logging
import structlog
import time
from contextlib import asynccontextmanager

from config import Settings, get_settings
from exceptions import AccountException, ErrorCode
from locks import get_lock_manager
from models import (
    AccountDetailResponse,
    AccountInfo,
    CancelBalanceRequest,
    CreateAccountRequest,
    CreateAccountResponse,
    DeleteAccountRequest,
    DeleteAccountResponse,
    ErrorResponse,
    HealthResponse,
    QueryTransactionResponse,
    TransactionRecord,
    TransactionResponse,
    UseBalanceRequest,
)
from services import AccountService, TransactionService, get_account_service, get_transaction_service
from repositories import (
    get_account_repository,
    get_account_user_repository,
    get_idempotency_repository,
    get_transaction_repository,
)

settings = get_settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
TRANSACTION_RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"

# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Bank Account API")
    yield
    # Shutdown
    logger.info("Shutting down Bank Account API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account lifecycle and balance use/cancel transactions with per-account locking",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_accounts(
    account_user_repo=Depends(get_account_user_repository),
    account_repo=Depends(get_account_repository),
    lock_manager=Depends(get_lock_manager)
) -> AccountService:
    return get_account_service(account_user_repo, account_repo, lock_manager)


def get_transactions(
    account_user_repo=Depends(get_account_user_repository),
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository),
    idempotency_repo=Depends(get_idempotency_repository),
    lock_manager=Depends(get_lock_manager)
) -> TransactionService:
    return get_transaction_service(
        account_user_repo, account_repo, transaction_repo, idempotency_repo, lock_manager
    )


async def record_failed_transaction(
    save_failed: Callable[[str, int], Awaitable[TransactionRecord]],
    account_number: str,
    amount: int,
    error: AccountException
) -> None:
    """Write the FAIL ledger row for a rejected use/cancel request."""
    logger.warning(
        "Transaction request failed",
        error_code=error.error_code.value,
        account_number=account_number,
        amount=amount
    )
    try:
        await save_failed(account_number, amount)
    except AccountException as ledger_error:
        logger.warning(
            "Failed transaction could not be recorded",
            error_code=ledger_error.error_code.value,
            account_number=account_number
        )

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get system statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    transaction_repo=Depends(get_transaction_repository)
):
    try:
        accounts_count = await account_repo.get_accounts_count()
        transactions_count = await transaction_repo.get_transactions_count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transactions_recorded=transactions_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Account endpoints
@app.post(
    "/account",
    response_model=CreateAccountResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Account",
    responses={
        400: {"model": ErrorResponse, "description": "User already owns the maximum number of accounts"},
        404: {"model": ErrorResponse, "description": "User not found"},
    }
)
async def create_account(
    create_request: CreateAccountRequest,
    service: AccountService = Depends(get_accounts)
):
    record = await service.create_account(create_request.userId, create_request.initialBalance)
    return CreateAccountResponse.from_record(record)


@app.delete(
    "/account",
    response_model=DeleteAccountResponse,
    summary="Unregister Account",
    responses={
        400: {"model": ErrorResponse, "description": "Owner mismatch, already unregistered or balance not empty"},
        404: {"model": ErrorResponse, "description": "User or account not found"},
    }
)
async def delete_account(
    delete_request: DeleteAccountRequest,
    service: AccountService = Depends(get_accounts)
):
    record = await service.delete_account(delete_request.userId, delete_request.accountNumber)
    return DeleteAccountResponse.from_record(record)


@app.get("/account", response_model=List[AccountInfo], summary="List User Accounts")
async def get_accounts_by_user(
    user_id: int = Query(..., ge=1),
    service: AccountService = Depends(get_accounts)
):
    records = await service.get_accounts_by_user(user_id)
    return [AccountInfo(accountNumber=r.account_number, balance=r.balance) for r in records]


@app.get("/account/{account_id}", response_model=AccountDetailResponse, summary="Get Account")
async def get_account(
    account_id: int,
    service: AccountService = Depends(get_accounts)
):
    return AccountDetailResponse.from_record(await service.get_account(account_id))

# Transaction endpoints
@app.post(
    "/transaction/use",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Use Balance",
    responses={
        400: {"model": ErrorResponse, "description": "Validation failed or insufficient balance"},
        404: {"model": ErrorResponse, "description": "User or account not found"},
        409: {"model": ErrorResponse, "description": "Account is locked by another transaction"},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(TRANSACTION_RATE_LIMIT)
async def use_balance(
    request: Request,
    use_request: UseBalanceRequest,
    service: TransactionService = Depends(get_transactions)
):
    try:
        record = await service.use_balance(
            use_request.userId,
            use_request.accountNumber,
            use_request.amount,
            idempotency_key=use_request.idempotencyKey
        )
    except AccountException as e:
        await record_failed_transaction(
            service.save_failed_use_transaction, use_request.accountNumber, use_request.amount, e
        )
        raise

    return TransactionResponse.from_record(record)


@app.post(
    "/transaction/cancel",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Cancel Balance Use",
    responses={
        400: {"model": ErrorResponse, "description": "Partial cancel, account mismatch or expired window"},
        404: {"model": ErrorResponse, "description": "Transaction or account not found"},
        409: {"model": ErrorResponse, "description": "Account is locked by another transaction"},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(TRANSACTION_RATE_LIMIT)
async def cancel_balance(
    request: Request,
    cancel_request: CancelBalanceRequest,
    service: TransactionService = Depends(get_transactions)
):
    try:
        record = await service.cancel_balance(
            cancel_request.transactionId,
            cancel_request.accountNumber,
            cancel_request.amount,
            idempotency_key=cancel_request.idempotencyKey
        )
    except AccountException as e:
        await record_failed_transaction(
            service.save_failed_cancel_transaction, cancel_request.accountNumber, cancel_request.amount, e
        )
        raise

    return TransactionResponse.from_record(record)


@app.get(
    "/transaction/{transaction_id}",
    response_model=QueryTransactionResponse,
    summary="Query Transaction"
)
async def query_transaction(
    transaction_id: str,
    service: TransactionService = Depends(get_transactions)
):
    return QueryTransactionResponse.from_record(await service.query_transaction(transaction_id))

# Exception handlers
@app.exception_handler(AccountException)
async def account_exception_handler(request: Request, exc: AccountException):
    return JSONResponse(
        status_code=exc.error_code.status_code,
        content=ErrorResponse(
            detail=exc.error_message,
            error_code=exc.error_code.value
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail=ErrorCode.INTERNAL_SERVER_ERROR.description,
            error_code=ErrorCode.INTERNAL_SERVER_ERROR.value
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
