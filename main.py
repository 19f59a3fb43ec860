import logging
import time
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config import Settings, get_settings
from models import (
    AccountCreatedResponse,
    AccountExistsResponse,
    AccountInfo,
    BalanceResponse,
    ErrorKind,
    ErrorResponse,
    Failure,
    HealthResponse,
    RotateCredentialRequest,
    SecretRequest,
    StatusResponse,
    TransferRequest,
)
from repositories import PersistenceError, get_ledger_repository
from services import AccountService, get_account_service


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.log_format == "text"
        else structlog.processors.JSONRenderer()
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
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"

ERROR_STATUS = {
    ErrorKind.invalid_credential: status.HTTP_400_BAD_REQUEST,
    ErrorKind.invalid_amount: status.HTTP_400_BAD_REQUEST,
    ErrorKind.insufficient_balance: status.HTTP_400_BAD_REQUEST,
    ErrorKind.account_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.source_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.destination_not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.persistence_failure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class LedgerOperationError(Exception):
    def __init__(self, failure: Failure):
        self.failure = failure


def unwrap(result):
    """Return a successful operation result, or raise its failure."""
    if isinstance(result, Failure):
        raise LedgerOperationError(result)
    return result


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Account Ledger API", storage_backend=settings.storage_backend)
    await get_ledger_repository().init()
    yield
    # Shutdown
    logger.info("Shutting down Account Ledger API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account ledger with credential-protected accounts and atomic balance transfers",
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
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

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
def get_service(ledger_repo=Depends(get_ledger_repository)) -> AccountService:
    return get_account_service(ledger_repo)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get ledger statistics"
)
async def health_check(ledger_repo=Depends(get_ledger_repository)):
    accounts_count = await ledger_repo.get_accounts_count()
    return HealthResponse(status="healthy", accounts_count=accounts_count)

@app.post(
    "/accounts",
    response_model=AccountCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Account",
    responses={
        400: {"description": "Secret too short or too long", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(RATE_LIMIT)
async def create_account(
    request: Request,
    body: SecretRequest,
    service: AccountService = Depends(get_service)
):
    account_id = unwrap(await service.create_account(body.secret))
    return AccountCreatedResponse(accountId=account_id)

@app.post(
    "/accounts/info",
    response_model=AccountInfo,
    summary="Account Info",
    responses={
        400: {"description": "Empty secret", "model": ErrorResponse},
        404: {"description": "Account not found", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(RATE_LIMIT)
async def account_info(
    request: Request,
    body: SecretRequest,
    service: AccountService = Depends(get_service)
):
    return unwrap(await service.account_info(body.secret))

@app.get(
    "/accounts/{account_id}/exists",
    response_model=AccountExistsResponse,
    summary="Check Account"
)
async def account_exists(account_id: str, service: AccountService = Depends(get_service)):
    return AccountExistsResponse(accountId=account_id, exists=await service.account_exists(account_id))

@app.post(
    "/accounts/balance",
    response_model=BalanceResponse,
    summary="Account Balance",
    responses={
        400: {"description": "Empty secret", "model": ErrorResponse},
        404: {"description": "Account not found", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded"},
    }
)
@limiter.limit(RATE_LIMIT)
async def get_balance(
    request: Request,
    body: SecretRequest,
    service: AccountService = Depends(get_service)
):
    return BalanceResponse(balance=unwrap(await service.get_balance(body.secret)))

@app.post(
    "/transfers",
    response_model=BalanceResponse,
    summary="Transfer Money",
    description="Move funds from the account owning the secret to the destination account",
    responses={
        400: {"description": "Invalid amount or insufficient balance", "model": ErrorResponse},
        404: {"description": "Source or destination account not found", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Ledger could not be saved", "model": ErrorResponse},
    }
)
@limiter.limit(RATE_LIMIT)
async def transfer_money(
    request: Request,
    body: TransferRequest,
    service: AccountService = Depends(get_service)
):
    balance = unwrap(await service.transfer(body.secret, body.amount, body.destId))
    return BalanceResponse(balance=balance)

@app.delete(
    "/accounts",
    response_model=StatusResponse,
    summary="Delete Account",
    responses={404: {"description": "Account not found", "model": ErrorResponse}}
)
@limiter.limit(RATE_LIMIT)
async def delete_account(
    request: Request,
    body: SecretRequest,
    service: AccountService = Depends(get_service)
):
    unwrap(await service.delete_account(body.secret))
    return StatusResponse(status="deleted")

@app.put(
    "/accounts/credential",
    response_model=StatusResponse,
    summary="Rotate Credential",
    responses={
        400: {"description": "New secret too short or too long", "model": ErrorResponse},
        404: {"description": "Account not found", "model": ErrorResponse},
    }
)
@limiter.limit(RATE_LIMIT)
async def rotate_credential(
    request: Request,
    body: RotateCredentialRequest,
    service: AccountService = Depends(get_service)
):
    unwrap(await service.rotate_credential(body.oldSecret, body.newSecret))
    return StatusResponse(status="updated")

# Exception handlers
@app.exception_handler(LedgerOperationError)
async def ledger_error_handler(request: Request, exc: LedgerOperationError):
    failure = exc.failure
    logger.warning(
        "Ledger operation failed",
        error_code=failure.error.value,
        detail=failure.detail,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=ERROR_STATUS[failure.error],
        content=ErrorResponse(
            detail=failure.detail,
            error_code=failure.error.value
        ).model_dump(mode="json")
    )

@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(
        "Ledger snapshot could not be saved, operation aborted",
        url=str(request.url),
        method=request.method,
        exc_info=exc
    )
    return JSONResponse(
        status_code=ERROR_STATUS[ErrorKind.persistence_failure],
        content=ErrorResponse(
            detail="Ledger could not be saved",
            error_code=ErrorKind.persistence_failure.value
        ).model_dump(mode="json")
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=str(exc.detail),
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
        exc_info=exc
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
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
