from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from .config import Settings
from .database import Database, RedisClient
from .errors import ErrorKind, LedgerError
from .locks import RedisAccountLock
from .logging_config import get_logger, setup_logging
from .models import ApiResponse
from .services.accounts import AccountService
from .services.queries import QueryService
from .services.transfer import TransferEngine
from .services.users import UserService
from .stores.base import Storage
from .stores.memory import MemoryStorage
from .stores.postgres import PostgresStorage
from .views import accounts, transactions, users

logger = get_logger("ledger")

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INSUFFICIENT_FUNDS: 422,
    ErrorKind.INACTIVE_ACCOUNT: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


def build_storage(settings: Settings) -> Storage:
    if settings.storage == "memory":
        return MemoryStorage()
    if settings.storage == "postgres":
        return PostgresStorage(
            Database(settings.database_url, settings.pool_min_size, settings.pool_max_size)
        )
    raise ValueError(f"Unknown LEDGER_STORAGE backend: {settings.storage!r}")


def create_app(settings: Optional[Settings] = None, storage: Optional[Storage] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_storage = storage or build_storage(settings)
        await app_storage.connect()

        redis_client = RedisClient(settings.redis_url) if settings.redis_url else None
        account_lock = None
        if redis_client:
            account_lock = RedisAccountLock(
                redis_client,
                lock_timeout=settings.lock_timeout,
                retry_delay=settings.lock_retry_delay,
            )

        app.state.storage = app_storage
        app.state.engine = TransferEngine(
            app_storage, account_lock=account_lock, lock_timeout=settings.lock_timeout
        )
        app.state.queries = QueryService(app_storage)
        app.state.users = UserService(app_storage)
        app.state.accounts = AccountService(app_storage)
        logger.info(
            "Ledger starting up (storage=%s, redis lock=%s)",
            type(app_storage).__name__, "on" if account_lock else "off",
        )
        try:
            yield
        finally:
            if redis_client:
                await redis_client.close_client()
            await app_storage.close()
            logger.info("Ledger shut down")

    app = FastAPI(
        title="Ledger",
        description="Users, accounts and atomic fund transfers",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = STATUS_BY_KIND[exc.kind]
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = ApiResponse(
            success=False,
            message=exc.message,
            data={"error": exc.kind.value, **exc.details},
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
            for error in exc.errors()
        ]
        body = ApiResponse(
            success=False,
            message="Invalid request",
            data={"error": ErrorKind.INVALID_INPUT.value, "errors": errors},
        )
        return JSONResponse(status_code=400, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error(
            "%s %s failed unexpectedly", request.method, request.url.path, exc_info=exc
        )
        body = ApiResponse(
            success=False,
            message="Internal server error",
            data={"error": ErrorKind.INTERNAL.value},
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info("HTTP %s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    app.include_router(users.router, prefix="/api")
    app.include_router(accounts.router, prefix="/api")
    app.include_router(transactions.router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "message": "Ledger service",
            "version": "1.0.0",
            "endpoints": [
                "/api/users",
                "/api/accounts",
                "/api/transfers",
                "/api/transactions/{id}",
            ],
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
