"""FastAPI application entry point.

Run with: uvicorn src.main:app --reload --port 8000
"""

# ruff: noqa: E402  -- uvloop.install() must run before other imports

import uvloop

uvloop.install()

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config.settings import settings
from src.tb_balance.api.router import router as balance_router
from src.tb_balance.application.service import BalanceApplicationService
from src.tb_balance.infrastructure.persist_worker import PersistWorker
from src.tb_balance.infrastructure.persistence import BalanceRepository
from src.tb_balance.infrastructure.redis_cache import RedisCacheStore
from src.tb_chain.infrastructure.rpc_client import JsonRpcChainAdapter
from src.tb_common.database import async_session_factory, engine, ping_database
from src.tb_common.enums import Network
from src.tb_common.errors import AppError
from src.tb_common.logging_config import setup_logging
from src.tb_common.redis_client import close_redis, get_redis
from src.tb_common.response import error_response
from src.tb_gateway.middleware.request_log import RequestLogMiddleware
from src.tb_reconcile.api.router import router as admin_router
from src.tb_reconcile.application.scheduler import ReconciliationScheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: verify DB + Redis, wire services. Shutdown: drain and dispose."""
    setup_logging(settings.LOG_LEVEL)

    # Startup
    await ping_database()
    redis = await get_redis()

    repo = BalanceRepository()
    chain = JsonRpcChainAdapter(
        settings.CHAIN_RPC_URL,
        Network(settings.CHAIN_NETWORK).value,
        timeout=settings.CHAIN_RPC_TIMEOUT_SECONDS,
    )
    persist_worker = PersistWorker(
        repo, async_session_factory, maxsize=settings.PERSIST_QUEUE_SIZE
    )
    persist_worker.start()
    balance_service = BalanceApplicationService(
        chain, RedisCacheStore(redis), persist_worker, repo=repo
    )
    scheduler = ReconciliationScheduler(balance_service, async_session_factory, repo=repo)
    if settings.RECONCILE_ENABLED:
        scheduler.start()

    app.state.persist_worker = persist_worker
    app.state.balance_service = balance_service
    app.state.reconciliation_scheduler = scheduler
    yield
    # Shutdown
    await scheduler.stop()
    await persist_worker.stop()
    await chain.aclose()
    await engine.dispose()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    resp = error_response(exc.code, exc.message, request)
    return JSONResponse(
        status_code=exc.http_status,
        content=resp.model_dump(),
    )


app.include_router(balance_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "version": "0.1.0"}
