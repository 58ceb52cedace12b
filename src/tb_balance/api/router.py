"""tb_balance REST API — balance reads, watch list, history, cache invalidation."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.tb_balance.application.schemas import WatchTokenRequest
from src.tb_balance.application.service import BalanceApplicationService
from src.tb_common.database import get_db_session
from src.tb_common.errors import InvalidRequestError
from src.tb_common.response import ApiResponse, success_response

router = APIRouter(prefix="/balances", tags=["balances"])


def get_balance_service(request: Request) -> BalanceApplicationService:
    """The service is wired once in the app lifespan."""
    return request.app.state.balance_service


BalanceService = Annotated[BalanceApplicationService, Depends(get_balance_service)]


def parse_token_list(raw: str, max_tokens: int) -> list[str]:
    tokens = [t.strip() for t in raw.split(",") if t.strip()]
    if not tokens:
        raise InvalidRequestError("No token addresses provided")
    if len(tokens) > max_tokens:
        raise InvalidRequestError(f"At most {max_tokens} tokens per batch, got {len(tokens)}")
    return tokens


@router.get("/{account_address}/tokens/{token_address}")
async def get_balance(
    account_address: str,
    token_address: str,
    service: BalanceService,
    request: Request,
    force_refresh: bool = Query(False, description="Bypass the cache and read the chain"),
) -> ApiResponse:
    data = await service.get_balance(account_address, token_address, force_refresh)
    return success_response(data.model_dump(), request)


@router.get("/{account_address}/batch")
async def get_batch_balances(
    account_address: str,
    service: BalanceService,
    request: Request,
    tokens: str = Query(..., description="Comma-separated token addresses"),
) -> ApiResponse:
    token_list = parse_token_list(tokens, settings.MAX_BATCH_TOKENS)
    views = await service.get_multiple_balances(account_address, token_list)
    return success_response([v.model_dump() for v in views], request)


@router.get("/{account_address}/watched")
async def list_watched_pairs(
    account_address: str,
    service: BalanceService,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await service.list_watched_pairs(db, account_address)
    return success_response(data.model_dump(), request)


@router.get("/{account_address}/watched/{token_address}")
async def get_watched_pair(
    account_address: str,
    token_address: str,
    service: BalanceService,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
) -> ApiResponse:
    data = await service.get_watched_pair(db, account_address, token_address)
    return success_response(data.model_dump(), request)


@router.post("/{account_address}/watch")
async def watch_token(
    account_address: str,
    body: WatchTokenRequest,
    service: BalanceService,
    request: Request,
) -> ApiResponse:
    data = await service.watch_token(account_address, body.token_address, body.is_favorite)
    return success_response(data.model_dump(), request)


@router.get("/{account_address}/history/{token_address}")
async def get_historical_balances(
    account_address: str,
    token_address: str,
    service: BalanceService,
    db: Annotated[AsyncSession, Depends(get_db_session)],
    request: Request,
    limit: int = Query(30, ge=1, le=100, description="Maximum number of records to return"),
    since: datetime | None = Query(None, alias="from", description="Observed at or after"),
    until: datetime | None = Query(None, alias="to", description="Observed at or before"),
) -> ApiResponse:
    data = await service.get_historical_balances(
        db, account_address, token_address, limit, since, until
    )
    return success_response(data.model_dump(), request)


@router.delete("/{account_address}/cache/{token_address}")
async def clear_cache(
    account_address: str,
    token_address: str,
    service: BalanceService,
    request: Request,
) -> ApiResponse:
    await service.clear_cache(account_address, token_address)
    return success_response({"cleared": True}, request)
