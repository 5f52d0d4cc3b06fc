"""
Read-only routes: stats, transactions, per-user cashback, per-rule volume.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

import structlog

from cashback_scanner.core.config import settings
from cashback_scanner.models import SettlementStatus
from cashback_scanner.services.query_service import QueryService
from .dependencies import get_query_service, validate_address_param
from .schemas import SuccessResponse, create_success_response


logger = structlog.get_logger(__name__)

router = APIRouter()
health_router = APIRouter()


def _internal_error(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": code, "message": message}
    )


@health_router.get("/health", summary="Health Check")
async def health(service: QueryService = Depends(get_query_service)):
    """Unhealthy once the last successful scan cycle is too old."""
    try:
        data = await service.health(settings.health_threshold_seconds)
    except Exception as e:
        logger.error("Error checking health", error=str(e))
        raise _internal_error("HEALTH_CHECK_ERROR", "Failed to check health")

    code = status.HTTP_200_OK if data["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(
        status_code=code,
        content=create_success_response(data=data).model_dump(mode="json")
    )


@router.get("/stats", response_model=SuccessResponse, summary="Scanner Statistics")
async def get_stats(service: QueryService = Depends(get_query_service)):
    try:
        stats = await service.get_stats()
    except Exception as e:
        logger.error("Error getting stats", error=str(e))
        raise _internal_error("STATS_ERROR", "Failed to get stats")
    return create_success_response(data=stats)


@router.get("/transactions", response_model=SuccessResponse, summary="List Transactions")
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    user: Optional[str] = Query(None, description="Filter by originating address"),
    rule: Optional[str] = Query(None, description="Filter by rule (DEX) name"),
    status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
    service: QueryService = Depends(get_query_service),
):
    try:
        data = await service.list_transactions(
            page=page,
            limit=limit,
            user=user,
            rule_name=rule,
            status=status_filter,
        )
    except Exception as e:
        logger.error("Error getting transactions", error=str(e))
        raise _internal_error("TRANSACTIONS_ERROR", "Failed to get transactions")
    return create_success_response(data=data)


@router.get("/users/{address}/cashback", response_model=SuccessResponse, summary="User Cashback")
async def get_user_cashback(
    address: str = Depends(validate_address_param),
    service: QueryService = Depends(get_query_service),
):
    try:
        data = await service.get_user_rewards(address)
    except Exception as e:
        logger.error("Error getting user cashback", address=address, error=str(e))
        raise _internal_error("USER_CASHBACK_ERROR", "Failed to get user cashback")
    return create_success_response(data=data)


@router.get("/rules/stats", response_model=SuccessResponse, summary="Per-rule Statistics")
async def get_rule_stats(service: QueryService = Depends(get_query_service)):
    try:
        data = await service.get_rule_stats()
    except Exception as e:
        logger.error("Error getting rule stats", error=str(e))
        raise _internal_error("RULE_STATS_ERROR", "Failed to get rule stats")
    return create_success_response(data=data)


@router.get("/reconciliation/pending", response_model=SuccessResponse, summary="Unresolved Rewards")
async def get_unresolved(
    limit: int = Query(100, ge=1, le=1000),
    service: QueryService = Depends(get_query_service),
):
    """Rewards recorded but never settled, and failed payouts."""
    try:
        data = {
            "unrewarded": await service.list_unresolved(limit=limit),
            "failed": await service.list_failed(limit=limit),
        }
    except Exception as e:
        logger.error("Error getting unresolved rewards", error=str(e))
        raise _internal_error("RECONCILIATION_ERROR", "Failed to get unresolved rewards")
    return create_success_response(data=data)
