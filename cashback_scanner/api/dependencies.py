"""
API dependencies for FastAPI endpoints.
"""

import re

from fastapi import HTTPException, Path, Request, status

import structlog

from cashback_scanner.services.query_service import QueryService


logger = structlog.get_logger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def get_query_service(request: Request) -> QueryService:
    """Query service attached to the application state."""
    service = getattr(request.app.state, "query_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "SERVICE_UNAVAILABLE", "message": "Query service not initialized"}
        )
    return service


async def validate_address_param(
    address: str = Path(..., description="Originating wallet address")
) -> str:
    """Validate an address path parameter."""
    if not ADDRESS_PATTERN.match(address):
        logger.warning("Invalid address provided", address=address)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "INVALID_ADDRESS", "message": "Invalid wallet address format"}
        )
    return address.lower()
