"""
Common Pydantic schemas for API responses.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from cashback_scanner.models import utcnow


class APIResponse(BaseModel):
    """Base API response model."""
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SuccessResponse(APIResponse):
    """Success response model."""
    data: Optional[Any] = None


def create_success_response(data: Any = None, message: Optional[str] = None) -> SuccessResponse:
    return SuccessResponse(data=data, message=message)
