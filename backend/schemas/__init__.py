"""
Pydantic schemas for API request/response validation
"""
from .implementation import (
    ImplementationStartRequest,
    RefineRequest,
    CancelRequest,
    ImplementationResponse,
    ImplementationEventListResponse,
)

__all__ = [
    "ImplementationStartRequest",
    "RefineRequest",
    "CancelRequest",
    "ImplementationResponse",
    "ImplementationEventListResponse",
]
