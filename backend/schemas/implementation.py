"""
Implementation-related Pydantic schemas
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from implementation.schemas import ImplementationConfig, ImplementationProgress, TaskContext


class ImplementationStartRequest(BaseModel):
    """Request body for starting an implementation"""
    context: TaskContext
    options: Optional[ImplementationConfig] = Field(None, description="Engine options; defaults come from config")


class RefineRequest(BaseModel):
    """Request body for refining the plan under review"""
    feedback: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """Request body for cancelling an implementation"""
    reason: Optional[str] = None


class ImplementationResponse(BaseModel):
    """Response schema for a single implementation"""
    task_id: str
    progress: ImplementationProgress


class ImplementationEventListResponse(BaseModel):
    """Response schema for recorded events"""
    task_id: str
    events: List[Dict[str, Any]]
    total: int
