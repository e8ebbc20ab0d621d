"""
Pydantic models for API responses.
"""
from pydantic import BaseModel
from typing import Optional, List


class PulpCondition(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    lastTransitionTime: Optional[str] = None


class PulpResponse(BaseModel):
    """Descriptor summary returned to observers."""
    name: str
    namespace: str
    deploymentType: str = "pulp"
    storageBackend: str = "None"
    ready: bool = False
    generation: int = 0
    conditions: List[PulpCondition] = []


class PulpListResponse(BaseModel):
    pulps: List[PulpResponse]
    total: int


class ConditionListResponse(BaseModel):
    name: str
    conditions: List[PulpCondition]


class PulpEvent(BaseModel):
    timestamp: str = ""
    severity: str = ""
    reason: str = ""
    message: str = ""


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
