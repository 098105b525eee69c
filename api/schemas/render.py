"""
Pydantic schemas for render requests and results
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from schemas.usage import UsageSnapshotResponse


class RenderModeEnum(str, Enum):
    PREVIEW = "preview"
    NORMAL = "normal"


class BoundingBoxSchema(BaseModel):
    min_x: int
    min_y: int
    max_x: int
    max_y: int


class CandidateMetricsSchema(BaseModel):
    """Quality metrics of the delivered candidate (score is null when it was rejected)"""

    score: Optional[float] = None
    rejected: bool = False
    rug_area_ratio: float
    bounding_box: Optional[BoundingBoxSchema] = None
    inside_mean_diff: float
    outside_mean_diff: float
    edge_contrast: float


class RenderResponse(BaseModel):
    """Schema for a successful render"""

    b64_json: str
    mime_type: str = "image/png"
    attempt_id: str
    mode: RenderModeEnum
    metrics: Optional[CandidateMetricsSchema] = None
    refinements: List[str] = Field(default_factory=list)
    usage: Optional[UsageSnapshotResponse] = None


class RenderAttemptUser(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None

    class Config:
        from_attributes = True


class RenderAttemptResponse(BaseModel):
    """Schema for an audit row in the admin listing"""

    id: str
    user_id: str
    mode: str
    status: str
    error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    user: Optional[RenderAttemptUser] = None


class AdminOverviewResponse(BaseModel):
    """Totals for the admin dashboard"""

    users: int
    renders: int
    total_credits: int = Field(..., alias="totalCredits")

    class Config:
        populate_by_name = True
