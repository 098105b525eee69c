"""
Pydantic schemas for usage and credit consumption
"""
from pydantic import BaseModel, Field


class UsageSnapshotResponse(BaseModel):
    """Usage as the client displays it; resetAt is the next 00:00 UTC in ISO-8601 with a Z suffix"""

    limit: int
    used: int
    remaining: int
    reset_at: str = Field(..., alias="resetAt")

    class Config:
        populate_by_name = True


class ConsumeRequest(BaseModel):
    """Schema for a manual credit consumption"""

    type: str = Field("render", max_length=50)
    amount: float = 1
