from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SpendCreditsRequest(BaseModel):
    circle_member_id: str
    action_type: str
    credits_cost: int = Field(default=1, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GenerateAdminTokenRequest(BaseModel):
    circle_member_id: str


class AdminRefreshRequest(BaseModel):
    bonus_credits: int = Field(default=0, ge=0)
    force_refresh: bool = False


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    code: Optional[str] = None
