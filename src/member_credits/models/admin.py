from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class AdminToken(BaseModel):
    token: str
    expires_at: datetime


class AdminSession(BaseModel):
    external_member_id: str
    name: str | None = None
    email: str
    created_at: datetime
    expires_at: datetime


class AdminAdjustmentResult(BaseModel):
    external_member_id: str
    previous_balance: int
    credits_added: int
    current_balance: int
    operations: List[str] = Field(default_factory=list)


class LedgerStats(BaseModel):
    total_members: int
    total_credits: int
    total_actions: int
    actions_24h: int
