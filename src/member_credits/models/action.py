from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel
from .member import utcnow


class Action(DBSerializableModel):
    """
    One credit-consuming event, written exactly once per successful debit.
    """

    collection_name: ClassVar[str] = "app_actions"
    foreign_keys: ClassVar[Dict[str, str]] = {"member_id": "members.id"}

    id: Optional[str] = Field(default=None)
    member_id: str
    action_type: str
    credits_cost: int = 1
    metadata: Dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SpendResult(BaseModel):
    action_id: str
    credits_spent: int
    credits_remaining: int
    timestamp: datetime
