from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel
from .member import utcnow


class ChangeType(str, Enum):
    INITIAL_GRANT = "initial_grant"
    MONTHLY_REFRESH = "monthly_refresh"
    UPGRADE_BONUS = "upgrade_bonus"
    PURCHASE = "purchase"
    ACTION_COST = "action_cost"
    ADMIN_BONUS = "admin_bonus"
    ADMIN_REFRESH = "admin_refresh"


class CreditHistoryEntry(DBSerializableModel):
    """
    Append-only record of one balance change. Never updated or deleted.
    """

    collection_name: ClassVar[str] = "credit_history"
    foreign_keys: ClassVar[Dict[str, str]] = {"member_id": "members.id"}

    id: Optional[str] = Field(default=None)
    member_id: str
    change_amount: int
    change_type: ChangeType
    balance_after: int
    reference_id: Optional[str] = Field(
        default=None, description="Action id when the change paid for an action."
    )
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
