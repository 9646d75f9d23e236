from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from .base import DBSerializableModel
from .member import utcnow


class CreditAccount(DBSerializableModel):
    """
    Cached balance of a member. The history entries are the source of truth;
    `balance` is their fold, maintained in the same transaction.
    """

    collection_name: ClassVar[str] = "member_credits"
    unique_fields: ClassVar[Tuple[str, ...]] = ("member_id",)
    foreign_keys: ClassVar[Dict[str, str]] = {"member_id": "members.id"}

    id: Optional[str] = Field(default=None)
    member_id: str
    balance: int = 0
    last_refreshed_at: datetime = Field(
        default_factory=utcnow,
        description="Baseline for the next monthly refresh.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditBalance(BaseModel):
    external_member_id: str
    balance: int
    last_refreshed_at: datetime
    name: Optional[str] = None
    email: Optional[str] = None
    is_paid: bool = False
