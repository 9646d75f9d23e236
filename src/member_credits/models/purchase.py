from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel
from .member import utcnow


class PurchaseTag(BaseModel):
    """A tag such as "$50" carried by a member, worth `credits` credits."""

    model_config = ConfigDict(frozen=True)

    tag: str
    credits: int


class ProcessedPurchaseTag(DBSerializableModel):
    """
    Informational audit row for a settled purchase tag. It does not gate
    re-processing; the tag is removed from the community platform instead.
    """

    collection_name: ClassVar[str] = "processed_purchase_tags"
    foreign_keys: ClassVar[Dict[str, str]] = {"member_id": "members.id"}

    id: Optional[str] = Field(default=None)
    member_id: str
    tag_value: str
    credits_granted: int
    processed_at: datetime = Field(default_factory=utcnow)


class TagClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    tags: tuple[str, ...] = ()
    is_paid: bool = False
    purchases: tuple[PurchaseTag, ...] = ()
