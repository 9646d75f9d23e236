from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .base import DBSerializableModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Member(DBSerializableModel):
    """
    Local record of a community member, synchronized on every authentication.
    """

    collection_name: ClassVar[str] = "members"
    unique_fields: ClassVar[Tuple[str, ...]] = ("external_member_id", "email")

    id: Optional[str] = Field(default=None)
    external_member_id: str = Field(
        description="Member id on the community platform; immutable once created."
    )
    external_user_id: Optional[str] = None
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_moderator: bool = False
    is_paid: bool = False
    tags: List[str] = Field(default_factory=list)
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> "MemberSnapshot":
        return MemberSnapshot(is_paid=self.is_paid, tags=list(self.tags))


class MemberProfile(BaseModel):
    """Mutable member attributes as observed on the community platform."""

    external_member_id: str
    external_user_id: Optional[str] = None
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_moderator: bool = False
    is_paid: bool = False
    tags: List[str] = Field(default_factory=list)

    def field_updates(self) -> Dict[str, object]:
        return self.model_dump(exclude={"external_member_id"})


class MemberSnapshot(BaseModel):
    """Paid status and tags of a member row as they were before an upsert."""

    is_paid: bool = False
    tags: List[str] = Field(default_factory=list)


class UpsertResult(BaseModel):
    member: Member
    previous: Optional[MemberSnapshot] = None
    is_new: bool = False
