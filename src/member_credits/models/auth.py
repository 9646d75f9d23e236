from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AuthHints(BaseModel):
    """Credential hints forwarded by the embedded frame."""

    email: Optional[str] = None
    community_member_id: Optional[str] = None
    sso_id: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class AuthResult(BaseModel):
    """Outcome of the identity provider's token exchange."""

    access_token: str
    external_member_id: str
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[str] = None
    community_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    member_id: str
    is_new: bool
    balance: int
    last_refreshed_at: datetime
    processed_purchase_tags: List[str] = Field(default_factory=list)


class AuthenticatedMember(BaseModel):
    external_member_id: str
    db_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_moderator: bool = False
    is_paid: bool = False
    tags: List[str] = Field(default_factory=list)
    credits_balance: int = 0
    credits_last_refreshed: Optional[datetime] = None
    is_new_user: bool = False
    processed_purchase_tags: List[str] = Field(default_factory=list)
    db_error: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[str] = None
