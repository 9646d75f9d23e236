from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from member_credits.cache.memory import InMemoryAsyncCache
from member_credits.clients.base import IdentityProvider, TagAdmin
from member_credits.db.memory import InMemoryDBManager
from member_credits.errors import AuthError
from member_credits.logging.ledger_logger import LedgerLogger
from member_credits.models.auth import AuthResult
from member_credits.models.member import MemberProfile
from member_credits.services.admin_token_service import AdminTokenService
from member_credits.services.credit_service import CreditService
from member_credits.services.member_directory import MemberDirectory
from member_credits.services.reconciliation_service import ReconciliationService
from member_credits.services.tag_classifier import classify


PAID_KEYWORDS = ["paid", "premium", "subscriber", "member", "vip", "pro"]


class FakeClock:
    """Settable clock shared by services under test."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


class FakeIdentityProvider(IdentityProvider):
    def __init__(self) -> None:
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.error: Optional[AuthError] = None
        self.calls: List[Dict[str, str]] = []

    def add_member(self, member_id: str, email: str, **profile: Any) -> None:
        self.profiles[email] = {"id": member_id, "email": email, **profile}

    async def authenticate(self, credentials: Dict[str, str]) -> AuthResult:
        self.calls.append(dict(credentials))
        if self.error is not None:
            raise self.error
        profile = self.profiles.get(credentials.get("email", ""))
        if profile is None:
            raise AuthError("Authentication failed", status_code=401)
        return AuthResult(
            access_token=f"token-{profile['id']}",
            external_member_id=profile["id"],
            refresh_token="refresh",
            access_token_expires_at="2030-01-01T00:00:00Z",
        )

    async def fetch_profile(self, auth: AuthResult) -> Optional[Dict[str, Any]]:
        for profile in self.profiles.values():
            if profile["id"] == auth.external_member_id:
                return dict(profile)
        return None


class FakeTagAdmin(TagAdmin):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.removed: List[Tuple[str, str]] = []

    async def resolve_tag_id(self, tag_name: str) -> Optional[str]:
        return f"tag-{tag_name}"

    async def remove_tag(self, email: str, tag_id: str) -> bool:
        if self.fail:
            raise RuntimeError("community API unavailable")
        self.removed.append((email, tag_id))
        return True


def make_profile(
    external_member_id: str = "cm-1",
    email: Optional[str] = None,
    tags: Sequence[str] = (),
    **fields: Any,
) -> MemberProfile:
    classification = classify(list(tags), PAID_KEYWORDS)
    return MemberProfile(
        external_member_id=external_member_id,
        email=email or f"{external_member_id}@example.com",
        name=fields.pop("name", "Test Member"),
        is_paid=classification.is_paid,
        tags=list(classification.tags),
        **fields,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def ledger(tmp_path) -> LedgerLogger:
    return LedgerLogger(file_path=tmp_path / "ledger.log")


@pytest.fixture
def directory(db) -> MemberDirectory:
    return MemberDirectory(db)


@pytest.fixture
def credits(db, ledger, clock) -> CreditService:
    return CreditService(db=db, ledger=ledger, clock=clock)


@pytest.fixture
def tag_admin() -> FakeTagAdmin:
    return FakeTagAdmin()


@pytest.fixture
def reconciliation(directory, credits, tag_admin, clock) -> ReconciliationService:
    return ReconciliationService(
        directory=directory, credits=credits, tag_admin=tag_admin, clock=clock
    )


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def admin_tokens(directory, clock) -> AdminTokenService:
    cache = InMemoryAsyncCache(clock=clock.timestamp)
    return AdminTokenService(directory=directory, cache=cache, ttl_seconds=900, clock=clock)
