from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Sequence

from ..clients.base import IdentityProvider
from ..errors import AuthError, ConfigurationError, PersistenceError
from ..models.auth import AuthenticatedMember, AuthHints, AuthResult, ReconciliationResult
from ..models.member import MemberProfile
from .reconciliation_service import ReconciliationService
from .tag_classifier import extract_raw_tags, is_paid, normalize_tags


logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_MEMBER_NAME = "Community Member"


def _has_template_variable(value: str) -> bool:
    return "{{" in value and "}}" in value


def validate_hints(hints: AuthHints, disable_email_only_auth: bool = False) -> Dict[str, str]:
    """
    Check the hints forwarded by the embedded frame and return the
    credentials to send to the identity provider.
    """
    if disable_email_only_auth and hints.email and not (
        hints.name or hints.community_member_id or hints.sso_id
    ):
        raise AuthError(
            "Email-only authentication is disabled. Please access this app through the community.",
            status_code=403,
        )

    credentials: Dict[str, str] = {}
    for field in ("email", "community_member_id", "sso_id"):
        value = getattr(hints, field)
        if not value:
            continue
        if _has_template_variable(value):
            raise AuthError(
                f"The {field} parameter contains an unprocessed template variable.",
                status_code=400,
                detail=value,
            )
        if field == "email" and not EMAIL_PATTERN.match(value):
            raise AuthError("Please provide a valid email address.", status_code=400, detail=value)
        credentials[field] = value

    if not credentials:
        raise AuthError(
            "An email, community member id or SSO id is required.", status_code=400
        )
    return credentials


def _role(profile: Dict[str, Any], role: str) -> bool:
    roles = profile.get("roles")
    if isinstance(roles, dict) and roles.get(role):
        return True
    return bool(profile.get(f"is_{role}", False))


class AuthService:
    """
    Authenticates a member against the community platform and reconciles
    their credits.
    """

    def __init__(
        self,
        identity: Optional[IdentityProvider],
        reconciliation: ReconciliationService,
        paid_keywords: Sequence[str],
        disable_email_only_auth: bool = False,
    ) -> None:
        self._identity = identity
        self._reconciliation = reconciliation
        self._paid_keywords = list(paid_keywords)
        self._disable_email_only_auth = disable_email_only_auth

    async def authenticate(
        self, hints: AuthHints, correlation_id: str | None = None
    ) -> AuthenticatedMember:
        credentials = validate_hints(hints, self._disable_email_only_auth)
        if self._identity is None:
            raise ConfigurationError("No identity provider is configured")

        # Nothing local is touched until the exchange succeeded.
        auth = await self._identity.authenticate(credentials)
        raw = await self._identity.fetch_profile(auth)
        if raw is None:
            logger.info(
                "All member endpoints failed for %s; using data from the auth response",
                auth.external_member_id,
            )
        profile = self._build_profile(auth, raw or {}, hints)

        result = AuthenticatedMember(
            external_member_id=profile.external_member_id,
            email=profile.email,
            name=profile.name,
            avatar_url=profile.avatar_url,
            is_admin=profile.is_admin,
            is_moderator=profile.is_moderator,
            is_paid=profile.is_paid,
            tags=profile.tags,
            access_token=auth.access_token,
            refresh_token=auth.refresh_token,
            expires_at=auth.access_token_expires_at,
        )

        try:
            reconciled = await self._reconciliation.reconcile(profile, correlation_id=correlation_id)
        except PersistenceError:
            logger.exception("Credit reconciliation failed for %s", profile.external_member_id)
            result.db_error = "Database operations failed, but authentication succeeded"
            result.credits_balance = 0
            return result

        self._apply(result, reconciled)
        return result

    def _build_profile(
        self, auth: AuthResult, raw: Dict[str, Any], hints: AuthHints
    ) -> MemberProfile:
        tags = normalize_tags(extract_raw_tags(raw))
        email = raw.get("email") or hints.email
        if not email:
            raise AuthError("The community profile did not include an email address.", status_code=502)
        user_id = raw.get("user_id")
        return MemberProfile(
            external_member_id=auth.external_member_id,
            external_user_id=str(user_id) if user_id is not None else None,
            email=email,
            name=raw.get("name") or hints.name or DEFAULT_MEMBER_NAME,
            avatar_url=raw.get("avatar_url") or hints.avatar_url,
            is_admin=_role(raw, "admin"),
            is_moderator=_role(raw, "moderator"),
            is_paid=is_paid(tags, self._paid_keywords),
            tags=tags,
        )

    @staticmethod
    def _apply(result: AuthenticatedMember, reconciled: ReconciliationResult) -> None:
        result.db_id = reconciled.member_id
        result.credits_balance = reconciled.balance
        result.credits_last_refreshed = reconciled.last_refreshed_at
        result.is_new_user = reconciled.is_new
        result.processed_purchase_tags = reconciled.processed_purchase_tags
