from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .base import IdentityProvider, TagAdmin
from ..errors import AuthError, ConfigurationError
from ..models.auth import AuthResult


logger = logging.getLogger(__name__)

AUTH_TOKEN_PATH = "/api/v1/headless/auth_token"
MEMBER_PATH = "/api/headless/v1/community_member"
PUBLIC_PROFILE_PATH = "/api/headless/v1/community_members/{member_id}/public_profile"
ADMIN_TAGS_PATH = "/api/admin/v2/member_tags"
TAGGED_MEMBERS_PATH = "/api/admin/v2/tagged_members"


def _bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class CommunityClient(IdentityProvider, TagAdmin):
    """
    httpx client for the community platform's headless and admin APIs.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        admin_api_token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_token = (api_token or "").strip()
        self._admin_api_token = (admin_api_token or "").strip()
        self._timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self._api_token)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        )

    async def authenticate(self, credentials: Dict[str, str]) -> AuthResult:
        if not self._api_token:
            raise ConfigurationError("COMMUNITY_API_TOKEN is not configured")

        try:
            async with self._client() as client:
                resp = await client.post(
                    AUTH_TOKEN_PATH, json=credentials, headers=_bearer(self._api_token)
                )
        except httpx.HTTPError as exc:
            logger.error("Auth token exchange unreachable: %s", exc)
            raise AuthError("Authentication failed", status_code=502, detail=str(exc)) from exc

        if resp.is_error:
            detail = _error_detail(resp)
            logger.error("Auth token exchange rejected: status=%s detail=%s", resp.status_code, detail)
            raise AuthError("Authentication failed", status_code=resp.status_code, detail=detail)

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("Auth token exchange returned an unexpected body: %s", resp.text[:200])
            raise AuthError("Unexpected response from community API", status_code=502)

        access_token = data.get("access_token")
        member_id = data.get("community_member_id")
        if not access_token:
            raise AuthError("No access token received from community API", status_code=502)
        if not member_id:
            raise AuthError("No community member ID received from community API", status_code=502)

        return AuthResult(
            access_token=access_token,
            external_member_id=str(member_id),
            refresh_token=data.get("refresh_token"),
            access_token_expires_at=data.get("access_token_expires_at"),
            community_id=str(data["community_id"]) if data.get("community_id") is not None else None,
            raw=data,
        )

    async def fetch_profile(self, auth: AuthResult) -> Optional[Dict[str, Any]]:
        paths = (
            MEMBER_PATH,
            PUBLIC_PROFILE_PATH.format(member_id=auth.external_member_id),
        )
        async with self._client() as client:
            for path in paths:
                try:
                    resp = await client.get(path, headers=_bearer(auth.access_token))
                    resp.raise_for_status()
                    profile = resp.json()
                except (httpx.HTTPError, ValueError) as exc:
                    logger.info("Profile endpoint %s failed: %s", path, exc)
                    continue
                if isinstance(profile, dict):
                    return profile
        return None

    async def resolve_tag_id(self, tag_name: str) -> Optional[str]:
        if not self._admin_api_token:
            logger.info("COMMUNITY_ADMIN_API_TOKEN not configured, skipping tag lookup")
            return None

        try:
            async with self._client() as client:
                resp = await client.get(ADMIN_TAGS_PATH, headers=_bearer(self._admin_api_token))
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error fetching admin tags: %s", exc)
            return None

        records = data.get("records", data) if isinstance(data, dict) else data
        if not isinstance(records, list):
            logger.warning("Unexpected tags response format: %s", type(records).__name__)
            return None

        for tag in records:
            if isinstance(tag, dict) and tag.get("name") == tag_name and tag.get("id") is not None:
                return str(tag["id"])
        logger.info("Admin tag %r not found in %d tags", tag_name, len(records))
        return None

    async def remove_tag(self, email: str, tag_id: str) -> bool:
        if not self._admin_api_token:
            logger.info("COMMUNITY_ADMIN_API_TOKEN not configured, cannot remove tag")
            return False

        try:
            async with self._client() as client:
                resp = await client.delete(
                    TAGGED_MEMBERS_PATH,
                    params={"user_email": email, "member_tag_id": tag_id},
                    headers=_bearer(self._admin_api_token),
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Error removing member tag %s for %s: %s", tag_id, email, exc)
            return False

        logger.info("Removed member tag %s for %s", tag_id, email)
        return True
