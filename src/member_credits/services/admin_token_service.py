from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from ..cache.base import AsyncCacheBackend
from ..errors import AuthError
from ..models.admin import AdminSession, AdminToken
from ..models.member import utcnow
from .member_directory import MemberDirectory


logger = logging.getLogger(__name__)


class AdminTokenService:
    """
    Short-lived bearer tokens for the admin views.

    Tokens live in the configured cache with a TTL; with the in-memory cache
    they are only valid on the instance that issued them.
    """

    def __init__(
        self,
        directory: MemberDirectory,
        cache: AsyncCacheBackend,
        ttl_seconds: int = 900,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _cache_key(token: str) -> str:
        return f"admin:token:{token}"

    async def generate_token(self, external_member_id: str) -> AdminToken:
        member = await self._directory.get(external_member_id)
        if member is None or not member.is_admin:
            logger.warning("Admin token denied for member %s", external_member_id)
            raise AuthError("Admin privileges required", status_code=403)

        token = secrets.token_hex(32)
        now = self._clock()
        session = AdminSession(
            external_member_id=external_member_id,
            name=member.name,
            email=member.email,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl_seconds),
        )
        await self._cache.set(
            self._cache_key(token), session.model_dump(mode="json"), ttl_seconds=self._ttl_seconds
        )
        # Purge expired tokens whenever a new one is issued
        await self._cache.sweep()
        return AdminToken(token=token, expires_at=session.expires_at)

    async def validate(self, token: str | None) -> AdminSession:
        if not token:
            raise AuthError("Admin token required", status_code=401)

        key = self._cache_key(token)
        cached = await self._cache.get(key)
        if not isinstance(cached, dict):
            raise AuthError("Admin token is invalid or has expired", status_code=401)

        session = AdminSession.model_validate(cached)
        if session.expires_at < self._clock():
            await self._cache.delete(key)
            raise AuthError("Admin token has expired, please generate a new one", status_code=401)
        return session

    async def sweep(self) -> int:
        return await self._cache.sweep()
