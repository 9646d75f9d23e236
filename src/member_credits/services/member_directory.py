from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from ..db.base import BaseDBManager
from ..errors import NotFoundError
from ..models.member import Member, MemberProfile, UpsertResult, utcnow


logger = logging.getLogger(__name__)


class MemberDirectory:
    """
    Durable record of one row per community member.
    """

    def __init__(self, db: BaseDBManager) -> None:
        self._db = db

    async def upsert(
        self, profile: MemberProfile, now: Optional[datetime] = None
    ) -> UpsertResult:
        """
        Insert or update the member and report what the row looked like
        before this call.

        `previous` is read in the same atomic write as the upsert, so the
        paid status and tags it carries are the ones downstream transition
        checks must compare against. `is_new` is True only when this call
        created the row.
        """
        async with self._db.transaction():
            member, before = await self._db.upsert_member(profile, now or utcnow())

        result = UpsertResult(
            member=member,
            previous=before.snapshot() if before is not None else None,
            is_new=before is None,
        )
        logger.info(
            "Member upserted",
            extra={
                "member_id": member.id,
                "external_member_id": member.external_member_id,
                "is_new": result.is_new,
            },
        )
        return result

    async def get(self, external_member_id: str) -> Optional[Member]:
        return await self._db.get_member_by_external_id(external_member_id)

    async def require(self, external_member_id: str) -> Member:
        member = await self.get(external_member_id)
        if member is None:
            raise NotFoundError(f"member {external_member_id} not found")
        return member

    async def list_members(self) -> Iterable[Member]:
        return await self._db.list_members()
