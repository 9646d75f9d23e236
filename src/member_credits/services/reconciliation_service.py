from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from ..clients.base import TagAdmin
from ..models.auth import ReconciliationResult
from ..models.member import MemberProfile, utcnow
from ..models.purchase import PurchaseTag
from .credit_service import CreditService
from .member_directory import MemberDirectory
from .tag_classifier import extract_purchase_tags


logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Brings a member's ledger up to date on every authentication event.

    Order per event:
      1. upsert the member, keeping the pre-upsert snapshot;
      2. new member or no account: initial grant, nothing else from this branch;
         otherwise upgrade bonus on a free -> paid transition, then the
         monthly refresh when one is due;
      3. settle purchase tags whenever any are present;
      4. after the settlement committed, remove the settled tags from the
         community platform in the background. Removal outcomes are only
         logged and never undo credits.

    A ledger failure aborts the remaining steps and propagates; steps that
    already committed stay committed.
    """

    def __init__(
        self,
        directory: MemberDirectory,
        credits: CreditService,
        tag_admin: Optional[TagAdmin] = None,
        min_purchase_credits: int = 1,
        max_purchase_credits: int = 10000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._credits = credits
        self._tag_admin = tag_admin
        self._min_purchase_credits = min_purchase_credits
        self._max_purchase_credits = max_purchase_credits
        self._clock = clock
        self._background: Set[asyncio.Task] = set()

    async def reconcile(
        self, profile: MemberProfile, correlation_id: str | None = None
    ) -> ReconciliationResult:
        now = self._clock()
        upsert = await self._directory.upsert(profile, now=now)
        member_id = str(upsert.member.id)
        account = await self._credits.get_account(member_id)

        if account is None or upsert.is_new:
            logger.info("Granting initial credits to member %s (paid=%s)", member_id, profile.is_paid)
            await self._credits.grant_initial(member_id, profile.is_paid, correlation_id=correlation_id)
        else:
            previous = upsert.previous
            if previous is not None and not previous.is_paid and profile.is_paid:
                logger.info("Member %s upgraded to paid", member_id)
                await self._credits.award_upgrade_bonus(member_id, correlation_id=correlation_id)
            if self._credits.is_refresh_due(account, now):
                logger.info("Member %s is eligible for a monthly refresh", member_id)
                await self._credits.refresh_monthly(
                    member_id, profile.is_paid, correlation_id=correlation_id
                )

        purchases = extract_purchase_tags(
            profile.tags, self._min_purchase_credits, self._max_purchase_credits
        )
        settled: List[str] = []
        if purchases:
            logger.info(
                "Settling %d purchase tag(s) for member %s", len(purchases), member_id
            )
            await self._credits.settle_purchases(member_id, purchases, correlation_id=correlation_id)
            settled = [p.tag for p in purchases]
            self._schedule_tag_removal(profile.email, purchases)

        final = await self._credits.get_account(member_id)
        if final is None:
            raise RuntimeError(f"credit account for member {member_id} missing after reconciliation")
        return ReconciliationResult(
            member_id=member_id,
            is_new=upsert.is_new,
            balance=final.balance,
            last_refreshed_at=final.last_refreshed_at,
            processed_purchase_tags=settled,
        )

    def _schedule_tag_removal(self, email: str, purchases: Sequence[PurchaseTag]) -> None:
        if self._tag_admin is None:
            return
        task = asyncio.create_task(self._remove_tags(email, [p.tag for p in purchases]))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _remove_tags(self, email: str, tags: Sequence[str]) -> None:
        assert self._tag_admin is not None
        for tag in tags:
            try:
                tag_id = await self._tag_admin.resolve_tag_id(tag)
                if tag_id is None:
                    logger.warning("No admin tag id for %r; it will stay on %s", tag, email)
                    continue
                removed = await self._tag_admin.remove_tag(email, tag_id)
            except Exception:
                logger.exception("Removing purchase tag %r from %s failed", tag, email)
                continue
            if removed:
                logger.info("Removed purchase tag %r from %s", tag, email)
            else:
                logger.warning("Could not remove purchase tag %r from %s", tag, email)

    async def wait_for_background_tasks(self) -> None:
        """Wait until all scheduled tag removals have finished."""
        while self._background:
            pending = list(self._background)
            await asyncio.gather(*pending, return_exceptions=True)
            self._background.difference_update(pending)
