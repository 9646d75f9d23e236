from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import CreditPolicy
from ..db.base import BaseDBManager
from ..errors import InsufficientCreditsError, NotFoundError
from ..logging.ledger_logger import LedgerLogger
from ..models.action import Action, SpendResult
from ..models.admin import AdminAdjustmentResult, LedgerStats
from ..models.base import PaginatedResult
from ..models.credits import CreditAccount, CreditBalance
from ..models.history import ChangeType, CreditHistoryEntry
from ..models.member import Member, utcnow
from ..models.purchase import ProcessedPurchaseTag, PurchaseTag


logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class CreditService:
    """
    High-level credit ledger.

    Every balance mutation runs in one transaction with the member's account
    locked: read balance, compute, persist the balance and append the
    history entries, all-or-nothing. The ledger log is written after commit.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        policy: Optional[CreditPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._policy = policy or CreditPolicy()
        self._clock = clock

    @property
    def policy(self) -> CreditPolicy:
        return self._policy

    @staticmethod
    def is_refresh_due(account: CreditAccount, now: datetime) -> bool:
        return add_months(account.last_refreshed_at, 1) <= now

    async def get_account(self, member_id: str) -> Optional[CreditAccount]:
        return await self._db.get_credit_account(member_id)

    async def grant_initial(
        self, member_id: str, is_paid: bool, correlation_id: str | None = None
    ) -> int:
        """
        Set the balance to the tier's initial amount and restart the monthly
        refresh clock. Callers invoke this at most once per qualifying event.
        """
        amount = self._policy.initial_for(is_paid)
        tier = "paid" if is_paid else "free"
        now = self._clock()

        async with self._db.transaction():
            account = await self._db.lock_credit_account(member_id)
            previous = 0
            if account is None:
                account = CreditAccount(member_id=member_id, created_at=now)
            else:
                previous = account.balance

            account.balance = amount
            account.last_refreshed_at = now
            account.updated_at = now
            await self._db.save_credit_account(account)
            # Recorded as the difference so the history still folds to the balance
            await self._db.add_history_entry(
                CreditHistoryEntry(
                    member_id=member_id,
                    change_amount=amount - previous,
                    change_type=ChangeType.INITIAL_GRANT,
                    balance_after=amount,
                    notes=f"Initial credit grant: {tier} member",
                    created_at=now,
                )
            )

        await self._ledger.log_transaction(
            member_id=member_id,
            message="Initial credits granted",
            details={"amount": amount, "tier": tier, "new_balance": amount},
            correlation_id=correlation_id,
        )
        return amount

    async def refresh_monthly(
        self,
        member_id: str,
        is_paid: bool,
        only_if_due: bool = True,
        change_type: ChangeType = ChangeType.MONTHLY_REFRESH,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> int:
        """
        Add the tier's monthly amount to the balance and advance
        `last_refreshed_at`. With `only_if_due` the due check is repeated
        under the lock, so concurrent events refresh at most once.
        """
        amount = self._policy.monthly_for(is_paid)
        tier = "paid" if is_paid else "free"
        now = self._clock()

        async with self._db.transaction():
            account = await self._require_locked(member_id)
            if only_if_due and not self.is_refresh_due(account, now):
                return account.balance
            await self._apply_changes(
                account,
                [(amount, change_type, notes or f"Monthly credit refresh: {tier} member", None)],
                now,
                refreshed=True,
            )

        await self._ledger.log_transaction(
            member_id=member_id,
            message="Monthly credits refreshed",
            details={"amount": amount, "tier": tier, "new_balance": account.balance},
            correlation_id=correlation_id,
        )
        return account.balance

    async def award_upgrade_bonus(
        self, member_id: str, correlation_id: str | None = None
    ) -> int:
        bonus = self._policy.upgrade_bonus
        now = self._clock()

        async with self._db.transaction():
            account = await self._require_locked(member_id)
            if bonus <= 0:
                logger.info("Upgrade bonus is not positive (%s); nothing to award", bonus)
                return account.balance
            await self._apply_changes(
                account,
                [(bonus, ChangeType.UPGRADE_BONUS, "Credit bonus for upgrading to paid membership", None)],
                now,
            )

        await self._ledger.log_transaction(
            member_id=member_id,
            message="Upgrade bonus awarded",
            details={"amount": bonus, "new_balance": account.balance},
            correlation_id=correlation_id,
        )
        return account.balance

    async def settle_purchases(
        self,
        member_id: str,
        purchases: Sequence[PurchaseTag],
        correlation_id: str | None = None,
    ) -> int:
        """
        Credit all purchase tags as one balance update, with one history
        entry and one processed-tag row per tag. Nothing is kept if any
        write fails.
        """
        now = self._clock()
        async with self._db.transaction():
            account = await self._require_locked(member_id)
            if not purchases:
                return account.balance

            await self._apply_changes(
                account,
                [
                    (p.credits, ChangeType.PURCHASE, f"One-time purchase: {p.tag}", None)
                    for p in purchases
                ],
                now,
            )
            for purchase in purchases:
                await self._db.add_processed_purchase_tag(
                    ProcessedPurchaseTag(
                        member_id=member_id,
                        tag_value=purchase.tag,
                        credits_granted=purchase.credits,
                        processed_at=now,
                    )
                )

        total = sum(p.credits for p in purchases)
        await self._ledger.log_transaction(
            member_id=member_id,
            message="Purchase tags settled",
            details={
                "tags": [p.tag for p in purchases],
                "amount": total,
                "new_balance": account.balance,
            },
            correlation_id=correlation_id,
        )
        return account.balance

    async def debit(
        self,
        member_id: str,
        amount: int,
        action_type: str,
        metadata: Dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> SpendResult:
        """
        Deduct credits for an action. Raises InsufficientCreditsError if the
        balance does not cover `amount`; nothing is written in that case.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        now = self._clock()
        try:
            async with self._db.transaction():
                account = await self._require_locked(member_id)
                if account.balance < amount:
                    raise InsufficientCreditsError(required=amount, available=account.balance)

                action = await self._db.add_action(
                    Action(
                        member_id=member_id,
                        action_type=action_type,
                        credits_cost=amount,
                        metadata=metadata or {},
                        success=True,
                        created_at=now,
                    )
                )
                await self._apply_changes(
                    account,
                    [(-amount, ChangeType.ACTION_COST, f"Credits spent on {action_type}", action.id)],
                    now,
                )
        except InsufficientCreditsError as exc:
            await self._ledger.log_error(
                message="Insufficient credits for deduction",
                details={"requested": exc.required, "available": exc.available, "action_type": action_type},
                member_id=member_id,
                correlation_id=correlation_id,
            )
            raise

        await self._ledger.log_transaction(
            member_id=member_id,
            message="Credits deducted",
            details={"amount": amount, "action_type": action_type, "new_balance": account.balance},
            correlation_id=correlation_id,
        )
        return SpendResult(
            action_id=str(action.id),
            credits_spent=amount,
            credits_remaining=account.balance,
            timestamp=action.created_at,
        )

    async def admin_adjust(
        self,
        member: Member,
        bonus_amount: int = 0,
        force_refresh: bool = False,
        admin_email: str | None = None,
        correlation_id: str | None = None,
    ) -> AdminAdjustmentResult:
        """
        Apply an administrator's bonus and/or forced monthly refresh directly,
        outside the authentication flow.
        """
        if bonus_amount < 0:
            raise ValueError("bonus_amount must not be negative")

        member_id = str(member.id)
        by = admin_email or "unknown admin"
        now = self._clock()
        operations: List[str] = []
        changes: List[Tuple[int, ChangeType, str, Optional[str]]] = []
        if bonus_amount > 0:
            changes.append(
                (bonus_amount, ChangeType.ADMIN_BONUS, f"Manual credit bonus added by admin {by}", None)
            )
            operations.append(f"Added {bonus_amount} bonus credits")
        if force_refresh:
            monthly = self._policy.monthly_for(member.is_paid)
            changes.append((monthly, ChangeType.ADMIN_REFRESH, f"Manual monthly refresh by admin {by}", None))
            operations.append(f"Added {monthly} monthly refresh credits")

        async with self._db.transaction():
            account = await self._db.lock_credit_account(member_id)
            if account is None:
                account = CreditAccount(member_id=member_id, balance=0, created_at=now)
            previous = account.balance
            if changes:
                await self._apply_changes(account, changes, now, refreshed=force_refresh)

        added = account.balance - previous
        if changes:
            await self._ledger.log_transaction(
                member_id=member_id,
                message="Admin credit adjustment",
                details={"operations": operations, "admin": by, "new_balance": account.balance},
                correlation_id=correlation_id,
            )
        return AdminAdjustmentResult(
            external_member_id=member.external_member_id,
            previous_balance=previous,
            credits_added=added,
            current_balance=account.balance,
            operations=operations,
        )

    # Reads
    async def get_balance(self, external_member_id: str) -> CreditBalance:
        member = await self._db.get_member_by_external_id(external_member_id)
        account = await self._db.get_credit_account(str(member.id)) if member else None
        if member is None or account is None:
            raise NotFoundError(f"no credit record found for member {external_member_id}")
        return CreditBalance(
            external_member_id=external_member_id,
            balance=account.balance,
            last_refreshed_at=account.last_refreshed_at,
            name=member.name,
            email=member.email,
            is_paid=member.is_paid,
        )

    async def get_credit_history(
        self, external_member_id: str, limit: int = 50, offset: int = 0
    ) -> PaginatedResult:
        member = await self._require_member(external_member_id)
        items = list(await self._db.get_history(str(member.id), limit=limit, offset=offset))
        total = await self._db.count_history(str(member.id))
        return PaginatedResult(items=items, total=total, limit=limit, offset=offset)

    async def get_actions(
        self,
        external_member_id: str,
        limit: int = 50,
        offset: int = 0,
        action_type: str | None = None,
    ) -> PaginatedResult:
        member = await self._require_member(external_member_id)
        items = list(
            await self._db.get_actions(
                str(member.id), limit=limit, offset=offset, action_type=action_type
            )
        )
        total = await self._db.count_actions(str(member.id), action_type=action_type)
        return PaginatedResult(items=items, total=total, limit=limit, offset=offset)

    async def list_balances(self) -> List[CreditBalance]:
        members = {m.id: m for m in await self._db.list_members()}
        balances: List[CreditBalance] = []
        for account in await self._db.list_credit_accounts():
            member = members.get(account.member_id)
            if member is None:
                continue
            balances.append(
                CreditBalance(
                    external_member_id=member.external_member_id,
                    balance=account.balance,
                    last_refreshed_at=account.last_refreshed_at,
                    name=member.name,
                    email=member.email,
                    is_paid=member.is_paid,
                )
            )
        return balances

    async def recent_actions(self, limit: int = 100) -> List[Action]:
        return list(await self._db.get_actions(limit=limit))

    async def recent_history(self, limit: int = 100) -> List[CreditHistoryEntry]:
        return list(await self._db.get_history(limit=limit))

    async def stats(self, now: datetime | None = None) -> LedgerStats:
        now = now or self._clock()
        members = list(await self._db.list_members())
        accounts = list(await self._db.list_credit_accounts())
        return LedgerStats(
            total_members=len(members),
            total_credits=sum(a.balance for a in accounts),
            total_actions=await self._db.count_actions(),
            actions_24h=await self._db.count_actions(since=now - timedelta(hours=24)),
        )

    # Internals
    async def _require_member(self, external_member_id: str) -> Member:
        member = await self._db.get_member_by_external_id(external_member_id)
        if member is None:
            raise NotFoundError(f"member {external_member_id} not found")
        return member

    async def _require_locked(self, member_id: str) -> CreditAccount:
        account = await self._db.lock_credit_account(member_id)
        if account is None:
            raise NotFoundError(f"no credit account for member {member_id}")
        return account

    async def _apply_changes(
        self,
        account: CreditAccount,
        changes: Sequence[Tuple[int, ChangeType, str, Optional[str]]],
        now: datetime,
        refreshed: bool = False,
    ) -> None:
        """
        Persist the combined balance once and append one history entry per
        change; each entry's `balance_after` is the running balance.
        """
        running = account.balance
        entries: List[CreditHistoryEntry] = []
        for amount, change_type, notes, reference_id in changes:
            running += amount
            entries.append(
                CreditHistoryEntry(
                    member_id=account.member_id,
                    change_amount=amount,
                    change_type=change_type,
                    balance_after=running,
                    reference_id=reference_id,
                    notes=notes,
                    created_at=now,
                )
            )

        account.balance = running
        account.updated_at = now
        if refreshed:
            account.last_refreshed_at = now
        await self._db.save_credit_account(account)
        for entry in entries:
            await self._db.add_history_entry(entry)
