from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional, Tuple

from ..models.action import Action
from ..models.credits import CreditAccount
from ..models.history import CreditHistoryEntry
from ..models.member import Member, MemberProfile
from ..models.purchase import ProcessedPurchaseTag


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations (in-memory, MongoDB, ...) implement these
    methods. Ledger mutations are made atomic through the `transaction()`
    context manager together with `lock_credit_account()`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic transaction context.

        Commits on success. On exception everything written inside the
        context is rolled back; failures that are not already a
        `CreditError` are re-raised as `PersistenceError`. Entering while a
        transaction is already active joins it.
        """
        yield

    @abstractmethod
    async def lock_credit_account(self, member_id: str) -> Optional[CreditAccount]:
        """
        Lock the member's credit account until the current transaction ends
        and return its current state (None when no account exists yet).

        Must be called inside `transaction()`. At most one transaction holds
        the lock for a given member at any time.
        """
        ...

    # Member operations
    @abstractmethod
    async def upsert_member(
        self, profile: MemberProfile, seen_at: datetime
    ) -> Tuple[Member, Optional[Member]]:
        """
        Insert or update the member keyed on `external_member_id`.

        Returns the stored member and the row as it was before the write
        (None when the row was created by this call).
        """
        ...

    @abstractmethod
    async def get_member(self, member_id: str) -> Optional[Member]: ...

    @abstractmethod
    async def get_member_by_external_id(self, external_member_id: str) -> Optional[Member]: ...

    @abstractmethod
    async def list_members(self) -> Iterable[Member]:
        """All members, most recently seen first."""
        ...

    @abstractmethod
    async def delete_member(self, member_id: str) -> None:
        """Remove a member together with all rows that reference it."""
        ...

    # Credit accounts
    @abstractmethod
    async def get_credit_account(self, member_id: str) -> Optional[CreditAccount]: ...

    @abstractmethod
    async def save_credit_account(self, account: CreditAccount) -> CreditAccount: ...

    @abstractmethod
    async def list_credit_accounts(self) -> Iterable[CreditAccount]:
        """All accounts, highest balance first."""
        ...

    # Credit history
    @abstractmethod
    async def add_history_entry(self, entry: CreditHistoryEntry) -> CreditHistoryEntry: ...

    @abstractmethod
    async def get_history(
        self, member_id: Optional[str] = None, limit: Optional[int] = None, offset: int = 0
    ) -> Iterable[CreditHistoryEntry]:
        """History entries, newest first; all members when `member_id` is None."""
        ...

    @abstractmethod
    async def count_history(self, member_id: str) -> int: ...

    # Actions
    @abstractmethod
    async def add_action(self, action: Action) -> Action: ...

    @abstractmethod
    async def get_actions(
        self,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        action_type: Optional[str] = None,
    ) -> Iterable[Action]:
        """Actions, newest first; all members when `member_id` is None."""
        ...

    @abstractmethod
    async def count_actions(
        self,
        member_id: Optional[str] = None,
        action_type: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int: ...

    # Purchase tag audit
    @abstractmethod
    async def add_processed_purchase_tag(
        self, record: ProcessedPurchaseTag
    ) -> ProcessedPurchaseTag: ...

    @abstractmethod
    async def get_processed_purchase_tags(
        self, member_id: str
    ) -> Iterable[ProcessedPurchaseTag]: ...
