from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .base import BaseDBManager
from ..errors import CreditError, PersistenceError
from ..models.action import Action
from ..models.base import DBSerializableModel
from ..models.credits import CreditAccount
from ..models.history import CreditHistoryEntry
from ..models.member import Member, MemberProfile
from ..models.purchase import ProcessedPurchaseTag


TModel = TypeVar("TModel", bound=DBSerializableModel)


class _MemoryTransaction:
    def __init__(self) -> None:
        self.undo: List[Callable[[], None]] = []
        self.locks: Dict[str, asyncio.Lock] = {}

    def rollback(self) -> None:
        for step in reversed(self.undo):
            step()
        self.undo.clear()

    def release(self) -> None:
        for lock in self.locks.values():
            lock.release()
        self.locks.clear()


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Writes made inside `transaction()` are journaled and undone on failure.
    Account locks are per-member `asyncio.Lock`s held until the enclosing
    transaction ends.
    """

    def __init__(self) -> None:
        self._members: Dict[str, Member] = {}
        self._accounts: Dict[str, CreditAccount] = {}
        self._history: List[CreditHistoryEntry] = []
        self._actions: List[Action] = []
        self._purchase_tags: List[ProcessedPurchaseTag] = []
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self._id_counter: int = 0
        self._current: ContextVar[Optional[_MemoryTransaction]] = ContextVar(
            f"memory_tx_{id(self)}", default=None
        )

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    def _journal(self, step: Callable[[], None]) -> None:
        tx = self._current.get()
        if tx is not None:
            tx.undo.append(step)

    @staticmethod
    def _copy(model: TModel) -> TModel:
        return model.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._current.get() is not None:
            yield
            return

        tx = _MemoryTransaction()
        token = self._current.set(tx)
        try:
            yield
        except CreditError:
            tx.rollback()
            raise
        except Exception as exc:
            tx.rollback()
            raise PersistenceError(f"in-memory transaction failed: {exc}") from exc
        finally:
            self._current.reset(token)
            tx.release()

    async def lock_credit_account(self, member_id: str) -> Optional[CreditAccount]:
        tx = self._current.get()
        if tx is None:
            raise RuntimeError("lock_credit_account() requires an active transaction")
        if member_id not in tx.locks:
            lock = self._account_locks.setdefault(member_id, asyncio.Lock())
            await lock.acquire()
            tx.locks[member_id] = lock
        return await self.get_credit_account(member_id)

    # Member operations
    async def upsert_member(
        self, profile: MemberProfile, seen_at: datetime
    ) -> Tuple[Member, Optional[Member]]:
        existing = next(
            (
                m
                for m in self._members.values()
                if m.external_member_id == profile.external_member_id
            ),
            None,
        )
        clash = next(
            (
                m
                for m in self._members.values()
                if m.email == profile.email
                and m.external_member_id != profile.external_member_id
            ),
            None,
        )
        if clash is not None:
            raise ValueError(f"duplicate key: email {profile.email!r} already in use")

        if existing is None:
            member = Member(
                id=self._next_id(),
                **profile.model_dump(),
                first_seen_at=seen_at,
                last_seen_at=seen_at,
                created_at=seen_at,
                updated_at=seen_at,
            )
            self._members[member.id] = member
            self._journal(lambda: self._members.pop(member.id, None))
            return self._copy(member), None

        previous = self._copy(existing)
        updated = existing.model_copy(
            update={**profile.field_updates(), "last_seen_at": seen_at, "updated_at": seen_at},
            deep=True,
        )
        self._members[existing.id] = updated

        def _restore() -> None:
            self._members[previous.id] = previous

        self._journal(_restore)
        return self._copy(updated), previous

    async def get_member(self, member_id: str) -> Optional[Member]:
        member = self._members.get(member_id)
        return self._copy(member) if member else None

    async def get_member_by_external_id(self, external_member_id: str) -> Optional[Member]:
        for member in self._members.values():
            if member.external_member_id == external_member_id:
                return self._copy(member)
        return None

    async def list_members(self) -> Iterable[Member]:
        members = sorted(self._members.values(), key=lambda m: m.last_seen_at, reverse=True)
        return [self._copy(m) for m in members]

    async def delete_member(self, member_id: str) -> None:
        self._members.pop(member_id, None)
        self._accounts.pop(member_id, None)
        self._history = [e for e in self._history if e.member_id != member_id]
        self._actions = [a for a in self._actions if a.member_id != member_id]
        self._purchase_tags = [p for p in self._purchase_tags if p.member_id != member_id]

    # Credit accounts
    async def get_credit_account(self, member_id: str) -> Optional[CreditAccount]:
        account = self._accounts.get(member_id)
        return self._copy(account) if account else None

    async def save_credit_account(self, account: CreditAccount) -> CreditAccount:
        if account.member_id not in self._members:
            raise ValueError(f"foreign key: member {account.member_id!r} does not exist")
        if account.id is None:
            account.id = self._next_id()
        previous = self._accounts.get(account.member_id)
        self._accounts[account.member_id] = self._copy(account)

        def _restore() -> None:
            if previous is None:
                self._accounts.pop(account.member_id, None)
            else:
                self._accounts[account.member_id] = previous

        self._journal(_restore)
        return account

    async def list_credit_accounts(self) -> Iterable[CreditAccount]:
        accounts = sorted(self._accounts.values(), key=lambda a: a.balance, reverse=True)
        return [self._copy(a) for a in accounts]

    # Credit history
    async def add_history_entry(self, entry: CreditHistoryEntry) -> CreditHistoryEntry:
        self._append(self._history, entry)
        return entry

    async def get_history(
        self, member_id: Optional[str] = None, limit: Optional[int] = None, offset: int = 0
    ) -> Iterable[CreditHistoryEntry]:
        rows = [e for e in self._history if member_id is None or e.member_id == member_id]
        return self._page(rows, limit, offset)

    async def count_history(self, member_id: str) -> int:
        return sum(1 for e in self._history if e.member_id == member_id)

    # Actions
    async def add_action(self, action: Action) -> Action:
        self._append(self._actions, action)
        return action

    async def get_actions(
        self,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        action_type: Optional[str] = None,
    ) -> Iterable[Action]:
        rows = [
            a
            for a in self._actions
            if (member_id is None or a.member_id == member_id)
            and (action_type is None or a.action_type == action_type)
        ]
        return self._page(rows, limit, offset)

    async def count_actions(
        self,
        member_id: Optional[str] = None,
        action_type: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        return sum(
            1
            for a in self._actions
            if (member_id is None or a.member_id == member_id)
            and (action_type is None or a.action_type == action_type)
            and (since is None or a.created_at >= since)
        )

    # Purchase tag audit
    async def add_processed_purchase_tag(
        self, record: ProcessedPurchaseTag
    ) -> ProcessedPurchaseTag:
        self._append(self._purchase_tags, record)
        return record

    async def get_processed_purchase_tags(
        self, member_id: str
    ) -> Iterable[ProcessedPurchaseTag]:
        return [self._copy(p) for p in self._purchase_tags if p.member_id == member_id]

    # Helpers
    def _append(self, rows: List[TModel], record: TModel) -> None:
        if getattr(record, "member_id", None) not in self._members:
            raise ValueError(f"foreign key: member {record.member_id!r} does not exist")  # type: ignore[attr-defined]
        if record.id is None:  # type: ignore[attr-defined]
            record.id = self._next_id()  # type: ignore[attr-defined]
        stored = self._copy(record)
        rows.append(stored)
        self._journal(lambda: rows.remove(stored))

    def _page(self, rows: List[TModel], limit: Optional[int], offset: int) -> List[TModel]:
        # Insertion order breaks ties between rows written in the same instant
        ordered = [
            row
            for _, row in sorted(
                enumerate(rows),
                key=lambda pair: (pair[1].created_at, pair[0]),  # type: ignore[attr-defined]
                reverse=True,
            )
        ]
        end = None if limit is None else offset + limit
        return [self._copy(r) for r in ordered[offset:end]]
