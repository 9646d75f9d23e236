from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from .base import BaseDBManager
from ..errors import CreditError, PersistenceError
from ..models.action import Action
from ..models.base import DBSerializableModel
from ..models.credits import CreditAccount
from ..models.history import CreditHistoryEntry
from ..models.member import Member, MemberProfile
from ..models.purchase import ProcessedPurchaseTag


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_CHILD_MODELS: Tuple[Type[DBSerializableModel], ...] = (
    CreditAccount,
    CreditHistoryEntry,
    Action,
    ProcessedPurchaseTag,
)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a client session with a multi-document
    transaction (requires a replica set). `lock_credit_account()` writes a
    lock marker on the account document inside that transaction, so a
    second transaction touching the same account hits a write conflict and
    is aborted as a `PersistenceError` instead of interleaving.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        await self._db[Member.collection_name].create_index("external_member_id", unique=True)
        await self._db[Member.collection_name].create_index("email", unique=True)
        await self._db[CreditAccount.collection_name].create_index("member_id", unique=True)
        for model in (CreditHistoryEntry, Action):
            await self._db[model.collection_name].create_index(
                [("member_id", ASCENDING), ("created_at", DESCENDING)]
            )
        await self._db[ProcessedPurchaseTag.collection_name].create_index(
            [("member_id", ASCENDING), ("tag_value", ASCENDING)]
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        async with await self._db.client.start_session() as session:
            session.start_transaction()
            token = self._session.set(session)
            try:
                yield
            except CreditError:
                await session.abort_transaction()
                raise
            except Exception as exc:
                await session.abort_transaction()
                raise PersistenceError(f"mongo transaction failed: {exc}") from exc
            else:
                try:
                    await session.commit_transaction()
                except Exception as exc:
                    logger.error("Commit failed", exc_info=True)
                    raise PersistenceError(f"mongo commit failed: {exc}") from exc
            finally:
                self._session.reset(token)

    async def lock_credit_account(self, member_id: str) -> Optional[CreditAccount]:
        session = self._session.get()
        if session is None:
            raise RuntimeError("lock_credit_account() requires an active transaction")
        col = self._db[CreditAccount.collection_name]
        doc = await col.find_one_and_update(
            {"member_id": member_id},
            {"$set": {"lock_token": uuid4().hex}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return self._decode(CreditAccount, doc)

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: List[Mapping[str, Any]]) -> List[TModel]:
        return [m for m in (self._decode(model_cls, d) for d in docs) if m is not None]

    @property
    def _s(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    # Member operations
    async def upsert_member(
        self, profile: MemberProfile, seen_at: datetime
    ) -> Tuple[Member, Optional[Member]]:
        col = self._db[Member.collection_name]
        new_id = uuid4().hex
        before = await col.find_one_and_update(
            {"external_member_id": profile.external_member_id},
            {
                "$set": {**profile.field_updates(), "last_seen_at": seen_at, "updated_at": seen_at},
                "$setOnInsert": {
                    "_id": new_id,
                    "id": new_id,
                    "external_member_id": profile.external_member_id,
                    "first_seen_at": seen_at,
                    "created_at": seen_at,
                },
            },
            upsert=True,
            return_document=ReturnDocument.BEFORE,
            session=self._s,
        )
        after = await col.find_one(
            {"external_member_id": profile.external_member_id}, session=self._s
        )
        member = self._decode(Member, after)
        if member is None:
            raise PersistenceError(f"member {profile.external_member_id!r} vanished after upsert")
        return member, self._decode(Member, before)

    async def get_member(self, member_id: str) -> Optional[Member]:
        doc = await self._db[Member.collection_name].find_one({"_id": member_id}, session=self._s)
        return self._decode(Member, doc)

    async def get_member_by_external_id(self, external_member_id: str) -> Optional[Member]:
        doc = await self._db[Member.collection_name].find_one(
            {"external_member_id": external_member_id}, session=self._s
        )
        return self._decode(Member, doc)

    async def list_members(self) -> Iterable[Member]:
        cursor = self._db[Member.collection_name].find({}, session=self._s).sort("last_seen_at", -1)
        return self._decode_all(Member, await cursor.to_list(length=None))

    async def delete_member(self, member_id: str) -> None:
        async with self.transaction():
            for model in _CHILD_MODELS:
                await self._db[model.collection_name].delete_many(
                    {"member_id": member_id}, session=self._s
                )
            await self._db[Member.collection_name].delete_one({"_id": member_id}, session=self._s)

    # Credit accounts
    async def get_credit_account(self, member_id: str) -> Optional[CreditAccount]:
        doc = await self._db[CreditAccount.collection_name].find_one(
            {"member_id": member_id}, session=self._s
        )
        return self._decode(CreditAccount, doc)

    async def save_credit_account(self, account: CreditAccount) -> CreditAccount:
        col = self._db[CreditAccount.collection_name]
        data = self._prepare_insert(account)
        await col.replace_one({"_id": data["_id"]}, data, upsert=True, session=self._s)
        return account

    async def list_credit_accounts(self) -> Iterable[CreditAccount]:
        cursor = self._db[CreditAccount.collection_name].find({}, session=self._s).sort("balance", -1)
        return self._decode_all(CreditAccount, await cursor.to_list(length=None))

    # Credit history
    async def add_history_entry(self, entry: CreditHistoryEntry) -> CreditHistoryEntry:
        data = self._prepare_insert(entry)
        await self._db[CreditHistoryEntry.collection_name].insert_one(data, session=self._s)
        return entry

    async def get_history(
        self, member_id: Optional[str] = None, limit: Optional[int] = None, offset: int = 0
    ) -> Iterable[CreditHistoryEntry]:
        query = {} if member_id is None else {"member_id": member_id}
        cursor = (
            self._db[CreditHistoryEntry.collection_name]
            .find(query, session=self._s)
            .sort([("created_at", -1), ("_id", -1)])
            .skip(offset)
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return self._decode_all(CreditHistoryEntry, await cursor.to_list(length=None))

    async def count_history(self, member_id: str) -> int:
        return await self._db[CreditHistoryEntry.collection_name].count_documents(
            {"member_id": member_id}, session=self._s
        )

    # Actions
    async def add_action(self, action: Action) -> Action:
        data = self._prepare_insert(action)
        await self._db[Action.collection_name].insert_one(data, session=self._s)
        return action

    async def get_actions(
        self,
        member_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        action_type: Optional[str] = None,
    ) -> Iterable[Action]:
        cursor = (
            self._db[Action.collection_name]
            .find(self._action_query(member_id, action_type), session=self._s)
            .sort([("created_at", -1), ("_id", -1)])
            .skip(offset)
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        return self._decode_all(Action, await cursor.to_list(length=None))

    async def count_actions(
        self,
        member_id: Optional[str] = None,
        action_type: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> int:
        query = self._action_query(member_id, action_type)
        if since is not None:
            query["created_at"] = {"$gte": since}
        return await self._db[Action.collection_name].count_documents(query, session=self._s)

    @staticmethod
    def _action_query(member_id: Optional[str], action_type: Optional[str]) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if member_id is not None:
            query["member_id"] = member_id
        if action_type is not None:
            query["action_type"] = action_type
        return query

    # Purchase tag audit
    async def add_processed_purchase_tag(
        self, record: ProcessedPurchaseTag
    ) -> ProcessedPurchaseTag:
        data = self._prepare_insert(record)
        await self._db[ProcessedPurchaseTag.collection_name].insert_one(data, session=self._s)
        return record

    async def get_processed_purchase_tags(
        self, member_id: str
    ) -> Iterable[ProcessedPurchaseTag]:
        cursor = (
            self._db[ProcessedPurchaseTag.collection_name]
            .find({"member_id": member_id}, session=self._s)
            .sort("processed_at", 1)
        )
        return self._decode_all(ProcessedPurchaseTag, await cursor.to_list(length=None))
