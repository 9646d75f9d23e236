from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .clients.base import IdentityProvider, TagAdmin
from .clients.community import CommunityClient
from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .logging.ledger_logger import LedgerLogger
from .services.admin_token_service import AdminTokenService
from .services.auth_service import AuthService
from .services.credit_service import CreditService
from .services.member_directory import MemberDirectory
from .services.metering_service import MeteringService
from .services.reconciliation_service import ReconciliationService


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: BaseDBManager
    cache: AsyncCacheBackend
    ledger: LedgerLogger
    directory: MemberDirectory
    credits: CreditService
    reconciliation: ReconciliationService
    auth: AuthService
    metering: MeteringService
    admin_tokens: AdminTokenService


def create_db_manager(config: Settings) -> BaseDBManager:
    if config.MONGO_URI:
        from .db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(config.MONGO_URI, config.MONGO_DB)
    logger.warning("MONGO_URI not configured; using the in-memory store")
    return InMemoryDBManager()


def build_container(
    config: Settings,
    db: Optional[BaseDBManager] = None,
    identity: Optional[IdentityProvider] = None,
    tag_admin: Optional[TagAdmin] = None,
    cache: Optional[AsyncCacheBackend] = None,
) -> ServiceContainer:
    """
    Wire the services. Collaborators that are not passed in are built from
    `config`; the community client is only created when a token is set.
    """
    db = db or create_db_manager(config)
    cache = cache or InMemoryAsyncCache()
    if identity is None or tag_admin is None:
        community = CommunityClient(
            base_url=config.COMMUNITY_API_BASE,
            api_token=config.COMMUNITY_API_TOKEN,
            admin_api_token=config.COMMUNITY_ADMIN_API_TOKEN,
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )
        if identity is None and community.is_configured:
            identity = community
        if tag_admin is None:
            tag_admin = community

    ledger = LedgerLogger(file_path=Path(config.LEDGER_LOG_PATH))
    directory = MemberDirectory(db)
    credits = CreditService(db=db, ledger=ledger, policy=config.credit_policy())
    reconciliation = ReconciliationService(
        directory=directory,
        credits=credits,
        tag_admin=tag_admin,
        min_purchase_credits=config.PURCHASE_TAG_MIN_CREDITS,
        max_purchase_credits=config.PURCHASE_TAG_MAX_CREDITS,
    )
    return ServiceContainer(
        settings=config,
        db=db,
        cache=cache,
        ledger=ledger,
        directory=directory,
        credits=credits,
        reconciliation=reconciliation,
        auth=AuthService(
            identity=identity,
            reconciliation=reconciliation,
            paid_keywords=config.paid_member_tags,
            disable_email_only_auth=config.DISABLE_EMAIL_ONLY_AUTH,
        ),
        metering=MeteringService(directory=directory, credits=credits),
        admin_tokens=AdminTokenService(
            directory=directory, cache=cache, ttl_seconds=config.ADMIN_TOKEN_TTL_SECONDS
        ),
    )
