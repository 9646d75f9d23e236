from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..models.auth import AuthResult


class IdentityProvider(ABC):
    """
    Token exchange and profile lookup against the community platform.
    """

    @abstractmethod
    async def authenticate(self, credentials: Dict[str, str]) -> AuthResult:
        """Exchange credential hints for an access token. Raises AuthError."""
        ...

    @abstractmethod
    async def fetch_profile(self, auth: AuthResult) -> Optional[Dict[str, Any]]:
        """Raw member profile, or None when no profile endpoint answered."""
        ...


class TagAdmin(ABC):
    """
    Best-effort tag management through the platform's admin API.
    Implementations never raise; failures are reported as None / False.
    """

    @abstractmethod
    async def resolve_tag_id(self, tag_name: str) -> Optional[str]:
        ...

    @abstractmethod
    async def remove_tag(self, email: str, tag_id: str) -> bool:
        ...
