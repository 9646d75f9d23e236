from __future__ import annotations

from typing import Any, Dict, Optional

from ..models.action import SpendResult
from .credit_service import CreditService
from .member_directory import MemberDirectory


class MeteringService:
    """
    Charges credits for actions performed by feature code.

    An Action row is written only together with a successful debit; a spend
    refused for insufficient credits leaves no trace in the store.
    """

    def __init__(self, directory: MemberDirectory, credits: CreditService) -> None:
        self._directory = directory
        self._credits = credits

    async def spend(
        self,
        external_member_id: str,
        action_type: str,
        cost: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> SpendResult:
        if not action_type:
            raise ValueError("action_type is required")
        member = await self._directory.require(external_member_id)
        return await self._credits.debit(
            member_id=str(member.id),
            amount=cost,
            action_type=action_type,
            metadata=metadata,
            correlation_id=correlation_id,
        )
