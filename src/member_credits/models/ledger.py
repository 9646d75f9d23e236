from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .member import utcnow


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"


class LedgerEntry(BaseModel):
    """
    One line of the structured ledger log.
    """

    event_type: LedgerEventType
    member_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def serialize(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
