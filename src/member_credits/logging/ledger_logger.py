from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..models.ledger import LedgerEntry, LedgerEventType


logger = logging.getLogger(__name__)


class LedgerLogger:
    """
    Append-only JSONL trail of ledger events, mirrored to the application log.

    Callers write here only after the ledger transaction has committed, so
    each line is a durable balance change or a rejected debit. The credit
    history collection stays the source of truth; this file is for log
    shipping and audits.
    """

    def __init__(self, file_path: Path) -> None:
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        member_id: str,
        message: str,
        details: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        self.record(LedgerEntry(
            event_type=LedgerEventType.TRANSACTION,
            member_id=member_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        message: str,
        details: Dict[str, Any],
        member_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self.record(LedgerEntry(
            event_type=LedgerEventType.ERROR,
            member_id=member_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        ))

    def record(self, entry: LedgerEntry) -> None:
        level = logging.WARNING if entry.event_type == LedgerEventType.ERROR else logging.INFO
        logger.log(level, "%s member=%s %s", entry.message, entry.member_id, entry.details)

        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry.serialize(), default=str) + "\n")
        except OSError:
            # A broken log file must not fail a committed ledger change
            logger.warning("Could not append to ledger log %s", self._file_path, exc_info=True)
