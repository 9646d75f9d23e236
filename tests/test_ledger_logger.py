from __future__ import annotations

import json
import logging

import pytest

from member_credits.logging.ledger_logger import LedgerLogger


@pytest.mark.asyncio
async def test_ledger_lines_are_json(tmp_path):
    ledger = LedgerLogger(file_path=tmp_path / "logs" / "ledger.log")

    await ledger.log_transaction("m-1", "Credits deducted", {"amount": 2}, correlation_id="req-1")
    await ledger.log_error("Insufficient credits for deduction", {"requested": 5}, member_id="m-1")

    lines = [json.loads(line) for line in ledger.file_path.read_text().splitlines()]
    assert [l["event_type"] for l in lines] == ["transaction", "error"]
    assert lines[0]["correlation_id"] == "req-1"
    assert "correlation_id" not in lines[1]
    assert lines[1]["details"] == {"requested": 5}


@pytest.mark.asyncio
async def test_unwritable_ledger_file_only_warns(tmp_path, caplog):
    path = tmp_path / "ledger.log"
    ledger = LedgerLogger(file_path=path)
    path.mkdir()

    with caplog.at_level(logging.WARNING):
        await ledger.log_transaction("m-1", "Credits deducted", {"amount": 2})

    assert "Could not append to ledger log" in caplog.text
