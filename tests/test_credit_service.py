from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

from member_credits.errors import InsufficientCreditsError, NotFoundError, PersistenceError
from member_credits.models.history import ChangeType
from member_credits.models.purchase import PurchaseTag
from member_credits.services.credit_service import add_months

from conftest import make_profile


async def _member_id(directory, external_member_id="cm-1", tags=()):
    result = await directory.upsert(make_profile(external_member_id, tags=tags))
    return str(result.member.id)


async def _assert_consistent(db, member_id):
    account = await db.get_credit_account(member_id)
    history = list(await db.get_history(member_id))
    assert account.balance == sum(e.change_amount for e in history)
    # Newest first; replay oldest first to check every running balance
    running = 0
    for entry in reversed(history):
        running += entry.change_amount
        assert entry.balance_after == running
    return account, history


def test_add_months_clamps_to_month_end():
    jan31 = datetime(2024, 1, 31, 12, tzinfo=timezone.utc)
    assert add_months(jan31, 1) == datetime(2024, 2, 29, 12, tzinfo=timezone.utc)
    assert add_months(datetime(2023, 1, 31, tzinfo=timezone.utc), 1).day == 28
    assert add_months(datetime(2024, 11, 15, tzinfo=timezone.utc), 2) == datetime(
        2025, 1, 15, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_grant_initial_sets_tier_amount(directory, credits, db):
    free_id = await _member_id(directory, "cm-free")
    paid_id = await _member_id(directory, "cm-paid", tags=["VIP"])

    assert await credits.grant_initial(free_id, is_paid=False) == 10
    assert await credits.grant_initial(paid_id, is_paid=True) == 100

    _, history = await _assert_consistent(db, free_id)
    assert [e.change_type for e in history] == [ChangeType.INITIAL_GRANT]


@pytest.mark.asyncio
async def test_grant_initial_on_existing_account_records_the_difference(directory, credits, db):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)
    await credits.settle_purchases(member_id, [PurchaseTag(tag="$5", credits=5)])

    assert await credits.grant_initial(member_id, is_paid=True) == 100

    _, history = await _assert_consistent(db, member_id)
    assert history[0].change_amount == 85


@pytest.mark.asyncio
async def test_debit_writes_action_and_history(directory, credits, db):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    result = await credits.debit(member_id, 4, "generate_report", metadata={"pages": 2})

    assert result.credits_spent == 4
    assert result.credits_remaining == 6
    actions = list(await db.get_actions(member_id))
    assert len(actions) == 1
    assert actions[0].id == result.action_id
    assert actions[0].metadata == {"pages": 2}
    _, history = await _assert_consistent(db, member_id)
    assert history[0].change_type == ChangeType.ACTION_COST
    assert history[0].reference_id == result.action_id


@pytest.mark.asyncio
async def test_insufficient_debit_changes_nothing(directory, credits, db, ledger):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)
    await credits.debit(member_id, 7, "warmup")

    with pytest.raises(InsufficientCreditsError) as excinfo:
        await credits.debit(member_id, 5, "generate_report")

    assert excinfo.value.required == 5
    assert excinfo.value.available == 3
    account = await db.get_credit_account(member_id)
    assert account.balance == 3
    assert await db.count_actions(member_id, action_type="generate_report") == 0
    assert await db.count_history(member_id) == 2

    lines = [json.loads(l) for l in ledger.file_path.read_text().splitlines()]
    assert lines[-1]["event_type"] == "error"
    assert lines[-1]["details"]["requested"] == 5


@pytest.mark.asyncio
async def test_debit_rejects_non_positive_amounts(directory, credits):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    with pytest.raises(ValueError):
        await credits.debit(member_id, 0, "noop")


@pytest.mark.asyncio
async def test_debit_without_account_is_not_found(directory, credits):
    member_id = await _member_id(directory)

    with pytest.raises(NotFoundError):
        await credits.debit(member_id, 1, "noop")


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(directory, credits, db):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    results = await asyncio.gather(
        *(credits.debit(member_id, 3, "burst") for _ in range(8)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(succeeded) == 3
    assert len(failed) == 5
    account, _ = await _assert_consistent(db, member_id)
    assert account.balance == 1
    assert await db.count_actions(member_id) == 3


@pytest.mark.asyncio
async def test_monthly_refresh_is_additive_and_gated(directory, credits, db, clock):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)
    await credits.debit(member_id, 4, "spend")

    clock.now = datetime(2024, 2, 28, 23, 59, tzinfo=timezone.utc)
    assert await credits.refresh_monthly(member_id, is_paid=False) == 6

    clock.now = datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert await credits.refresh_monthly(member_id, is_paid=False) == 16

    # Refreshed just now, so the next call is not due
    assert await credits.refresh_monthly(member_id, is_paid=False) == 16

    account, history = await _assert_consistent(db, member_id)
    assert account.last_refreshed_at == clock.now
    assert [e.change_type for e in history].count(ChangeType.MONTHLY_REFRESH) == 1


@pytest.mark.asyncio
async def test_upgrade_bonus_is_paid_minus_free_initial(directory, credits, db):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    assert await credits.award_upgrade_bonus(member_id) == 100

    _, history = await _assert_consistent(db, member_id)
    assert history[0].change_type == ChangeType.UPGRADE_BONUS
    assert history[0].change_amount == 90


@pytest.mark.asyncio
async def test_settle_purchases_applies_one_delta_with_entry_per_tag(directory, credits, db):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    balance = await credits.settle_purchases(
        member_id, [PurchaseTag(tag="$10", credits=10), PurchaseTag(tag="$25", credits=25)]
    )

    assert balance == 45
    _, history = await _assert_consistent(db, member_id)
    purchases = [e for e in history if e.change_type == ChangeType.PURCHASE]
    assert sorted(e.change_amount for e in purchases) == [10, 25]
    assert max(e.balance_after for e in purchases) == 45
    processed = list(await db.get_processed_purchase_tags(member_id))
    assert [(p.tag_value, p.credits_granted) for p in processed] == [("$10", 10), ("$25", 25)]


@pytest.mark.asyncio
async def test_settle_purchases_rolls_back_on_partial_failure(directory, credits, db, monkeypatch):
    member_id = await _member_id(directory)
    await credits.grant_initial(member_id, is_paid=False)

    original = db.add_processed_purchase_tag
    calls = []

    async def flaky(record):
        calls.append(record)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        return await original(record)

    monkeypatch.setattr(db, "add_processed_purchase_tag", flaky)

    with pytest.raises(PersistenceError):
        await credits.settle_purchases(
            member_id, [PurchaseTag(tag="$10", credits=10), PurchaseTag(tag="$25", credits=25)]
        )

    account, history = await _assert_consistent(db, member_id)
    assert account.balance == 10
    assert [e.change_type for e in history] == [ChangeType.INITIAL_GRANT]
    assert list(await db.get_processed_purchase_tags(member_id)) == []

    # The account lock was released with the failed transaction
    monkeypatch.setattr(db, "add_processed_purchase_tag", original)
    assert await credits.settle_purchases(member_id, [PurchaseTag(tag="$5", credits=5)]) == 15


@pytest.mark.asyncio
async def test_admin_adjust_bonus_and_forced_refresh(directory, credits, db, clock):
    upsert = await directory.upsert(make_profile("cm-1"))
    member = upsert.member
    await credits.grant_initial(str(member.id), is_paid=False)
    clock.advance(days=1)

    result = await credits.admin_adjust(
        member, bonus_amount=25, force_refresh=True, admin_email="admin@example.com"
    )

    assert result.previous_balance == 10
    assert result.credits_added == 35
    assert result.current_balance == 45
    assert len(result.operations) == 2
    account, history = await _assert_consistent(db, str(member.id))
    assert account.last_refreshed_at == clock.now
    assert {e.change_type for e in history[:2]} == {ChangeType.ADMIN_BONUS, ChangeType.ADMIN_REFRESH}
    assert "admin@example.com" in history[0].notes


@pytest.mark.asyncio
async def test_admin_adjust_creates_missing_account_and_rejects_negative_bonus(directory, credits, db):
    member = (await directory.upsert(make_profile("cm-1"))).member

    result = await credits.admin_adjust(member, bonus_amount=5)
    assert result.previous_balance == 0
    assert result.current_balance == 5
    await _assert_consistent(db, str(member.id))

    with pytest.raises(ValueError):
        await credits.admin_adjust(member, bonus_amount=-1)


@pytest.mark.asyncio
async def test_balance_and_paginated_reads(directory, credits, clock):
    member_id = await _member_id(directory, "cm-1")
    await credits.grant_initial(member_id, is_paid=False)
    for action_type in ("a", "b", "a"):
        clock.advance(minutes=1)
        await credits.debit(member_id, 1, action_type)

    balance = await credits.get_balance("cm-1")
    assert balance.balance == 7
    assert balance.email == "cm-1@example.com"

    history = await credits.get_credit_history("cm-1", limit=2, offset=1)
    assert history.total == 4
    assert [e.balance_after for e in history.items] == [8, 9]

    actions = await credits.get_actions("cm-1", action_type="a")
    assert actions.total == 2
    assert all(a.action_type == "a" for a in actions.items)
    assert actions.items[0].created_at > actions.items[1].created_at

    with pytest.raises(NotFoundError):
        await credits.get_balance("cm-unknown")
    with pytest.raises(NotFoundError):
        await credits.get_credit_history("cm-unknown")


@pytest.mark.asyncio
async def test_admin_listings_and_stats(directory, credits, clock):
    first = await _member_id(directory, "cm-1")
    second = await _member_id(directory, "cm-2", tags=["premium"])
    await credits.grant_initial(first, is_paid=False)
    await credits.grant_initial(second, is_paid=True)
    await credits.debit(second, 30, "export")

    clock.advance(days=2)
    await credits.debit(first, 1, "export")

    balances = await credits.list_balances()
    assert [b.external_member_id for b in balances] == ["cm-2", "cm-1"]
    assert len(await credits.recent_actions(limit=1)) == 1
    assert len(await credits.recent_history()) == 4

    stats = await credits.stats()
    assert stats.total_members == 2
    assert stats.total_credits == 79
    assert stats.total_actions == 2
    assert stats.actions_24h == 1
