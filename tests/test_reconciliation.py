from __future__ import annotations

from datetime import datetime, timezone

import pytest

from member_credits.errors import PersistenceError
from member_credits.models.history import ChangeType
from member_credits.services.reconciliation_service import ReconciliationService

from conftest import FakeTagAdmin, make_profile


async def _change_types(db, member_id):
    # Oldest first
    return [e.change_type for e in reversed(list(await db.get_history(member_id)))]


@pytest.mark.asyncio
async def test_new_free_member_gets_initial_grant_only(reconciliation, db, tag_admin):
    result = await reconciliation.reconcile(make_profile("cm-1", tags=["newsletter"]))
    await reconciliation.wait_for_background_tasks()

    assert result.is_new
    assert result.balance == 10
    assert result.processed_purchase_tags == []
    assert await _change_types(db, result.member_id) == [ChangeType.INITIAL_GRANT]
    assert tag_admin.removed == []


@pytest.mark.asyncio
async def test_new_member_never_gets_refresh_or_upgrade_in_same_event(reconciliation, db, tag_admin):
    result = await reconciliation.reconcile(make_profile("cm-1", tags=["VIP", "$50"]))
    await reconciliation.wait_for_background_tasks()

    assert result.is_new
    assert result.balance == 150
    assert result.processed_purchase_tags == ["$50"]
    assert await _change_types(db, result.member_id) == [ChangeType.INITIAL_GRANT, ChangeType.PURCHASE]
    assert tag_admin.removed == [("cm-1@example.com", "tag-$50")]


@pytest.mark.asyncio
async def test_free_member_upgrading_with_purchase_tag(reconciliation, db, clock):
    first = await reconciliation.reconcile(make_profile("cm-1"))
    assert first.balance == 10

    clock.advance(days=3)
    upgraded = await reconciliation.reconcile(make_profile("cm-1", tags=["Premium", "$50"]))

    assert not upgraded.is_new
    assert upgraded.balance == 10 + 90 + 50
    assert await _change_types(db, upgraded.member_id) == [
        ChangeType.INITIAL_GRANT,
        ChangeType.UPGRADE_BONUS,
        ChangeType.PURCHASE,
    ]

    # Paid status unchanged on the next event: no second bonus
    clock.advance(days=1)
    again = await reconciliation.reconcile(make_profile("cm-1", tags=["Premium"]))
    assert again.balance == 150
    types = await _change_types(db, again.member_id)
    assert types.count(ChangeType.UPGRADE_BONUS) == 1
    await reconciliation.wait_for_background_tasks()


@pytest.mark.asyncio
async def test_monthly_refresh_only_once_per_calendar_month(reconciliation, db, clock):
    await reconciliation.reconcile(make_profile("cm-1"))

    clock.now = datetime(2024, 2, 28, tzinfo=timezone.utc)
    early = await reconciliation.reconcile(make_profile("cm-1"))
    assert early.balance == 10

    clock.now = datetime(2024, 2, 29, 12, tzinfo=timezone.utc)
    due = await reconciliation.reconcile(make_profile("cm-1"))
    assert due.balance == 20
    assert due.last_refreshed_at == clock.now

    repeat = await reconciliation.reconcile(make_profile("cm-1"))
    assert repeat.balance == 20
    types = await _change_types(db, due.member_id)
    assert types == [ChangeType.INITIAL_GRANT, ChangeType.MONTHLY_REFRESH]


@pytest.mark.asyncio
async def test_existing_member_without_account_gets_initial_grant(reconciliation, directory, db):
    await directory.upsert(make_profile("cm-1", tags=["vip"]))

    result = await reconciliation.reconcile(make_profile("cm-1", tags=["vip"]))

    assert not result.is_new
    assert result.balance == 100
    assert await _change_types(db, result.member_id) == [ChangeType.INITIAL_GRANT]


@pytest.mark.asyncio
async def test_tag_removal_failure_keeps_settled_credits(directory, credits, clock, db):
    failing = FakeTagAdmin(fail=True)
    service = ReconciliationService(directory=directory, credits=credits, tag_admin=failing, clock=clock)

    result = await service.reconcile(make_profile("cm-1", tags=["$25"]))
    await service.wait_for_background_tasks()

    assert result.balance == 35
    assert (await db.get_credit_account(result.member_id)).balance == 35
    assert len(list(await db.get_processed_purchase_tags(result.member_id))) == 1


@pytest.mark.asyncio
async def test_ledger_failure_aborts_remaining_steps(reconciliation, db, tag_admin, monkeypatch):
    async def broken(record):
        raise RuntimeError("write failed")

    monkeypatch.setattr(db, "add_processed_purchase_tag", broken)

    with pytest.raises(PersistenceError):
        await reconciliation.reconcile(make_profile("cm-1", tags=["$10", "$25"]))
    await reconciliation.wait_for_background_tasks()

    # The initial grant committed before the failing settlement
    member = await db.get_member_by_external_id("cm-1")
    account = await db.get_credit_account(str(member.id))
    assert account.balance == 10
    assert await _change_types(db, str(member.id)) == [ChangeType.INITIAL_GRANT]
    assert tag_admin.removed == []


@pytest.mark.asyncio
async def test_oversized_numeric_tag_does_not_block_reconciliation(reconciliation, db, tag_admin):
    result = await reconciliation.reconcile(make_profile("cm-1", tags=["1" * 5000]))
    await reconciliation.wait_for_background_tasks()

    assert result.balance == 10
    assert result.processed_purchase_tags == []
    assert await _change_types(db, result.member_id) == [ChangeType.INITIAL_GRANT]
    assert tag_admin.removed == []
