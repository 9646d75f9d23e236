from __future__ import annotations

import pytest

from member_credits.errors import NotFoundError, PersistenceError
from member_credits.models.action import Action
from member_credits.models.purchase import PurchaseTag

from conftest import make_profile


@pytest.mark.asyncio
async def test_upsert_reports_new_then_previous_snapshot(directory, clock):
    first = await directory.upsert(make_profile("cm-1", tags=["beta"]), now=clock())
    assert first.is_new
    assert first.previous is None
    assert first.member.first_seen_at == clock.now

    later = clock.advance(minutes=5)
    second = await directory.upsert(make_profile("cm-1", tags=["VIP", "$50"]), now=later)

    assert not second.is_new
    assert second.member.id == first.member.id
    assert second.previous.is_paid is False
    assert second.previous.tags == ["beta"]
    assert second.member.is_paid is True
    assert second.member.first_seen_at == first.member.first_seen_at
    assert second.member.last_seen_at == later


@pytest.mark.asyncio
async def test_is_new_does_not_depend_on_row_age(directory, clock):
    await directory.upsert(make_profile("cm-1"), now=clock())

    # Seen again within seconds: still an existing member
    again = await directory.upsert(make_profile("cm-1"), now=clock.advance(seconds=1))

    assert not again.is_new


@pytest.mark.asyncio
async def test_email_collision_on_other_member_propagates(directory):
    await directory.upsert(make_profile("cm-1", email="shared@example.com"))

    with pytest.raises(PersistenceError, match="duplicate key"):
        await directory.upsert(make_profile("cm-2", email="shared@example.com"))

    assert await directory.get("cm-2") is None


@pytest.mark.asyncio
async def test_require_and_list_members(directory, clock):
    await directory.upsert(make_profile("cm-1"), now=clock())
    await directory.upsert(make_profile("cm-2"), now=clock.advance(hours=1))

    assert (await directory.require("cm-1")).external_member_id == "cm-1"
    assert [m.external_member_id for m in await directory.list_members()] == ["cm-2", "cm-1"]
    with pytest.raises(NotFoundError):
        await directory.require("cm-3")


@pytest.mark.asyncio
async def test_delete_member_cascades_to_ledger_rows(directory, credits, db):
    member_id = str((await directory.upsert(make_profile("cm-1"))).member.id)
    other_id = str((await directory.upsert(make_profile("cm-2"))).member.id)
    for mid in (member_id, other_id):
        await credits.grant_initial(mid, is_paid=False)
        await credits.settle_purchases(mid, [PurchaseTag(tag="$5", credits=5)])
        await credits.debit(mid, 2, "export")

    await db.delete_member(member_id)

    assert await db.get_member(member_id) is None
    assert await db.get_credit_account(member_id) is None
    assert await db.count_history(member_id) == 0
    assert await db.count_actions(member_id) == 0
    assert list(await db.get_processed_purchase_tags(member_id)) == []
    assert (await db.get_credit_account(other_id)).balance == 13


@pytest.mark.asyncio
async def test_rows_for_unknown_members_are_rejected(db):
    with pytest.raises(PersistenceError, match="foreign key"):
        async with db.transaction():
            await db.add_action(Action(member_id="missing", action_type="x", credits_cost=1))


@pytest.mark.asyncio
async def test_lock_requires_a_transaction(db):
    with pytest.raises(RuntimeError):
        await db.lock_credit_account("1")
