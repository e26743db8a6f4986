"""
Tests for the client read model: version merge, tombstones, refetch and
the optimistic HP overlay.
"""

import asyncio

import pytest

from combat_keeper.client.transport import LocalTransport
from combat_keeper.exceptions import NotFoundError
from combat_keeper.feed import ChangeEvent, ChangeNotification
from combat_keeper.models import Combatant
from combat_keeper.sync import EncounterStateRegistry, EncounterView, follow

pytestmark = pytest.mark.anyio


def _damage(encounter, target, amount):
    return {
        "characterId": target.id,
        "amount": amount,
        "damageType": "slashing",
        "encounterId": encounter.id,
        "currentRound": 1,
    }


@pytest.fixture
def view(store, encounter, fighter, wizard) -> EncounterView:
    view = EncounterView(encounter.id)
    view.load_snapshot(store.snapshot(encounter.id))
    return view


@pytest.fixture
def subscription(store, encounter):
    sub = store.feed.subscribe(encounter.id)
    yield sub
    sub.close()


def _for(notifications, record_id):
    return [n for n in notifications if n.record_id == record_id]


class TestMerge:

    async def test_snapshot_then_feed_matches_store(self, store, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))

        for notification in subscription.drain():
            await view.apply_notification(notification)

        assert view.combatants[fighter.id].current_hp == 14
        assert view.combatants[fighter.id].version == store.get_combatant(fighter.id).version

    async def test_duplicate_delivery_ignored(self, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))
        [notification] = _for(subscription.drain(), fighter.id)

        assert await view.apply_notification(notification) is True
        assert await view.apply_notification(notification) is False
        assert view.ignored == 1

    async def test_out_of_order_older_version_ignored(self, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 4))
        older, newer = _for(subscription.drain(), fighter.id)

        await view.apply_notification(newer)
        assert await view.apply_notification(older) is False
        assert view.combatants[fighter.id].current_hp == 10

    async def test_delete_wins_over_late_insert(self, mutator, encounter, fighter, view, subscription):
        created = await mutator.invoke("manage-effect", {
            "action": "create",
            "encounterId": encounter.id,
            "effectData": {"characterId": fighter.id, "name": "Bless"},
        })
        effect_id = created["effect"]["id"]
        await mutator.invoke("manage-effect", {
            "action": "delete", "encounterId": encounter.id, "effectId": effect_id,
        })
        insert, delete = _for(subscription.drain(), effect_id)
        assert delete.event == ChangeEvent.DELETE

        assert await view.apply_notification(delete) is True
        assert await view.apply_notification(insert) is False
        assert effect_id not in view.effects

    async def test_other_encounters_and_tables_skipped(self, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))
        log_notes = [n for n in subscription.drain() if n.table == "combat_log"]
        assert log_notes
        assert await view.apply_notification(log_notes[0]) is False

        foreign = ChangeNotification(
            table="combatants", event=ChangeEvent.UPDATE, record_id="x", encounter_id="elsewhere", version=9,
        )
        assert await view.apply_notification(foreign) is False


class TestRefetch:

    async def test_missing_body_refetched(self, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))
        [notification] = _for(subscription.drain(), fighter.id)
        transport = LocalTransport(mutator)

        changed = await view.apply_notification(notification.without_record(), transport.fetch_record)

        assert changed is True
        assert view.combatants[fighter.id].current_hp == 14

    async def test_missing_body_without_fetcher(self, mutator, encounter, fighter, view, subscription):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))
        [notification] = _for(subscription.drain(), fighter.id)
        assert await view.apply_notification(notification.without_record()) is False
        assert view.combatants[fighter.id].current_hp == 20

    async def test_record_gone_before_refetch(self, encounter, view):
        async def gone(table, record_id):
            raise NotFoundError(f"{table} '{record_id}' not found")

        notification = ChangeNotification(
            table="effects", event=ChangeEvent.INSERT, record_id="e1", encounter_id=encounter.id, version=1,
        )
        assert await view.apply_notification(notification, gone) is False


class TestOptimisticOverlay:

    async def test_overlay_until_confirmed(self, mutator, encounter, fighter, view, subscription):
        body = await mutator.invoke("apply-damage", _damage(encounter, fighter, 6))

        assert view.apply_optimistic(fighter.id, body["newHP"], body["version"]) is True
        assert view.combatant_hp(fighter.id) == 14
        assert view.combatants[fighter.id].current_hp == 20

        for notification in subscription.drain():
            await view.apply_notification(notification)

        assert not view.has_pending_overlay(fighter.id)
        assert view.combatant_hp(fighter.id) == 14

    async def test_stale_overlay_rejected(self, view, fighter):
        current = view.combatants[fighter.id].version
        assert view.apply_optimistic(fighter.id, 1, current) is False
        assert view.combatant_hp(fighter.id) == 20


class TestRegistry:

    async def test_routes_by_encounter(self, mutator, store, encounter, fighter, subscription):
        registry = EncounterStateRegistry()
        view = registry.view(encounter.id)
        view.load_snapshot(store.snapshot(encounter.id))
        assert registry.view(encounter.id) is view

        await mutator.invoke("apply-damage", _damage(encounter, fighter, 5))
        results = [await registry.route(n) for n in subscription.drain()]
        assert any(results)
        assert view.combatants[fighter.id].current_hp == 15

        registry.drop(encounter.id)
        stray = ChangeNotification(
            table="combatants", event=ChangeEvent.UPDATE, record_id=fighter.id,
            encounter_id=encounter.id, version=99,
        )
        assert await registry.route(stray) is False

    async def test_follow_applies_live_changes(self, mutator, encounter, fighter, view, subscription):
        task = asyncio.create_task(follow(subscription, view))
        try:
            await mutator.invoke("apply-damage", _damage(encounter, fighter, 3))
            for _ in range(20):
                if view.combatants[fighter.id].current_hp == 17:
                    break
                await asyncio.sleep(0)
            assert view.combatants[fighter.id].current_hp == 17
        finally:
            task.cancel()
        assert isinstance(view.combatants[fighter.id], Combatant)
