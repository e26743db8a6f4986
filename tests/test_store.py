"""
Tests for the in-memory store, its transactions and the change feed.
"""

import asyncio

import pytest

from combat_keeper.exceptions import NotFoundError, TransientError
from combat_keeper.feed import ChangeEvent, ChangeFeed
from combat_keeper.models import Combatant, Effect, Encounter
from combat_keeper.server.store import CombatStore


def _combatant(encounter_id: str = "enc-1", **fields) -> Combatant:
    fields.setdefault("max_hp", 10)
    fields.setdefault("current_hp", fields["max_hp"])
    return Combatant(encounter_id=encounter_id, name="Test", **fields)


class TestReadsAndWrites:

    def test_insert_sets_version(self):
        store = CombatStore()
        combatant = _combatant()
        [notification] = store.insert(combatant)

        assert combatant.version == 1
        assert notification.event == ChangeEvent.INSERT
        assert notification.version == 1
        assert notification.encounter_id == "enc-1"
        assert notification.record["name"] == "Test"

    def test_reads_are_copies(self):
        store = CombatStore()
        combatant = _combatant()
        store.insert(combatant)

        copy = store.get_combatant(combatant.id)
        copy.current_hp = 0
        assert store.get_combatant(combatant.id).current_hp == 10

    def test_missing(self):
        store = CombatStore()
        with pytest.raises(NotFoundError):
            store.get(Effect.table, "nope")
        with pytest.raises(NotFoundError):
            store.get("spells", "x")

    def test_combatant_in_wrong_encounter(self):
        store = CombatStore()
        combatant = _combatant("enc-1")
        store.insert(combatant)
        with pytest.raises(NotFoundError):
            store.get_combatant(combatant.id, "enc-2")

    def test_find_filters(self):
        store = CombatStore()
        store.insert(_combatant("a"), _combatant("a"), _combatant("b"))
        assert len(store.find(Combatant.table, encounter_id="a")) == 2
        assert len(store.find(Combatant.table, lambda c: c.encounter_id == "b")) == 1


class TestTransactions:

    def test_commit_is_atomic_on_conflict(self):
        store = CombatStore()
        first, second = _combatant(), _combatant()
        store.insert(first, second)

        stale = store.get_combatant(first.id)
        fresh = store.get_combatant(first.id)
        fresh.current_hp = 5
        store.insert(fresh)

        other = store.get_combatant(second.id)
        other.current_hp = 1
        tx = store.transaction()
        tx.put(other)
        stale.current_hp = 9
        tx.put(stale)
        with pytest.raises(TransientError):
            tx.commit()

        assert store.get_combatant(first.id).current_hp == 5
        assert store.get_combatant(second.id).current_hp == 10

    def test_delete_notification(self):
        store = CombatStore()
        effect = Effect(encounter_id="enc-1", combatant_id="c1", name="Bless")
        store.insert(effect)

        tx = store.transaction()
        tx.delete(Effect.table, effect.id)
        [notification] = tx.commit()

        assert notification.event == ChangeEvent.DELETE
        assert notification.version == 2
        assert notification.record is None
        assert store.find(Effect.table) == []

    def test_commit_twice_rejected(self):
        store = CombatStore()
        tx = store.transaction()
        tx.put(_combatant())
        tx.commit()
        with pytest.raises(RuntimeError):
            tx.commit()

    def test_snapshot(self):
        store = CombatStore()
        encounter = Encounter(campaign_id="camp")
        store.insert(encounter, _combatant(encounter.id), Effect(encounter_id=encounter.id, combatant_id="c", name="Bane"))
        snapshot = store.snapshot(encounter.id)
        assert snapshot["encounter"]["id"] == encounter.id
        assert len(snapshot["combatants"]) == 1
        assert len(snapshot["effects"]) == 1
        assert snapshot["save_prompts"] == []


class TestFeed:

    def test_filtered_subscription(self):
        feed = ChangeFeed()
        store = CombatStore(feed)
        mine = feed.subscribe("enc-1")
        everything = feed.subscribe()

        store.insert(_combatant("enc-1"), _combatant("enc-2"))

        assert len(mine.drain()) == 1
        assert len(everything.drain()) == 2
        mine.close()
        assert feed.subscriber_count == 1

    def test_sequence_increases(self):
        feed = ChangeFeed()
        sub = feed.subscribe()
        CombatStore(feed).insert(_combatant(), _combatant())
        first, second = sub.drain()
        assert second.sequence == first.sequence + 1

    def test_full_queue_drops(self):
        feed = ChangeFeed(queue_size=1)
        sub = feed.subscribe()
        CombatStore(feed).insert(_combatant(), _combatant())
        assert sub.dropped == 1


class TestLocks:

    @pytest.mark.anyio
    async def test_overlapping_lock_sets_do_not_deadlock(self):
        store = CombatStore()
        order = []

        async def worker(name, encounters, combatants):
            async with store.locked(*encounters, combatant_ids=combatants):
                order.append(name)
                await asyncio.sleep(0)

        await asyncio.wait_for(asyncio.gather(
            worker("a", ["e2", "e1"], ["c2", "c1"]),
            worker("b", ["e1", "e2"], ["c1", "c2"]),
            worker("c", [], ["c2"]),
        ), timeout=2)
        assert sorted(order) == ["a", "b", "c"]

    @pytest.mark.anyio
    async def test_lock_released_on_error(self):
        store = CombatStore()
        with pytest.raises(ValueError):
            async with store.locked("e1"):
                raise ValueError("boom")
        async with store.locked("e1"):
            pass
