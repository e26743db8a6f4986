"""
Tests for the authoritative combat mutator.

Covers the remote functions end to end against an in-memory store:
- Damage with resistances and concentration prompts
- Idempotent replay and key reuse
- Serialized spends of a last remaining resource
- Turn advance, round wrap, effect expiry and damage ticks
- Save prompts, legendary resistance and duplicate submissions
- Encounter lifecycle, contested checks and undo
"""

import asyncio

import pytest

from combat_keeper.exceptions import (
    ActionValidationError,
    DuplicateSubmissionError,
    EncounterStateError,
    IdempotencyConflictError,
    NotFoundError,
    ResourceExhaustedError,
    RuleViolationError,
)
from combat_keeper.models import (
    CombatLogEntry,
    Effect,
    Encounter,
    EncounterStatus,
    PromptStatus,
    SavePrompt,
)

pytestmark = pytest.mark.anyio


def _damage(encounter, target, amount, damage_type="fire", **extra):
    return {
        "characterId": target.id,
        "amount": amount,
        "damageType": damage_type,
        "encounterId": encounter.id,
        "currentRound": 1,
        **extra,
    }


def _log(store, action_type):
    return store.find(CombatLogEntry.table, action_type=action_type)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

class TestInvoke:

    async def test_unknown_function(self, mutator):
        with pytest.raises(NotFoundError):
            await mutator.invoke("cast-fireball", {})

    async def test_invalid_body_writes_nothing(self, mutator, store, encounter, fighter):
        with pytest.raises(ActionValidationError) as exc_info:
            await mutator.invoke("apply-damage", _damage(encounter, fighter, -5))
        assert any("amount" in line for line in exc_info.value.details)
        assert store.get_combatant(fighter.id).current_hp == 20
        assert _log(store, "damage") == []

    async def test_extra_fields_rejected(self, mutator, encounter, fighter):
        with pytest.raises(ActionValidationError):
            await mutator.invoke("apply-damage", _damage(encounter, fighter, 5, bogus=True))

    async def test_missing_record(self, mutator, encounter):
        with pytest.raises(NotFoundError):
            await mutator.invoke("apply-damage", {
                "characterId": "nobody", "amount": 5, "damageType": "fire",
                "encounterId": encounter.id, "currentRound": 1,
            })


# ---------------------------------------------------------------------------
# Damage, healing, temporary HP
# ---------------------------------------------------------------------------

class TestDamage:

    async def test_resisted_fire(self, mutator, store, encounter, fighter):
        body = await mutator.invoke("apply-damage", _damage(encounter, fighter, 36))

        assert body["newHP"] == 2
        assert body["damageSteps"][0] == "Resistant to fire: 36 → 18"
        assert body["concentrationCheck"]["required"] is False

        stored = store.get_combatant(fighter.id)
        assert stored.current_hp == 2
        assert stored.version == body["version"]

        [entry] = _log(store, "damage")
        assert entry.id == body["logEntryId"]
        assert entry.amount == 18
        assert entry.details["rawAmount"] == 36
        assert entry.details["adjustedAmount"] == 18

    async def test_immune_takes_nothing(self, mutator, store, encounter, dragon):
        body = await mutator.invoke("apply-damage", _damage(encounter, dragon, 40))
        assert body["newHP"] == 178

    async def test_temp_hp_absorbs_first(self, mutator, store, encounter, make_combatant):
        target = make_combatant("Bram", max_hp=20, temp_hp=5)
        body = await mutator.invoke("apply-damage", _damage(encounter, target, 8, "slashing"))
        assert body["newTempHP"] == 0
        assert body["newHP"] == 17

    async def test_hp_floors_at_zero(self, mutator, encounter, make_combatant):
        target = make_combatant("Pip", max_hp=8)
        body = await mutator.invoke("apply-damage", _damage(encounter, target, 50, "bludgeoning"))
        assert body["newHP"] == 0

    async def test_concentration_prompt(self, mutator, store, encounter, fighter, wizard):
        await mutator.invoke("manage-effect", {
            "action": "create",
            "encounterId": encounter.id,
            "effectData": {
                "characterId": fighter.id,
                "name": "Bless",
                "requiresConcentration": True,
                "concentratingCharacterId": wizard.id,
            },
        })

        body = await mutator.invoke("apply-damage", _damage(encounter, wizard, 22, "cold"))

        check = body["concentrationCheck"]
        assert check["required"] is True
        assert check["dc"] == 11
        assert check["effects"] == ["Bless"]
        prompt = store.get(SavePrompt.table, check["savePromptId"])
        assert prompt.target_ids == [wizard.id]
        assert prompt.expected_responses == 1

        failed = await mutator.invoke("record-save-result", {
            "savePromptId": prompt.id,
            "characterId": wizard.id,
            "roll": 3,
            "modifier": 2,
        })
        assert failed["success"] is False
        assert failed["concentrationBroken"] == ["Bless"]
        assert failed["autoResolved"] is True
        assert store.find(Effect.table, encounter_id=encounter.id) == []

    async def test_damage_on_ended_encounter(self, mutator, encounter, fighter):
        await mutator.invoke("end-encounter", {"encounterId": encounter.id})
        with pytest.raises(EncounterStateError):
            await mutator.invoke("apply-damage", _damage(encounter, fighter, 5))


class TestHealingAndTempHp:

    async def test_healing_caps_at_max(self, mutator, encounter, fighter):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 10, "piercing"))
        body = await mutator.invoke("apply-healing", {
            "characterId": fighter.id, "amount": 25,
            "encounterId": encounter.id, "currentRound": 1,
        })
        assert body["newHP"] == 20
        assert body["actualHealing"] == 10

    async def test_temp_hp_keeps_higher(self, mutator, encounter, fighter):
        payload = {"characterId": fighter.id, "encounterId": encounter.id, "currentRound": 1}
        first = await mutator.invoke("grant-temp-hp", {**payload, "amount": 8})
        second = await mutator.invoke("grant-temp-hp", {**payload, "amount": 5})
        assert first["newTempHP"] == 8
        assert second["newTempHP"] == 8


# ---------------------------------------------------------------------------
# Idempotency and serialization
# ---------------------------------------------------------------------------

class TestIdempotency:

    async def test_replay_applies_once(self, mutator, store, encounter, fighter):
        payload = _damage(encounter, fighter, 36)
        first = await mutator.invoke("apply-damage", payload, "apply-damage:abc:1000")
        second = await mutator.invoke("apply-damage", payload, "apply-damage:abc:1000")

        assert second == first
        assert store.get_combatant(fighter.id).current_hp == 2
        assert len(_log(store, "damage")) == 1
        assert mutator.idempotency.get_stats().replays == 1

    async def test_concurrent_duplicates_apply_once(self, mutator, store, encounter, fighter):
        payload = _damage(encounter, fighter, 10, "slashing")
        results = await asyncio.gather(*[
            mutator.invoke("apply-damage", payload, "dup-key") for _ in range(3)
        ])
        assert all(r == results[0] for r in results)
        assert store.get_combatant(fighter.id).current_hp == 10

    async def test_key_reused_for_other_request(self, mutator, encounter, fighter):
        await mutator.invoke("apply-damage", _damage(encounter, fighter, 5), "shared")
        with pytest.raises(IdempotencyConflictError):
            await mutator.invoke("apply-damage", _damage(encounter, fighter, 6), "shared")

    async def test_failed_call_is_not_cached(self, mutator, store, encounter, fighter):
        payload = _damage(encounter, fighter, 5)
        await mutator.invoke("end-encounter", {"encounterId": encounter.id})
        with pytest.raises(EncounterStateError):
            await mutator.invoke("apply-damage", payload, "k1")
        assert mutator.idempotency.get_stats().entries == 0


class TestResourceRace:

    async def test_last_use_goes_to_exactly_one_caller(self, mutator, store, encounter, dragon):
        payload = {
            "characterId": dragon.id,
            "encounterId": encounter.id,
            "resourceKey": "legendary_resistances",
        }
        results = await asyncio.gather(
            mutator.invoke("spend-resource", payload, "client-a"),
            mutator.invoke("spend-resource", payload, "client-b"),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ResourceExhaustedError)
        assert "already used" in str(failures[0])
        assert store.get_combatant(dragon.id).resources["legendary_resistances"].remaining == 0

    async def test_spend_and_rest(self, mutator, store, encounter, wizard):
        payload = {"characterId": wizard.id, "encounterId": encounter.id}
        body = await mutator.invoke("spend-resource", {**payload, "resourceKey": "spell_slot_3", "amount": 2})
        assert body["pool"]["remaining"] == 0

        with pytest.raises(ResourceExhaustedError):
            await mutator.invoke("spend-resource", {**payload, "resourceKey": "spell_slot_3"})

        rest = await mutator.invoke("take-rest", {**payload, "restType": "long"})
        assert "spell_slot_3" in rest["restoredPools"]
        assert store.get_combatant(wizard.id).resources["spell_slot_3"].remaining == 2

    async def test_unknown_pool(self, mutator, encounter, fighter):
        with pytest.raises(NotFoundError):
            await mutator.invoke("spend-resource", {
                "characterId": fighter.id, "encounterId": encounter.id, "resourceKey": "ki_points",
            })


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------

class TestTurns:

    async def test_round_wraps_and_effects_expire(self, mutator, store, encounter, fighter, wizard):
        rolled = await mutator.invoke("roll-initiative", {
            "encounterId": encounter.id, "characterIds": [fighter.id, wizard.id],
        })
        order = [e["combatant_id"] for e in rolled["initiative"]]
        assert sorted(order) == sorted([fighter.id, wizard.id])

        await mutator.invoke("manage-effect", {
            "action": "create",
            "encounterId": encounter.id,
            "effectData": {"characterId": fighter.id, "name": "Bless", "endRound": 2},
        })

        first = await mutator.invoke("advance-turn", {"encounterId": encounter.id})
        assert first["isNewRound"] is False
        assert first["newRound"] == 1
        assert first["currentTurnId"] == order[1]

        second = await mutator.invoke("advance-turn", {"encounterId": encounter.id})
        assert second["isNewRound"] is True
        assert second["newRound"] == 2
        assert second["currentTurnId"] == order[0]
        assert second["expiredEffects"] == ["Bless"]

        stored = store.get_encounter(encounter.id)
        assert stored.current_round == 2
        assert stored.current_turn_index == 0
        assert store.find(Effect.table, encounter_id=encounter.id) == []

    async def test_start_of_turn_tick_and_refill(self, mutator, store, encounter, fighter, dragon):
        rolled = await mutator.invoke("roll-initiative", {
            "encounterId": encounter.id, "characterIds": [fighter.id, dragon.id],
        })
        upcoming = rolled["initiative"][1]["combatant_id"]

        await mutator.invoke("manage-effect", {
            "action": "create",
            "encounterId": encounter.id,
            "effectData": {
                "characterId": upcoming,
                "name": "Witch Bolt",
                "damagePerTick": 5,
                "damageTypePerTick": "necrotic",
            },
        })
        await mutator.invoke("spend-resource", {
            "characterId": dragon.id,
            "encounterId": encounter.id,
            "resourceKey": "legendary_actions",
            "amount": 2,
        })

        body = await mutator.invoke("advance-turn", {"encounterId": encounter.id})

        [tick] = body["tickDamage"]
        assert tick["characterId"] == upcoming
        assert tick["amount"] == 5
        target = store.get_combatant(upcoming)
        assert tick["newHP"] == target.current_hp == target.max_hp - 5
        if upcoming == dragon.id:
            assert body["refilledPools"] == ["legendary_actions"]
            assert target.resources["legendary_actions"].remaining == 3

    async def test_advance_without_initiative(self, mutator, encounter):
        with pytest.raises(EncounterStateError):
            await mutator.invoke("advance-turn", {"encounterId": encounter.id})


class TestLifecycle:

    async def test_launch_force_ends_sibling(self, mutator, store, encounter):
        other = Encounter(campaign_id="camp-1", name="Second Wave")
        store.insert(other)

        body = await mutator.invoke("launch-encounter", {"encounterId": other.id})

        assert body["endedEncounterIds"] == [encounter.id]
        assert body["encounter"]["status"] == "active"
        assert store.get_encounter(encounter.id).status == EncounterStatus.ENDED
        active = store.find(Encounter.table, campaign_id="camp-1", status=EncounterStatus.ACTIVE)
        assert [e.id for e in active] == [other.id]

    async def test_queued_launches_leave_one_active(self, mutator, store):
        first = Encounter(campaign_id="camp-2", name="North Gate")
        second = Encounter(campaign_id="camp-2", name="South Gate")
        store.insert(first, second)

        async with store.locked(campaign_id="camp-2"):
            tasks = [
                asyncio.create_task(mutator.invoke("launch-encounter", {"encounterId": enc.id}))
                for enc in (first, second)
            ]
            for _ in range(5):
                await asyncio.sleep(0)
        await asyncio.gather(*tasks)

        active = store.find(Encounter.table, campaign_id="camp-2", status=EncounterStatus.ACTIVE)
        assert len(active) == 1
        ended = {first.id, second.id} - {active[0].id}
        assert store.get_encounter(ended.pop()).status == EncounterStatus.ENDED

    async def test_damage_waiting_on_combatant_lands_before_end(self, mutator, store, encounter, fighter):
        sub = store.feed.subscribe(encounter.id)
        async with store.locked(combatant_ids=[fighter.id]):
            damage = asyncio.create_task(mutator.invoke("apply-damage", _damage(encounter, fighter, 4, "slashing")))
            for _ in range(5):
                await asyncio.sleep(0)
            end = asyncio.create_task(mutator.invoke("end-encounter", {"encounterId": encounter.id}))
            for _ in range(5):
                await asyncio.sleep(0)
            assert not end.done()
        await asyncio.gather(damage, end)

        tables = [n.table for n in sub.drain() if n.table in ("combatants", "encounters")]
        sub.close()
        assert tables == ["combatants", "encounters"]
        assert store.get_combatant(fighter.id).current_hp == 16
        assert store.get_encounter(encounter.id).status == EncounterStatus.ENDED

    async def test_relaunch_ended_rejected(self, mutator, encounter):
        await mutator.invoke("end-encounter", {"encounterId": encounter.id})
        with pytest.raises(EncounterStateError):
            await mutator.invoke("launch-encounter", {"encounterId": encounter.id})

    async def test_add_combatants_builds_pools(self, mutator, store, encounter):
        body = await mutator.invoke("add-combatants", {
            "encounterId": encounter.id,
            "combatants": [
                {"name": "Vex", "maxHp": 38, "classes": [{"name": "Warlock", "level": 11}]},
                {"name": "Lich", "kind": "monster", "maxHp": 135, "legendaryResistances": 3},
            ],
        })
        vex, lich = body["combatants"]
        assert vex["current_hp"] == 38
        assert "pact_slot" in vex["resources"]
        assert "mystic_arcanum_6" in vex["resources"]
        assert lich["resources"]["legendary_resistances"]["max"] == 3


# ---------------------------------------------------------------------------
# Save prompts
# ---------------------------------------------------------------------------

class TestSavePrompts:

    async def test_party_scope_and_duplicate_submission(self, mutator, store, encounter, fighter, wizard, dragon):
        created = await mutator.invoke("create-save-prompt", {
            "encounterId": encounter.id,
            "ability": "DEX",
            "dc": 15,
            "description": "Fire Breath",
            "targetScope": "party",
            "halfOnSuccess": True,
        })
        assert created["targetCount"] == 2
        prompt_id = created["prompt"]["id"]

        result = {"savePromptId": prompt_id, "characterId": fighter.id, "roll": 14, "modifier": 2}
        body = await mutator.invoke("record-save-result", result)
        assert body["success"] is True
        assert body["autoResolved"] is False

        with pytest.raises(DuplicateSubmissionError):
            await mutator.invoke("record-save-result", {**result, "roll": 2})
        with pytest.raises(RuleViolationError):
            await mutator.invoke("record-save-result", {**result, "characterId": dragon.id})

        last = await mutator.invoke("record-save-result", {**result, "characterId": wizard.id, "roll": 5})
        assert last["autoResolved"] is True
        assert store.get(SavePrompt.table, prompt_id).status == PromptStatus.RESOLVED

    async def test_custom_scope_requires_targets(self, mutator, encounter):
        with pytest.raises(ActionValidationError):
            await mutator.invoke("create-save-prompt", {
                "encounterId": encounter.id, "ability": "CON", "dc": 12,
                "description": "Poison", "targetScope": "custom",
            })

    async def test_legendary_resistance_turns_failure(self, mutator, store, encounter, dragon):
        created = await mutator.invoke("create-save-prompt", {
            "encounterId": encounter.id, "ability": "WIS", "dc": 20,
            "description": "Hold Monster", "targetScope": "custom",
            "customTargetIds": [dragon.id],
        })
        body = await mutator.invoke("record-save-result", {
            "savePromptId": created["prompt"]["id"],
            "characterId": dragon.id,
            "roll": 5,
            "modifier": 1,
            "useLegendaryResistance": True,
        })
        assert body["success"] is True
        assert body["legendaryResistanceUsed"] is True
        assert body["result"]["total"] == 6
        assert store.get_combatant(dragon.id).resources["legendary_resistances"].remaining == 0

    async def test_legendary_resistance_exhausted(self, mutator, store, encounter, dragon):
        pool_key = "legendary_resistances"
        await mutator.invoke("spend-resource", {
            "characterId": dragon.id, "encounterId": encounter.id, "resourceKey": pool_key,
        })
        created = await mutator.invoke("create-save-prompt", {
            "encounterId": encounter.id, "ability": "WIS", "dc": 20,
            "description": "Hold Monster", "targetScope": "custom",
            "customTargetIds": [dragon.id],
        })
        with pytest.raises(ResourceExhaustedError):
            await mutator.invoke("record-save-result", {
                "savePromptId": created["prompt"]["id"],
                "characterId": dragon.id,
                "roll": 5,
                "modifier": 1,
                "useLegendaryResistance": True,
            })
        assert store.get(SavePrompt.table, created["prompt"]["id"]).received_responses == 0

    async def test_close_is_idempotent(self, mutator, encounter, fighter):
        created = await mutator.invoke("create-save-prompt", {
            "encounterId": encounter.id, "ability": "STR", "dc": 10,
            "description": "Push", "targetScope": "all",
        })
        prompt_id = created["prompt"]["id"]
        first = await mutator.invoke("close-save-prompt", {"savePromptId": prompt_id})
        second = await mutator.invoke("close-save-prompt", {"savePromptId": prompt_id})
        assert first["prompt"]["status"] == "resolved"
        assert second == first


# ---------------------------------------------------------------------------
# Contested checks
# ---------------------------------------------------------------------------

class TestContests:

    def _contest(self, encounter, attacker, target, **fields):
        return {
            "encounterId": encounter.id,
            "currentRound": 1,
            "checkType": "grapple",
            "attackerId": attacker.id,
            "targetId": target.id,
            "attackerBonus": 5,
            "targetAthleticsBonus": 2,
            "targetAcrobaticsBonus": 4,
            **fields,
        }

    async def test_grapple_then_escape(self, mutator, store, encounter, fighter, make_combatant):
        goblin = make_combatant("Goblin", max_hp=7)
        body = await mutator.invoke(
            "resolve-contest", self._contest(encounter, fighter, goblin, attackerRoll=15, targetRoll=10)
        )
        assert body["success"] is True
        assert body["condition"] == "grappled"
        assert body["targetUsedAcrobatics"] is True
        assert store.get_combatant(goblin.id).has_condition("grappled")
        assert store.get_combatant(fighter.id).action_used is True

        escaped = await mutator.invoke("escape-grapple", {
            "encounterId": encounter.id, "currentRound": 1, "characterId": goblin.id,
            "athleticsBonus": 0, "acrobaticsBonus": 2, "escapeDc": 13, "roll": 11,
        })
        assert escaped["success"] is True
        assert not store.get_combatant(goblin.id).has_condition("grappled")

    async def test_second_contest_same_turn_rejected(self, mutator, encounter, fighter, make_combatant):
        goblin = make_combatant("Goblin", max_hp=7)
        await mutator.invoke(
            "resolve-contest", self._contest(encounter, fighter, goblin, attackerRoll=2, targetRoll=18)
        )
        with pytest.raises(RuleViolationError):
            await mutator.invoke(
                "resolve-contest", self._contest(encounter, fighter, goblin, checkType="shove")
            )

    async def test_escape_requires_grapple(self, mutator, encounter, fighter):
        with pytest.raises(RuleViolationError):
            await mutator.invoke("escape-grapple", {
                "encounterId": encounter.id, "currentRound": 1, "characterId": fighter.id,
                "athleticsBonus": 3, "acrobaticsBonus": 0, "escapeDc": 12,
            })

    async def test_self_contest_invalid(self, mutator, encounter, fighter):
        with pytest.raises(ActionValidationError):
            await mutator.invoke("resolve-contest", self._contest(encounter, fighter, fighter))


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------

class TestUndo:

    async def test_undo_damage_once(self, mutator, store, encounter, fighter):
        hit = await mutator.invoke("apply-damage", _damage(encounter, fighter, 36))
        undo = {"encounterId": encounter.id, "logEntryId": hit["logEntryId"]}

        body = await mutator.invoke("undo-action", undo)

        assert body["undoneAction"] == "damage"
        assert body["newHP"] == 20
        [entry] = _log(store, "undo")
        assert entry.undoes == hit["logEntryId"]
        assert store.get(CombatLogEntry.table, hit["logEntryId"]) is not None

        with pytest.raises(RuleViolationError):
            await mutator.invoke("undo-action", undo)

    async def test_undo_effect_removes_condition(self, mutator, store, encounter, make_combatant):
        orc = make_combatant("Orc", max_hp=15)
        created = await mutator.invoke("manage-effect", {
            "action": "create",
            "encounterId": encounter.id,
            "effectData": {"characterId": orc.id, "name": "Hold Person", "appliesCondition": "paralyzed"},
        })
        assert store.get_combatant(orc.id).has_condition("paralyzed")

        await mutator.invoke("undo-action", {"encounterId": encounter.id, "logEntryId": created["logEntryId"]})

        assert store.find(Effect.table, encounter_id=encounter.id) == []
        assert not store.get_combatant(orc.id).has_condition("paralyzed")

    async def test_turn_advance_not_undoable(self, mutator, store, encounter, fighter, wizard):
        await mutator.invoke("roll-initiative", {
            "encounterId": encounter.id, "characterIds": [fighter.id, wizard.id],
        })
        [entry] = _log(store, "initiative")
        with pytest.raises(RuleViolationError):
            await mutator.invoke("undo-action", {"encounterId": encounter.id, "logEntryId": entry.id})
