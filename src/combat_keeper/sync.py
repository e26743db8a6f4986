"""
Client read model for one encounter, kept in sync from the change feed.

Notifications may arrive late, twice, or out of order relative to each
other. The view therefore merges by record version: a notification is
applied only if its version is newer than what the view holds, and a
deleted record stays deleted against any older notification. A
notification without a record body is resolved by refetching the record.

An optimistic HP overlay lets the UI show the result of its own action
immediately; it is dropped as soon as the feed delivers that version (or
a newer one) of the combatant.
"""

import logging
from typing import Any, Awaitable, Callable

from .exceptions import NotFoundError
from .feed import ChangeEvent, ChangeNotification, Subscription
from .models import RECORD_TYPES, Combatant, Effect, Encounter, Record, SavePrompt

logger = logging.getLogger("combat-keeper.feed")

Fetcher = Callable[[str, str], Awaitable[dict[str, Any]]]

TRACKED_TABLES = (Encounter.table, Combatant.table, Effect.table, SavePrompt.table)


class EncounterView:
    """Versioned local copy of an encounter's records."""

    def __init__(self, encounter_id: str) -> None:
        self.encounter_id = encounter_id
        self._records: dict[str, dict[str, Record]] = {table: {} for table in TRACKED_TABLES}
        self._tombstones: dict[tuple[str, str], int] = {}
        self._overlay: dict[str, tuple[int, int]] = {}
        self.applied = 0
        self.ignored = 0

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------

    @property
    def encounter(self) -> Encounter | None:
        return self._records[Encounter.table].get(self.encounter_id)

    @property
    def combatants(self) -> dict[str, Combatant]:
        return self._records[Combatant.table]

    @property
    def effects(self) -> dict[str, Effect]:
        return self._records[Effect.table]

    @property
    def save_prompts(self) -> dict[str, SavePrompt]:
        return self._records[SavePrompt.table]

    def combatant_hp(self, combatant_id: str) -> int | None:
        """HP to display, preferring a pending optimistic value."""
        if combatant_id in self._overlay:
            return self._overlay[combatant_id][0]
        combatant = self.combatants.get(combatant_id)
        return combatant.current_hp if combatant else None

    def has_pending_overlay(self, combatant_id: str) -> bool:
        return combatant_id in self._overlay

    # -----------------------------------------------------------------
    # Loading and merging
    # -----------------------------------------------------------------

    def load_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Replace the view's contents with a server snapshot."""
        self._records = {table: {} for table in TRACKED_TABLES}
        self._tombstones.clear()
        self._store(Encounter.model_validate(snapshot["encounter"]))
        for data in snapshot.get("combatants", []):
            self._store(Combatant.model_validate(data))
        for data in snapshot.get("effects", []):
            self._store(Effect.model_validate(data))
        for data in snapshot.get("save_prompts", []):
            self._store(SavePrompt.model_validate(data))

    def _store(self, record: Record) -> None:
        self._records[record.table][record.id] = record
        pending = self._overlay.get(record.id)
        if pending is not None and record.version >= pending[1]:
            del self._overlay[record.id]

    def _is_stale(self, table: str, record_id: str, version: int) -> bool:
        tombstone = self._tombstones.get((table, record_id))
        if tombstone is not None and version <= tombstone:
            return True
        current = self._records[table].get(record_id)
        return current is not None and version <= current.version

    async def apply_notification(
        self,
        notification: ChangeNotification,
        fetch: Fetcher | None = None,
    ) -> bool:
        """
        Merge one change notification.

        Args:
            notification: The notification to apply.
            fetch: Coroutine returning a record body by (table, id), used
                when the notification carries none.

        Returns:
            True if the view changed.
        """
        table = notification.table
        if table not in self._records or notification.encounter_id != self.encounter_id:
            return False
        if self._is_stale(table, notification.record_id, notification.version):
            self.ignored += 1
            logger.debug(
                f"Ignoring stale {table}/{notification.record_id} v{notification.version}"
            )
            return False

        if notification.event == ChangeEvent.DELETE:
            self._records[table].pop(notification.record_id, None)
            self._tombstones[(table, notification.record_id)] = notification.version
            self._overlay.pop(notification.record_id, None)
            self.applied += 1
            return True

        data = notification.record
        if data is None:
            if fetch is None:
                logger.warning(f"No record body or fetcher for {table}/{notification.record_id}")
                return False
            try:
                data = await fetch(table, notification.record_id)
            except NotFoundError:
                logger.debug(f"{table}/{notification.record_id} vanished before refetch")
                return False

        record = RECORD_TYPES[table].model_validate(data)
        if self._is_stale(table, record.id, record.version):
            self.ignored += 1
            return False
        self._store(record)
        self.applied += 1
        return True

    def apply_optimistic(self, combatant_id: str, new_hp: int, version: int) -> bool:
        """Show ``new_hp`` until the feed delivers ``version`` of the combatant.

        Ignored if the view already holds that version or a newer one.
        """
        current = self.combatants.get(combatant_id)
        if current is not None and current.version >= version:
            return False
        self._overlay[combatant_id] = (new_hp, version)
        return True


class EncounterStateRegistry:
    """One EncounterView per encounter, with notification routing."""

    def __init__(self) -> None:
        self._views: dict[str, EncounterView] = {}

    def view(self, encounter_id: str) -> EncounterView:
        if encounter_id not in self._views:
            self._views[encounter_id] = EncounterView(encounter_id)
        return self._views[encounter_id]

    def drop(self, encounter_id: str) -> None:
        self._views.pop(encounter_id, None)

    async def route(self, notification: ChangeNotification, fetch: Fetcher | None = None) -> bool:
        view = self._views.get(notification.encounter_id or "")
        if view is None:
            return False
        return await view.apply_notification(notification, fetch)


async def follow(subscription: Subscription, view: EncounterView, fetch: Fetcher | None = None) -> None:
    """Apply notifications from a subscription to a view until cancelled."""
    async for notification in subscription:
        await view.apply_notification(notification, fetch)
