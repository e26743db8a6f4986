"""
In-memory authoritative document store for combat records.

Reads hand out deep copies, so callers can never write through to stored
state. Writes go through a Transaction that stages records and commits
them all at once, with no awaits in between, then publishes one change
notification per record. Each commit checks that a staged record still
has the version it was read at; a mismatch means a writer skipped the
locks and is reported as a retryable conflict.

Mutations hold per-record asyncio locks around their read-modify-write.
Locks are always taken in the same order (campaign, then encounters, then
combatants, each sorted by id), so two mutations can never deadlock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable

from ..exceptions import NotFoundError, TransientError
from ..feed import ChangeEvent, ChangeFeed, ChangeNotification
from ..models import RECORD_TYPES, Combatant, Encounter, Record

logger = logging.getLogger("combat-keeper.store")


def _encounter_of(record: Record) -> str | None:
    if isinstance(record, Encounter):
        return record.id
    return getattr(record, "encounter_id", None)


class Transaction:
    """A batch of writes committed atomically."""

    def __init__(self, store: "CombatStore") -> None:
        self._store = store
        self._puts: dict[tuple[str, str], Record] = {}
        self._deletes: dict[tuple[str, str], None] = {}
        self.committed = False

    def put(self, record: Record) -> Record:
        """Stage an insert or full update of a record (read under its lock)."""
        key = (record.table, record.id)
        self._deletes.pop(key, None)
        self._puts[key] = record
        return record

    def delete(self, table: str, record_id: str) -> None:
        key = (table, record_id)
        self._puts.pop(key, None)
        self._deletes[key] = None

    def commit(self) -> list[ChangeNotification]:
        """Apply every staged write and publish the change notifications.

        Raises:
            TransientError: If a staged record was changed by another commit
                after it was read. Nothing is written in that case.
        """
        if self.committed:
            raise RuntimeError("Transaction already committed")
        notifications = self._store._apply(self._puts.values(), self._deletes.keys())
        self.committed = True
        self._store.feed.publish(notifications)
        return notifications


class CombatStore:
    """Versioned tables of encounters, combatants, effects, prompts, results and log."""

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self.feed = feed or ChangeFeed()
        self._tables: dict[str, dict[str, Record]] = {table: {} for table in RECORD_TYPES}
        self._locks: dict[str, asyncio.Lock] = {}

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def _table(self, table: str) -> dict[str, Record]:
        if table not in self._tables:
            raise NotFoundError(f"Unknown table '{table}'")
        return self._tables[table]

    def get(self, table: str, record_id: str) -> Record:
        """Return a copy of a record.

        Raises:
            NotFoundError: If the table or record does not exist.
        """
        record = self._table(table).get(record_id)
        if record is None:
            raise NotFoundError(
                f"{table[:-1] if table.endswith('s') else table} '{record_id}' not found",
                details={"table": table, "id": record_id},
            )
        return record.model_copy(deep=True)

    def get_encounter(self, encounter_id: str) -> Encounter:
        return self.get(Encounter.table, encounter_id)

    def get_combatant(self, combatant_id: str, encounter_id: str | None = None) -> Combatant:
        combatant: Combatant = self.get(Combatant.table, combatant_id)
        if encounter_id is not None and combatant.encounter_id != encounter_id:
            raise NotFoundError(
                f"Combatant '{combatant_id}' is not part of encounter '{encounter_id}'",
                details={"table": Combatant.table, "id": combatant_id},
            )
        return combatant

    def find(
        self,
        table: str,
        predicate: Callable[[Any], bool] | None = None,
        **filters: Any,
    ) -> list[Any]:
        """Return copies of records matching field filters and a predicate."""
        matches = []
        for record in self._table(table).values():
            if any(getattr(record, name, None) != value for name, value in filters.items()):
                continue
            if predicate is not None and not predicate(record):
                continue
            matches.append(record.model_copy(deep=True))
        return matches

    def snapshot(self, encounter_id: str) -> dict[str, Any]:
        """Everything a client needs to rebuild its view of one encounter."""
        encounter = self.get_encounter(encounter_id)
        return {
            "encounter": encounter.model_dump(mode="json"),
            "combatants": [c.model_dump(mode="json") for c in self.find("combatants", encounter_id=encounter_id)],
            "effects": [e.model_dump(mode="json") for e in self.find("effects", encounter_id=encounter_id)],
            "save_prompts": [p.model_dump(mode="json") for p in self.find("save_prompts", encounter_id=encounter_id)],
        }

    # -----------------------------------------------------------------
    # Locks
    # -----------------------------------------------------------------

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def locked(
        self,
        *encounter_ids: str,
        combatant_ids: Iterable[str] = (),
        campaign_id: str | None = None,
    ) -> AsyncIterator[None]:
        """Hold the campaign lock, then encounter locks, then combatant locks.

        Encounter and combatant locks are each taken in id order. A caller
        that already holds some of these locks must only ask for locks
        that come later in this order.
        """
        keys = []
        if campaign_id is not None:
            keys.append(f"campaigns:{campaign_id}")
        keys.extend(f"encounters:{eid}" for eid in sorted(set(encounter_ids)))
        keys.extend(f"combatants:{cid}" for cid in sorted(set(combatant_ids)))

        acquired: list[asyncio.Lock] = []
        try:
            for key in keys:
                lock = self._lock(key)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def transaction(self) -> Transaction:
        return Transaction(self)

    def insert(self, *records: Record) -> list[ChangeNotification]:
        """Commit new records in one transaction (setup and fixtures)."""
        tx = self.transaction()
        for record in records:
            tx.put(record)
        return tx.commit()

    def _apply(
        self,
        puts: Iterable[Record],
        deletes: Iterable[tuple[str, str]],
    ) -> list[ChangeNotification]:
        puts = list(puts)
        deletes = list(deletes)

        for record in puts:
            stored = self._table(record.table).get(record.id)
            if stored is not None and stored.version != record.version:
                logger.warning(
                    f"Write conflict on {record.table}/{record.id}: "
                    f"read v{record.version}, stored v{stored.version}"
                )
                raise TransientError(
                    f"Write conflict on {record.table} '{record.id}'",
                    details={"table": record.table, "id": record.id},
                )

        now = datetime.now(timezone.utc)
        notifications = []
        for record in puts:
            table = self._table(record.table)
            event = ChangeEvent.UPDATE if record.id in table else ChangeEvent.INSERT
            stored = record.model_copy(deep=True)
            stored.version = record.version + 1
            stored.updated_at = now
            table[record.id] = stored
            record.version = stored.version
            record.updated_at = now
            notifications.append(ChangeNotification(
                table=record.table,
                event=event,
                record_id=record.id,
                encounter_id=_encounter_of(stored),
                version=stored.version,
                record=stored.model_dump(mode="json"),
            ))

        for table_name, record_id in deletes:
            removed = self._table(table_name).pop(record_id, None)
            if removed is None:
                continue
            notifications.append(ChangeNotification(
                table=table_name,
                event=ChangeEvent.DELETE,
                record_id=record_id,
                encounter_id=_encounter_of(removed),
                version=removed.version + 1,
            ))
        return notifications
