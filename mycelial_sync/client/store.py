"""
MODULE OVERVIEW:
The in-memory mirror of one server-side collection.

WHAT IS HAPPENING HERE:
One EntityStore exists per collection (peers, nodes, workloads) for the whole
life of the SyncController. It is a plain id -> entity mapping with
last-write-wins upserts. Snapshots merge additively: an entity that an
in-flight event added ahead of a stale snapshot is not thrown away, it is
reconciled by the next authoritative event instead.
"""
from typing import Callable, Dict, Generic, Iterable, List, TypeVar

from loguru import logger

from mycelial_sync.shared.events import Signal
from mycelial_sync.shared.models import StoreChange

T = TypeVar("T")


class EntityStore(Generic[T]):
    def __init__(self, name: str, key: Callable[[T], str] = lambda entity: entity.id):
        self.name = name
        self._key = key
        self._entities: Dict[str, T] = {}
        self.changed = Signal(f"store:{name}")

    def upsert(self, entity: T) -> None:
        entity_id = self._key(entity)
        if not entity_id:
            logger.warning(f"store={self.name} event=upsert_skipped reason=empty_id")
            return
        self._entities[entity_id] = entity
        self.changed.emit(StoreChange(store=self.name, op="upsert", ids=[entity_id]))

    def remove(self, entity_id: str) -> bool:
        if entity_id not in self._entities:
            return False
        del self._entities[entity_id]
        self.changed.emit(StoreChange(store=self.name, op="remove", ids=[entity_id]))
        return True

    def replace_all(self, entities: Iterable[T]) -> None:
        """Merge a snapshot: upsert every entry, keep entries the snapshot omits."""
        ids = []
        for entity in entities:
            entity_id = self._key(entity)
            if not entity_id:
                logger.warning(f"store={self.name} event=snapshot_entry_skipped reason=empty_id")
                continue
            self._entities[entity_id] = entity
            ids.append(entity_id)
        self.changed.emit(StoreChange(store=self.name, op="replace_all", ids=ids))

    def clear(self) -> None:
        ids = list(self._entities)
        self._entities.clear()
        self.changed.emit(StoreChange(store=self.name, op="clear", ids=ids))

    def get(self, entity_id: str) -> T | None:
        return self._entities.get(entity_id)

    def list(self) -> List[T]:
        return list(self._entities.values())

    def ids(self) -> List[str]:
        return list(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)
