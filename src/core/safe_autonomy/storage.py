"""
Safe Autonomy: Storage

Each manager owns one EntityStore for its entity kind. The in-memory
implementation hands out snapshots so callers never mutate stored state;
a durable implementation must keep the same contract (create/get/update/
list, atomic per id).

Snapshots copy the entity, its list/dict/set fields and nested dataclasses;
anything else (an action context value, a task result) is shared. Entities
may therefore carry live objects such as connections or locks.

KeyedLocks gives every entity id its own re-entrant lock so that mutations
of one lock, consensus item or retry task are single-writer while
unrelated ids proceed in parallel.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def snapshot(entity: T) -> T:
    """Copy an entity, its container fields and nested dataclasses.

    Leaf values are shared, never copied.
    """
    if not dataclasses.is_dataclass(entity) or isinstance(entity, type):
        return entity
    clone = copy.copy(entity)
    for f in dataclasses.fields(entity):
        value = getattr(entity, f.name)
        if isinstance(value, (list, dict, set)):
            object.__setattr__(clone, f.name, copy.copy(value))
        elif dataclasses.is_dataclass(value):
            object.__setattr__(clone, f.name, snapshot(value))
    return clone


class EntityStore(ABC, Generic[T]):
    """Storage contract for one entity kind. Entities expose an ``id`` attribute."""

    @abstractmethod
    def create(self, entity: T) -> T:
        """Persist a new entity. Raises KeyError if the id already exists."""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Return a snapshot of the entity, or None."""

    @abstractmethod
    def update(self, entity: T) -> T:
        """Replace a stored entity. Raises KeyError if the id is unknown."""

    @abstractmethod
    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """Return snapshots of all entities matching predicate."""

    def find_one(self, predicate: Callable[[T], bool]) -> Optional[T]:
        matches = self.list(predicate)
        return matches[0] if matches else None


class InMemoryStore(EntityStore[T]):
    """Dict-backed store. Insertion order is preserved for list()."""

    def __init__(self) -> None:
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def create(self, entity: T) -> T:
        entity_id = getattr(entity, "id")
        with self._lock:
            if entity_id in self._items:
                raise KeyError(f"Entity already exists: {entity_id}")
            self._items[entity_id] = snapshot(entity)
        return snapshot(entity)

    def get(self, entity_id: str) -> Optional[T]:
        with self._lock:
            entity = self._items.get(entity_id)
            return snapshot(entity) if entity is not None else None

    def update(self, entity: T) -> T:
        entity_id = getattr(entity, "id")
        with self._lock:
            if entity_id not in self._items:
                raise KeyError(f"Entity not found: {entity_id}")
            self._items[entity_id] = snapshot(entity)
        return snapshot(entity)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        with self._lock:
            items = list(self._items.values())
        if predicate is not None:
            items = [item for item in items if predicate(item)]
        return [snapshot(item) for item in items]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class _KeyedLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLocks:
    """Per-key re-entrant locks, created on first use.

    A key's lock lives only while some thread holds or waits for it, so the
    map stays as small as the set of ids currently being mutated.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, _KeyedLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
