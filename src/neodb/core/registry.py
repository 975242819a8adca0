"""Entity registry owned by a DatabaseService."""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator

from neodb.core.naming import to_snake_case
from neodb.core.types import EntityDefinition
from neodb.exceptions import EntityNotFoundError


class EntityRegistry:
    """Looks up registered entities by id, lower-cased name or table name.

    Registration may happen at runtime, so mutations and lookups share a lock.
    """

    def __init__(self, entities: Iterable[EntityDefinition] | None = None) -> None:
        self._lock = threading.RLock()
        self._by_id: dict[str, EntityDefinition] = {}
        self._by_name: dict[str, EntityDefinition] = {}
        self._by_table: dict[str, EntityDefinition] = {}
        if entities:
            self.register_many(entities)

    def register(self, entity: EntityDefinition) -> None:
        """Register or replace an entity.

        Args:
            entity: Entity definition to register
        """
        with self._lock:
            previous = self._by_id.get(entity.id)
            if previous is not None:
                self._by_name.pop(previous.name.lower(), None)
                self._by_table.pop(previous.table_name, None)
            self._by_id[entity.id] = entity
            self._by_name[entity.name.lower()] = entity
            self._by_table[entity.table_name] = entity

    def register_many(self, entities: Iterable[EntityDefinition]) -> None:
        """Register several entities."""
        with self._lock:
            for entity in entities:
                self.register(entity)

    def get(self, key: str) -> EntityDefinition | None:
        """Find an entity by id, then name (case-insensitive), then table name."""
        with self._lock:
            return (
                self._by_id.get(key)
                or self._by_name.get(key.lower())
                or self._by_table.get(key)
                or self._by_table.get(to_snake_case(key))
            )

    def require(self, key: str) -> EntityDefinition:
        """Find an entity or raise.

        Raises:
            EntityNotFoundError: If nothing matches the key
        """
        entity = self.get(key)
        if entity is None:
            raise EntityNotFoundError(key, self.names())
        return entity

    def table_name_for(self, key: str) -> str:
        """Table name of a registered entity, or the conventional name otherwise."""
        entity = self.get(key)
        if entity is not None:
            return entity.table_name
        return f"{to_snake_case(key)}s"

    def names(self) -> list[str]:
        """Names of all registered entities, sorted."""
        with self._lock:
            return sorted(e.name for e in self._by_id.values())

    def all(self) -> list[EntityDefinition]:
        """All registered entities in registration order."""
        with self._lock:
            return list(self._by_id.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __iter__(self) -> Iterator[EntityDefinition]:
        return iter(self.all())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
