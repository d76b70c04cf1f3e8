from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Generic, Hashable, Iterable, Optional, TypeVar

from rbac_admin.logging import get_logger
from rbac_admin.storage.models import Role, User

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Bounded mapping that evicts the least recently used entry.

    ``get`` returns ``None`` on a miss without touching recency; cached values
    are never ``None`` so the two cannot be confused.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: K) -> Optional[V]:
        try:
            value = self._entries[key]
        except KeyError:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            self._entries[key] = value
            self._entries.move_to_end(key)
            return
        if len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1
        self._entries[key] = value

    def delete(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> list[K]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CacheStats:
    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int


class EntityCache:
    """User and role snapshots keyed by id, owned by whoever constructs it.

    The cache is not transaction-aware. Between a commit and the matching
    invalidation call a concurrent reader can still be served the previous
    snapshot; the store stays the source of truth and is never bypassed on
    write.
    """

    def __init__(self, user_capacity: int = 500, role_capacity: int = 100) -> None:
        self.users: LRUCache[int, User] = LRUCache(user_capacity)
        self.roles: LRUCache[int, Role] = LRUCache(role_capacity)
        self.closed = False

    def _ensure_open(self) -> None:
        if self.closed:
            raise RuntimeError("entity cache is closed")

    def get_user(self, user_id: int) -> Optional[User]:
        self._ensure_open()
        return self.users.get(user_id)

    def set_user(self, user: User) -> None:
        self._ensure_open()
        self.users.set(user.id, user)

    def invalidate_user(self, user_id: Optional[int] = None) -> None:
        """Drop one user, or every user when no id is given."""
        self._ensure_open()
        if user_id is None:
            self.users.clear()
        else:
            self.users.delete(user_id)

    def get_role(self, role_id: int) -> Optional[Role]:
        self._ensure_open()
        return self.roles.get(role_id)

    def set_role(self, role: Role) -> None:
        self._ensure_open()
        self.roles.set(role.id, role)

    def invalidate_role(self, role_id: Optional[int] = None) -> None:
        self._ensure_open()
        if role_id is None:
            self.roles.clear()
        else:
            self.roles.delete(role_id)

    def invalidate_all(self) -> None:
        self._ensure_open()
        self.users.clear()
        self.roles.clear()

    def after_mutation(
        self,
        user_ids: Iterable[int] = (),
        role_ids: Iterable[int] = (),
    ) -> None:
        """Invalidate exactly the rows a committed write touched."""
        for user_id in user_ids:
            self.invalidate_user(user_id)
        for role_id in role_ids:
            self.invalidate_role(role_id)

    def stats(self) -> dict[str, CacheStats]:
        return {
            name: CacheStats(
                size=len(cache),
                capacity=cache.capacity,
                hits=cache.hits,
                misses=cache.misses,
                evictions=cache.evictions,
            )
            for name, cache in (("users", self.users), ("roles", self.roles))
        }

    def close(self) -> None:
        if self.closed:
            return
        self.users.clear()
        self.roles.clear()
        self.closed = True
        logger.info("entity_cache_closed")


async def load_user(cache: EntityCache, store, user_id: int) -> Optional[User]:
    """Read-through lookup: cache first, then the store, populating on a hit."""
    user = cache.get_user(user_id)
    if user is not None:
        return user
    user = await store.get_user(user_id)
    if user is not None:
        cache.set_user(user)
    return user


async def load_role(cache: EntityCache, store, role_id: int) -> Optional[Role]:
    role = cache.get_role(role_id)
    if role is not None:
        return role
    role = await store.get_role(role_id)
    if role is not None:
        cache.set_role(role)
    return role
