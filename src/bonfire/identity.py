"""Short-lived cache of Discord id -> registered account lookups.

The cache only saves round trips to the account table; it is never a source of
truth. Misses are not cached, so an account registered a moment ago is seen on
the very next lookup. Entries expire a fixed TTL after they were fetched, and a
periodic sweep drops expired entries regardless of access.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bonfire.logging import get_logger

if TYPE_CHECKING:
    from bonfire.store import RecordStore

log = get_logger("identity")


@dataclass(frozen=True)
class CachedIdentity:
    """A resolved account for a Discord user."""

    account_id: str
    display_name: str
    cached_at: float


class IdentityCache:
    """TTL-bounded memoization of account lookups by Discord id.

    No locking: population and eviction may race, the worst case is one
    redundant lookup.
    """

    def __init__(
        self,
        store: RecordStore,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CachedIdentity] = {}

    def resolve(self, discord_id: str) -> CachedIdentity | None:
        """Resolve a Discord user to a registered account.

        Args:
            discord_id: Discord user id.

        Returns:
            The cached or freshly looked-up identity, or None for a guest.

        Raises:
            SQLAlchemyError: If the account lookup fails. A failed lookup is
                not the same as an unknown user.
        """
        now = self._clock()
        cached = self._entries.get(discord_id)
        if cached is not None and now - cached.cached_at < self.ttl_seconds:
            log.debug("identity_cache_hit", discord_id=discord_id, account_id=cached.account_id)
            return cached

        log.debug("identity_cache_miss", discord_id=discord_id)
        account = self.store.get_account_by_discord_id(discord_id)
        if account is None:
            self._entries.pop(discord_id, None)
            return None

        identity = CachedIdentity(
            account_id=account.id,
            display_name=account.username,
            cached_at=now,
        )
        self._entries[discord_id] = identity
        log.debug("identity_cached", discord_id=discord_id, account_id=account.id)
        return identity

    def evict_expired(self) -> int:
        """Drop entries older than the TTL.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [
            discord_id
            for discord_id, entry in list(self._entries.items())
            if now - entry.cached_at >= self.ttl_seconds
        ]
        for discord_id in expired:
            self._entries.pop(discord_id, None)

        if expired:
            log.info("identity_cache_evicted", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        """Forget every entry."""
        self._entries.clear()
        log.info("identity_cache_cleared")

    def stats(self) -> dict:
        """Cache size and per-entry ages in seconds."""
        now = self._clock()
        return {
            "size": len(self._entries),
            "ttl_seconds": self.ttl_seconds,
            "entries": [
                {
                    "discord_id": discord_id,
                    "account_id": entry.account_id,
                    "display_name": entry.display_name,
                    "age_seconds": round(now - entry.cached_at, 3),
                }
                for discord_id, entry in self._entries.items()
            ],
        }
