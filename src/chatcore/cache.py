"""Cache of derived unread counts.

Unread counts are computed by counting messages past a participant's read
cursor, and a conversation list asks for one count per row. Counts are kept
per (conversation, user) and dropped explicitly when a message is sent or
deleted in the conversation, and replaced when the user's cursor moves.

A write can land between a reader's count query and its store. Each
conversation therefore has a generation, bumped whenever its counts are
dropped. Readers take the generation before counting and pass it to `put`,
which refuses the store if the generation has moved on:

    generation = cache.generation(conversation_id)
    count = backend.count_unread(...)
    cache.put(conversation_id, user_id, count, generation)

Entries also expire after a TTL, and the cache is LRU-bounded so memory
stays flat with many conversations.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict

from .metrics import metrics

logger = logging.getLogger(__name__)

# Defaults used when ChatOptions does not override them
DEFAULT_UNREAD_CACHE_TTL = 5.0
DEFAULT_UNREAD_CACHE_SIZE = 10000

Key = tuple[str, str]


class UnreadCache:
    """Thread-safe unread-count cache keyed by (conversation_id, user_id).

    Args:
        ttl: Seconds an entry stays valid (0 = until evicted or invalidated)
        max_size: Maximum number of entries; least recently used go first
        name: Name reported to metrics
    """

    def __init__(
        self,
        ttl: float = DEFAULT_UNREAD_CACHE_TTL,
        max_size: int = DEFAULT_UNREAD_CACHE_SIZE,
        name: str = "unread",
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.name = name
        self._entries: OrderedDict[Key, tuple[int, float]] = OrderedDict()
        # conversation_id -> users with a cached count, for whole-conversation drops
        self._by_conversation: dict[str, set[str]] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def generation(self, conversation_id: str) -> int:
        """Current generation of a conversation's counts."""
        with self._lock:
            return self._generations.get(conversation_id, 0)

    def get(self, conversation_id: str, user_id: str) -> int | None:
        """Cached count, or None on a miss or an expired entry."""
        key = (conversation_id, user_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[1] < time.monotonic():
                self._remove(key)
                entry = None

            if entry is None:
                metrics.record_cache_miss(self.name)
                return None

            self._entries.move_to_end(key)
            metrics.record_cache_hit(self.name)
            return entry[0]

    def put(
        self,
        conversation_id: str,
        user_id: str,
        count: int,
        generation: int | None = None,
    ) -> bool:
        """Store a count.

        Args:
            generation: Generation read before the count was computed. The
                        store is skipped when the conversation's counts were
                        dropped since then.

        Returns:
            True if the count was stored.
        """
        key = (conversation_id, user_id)
        expires_at = time.monotonic() + self.ttl if self.ttl > 0 else float("inf")
        with self._lock:
            if generation is not None and generation != self._generations.get(conversation_id, 0):
                logger.debug(f"Skipped stale unread count for {user_id} in {conversation_id}")
                return False
            if key in self._entries:
                self._entries.move_to_end(key)
            else:
                while len(self._entries) >= self.max_size:
                    oldest = next(iter(self._entries))
                    self._remove(oldest)
                self._by_conversation.setdefault(conversation_id, set()).add(user_id)
            self._entries[key] = (count, expires_at)
        return True

    def forget(self, conversation_id: str, user_id: str) -> bool:
        """Drop one participant's count. True if it was cached.

        Bumps the conversation's generation, so counts computed before the
        call are not stored afterwards.
        """
        with self._lock:
            self._bump(conversation_id)
            return self._remove((conversation_id, user_id))

    def forget_conversation(self, conversation_id: str) -> int:
        """Drop every participant's count for a conversation and bump its generation.

        Returns:
            Number of entries dropped.
        """
        with self._lock:
            self._bump(conversation_id)
            users = self._by_conversation.pop(conversation_id, set())
            for user_id in users:
                del self._entries[(conversation_id, user_id)]
        if users:
            logger.debug(f"Dropped {len(users)} unread counts for {conversation_id}")
        return len(users)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_conversation.clear()
            # Generations survive so in-flight readers still see the drop

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _bump(self, conversation_id: str) -> None:
        self._generations[conversation_id] = self._generations.get(conversation_id, 0) + 1

    def _remove(self, key: Key) -> bool:
        """Remove an entry and its index slot. Must be called with lock held."""
        if self._entries.pop(key, None) is None:
            return False
        conversation_id, user_id = key
        users = self._by_conversation.get(conversation_id)
        if users is not None:
            users.discard(user_id)
            if not users:
                del self._by_conversation[conversation_id]
        return True

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "conversations": len(self._by_conversation),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl,
            }
