"""
Response caching for the MCP shim.

Successful proxy responses are memoized by request shape (method plus
canonical params) for a fixed TTL. Tool calls that mutate files or the
memory graph are never cached.
"""

import copy
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from mcp_shim.logging_config import get_logger
from mcp_shim.protocol import Request, Response, is_error_response

logger = get_logger(__name__)

# Substrings marking a tool name as state-modifying
MUTATION_MARKERS = (
    "write_file",
    "edit_file",
    "create_directory",
    "move_file",
    "delete",
    "create_entities",
    "delete_entities",
    "create_relations",
    "delete_relations",
    "add_observations",
    "delete_observations",
)


def is_mutating_tool(tool_name: str) -> bool:
    """True if the tool name contains any mutation marker."""
    return any(marker in tool_name for marker in MUTATION_MARKERS)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass
class CacheEntry:
    """A cached response and the monotonic time it stops being valid."""

    value: Response
    expiry: float

    def is_expired(self, now: float) -> bool:
        return now > self.expiry


class ResponseCache:
    """
    TTL cache of successful JSON-RPC responses.

    Features:
    - Deterministic keys from method + canonical params
    - Lazy expiry on lookup
    - Optional entry ceiling (expired entries purged first, then soonest-to-expire)
    """

    def __init__(
        self,
        enabled: bool = True,
        ttl_seconds: float = 300.0,
        max_entries: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialise the cache.

        Args:
            enabled: When False, get always misses and put does nothing.
            ttl_seconds: Lifetime of each entry from insertion.
            max_entries: Maximum number of entries; 0 means unbounded.
            clock: Monotonic time source, injectable for tests.
        """
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def key(request: Request) -> Optional[str]:
        """
        Cache key for a request, or None if the request must not be cached.
        """
        tool_name = request.tool_name
        if tool_name is not None and is_mutating_tool(tool_name):
            return None
        return f"{request.method}:{canonical_json(request.params)}"

    def get(self, key: str) -> Optional[Response]:
        """
        Retrieve a cached response.

        Returns ``None`` if caching is disabled or the entry is missing or expired.
        """
        if not self.enabled:
            return None

        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("Cache entry expired for key: %s", key)
            return None

        logger.debug("Cache hit for key: %s", key)
        return entry.value

    def lookup(self, request: Request, key: str) -> Optional[Response]:
        """Cached response for ``key`` with its ``id`` replaced by the request's id."""
        cached = self.get(key)
        if cached is None:
            return None
        response = copy.deepcopy(cached)
        response["id"] = request.id
        return response

    def put(self, key: str, response: Response) -> None:
        """Store a successful response. Error responses are ignored."""
        if not self.enabled:
            return
        if is_error_response(response):
            logger.debug("Not caching error response for key: %s", key)
            return

        now = self._clock()
        if key not in self._entries:
            self._make_room(now)
        self._entries[key] = CacheEntry(
            value=copy.deepcopy(response),
            expiry=now + self.ttl_seconds,
        )
        logger.debug("Cached response for key: %s", key)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def size(self) -> int:
        """Number of stored entries (including not yet evicted expired ones)."""
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
        }

    # ------------------------------------------------------------------
    # Eviction helpers
    # ------------------------------------------------------------------

    def _make_room(self, now: float) -> None:
        if not self.max_entries or len(self._entries) < self.max_entries:
            return

        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))

        while len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].expiry)
            logger.debug("Evicting cache entry %s (cache full)", oldest)
            del self._entries[oldest]
