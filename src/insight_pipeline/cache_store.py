"""
Result cache for the analysis pipeline.

Content-addressed store of prior analysis outputs:
- Deterministic fingerprints over (analysis type, normalized input, options)
- LRU eviction once capacity is reached
- Per-entry TTL, removed lazily on access or by a periodic sweep
- Hit/miss/expiry statistics
"""

import asyncio
import hashlib
import json
import logging
import re
import threading
import time
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Iterable

from .errors import CacheUnavailable

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 24 * 3600

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Normalize response text so formatting noise does not change fingerprints."""
    text = unicodedata.normalize("NFKC", text or "")
    return _WHITESPACE.sub(" ", text).strip()


def compute_fingerprint(
    analysis_type: str,
    texts: Iterable[str],
    options: dict[str, Any] | None = None,
) -> str:
    """
    Compute the cache key for a request.

    Args:
        analysis_type: Analysis type value, e.g. "sentiment"
        texts: Response texts in input order (already anonymized if applicable)
        options: Result-affecting options

    Returns:
        Hex SHA-256 digest
    """
    canonical = json.dumps(
        {
            "type": analysis_type,
            "input": [normalize_text(t) for t in texts],
            "options": options or {},
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached payload."""
    payload: str
    created_at: float
    expires_at: float
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResultCache:
    """
    LRU cache for analysis payloads with TTL support.

    Payloads are stored as serialized strings so a hit returns exactly the
    bytes that were stored. All access goes through one lock, so workers
    sharing the cache never see a half-applied eviction.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock=time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._closed = False

        self._hits = 0
        self._misses = 0
        self._expired = 0
        self._evictions = 0

    def _check_available(self) -> None:
        if self._closed:
            raise CacheUnavailable("Result cache is closed")

    def get(self, fingerprint: str) -> str | None:
        """Get cached payload if available and not expired."""
        self._check_available()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is not None:
                if entry.is_expired(self._clock()):
                    del self._entries[fingerprint]
                    self._expired += 1
                else:
                    self._entries.move_to_end(fingerprint)
                    entry.hits += 1
                    self._hits += 1
                    return entry.payload

            self._misses += 1
            return None

    def put(self, fingerprint: str, payload: str, ttl: float | None = None) -> None:
        """Cache a payload, evicting the least recently used entry if full."""
        self._check_available()
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            if fingerprint in self._entries:
                del self._entries[fingerprint]

            while len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"[CACHE] Evicted {evicted[:12]}")

            self._entries[fingerprint] = CacheEntry(
                payload=payload,
                created_at=now,
                expires_at=now + ttl,
            )

    def evict(self, fingerprint: str) -> bool:
        self._check_available()
        with self._lock:
            return self._entries.pop(fingerprint, None) is not None

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expired += len(expired)
        if expired:
            logger.debug(f"[CACHE] Swept {len(expired)} expired entries")
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep periodically until cancelled."""
        while not self._closed:
            await asyncio.sleep(interval)
            self.sweep()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "expired": self._expired,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }

    def clear(self) -> None:
        """Clear the cache."""
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        self._closed = True
        self.clear()
