"""
Response cache for the Tally dashboard.

- RequestFingerprint: the canonical identity of a logical request
- TTLCache: fingerprint-keyed store with per-entry lifetime
- InFlightRegistry: fetches in progress, so a second caller can join one
  instead of sending a duplicate request
"""
from __future__ import annotations
import copy
import json
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Optional
from loguru import logger

from .requests import DateRange, normalize_filter


@dataclass(frozen=True)
class RequestFingerprint:
    """
    Identity of a logical request.

    Two requests that differ in any of these fields never share a cache
    entry. Equal inputs always give an equal key.
    """

    entity_kind: str
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    company_name: Optional[str] = None
    page: Optional[int] = None
    page_size: Optional[int] = None
    search_filter: Optional[str] = None

    def __post_init__(self):
        if self.company_name is not None:
            object.__setattr__(self, "company_name", self.company_name.strip())
        object.__setattr__(self, "search_filter", normalize_filter(self.search_filter))

    @classmethod
    def create(
        cls,
        entity_kind: str,
        date_range: Optional[DateRange] = None,
        company: Optional[str] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        search_filter: Optional[str] = None,
    ) -> "RequestFingerprint":
        return cls(
            entity_kind=entity_kind,
            from_date=date_range.from_date if date_range else None,
            to_date=date_range.to_date if date_range else None,
            company_name=company,
            page=page,
            page_size=page_size,
            search_filter=search_filter,
        )

    @property
    def key(self) -> str:
        return json.dumps([
            self.entity_kind,
            self.from_date,
            self.to_date,
            self.company_name,
            self.page,
            self.page_size,
            self.search_filter,
        ])

    def for_page(self, page: int) -> "RequestFingerprint":
        return RequestFingerprint(
            entity_kind=self.entity_kind,
            from_date=self.from_date,
            to_date=self.to_date,
            company_name=self.company_name,
            page=page,
            page_size=self.page_size,
            search_filter=self.search_filter,
        )

    def __str__(self) -> str:
        return self.key


@dataclass
class _Entry:
    value: Any
    stored_at: float
    ttl: float


class TTLCache:
    """
    In-memory cache keyed by RequestFingerprint.

    An entry is valid while (now - stored_at) < ttl; once expired it reads as
    absent but is kept until overwritten or invalidated, so get_stale() can
    still answer with it when a refresh fails. Values are copied on the way
    in and out so a caller mutating a result cannot corrupt the cached one.
    """

    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.monotonic):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= entry.ttl:
            return None
        return entry

    def get(self, fp: RequestFingerprint) -> Optional[Any]:
        with self._lock:
            entry = self._live(fp.key)
            return copy.deepcopy(entry.value) if entry else None

    def get_stale(self, fp: RequestFingerprint) -> Optional[Any]:
        """Last stored value, expired or not, for degraded answers."""
        with self._lock:
            entry = self._entries.get(fp.key)
            return copy.deepcopy(entry.value) if entry else None

    def set(self, fp: RequestFingerprint, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        with self._lock:
            self._entries[fp.key] = _Entry(copy.deepcopy(value), self._clock(), ttl)

    def has(self, fp: RequestFingerprint) -> bool:
        with self._lock:
            return self._live(fp.key) is not None

    def delete(self, fp: RequestFingerprint) -> None:
        with self._lock:
            self._entries.pop(fp.key, None)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug(f"Cache cleared ({count} entries)")

    def invalidate(self, predicate: Callable[[RequestFingerprint], bool]) -> int:
        """Drop every entry whose fingerprint matches predicate; return how many."""
        with self._lock:
            doomed = [
                key for key in self._entries
                if predicate(RequestFingerprint(*json.loads(key)))
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries")
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class InFlightRegistry:
    """
    Fetches currently running, by fingerprint.

    A Future is registered when a fetch starts and removed as soon as it
    completes, successfully or not.
    """

    def __init__(self):
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def get_in_flight(self, fp: RequestFingerprint) -> Optional[Future]:
        with self._lock:
            return self._futures.get(fp.key)

    def register_in_flight(self, fp: RequestFingerprint, future: Future) -> Future:
        """
        Register future for fp unless another fetch is already running.

        Returns the Future callers should wait on: the existing one if there
        was one, else the one just registered.
        """
        key = fp.key
        with self._lock:
            existing = self._futures.get(key)
            if existing is not None:
                return existing
            self._futures[key] = future

        def _done(f, key=key):
            with self._lock:
                if self._futures.get(key) is f:
                    del self._futures[key]

        future.add_done_callback(_done)
        return future

    def __contains__(self, fp: RequestFingerprint) -> bool:
        with self._lock:
            return fp.key in self._futures

    def __len__(self) -> int:
        with self._lock:
            return len(self._futures)
