"""Bounded in-memory cache of reported game instances.

Design:
- OrderedDict keyed by "<placeId>_<gameInstanceId>", kept in last-write order
- Capacity cap evicts the oldest write first
- TTL expiry measured against the cache's own receive time (ms)
- A single lock makes every operation atomic w.r.t. the others
"""

import logging
import math
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)

MIN_VALUE = 3_000_000
MAX_ENTRIES = 100
TTL_SECONDS = 3600
DEFAULT_LIMIT = 50

Number = Union[int, float]


class RelayError(Exception):
    """Base class for cache errors."""


class ValidationError(RelayError):
    """Caller supplied missing or malformed report fields."""


class InternalError(RelayError):
    """Unexpected fault while operating on the cache."""


@dataclass
class Item:
    """Valuable item observed inside an instance."""

    display_name: Optional[str]
    value: Optional[Number]
    generation: Any = None
    rarity: Any = None


@dataclass
class Report:
    """Stored cache entry.

    received_at is stamped by the cache in milliseconds; reported_at is the
    producer's own timestamp in seconds and is only echoed back.
    """

    place_key: str
    instance_key: str
    item: Item
    reported_at: int
    source: str
    received_at: int

    @property
    def key(self) -> str:
        return make_key(self.place_key, self.instance_key)


@dataclass
class ReportResult:
    stored: bool
    key: Optional[str] = None
    reason: Optional[str] = None


def make_key(place_key: str, instance_key: str) -> str:
    """Compose the identity key of an instance."""
    return f"{place_key}_{instance_key}"


def _is_valid_value(value: Any) -> bool:
    """Finite, non-negative int or float (bool excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


def _normalize_key(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class InstanceCache:
    """Thread-safe, size-capped, TTL-aware store of instance reports.

    入力：report / query / best / delete_by_instance_id / sweep
    出力：投影済みの dict（wire 形式）
    副作用：内部 OrderedDict の更新、ログ出力
    失敗モード：入力不足は ValidationError、内部異常は InternalError

    Args:
        max_entries: Maximum number of stored instances
        ttl_seconds: Age after which an entry is expired
        min_value: Admission threshold for item value
        clock: Returns seconds since epoch (injectable for tests)
    """

    def __init__(
        self,
        max_entries: int = MAX_ENTRIES,
        ttl_seconds: float = TTL_SECONDS,
        min_value: Number = MIN_VALUE,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.ttl_ms = int(ttl_seconds * 1000)
        self.min_value = min_value
        self._clock = clock
        self._store: "OrderedDict[str, Report]" = OrderedDict()
        self._lock = threading.Lock()
        self._started_at = clock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_expired(self, report: Report, now_ms: int) -> bool:
        return now_ms - report.received_at > self.ttl_ms

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Hold the lock and translate unexpected faults into InternalError."""
        with self._lock:
            try:
                yield
            except RelayError:
                raise
            except Exception as e:
                logger.error(f"Cache {operation} failed: {e}")
                raise InternalError(f"{operation} failed") from e

    @staticmethod
    def _project(report: Report, now_ms: int) -> Dict[str, Any]:
        return {
            "placeId": report.place_key,
            "gameInstanceId": report.instance_key,
            "animal": {
                "name": report.item.display_name,
                "value": report.item.value,
                "generation": report.item.generation,
                "rarity": report.item.rarity,
            },
            "timestamp": report.reported_at,
            "age": math.floor((now_ms - report.received_at) / 1000),
        }

    def report(
        self,
        place_key: Any,
        instance_key: Any,
        item: Optional[Item],
        reported_at: Optional[int] = None,
        source: Optional[str] = None,
    ) -> ReportResult:
        """Admit or replace the report for (place_key, instance_key).

        Returns:
            ReportResult(stored=True, key=...) when stored,
            ReportResult(stored=False, reason="value too low") when the value
            is under the admission threshold.

        Raises:
            ValidationError: required fields missing or value not a finite,
                non-negative number
        """
        place = _normalize_key(place_key)
        instance = _normalize_key(instance_key)
        if not place or not instance or item is None or item.value is None:
            raise ValidationError("Missing required fields")
        if not _is_valid_value(item.value):
            raise ValidationError("animalData.value must be a finite, non-negative number")
        if reported_at is not None and not _is_valid_value(reported_at):
            raise ValidationError("timestamp must be a finite, non-negative number")

        if item.value < self.min_value:
            logger.debug(f"[REPORT] Ignored {item.display_name} ({item.value}) in {instance}: value too low")
            return ReportResult(stored=False, reason="value too low")

        with self._guard("report"):
            now_ms = self._now_ms()
            entry = Report(
                place_key=place,
                instance_key=instance,
                item=Item(
                    display_name=item.display_name,
                    value=item.value,
                    generation=item.generation,
                    rarity=item.rarity,
                ),
                reported_at=reported_at or now_ms // 1000,
                source=source or "unknown",
                received_at=now_ms,
            )
            key = entry.key
            self._store[key] = entry
            self._store.move_to_end(key)

            while len(self._store) > self.max_entries:
                evicted_key, _ = self._store.popitem(last=False)
                logger.info(f"[EVICT] Capacity {self.max_entries} reached, dropped {evicted_key}")

        logger.info(f"[REPORT] Stored: {item.display_name} - {item.generation} in {instance}")
        return ReportResult(stored=True, key=key)

    def query(self, min_value: Optional[Number] = None, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """List live instances with value >= min_value, most valuable first."""
        threshold = self.min_value if min_value is None else min_value
        with self._guard("query"):
            now_ms = self._now_ms()
            live = [
                r
                for r in self._store.values()
                if not self._is_expired(r, now_ms) and r.item.value >= threshold
            ]
            # sorted() is stable, so equal values keep storage order
            live = sorted(live, key=lambda r: r.item.value, reverse=True)[: max(0, int(limit))]
            return [self._project(r, now_ms) for r in live]

    def best(self) -> Optional[Dict[str, Any]]:
        """Return the most valuable live instance, or None."""
        with self._guard("best"):
            now_ms = self._now_ms()
            best_report = None
            for r in self._store.values():
                if self._is_expired(r, now_ms):
                    continue
                if best_report is None or r.item.value > best_report.item.value:
                    best_report = r
            if best_report is None:
                return None
            return self._project(best_report, now_ms)

    def delete_by_instance_id(self, instance_key: Any) -> bool:
        """Delete the first entry whose instance key matches.

        Only one entry is removed even if several places share the id.
        """
        target = _normalize_key(instance_key)
        with self._guard("delete"):
            for key, r in self._store.items():
                if r.instance_key == target:
                    del self._store[key]
                    return True
            return False

    def sweep(self) -> int:
        """Physically remove expired entries.

        Returns:
            Number of entries removed
        """
        with self._guard("sweep"):
            now_ms = self._now_ms()
            expired = [k for k, r in self._store.items() if self._is_expired(r, now_ms)]
            for key in expired:
                del self._store[key]
        if expired:
            logger.info(f"[SWEEP] Removed {len(expired)} expired instance(s)")
        return len(expired)

    def health(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entry_count": len(self._store),
                "uptime_seconds": self._clock() - self._started_at,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
