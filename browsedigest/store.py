"""Local event store.

This module keeps the append-only activity log in memory and mirrors it to
durable state in batches. The log is bounded by age (rolling retention
window) and by size (a quota failure truncates it to the most recent tail
instead of failing the write). It also owns the per-day side table of
extracted page content.

Key Features:
- Batched persistence with an explicit flush() contract
- Retention enforced before every write, never after
- Lossy quota recovery: keep the newest N events and retry once
- Day-scoped queries in local time
- Per-domain aggregation for the digest
- Page content deduplicated by URL and capped per day

Example:
    >>> store = EventStore(storage, privacy, config.storage)
    >>> store.load()
    >>> store.append('navigation', url='https://github.com/', title='GitHub')
    >>> store.query_day(date.today())
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .categories import categorize
from .config import StorageConfig
from .events import EVENT_TYPES, NON_VISIT_TYPES, Event, compact_payload
from .exceptions import QuotaExceededError, StorageError
from .privacy import PrivacyFilter
from .storage import StateStorage

logger = logging.getLogger(__name__)

STORE_KEY = 'event_log'
META_KEY = 'store_meta'
CONTENT_PREFIX = 'content:'

EXPORT_VERSION = '2.0'


@dataclass
class DomainStats:
    """Visit statistics for one domain within a set of events.

    Attributes:
        domain: Hostname.
        visits: Number of events for the domain.
        category: Category of the first event seen.
        title: Last non-empty title seen.
        first_seen: Timestamp of the earliest event.
        last_seen: Timestamp of the latest event.
    """
    domain: str
    visits: int
    category: str
    title: str
    first_seen: float
    last_seen: float


@dataclass
class PageContent:
    """Readable content captured from a page the user spent time on.

    Attributes:
        url: Sanitized page URL.
        title: Page title.
        time_spent: Seconds spent on the page.
        content: Extracted text (bounded length).
        meta: Page metadata (description, author, publish_date).
        timestamp: When the content was captured.
    """
    url: str
    title: str
    time_spent: float
    content: str
    meta: dict = field(default_factory=dict)
    timestamp: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'PageContent':
        return cls(
            url=data.get('url', ''),
            title=data.get('title', ''),
            time_spent=float(data.get('time_spent', 0)),
            content=data.get('content', ''),
            meta=dict(data.get('meta') or {}),
            timestamp=float(data.get('timestamp', 0)),
        )


def day_bounds(day: date):
    """Return (start, end) Unix timestamps of a local calendar day."""
    start = datetime.combine(day, datetime.min.time())
    end = datetime.combine(day + timedelta(days=1), datetime.min.time())
    return start.timestamp(), end.timestamp()


def _empty_meta() -> dict:
    return {'total_events': 0, 'oldest_event': None, 'newest_event': None}


class EventStore:
    """Append-only, retention-bounded activity log.

    The in-memory log is the working copy; durable state is the source of
    truth across restarts. Writes are batched: every ``persist_every``
    appends trigger a flush, and callers flush explicitly on timers and on
    shutdown.

    Attributes:
        storage: StateStorage holding the persisted blobs.
        privacy: PrivacyFilter used to sanitize URLs.
        config: StorageConfig with retention and batching settings.
    """

    def __init__(
        self,
        storage: StateStorage,
        privacy: PrivacyFilter,
        config: StorageConfig = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.privacy = privacy
        self.config = config or StorageConfig()
        self.clock = clock

        self._lock = threading.RLock()
        self._log: List[Event] = []
        self._meta = _empty_meta()
        self._pending = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def load(self) -> int:
        """Load the log and metadata from durable state.

        Malformed entries are skipped. A storage failure leaves the store
        empty rather than failing startup.

        Returns:
            Number of events loaded.
        """
        try:
            stored = self.storage.get_many([STORE_KEY, META_KEY])
        except StorageError as e:
            logger.error(f"Store load failed, starting empty: {e}")
            stored = {}

        events = []
        for raw in stored.get(STORE_KEY) or []:
            try:
                events.append(Event.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed stored event: {raw!r}")

        with self._lock:
            self._log = events
            self._meta = {**_empty_meta(), **(stored.get(META_KEY) or {})}
            self._pending = 0
        logger.info(f"Store loaded: {len(events)} events")
        return len(events)

    def reload(self, config: StorageConfig) -> None:
        """Swap in new storage settings (called on configuration change)."""
        with self._lock:
            self.config = config
            self.storage.quota_bytes = config.quota_bytes

    # =========================================================================
    # Writes
    # =========================================================================

    def append(self, event_type: str, url: str = '', title: str = '',
               data: Optional[dict] = None) -> Optional[Event]:
        """Record an event.

        The URL is sanitized, domain and category derived, the title truncated
        and the payload compacted to the fields relevant for the type.

        Args:
            event_type: One of EVENT_TYPES.
            url: Raw URL from the browser signal.
            title: Page title.
            data: Raw type-specific signal data.

        Returns:
            The stored Event, or None if the type is unknown.
        """
        if event_type not in EVENT_TYPES:
            logger.warning(f"Ignoring event of unknown type: {event_type!r}")
            return None

        clean_url = self.privacy.sanitize_url(url or '')
        domain = self.privacy.get_domain(clean_url)

        with self._lock:
            now = self.clock()
            newest = self._log[-1].timestamp if self._log else now
            event = Event(
                timestamp=max(now, newest),
                type=event_type,
                url=clean_url,
                domain=domain,
                category=categorize(domain),
                title=(title or '')[:self.config.title_max_length],
                payload=compact_payload(event_type, data, self.privacy.sanitize_url),
            )
            self._log.append(event)

            self._meta['total_events'] = self._meta.get('total_events', 0) + 1
            self._meta['newest_event'] = event.timestamp
            if not self._meta.get('oldest_event'):
                self._meta['oldest_event'] = event.timestamp

            self._pending += 1
            if self._pending >= max(1, self.config.persist_every):
                self.flush()
        return event

    def flush(self) -> bool:
        """Persist the log now.

        Retention is enforced first. If the write is rejected for exceeding
        the storage quota, the log is cut down to the most recent
        ``quota_tail_size`` events and the write is retried once.

        Returns:
            True if the log was written.
        """
        with self._lock:
            self.enforce_retention()
            try:
                self._write()
            except QuotaExceededError as e:
                before = len(self._log)
                self._log = self._log[-self.config.quota_tail_size:]
                self._meta['oldest_event'] = self._log[0].timestamp if self._log else None
                logger.warning(
                    f"Storage quota hit ({e}); truncated log from {before} to {len(self._log)} events"
                )
                try:
                    self._write()
                except StorageError as retry_error:
                    logger.error(f"Store persist failed after truncation: {retry_error}")
                    return False
            except StorageError as e:
                logger.error(f"Store persist failed, will retry on next flush: {e}")
                return False
            self._pending = 0
            return True

    def _write(self) -> None:
        self.storage.set_many({
            STORE_KEY: [e.to_dict() for e in self._log],
            META_KEY: dict(self._meta),
        })

    def enforce_retention(self, now: Optional[float] = None) -> int:
        """Drop events older than the retention window.

        Events exactly at the cutoff are dropped. Page content for days that
        ended before the cutoff is removed as well.

        Returns:
            Number of events dropped.
        """
        now = self.clock() if now is None else now
        cutoff = now - self.config.retention_days * 86400

        with self._lock:
            before = len(self._log)
            self._log = [e for e in self._log if e.timestamp > cutoff]
            dropped = before - len(self._log)
            if dropped:
                self._meta['oldest_event'] = self._log[0].timestamp if self._log else None
                self._meta['newest_event'] = self._log[-1].timestamp if self._log else None
                logger.info(f"Pruned {dropped} old events")

        self._prune_page_content(date.fromtimestamp(cutoff))
        return dropped

    def _prune_page_content(self, cutoff_day: date) -> None:
        try:
            stale = [
                key for key in self.storage.keys(CONTENT_PREFIX)
                if key[len(CONTENT_PREFIX):] < cutoff_day.isoformat()
            ]
            if stale:
                self.storage.delete(*stale)
                logger.info(f"Pruned page content for {len(stale)} day(s)")
        except StorageError as e:
            logger.warning(f"Page content pruning failed: {e}")

    def clear(self) -> None:
        """Erase the entire log and all stored page content. Irreversible."""
        with self._lock:
            self._log = []
            self._meta = _empty_meta()
            self._pending = 0
            keys = [STORE_KEY, META_KEY] + self.storage.keys(CONTENT_PREFIX)
            self.storage.delete(*keys)
        logger.info("Event store cleared")

    # =========================================================================
    # Queries
    # =========================================================================

    def all_events(self) -> List[Event]:
        with self._lock:
            return list(self._log)

    def query_day(self, day: Optional[date] = None) -> List[Event]:
        """Return events recorded on a local calendar day, oldest first.

        Args:
            day: Calendar day (defaults to today).
        """
        day = day or date.fromtimestamp(self.clock())
        start, end = day_bounds(day)
        with self._lock:
            return [e for e in self._log if start <= e.timestamp < end]

    def events_for_today(self) -> List[Event]:
        return self.query_day(date.fromtimestamp(self.clock()))

    @staticmethod
    def aggregate_by_domain(events: Iterable[Event]) -> Dict[str, DomainStats]:
        """Summarize visits per domain.

        Idle and comeback events, and events without a domain, are skipped.

        Returns:
            Mapping of domain to DomainStats, in first-seen order.
        """
        stats: Dict[str, DomainStats] = {}
        for e in events:
            if not e.domain or e.type in NON_VISIT_TYPES:
                continue
            entry = stats.get(e.domain)
            if entry is None:
                entry = stats[e.domain] = DomainStats(
                    domain=e.domain,
                    visits=0,
                    category=e.category,
                    title=e.title,
                    first_seen=e.timestamp,
                    last_seen=e.timestamp,
                )
            entry.visits += 1
            entry.first_seen = min(entry.first_seen, e.timestamp)
            entry.last_seen = max(entry.last_seen, e.timestamp)
            if e.title:
                entry.title = e.title
        return stats

    def stats(self) -> dict:
        """Return store statistics for status displays."""
        with self._lock:
            size = len(json.dumps([e.to_dict() for e in self._log], separators=(',', ':')))
            return {
                'event_count': len(self._log),
                'total_events': self._meta.get('total_events', 0),
                'oldest_event': self._meta.get('oldest_event'),
                'newest_event': self._meta.get('newest_event'),
                'estimated_size_kb': round(size / 1024),
            }

    def export(self) -> dict:
        """Export all events as a JSON-serializable document."""
        with self._lock:
            return {
                'version': EXPORT_VERSION,
                'exported_at': datetime.fromtimestamp(self.clock()).isoformat(),
                'event_count': len(self._log),
                'events': [e.to_dict() for e in self._log],
            }

    # =========================================================================
    # Page content side table
    # =========================================================================

    def add_page_content(self, entry: PageContent, day: Optional[date] = None) -> List[PageContent]:
        """Store extracted page content for a day.

        A page already stored for the day is replaced only if the new entry
        has more time spent. The day's entries are kept sorted by time spent
        and capped at ``page_content_cap``; the rest are dropped.

        Args:
            entry: Captured page content.
            day: Calendar day (defaults to the day of entry.timestamp).

        Returns:
            The day's entries after the update.
        """
        day = day or date.fromtimestamp(entry.timestamp or self.clock())
        key = f"{CONTENT_PREFIX}{day.isoformat()}"

        with self._lock:
            existing = [PageContent.from_dict(d) for d in self.storage.get(key) or []]

            for i, current in enumerate(existing):
                if current.url == entry.url:
                    if entry.time_spent > current.time_spent:
                        existing[i] = entry
                    break
            else:
                existing.append(entry)

            existing.sort(key=lambda p: p.time_spent, reverse=True)
            trimmed = existing[:self.config.page_content_cap]
            self.storage.set(key, [p.to_dict() for p in trimmed])

        logger.info(f"Stored page content: {entry.title[:50]} ({round(entry.time_spent)}s)")
        return trimmed

    def get_page_content(self, day: date) -> List[PageContent]:
        """Return the extracted page content stored for a day."""
        raw = self.storage.get(f"{CONTENT_PREFIX}{day.isoformat()}") or []
        return [PageContent.from_dict(d) for d in raw]
