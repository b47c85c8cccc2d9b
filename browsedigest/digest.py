"""Daily digest builder.

Turns one calendar day of activity into a plain-text report and hands it to
the configured delivery clients, at most once per day. The report is built
locally from the event store, the dwell accumulator and the captured page
content; no model is involved.

Sections, in order:
    header, active time, top sites, activity by category, bookmarks,
    downloads, page content, activity pattern.

Example:
    >>> builder = DigestBuilder(store, tracker, storage, [webhook, logger], config_manager)
    >>> builder.schedule()
    >>> builder.build_and_send(manual=True)
"""

import logging
import time
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence

from .categories import category_emoji, category_label
from .events import PAGE_LOAD_TYPES, Event, EventType
from .exceptions import StorageError
from .scheduler import DurableScheduler, next_occurrence, parse_hhmm
from .store import DomainStats, EventStore, PageContent
from .tracker import DomainDwell, SessionTracker, format_duration

if TYPE_CHECKING:
    from .config import ConfigManager, DigestConfig
    from .delivery import DeliveryResult
    from .storage import StateStorage

logger = logging.getLogger(__name__)

DIGEST_ALARM = 'daily-digest'
LAST_DIGEST_KEY = 'last_digest_date'
DAY_SECONDS = 24 * 60 * 60
DEFAULT_DIGEST_TIME = '20:00'


@dataclass
class DigestReport:
    """A rendered daily digest.

    Attributes:
        date: Calendar day the report covers.
        text: Formatted report.
        event_count: Events recorded that day.
        domain_count: Distinct domains visited that day.
        page_content_count: Captured pages stored for that day.
    """
    date: date
    text: str
    event_count: int
    domain_count: int
    page_content_count: int

    def metadata(self) -> dict:
        """Structured summary sent alongside the text."""
        return {
            'date': self.date.isoformat(),
            'event_count': self.event_count,
            'domain_count': self.domain_count,
            'page_content_count': self.page_content_count,
        }


@dataclass
class DigestResult:
    """Outcome of a build-and-send attempt.

    ``reason`` is one of 'sent', 'already_sent', 'no_events',
    'not_configured' or 'delivery_failed'.
    """
    success: bool
    reason: str
    date: Optional[str] = None
    deliveries: Dict[str, dict] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'reason': self.reason,
            'date': self.date,
            'deliveries': dict(self.deliveries),
        }


def format_hour(hour: int) -> str:
    """Format an hour of day as ``12am``, ``9am``, ``12pm``, ``3pm``."""
    if hour == 0:
        return '12am'
    if hour < 12:
        return f"{hour}am"
    if hour == 12:
        return '12pm'
    return f"{hour - 12}pm"


def estimate_active_time(events: Sequence[Event]) -> str:
    """Estimate active time from the first and last event of the day."""
    if len(events) < 2:
        return 'minimal'
    return format_duration(events[-1].timestamp - events[0].timestamp)


def format_date_header(day: date) -> str:
    return f"{day:%A}, {day:%b} {day.day}, {day.year}"


class DigestBuilder:
    """Builds, schedules and delivers the daily digest.

    Attributes:
        store: EventStore with the day's events and page content.
        tracker: SessionTracker holding the dwell accumulator.
        storage: StateStorage for the last-digest-date marker.
        deliverers: Delivery clients (``name``, ``is_configured()``, ``deliver(report)``).
        config_manager: Source of the current DigestConfig.
        scheduler: DurableScheduler for the daily alarm (optional).
        lock: Lock guarding the store and tracker. Held while the report is
            built and the day is marked, never during delivery.
    """

    def __init__(
        self,
        store: EventStore,
        tracker: SessionTracker,
        storage: "StateStorage",
        deliverers: Sequence,
        config_manager: "ConfigManager",
        scheduler: Optional[DurableScheduler] = None,
        clock: Callable[[], float] = time.time,
        lock=None,
    ):
        self.store = store
        self.tracker = tracker
        self.storage = storage
        self.deliverers = list(deliverers)
        self.config_manager = config_manager
        self.scheduler = scheduler
        self.clock = clock
        self.lock = lock or threading.RLock()
        self._send_lock = threading.Lock()

    @property
    def config(self) -> "DigestConfig":
        return self.config_manager.config.digest

    def _today(self) -> date:
        return date.fromtimestamp(self.clock())

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _digest_time(self) -> str:
        try:
            parse_hhmm(self.config.time)
            return self.config.time
        except ValueError as e:
            logger.error(f"{e}; using {DEFAULT_DIGEST_TIME}")
            return DEFAULT_DIGEST_TIME

    def schedule(self, force: bool = False) -> bool:
        """Arrange the daily digest alarm at the configured local time.

        An existing alarm for the same time is left alone so a restart never
        moves a pending fire.

        Args:
            force: Re-anchor the alarm even if it is unchanged.

        Returns:
            True if the alarm was (re)created.
        """
        if self.scheduler is None:
            return False
        hhmm = self._digest_time()
        target = next_occurrence(hhmm, datetime.fromtimestamp(self.clock()))
        if force:
            self.scheduler.schedule(DIGEST_ALARM, target.timestamp(), DAY_SECONDS, tag=hhmm)
            return True
        return self.scheduler.ensure(DIGEST_ALARM, target.timestamp(), DAY_SECONDS, tag=hhmm)

    def handle_alarm(self, name: str, scheduled_at: float) -> Optional[DigestResult]:
        """Run the digest for an alarm fire.

        The digest covers the day the alarm was scheduled for, so a fire
        delivered late after downtime still reports the missed day. The alarm
        is then re-anchored to the next local occurrence of the digest time.

        Returns:
            DigestResult, or None if the alarm isn't the digest alarm.
        """
        if name != DIGEST_ALARM:
            return None
        logger.info("Digest alarm fired")
        result = self.build_and_send(date.fromtimestamp(scheduled_at))
        with self.lock:
            self.schedule(force=True)
        return result

    # =========================================================================
    # Build
    # =========================================================================

    def build(self, day: Optional[date] = None) -> Optional[DigestReport]:
        """Build the report for a calendar day.

        Returns:
            DigestReport, or None if no events were recorded that day.
        """
        day = day or self._today()
        events = self.store.query_day(day)
        if not events:
            return None

        domain_stats = EventStore.aggregate_by_domain(events)
        page_times = self.tracker.page_times()
        total_active = self.tracker.total_active_seconds()
        try:
            page_contents = self.store.get_page_content(day)
        except StorageError as e:
            logger.warning(f"Page content unavailable for {day}: {e}")
            page_contents = []

        text = self.render(day, events, domain_stats, page_times, total_active, page_contents)
        return DigestReport(
            date=day,
            text=text,
            event_count=len(events),
            domain_count=len(domain_stats),
            page_content_count=len(page_contents),
        )

    def render(
        self,
        day: date,
        events: List[Event],
        domain_stats: Dict[str, DomainStats],
        page_times: List[DomainDwell],
        total_active_seconds: float,
        page_contents: List[PageContent],
    ) -> str:
        """Format the report text."""
        lines = [f"[Browse Digest] {format_date_header(day)}", '']

        if total_active_seconds > 0:
            active = format_duration(total_active_seconds)
        else:
            active = estimate_active_time(events)
        lines += [f"Browsing Summary ({active} active):", '']

        dwell = {d.domain: d.total_seconds for d in page_times}
        top_sites = sorted(domain_stats.values(), key=lambda s: s.visits, reverse=True)
        top_sites = top_sites[:self.config.top_sites]
        if top_sites:
            lines.append('Top Sites:')
            for stats in top_sites:
                time_str = f", ~{format_duration(dwell[stats.domain])}" if stats.domain in dwell else ''
                lines.append(f"- {stats.domain} ({stats.visits} visits{time_str})")
            lines.append('')

        lines += self._render_categories(domain_stats)
        lines += self._render_bookmarks(events)
        lines += self._render_downloads(events)
        lines += self._render_page_content(page_contents)
        lines += self._render_activity_pattern(events)

        return '\n'.join(lines).rstrip('\n')

    def _render_categories(self, domain_stats: Dict[str, DomainStats]) -> List[str]:
        by_category: Dict[str, List[DomainStats]] = {}
        for stats in domain_stats.values():
            by_category.setdefault(stats.category or 'other', []).append(stats)

        interesting = [
            (category, domains) for category, domains in by_category.items()
            if category not in ('other', 'email')
        ]
        if not interesting:
            return []
        interesting.sort(key=lambda item: sum(d.visits for d in item[1]), reverse=True)

        lines = ['Activity by Category:']
        for category, domains in interesting:
            total = sum(d.visits for d in domains)
            top = sorted(domains, key=lambda d: d.visits, reverse=True)[:5]
            names = ', '.join(d.domain for d in top)
            lines.append(
                f"- {category_emoji(category)} {category_label(category)}: {names} ({total} visits)"
            )
        lines.append('')
        return lines

    @staticmethod
    def _render_bookmarks(events: List[Event]) -> List[str]:
        bookmarks = [e for e in events if e.type == EventType.BOOKMARK_CREATED]
        if not bookmarks:
            return []
        lines = ['Bookmarked:']
        for b in bookmarks:
            title = b.payload.get('title') or b.title
            url = b.payload.get('url') or b.url
            lines.append(f'- "{title}" - {url}')
        lines.append('')
        return lines

    @staticmethod
    def _render_downloads(events: List[Event]) -> List[str]:
        downloads = [e for e in events if e.type == EventType.DOWNLOAD_COMPLETED]
        if not downloads:
            return []
        lines = ['Downloads:']
        for d in downloads:
            file_size = d.payload.get('file_size') or 0
            size = f" ({file_size / 1024 / 1024:.1f}MB)" if file_size else ''
            filename = d.payload.get('filename') or 'unknown'
            mime = d.payload.get('mime') or 'unknown'
            lines.append(f"- {filename} ({mime}){size}")
        lines.append('')
        return lines

    def _render_page_content(self, page_contents: List[PageContent]) -> List[str]:
        if not page_contents:
            return []
        top_pages = sorted(page_contents, key=lambda p: p.time_spent, reverse=True)
        top_pages = top_pages[:self.config.max_content_pages]

        lines = ['Page Content (what you actually read):']
        for page in top_pages:
            lines += ['', f"--- {page.title or '(untitled)'} ({round(page.time_spent / 60)} min) ---"]
            lines.append(f"URL: {page.url}")
            if page.meta.get('author'):
                lines.append(f"Author: {page.meta['author']}")
            if page.meta.get('publish_date'):
                lines.append(f"Published: {page.meta['publish_date']}")
            lines += ['', page.content or '']
        lines.append('')
        return lines

    @staticmethod
    def _render_activity_pattern(events: List[Event]) -> List[str]:
        hours = Counter(datetime.fromtimestamp(e.timestamp).hour for e in events)
        # Ties keep the earlier hour first
        active_hours = sorted(
            ((hour, count) for hour, count in hours.items() if count > 2),
            key=lambda item: (-item[1], item[0]),
        )
        if not active_hours:
            return []

        peak = ', '.join(format_hour(hour) for hour, _ in active_hours[:3])
        page_loads = sum(1 for e in events if e.type in PAGE_LOAD_TYPES)
        lines = [
            'Activity Pattern:',
            f"- Most active hours: {peak}",
            f"- Total page loads: {page_loads}",
        ]
        comebacks = sum(1 for e in events if e.type == EventType.USER_COMEBACK)
        if comebacks:
            lines.append(f"- Returned from breaks: {comebacks}x")
        return lines

    # =========================================================================
    # Delivery
    # =========================================================================

    def last_digest_date(self) -> Optional[str]:
        try:
            return self.storage.get(LAST_DIGEST_KEY)
        except StorageError as e:
            logger.warning(f"Cannot read last digest date: {e}")
            return None

    def build_and_send(self, day: Optional[date] = None, manual: bool = False) -> DigestResult:
        """Build the digest for a day and deliver it.

        Without ``manual``, a day that already has a digest is skipped. A
        day with no events is never marked as sent. The day is marked and
        the dwell accumulator reset as soon as one deliverer succeeds.

        The report is built and the day marked under ``lock``; the HTTP
        deliveries in between run without it so incoming signals are not
        held up. Concurrent calls are serialized.

        Args:
            day: Calendar day (defaults to today).
            manual: Explicit on-demand request; bypasses the already-sent check.

        Returns:
            DigestResult describing what happened.
        """
        with self._send_lock:
            with self.lock:
                day = day or self._today()
                day_key = day.isoformat()

                if not manual and self.last_digest_date() == day_key:
                    logger.info(f"Digest already sent for {day_key}")
                    return DigestResult(False, 'already_sent', day_key)

                report = self.build(day)
                if report is None:
                    logger.info(f"No events for digest on {day_key}")
                    return DigestResult(False, 'no_events', day_key)

                configured = [d for d in self.deliverers if d.is_configured()]
                if not configured:
                    logger.warning("Digest built but no delivery endpoint is configured")
                    return DigestResult(False, 'not_configured', day_key)

            deliveries = self._deliver(report, configured)
            if not any(d['success'] for d in deliveries.values()):
                return DigestResult(False, 'delivery_failed', day_key, deliveries)

            with self.lock:
                try:
                    self.storage.set(LAST_DIGEST_KEY, day_key)
                except StorageError as e:
                    logger.error(f"Digest delivered but marker not saved: {e}")
                self.tracker.reset_page_times()
            return DigestResult(True, 'sent', day_key, deliveries)

    @staticmethod
    def _deliver(report: DigestReport, deliverers: Sequence) -> Dict[str, dict]:
        deliveries = {}
        for deliverer in deliverers:
            try:
                outcome: "DeliveryResult" = deliverer.deliver(report)
                deliveries[deliverer.name] = outcome.to_dict()
            except Exception as e:
                logger.error(f"Digest delivery via {deliverer.name} raised: {e}", exc_info=True)
                deliveries[deliverer.name] = {'success': False, 'reason': 'error', 'error': str(e)}
            logger.info(
                f"Digest sent to {deliverer.name}: "
                f"{'OK' if deliveries[deliverer.name]['success'] else 'failed'}"
            )
        return deliveries

    def status(self) -> dict:
        """Digest status for UI collaborators."""
        next_fire = None
        if self.scheduler is not None:
            alarm = self.scheduler.get(DIGEST_ALARM)
            if alarm and alarm.get('next_fire'):
                next_fire = datetime.fromtimestamp(alarm['next_fire']).isoformat(timespec='seconds')
        return {
            'last_digest_date': self.last_digest_date(),
            'next_fire': next_fire,
            'digest_time': self.config.time,
        }
