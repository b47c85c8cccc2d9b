"""Time-on-page tracking with dwell accounting.

Tracks the single page the user is currently looking at, closes it out when
they navigate away, go idle, or the daemon restarts, and accumulates the time
spent per domain. Visits long enough to be worth reading trigger a content
capture for the closing page.

The host process may be killed at any moment, so the accumulator and the
open session are snapshotted to durable state on a short interval and
restored on startup.
"""

from dataclasses import dataclass, asdict, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional
import logging
import threading
import time

from .config import TrackingConfig
from .exceptions import StorageError
from .privacy import PrivacyFilter

if TYPE_CHECKING:
    from concurrent.futures import Future
    from .extraction import ContentCapture
    from .storage import StateStorage

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = 'tracker_snapshot'


@dataclass
class Session:
    """The page currently being tracked.

    Attributes:
        url: Sanitized page URL.
        domain: Hostname of the page.
        title: Page title when the session started.
        start_time: Unix timestamp the session started.
        handle: Opaque browser handle (e.g. tab id) used for content capture.
        live_url: The URL as the browser reported it. Held in memory to match
            pushed page content and never written to durable state.
    """
    url: str
    domain: str
    title: str
    start_time: float
    handle: Optional[object] = None
    live_url: str = field(default='', repr=False, compare=False)


@dataclass
class DomainDwell:
    """Accumulated dwell time for one domain within a digest period."""
    domain: str
    total_seconds: float = 0.0
    visits: int = 0


def format_duration(seconds: float) -> str:
    """Format a duration for humans: ``45s``, ``12min``, ``2h 5min``, ``3h``."""
    seconds = max(0, seconds)
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}min"
    hours = int(seconds // 3600)
    mins = round((seconds % 3600) / 60)
    if mins == 60:
        hours, mins = hours + 1, 0
    return f"{hours}h {mins}min" if mins > 0 else f"{hours}h"


class SessionTracker:
    """Tracks the current page session and per-domain dwell time.

    Usage:
        tracker = SessionTracker(privacy, config.tracking, storage, capture)
        tracker.restore()
        tracker.on_page_change("https://github.com/", "GitHub", handle=12)
        tracker.on_idle()
        tracker.page_times()

    Attributes:
        privacy: PrivacyFilter deciding which pages start a session.
        config: TrackingConfig thresholds.
        storage: StateStorage for snapshots (optional).
        capture: ContentCapture for content-worthy visits (optional).
    """

    def __init__(
        self,
        privacy: PrivacyFilter,
        config: TrackingConfig = None,
        storage: Optional["StateStorage"] = None,
        capture: Optional["ContentCapture"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.privacy = privacy
        self.config = config or TrackingConfig()
        self.storage = storage
        self.capture = capture
        self.clock = clock

        self._lock = threading.RLock()
        self._current: Optional[Session] = None
        self._dwell: Dict[str, DomainDwell] = {}
        self._requested_urls = set()

    @property
    def current_session(self) -> Optional[Session]:
        with self._lock:
            return self._current

    def reload(self, config: TrackingConfig) -> None:
        """Swap in new thresholds (called on configuration change)."""
        with self._lock:
            self.config = config

    # =========================================================================
    # Session transitions
    # =========================================================================

    def on_page_change(self, url: str, title: str = '', handle=None) -> Optional["Future"]:
        """Close the current session and start one for the new page.

        A new session is only opened if the page passes the privacy filter;
        otherwise nothing is tracked until the next trackable page.

        Returns:
            Future of the content capture started for the closed session, if any.
        """
        with self._lock:
            now = self.clock()
            future = self._close_current(now)

            if url and self.privacy.should_track(url):
                clean_url = self.privacy.sanitize_url(url)
                self._current = Session(
                    url=clean_url,
                    domain=self.privacy.get_domain(clean_url),
                    title=title or '',
                    start_time=now,
                    handle=handle,
                    live_url=url,
                )
            else:
                self._current = None
        return future

    def on_idle(self) -> Optional["Future"]:
        """Close the current session without opening a new one."""
        with self._lock:
            future = self._close_current(self.clock())
            self._current = None
        return future

    def on_resume(self, url: str, title: str = '', handle=None) -> Optional["Future"]:
        """Re-open tracking after the user returns from idle."""
        return self.on_page_change(url, title, handle)

    def _close_current(self, now: float) -> Optional["Future"]:
        session = self._current
        if session is None:
            return None

        elapsed = now - session.start_time
        duration = min(max(elapsed, 0.0), self.config.max_duration_seconds)

        if duration >= self.config.min_duration_seconds:
            self._accumulate(session.domain, duration)

        if self.config.content_min_seconds <= elapsed <= self.config.content_max_seconds:
            return self._request_content(session, duration)
        return None

    def _accumulate(self, domain: str, seconds: float) -> None:
        if not domain or not isinstance(domain, str):
            return
        entry = self._dwell.get(domain)
        if entry is None:
            entry = self._dwell[domain] = DomainDwell(domain)
        entry.total_seconds += seconds
        entry.visits += 1

    def _request_content(self, session: Session, time_spent: float) -> Optional["Future"]:
        if self.capture is None or not session.url:
            return None
        if session.url in self._requested_urls:
            logger.debug(f"Content already captured this run: {session.url}")
            return None
        self._requested_urls.add(session.url)

        try:
            future = self.capture.request(session, time_spent)
        except RuntimeError as e:
            # Executor already shut down
            logger.debug(f"Content capture unavailable: {e}")
            self._requested_urls.discard(session.url)
            return None

        def release_on_failure(done: "Future") -> None:
            if done.cancelled() or done.exception() is not None or done.result() is None:
                with self._lock:
                    self._requested_urls.discard(session.url)

        future.add_done_callback(release_on_failure)
        return future

    # =========================================================================
    # Dwell accumulator
    # =========================================================================

    def page_times(self) -> List[DomainDwell]:
        """Accumulated dwell per domain, longest first."""
        with self._lock:
            entries = [DomainDwell(d.domain, d.total_seconds, d.visits) for d in self._dwell.values()]
        return sorted(entries, key=lambda d: d.total_seconds, reverse=True)

    def dwell_for(self, domain: str) -> Optional[DomainDwell]:
        with self._lock:
            return self._dwell.get(domain)

    def total_active_seconds(self) -> float:
        with self._lock:
            return sum(d.total_seconds for d in self._dwell.values())

    def reset_page_times(self) -> None:
        """Start a new digest period."""
        with self._lock:
            self._dwell = {}
        logger.info("Dwell accumulator reset")

    # =========================================================================
    # Persistence
    # =========================================================================

    def snapshot(self) -> bool:
        """Write the accumulator and the open session to durable state.

        Returns:
            True on success. Failures are logged, never raised.
        """
        if self.storage is None:
            return False
        with self._lock:
            current = None
            if self._current is not None:
                current = asdict(self._current)
                del current['live_url']
                if not isinstance(current['handle'], (int, str, type(None))):
                    current['handle'] = str(current['handle'])
            payload = {
                'page_times': [asdict(d) for d in self._dwell.values()],
                'current': current,
                'saved_at': self.clock(),
            }
        try:
            self.storage.set(SNAPSHOT_KEY, payload)
            return True
        except (StorageError, TypeError, ValueError) as e:
            logger.warning(f"Tracker snapshot failed: {e}")
            return False

    def restore(self) -> bool:
        """Reload the accumulator and open session from the last snapshot.

        A corrupt or missing snapshot leaves the tracker empty.

        Returns:
            True if a snapshot was restored.
        """
        if self.storage is None:
            return False
        try:
            payload = self.storage.get(SNAPSHOT_KEY)
        except StorageError as e:
            logger.warning(f"Tracker restore failed, starting fresh: {e}")
            return False
        if not isinstance(payload, dict):
            return False

        dwell = {}
        current = None
        try:
            for raw in payload.get('page_times') or []:
                entry = DomainDwell(
                    domain=raw['domain'],
                    total_seconds=float(raw.get('total_seconds', 0)),
                    visits=int(raw.get('visits', 0)),
                )
                if entry.domain:
                    dwell[entry.domain] = entry
            raw_current = payload.get('current')
            if raw_current:
                current = Session(
                    url=raw_current['url'],
                    domain=raw_current.get('domain', ''),
                    title=raw_current.get('title', ''),
                    start_time=float(raw_current['start_time']),
                    handle=raw_current.get('handle'),
                )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring corrupt tracker snapshot: {e}")
            return False

        with self._lock:
            self._dwell = dwell
            self._current = current
        logger.info(
            f"Restored tracker state: {len(dwell)} domains"
            + (f", open session on {current.domain}" if current else "")
        )
        return True
