#!/usr/bin/env python3
"""Browse Digest daemon.

Receives browser signals (navigations, tab switches, bookmarks, downloads,
idle changes), feeds them into the event store and the session tracker, and
runs the restart-durable alarms that persist state and send the daily
digest.

Signals arrive through the local HTTP API (see web/app.py) or by calling
handle_signal() directly. They are handled one at a time; anything that may
block on the network runs on worker threads.

Features:
- Single logical writer: one lock serializes every state mutation
- Durable alarms for periodic persistence, tracker snapshots and the digest
- Idle/comeback detection that survives restarts
- Immediate webhook notifications for bookmarks, downloads and comebacks
- Graceful shutdown: the open session is closed and all state flushed

Usage:
    python -m browsedigest.daemon --web
    browsedigest --send-digest 2026-02-12
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path
from typing import Callable, List, Optional

from dateutil import parser as date_parser

from .config import Config, ConfigManager, get_config_manager
from .delivery import DeliveryResult, LoggerClient, WebhookClient, logger_from, webhook_from
from .digest import DigestBuilder, DigestResult
from .events import EventType
from .exceptions import ExtractionError, StorageError
from .extraction import (
    ContentCapture,
    PushedContentExtractor,
    PushedContentInbox,
    ReadableTextExtractor,
)
from .privacy import PrivacyFilter
from .scheduler import DurableScheduler
from .storage import StateStorage
from .store import EventStore, PageContent
from .tracker import SessionTracker, format_duration

logger = logging.getLogger(__name__)

PERSIST_ALARM = 'persist'
SNAPSHOT_ALARM = 'snapshot'
IDLE_START_KEY = 'idle_start'

IDLE_STATES = ('idle', 'locked')

PUSHED_TEXT_LIMIT = 5000
PUSHED_META_FIELDS = ('title', 'description', 'author', 'publish_date')


class DigestDaemon:
    """Wires the tracking pipeline together and drives it.

    Attributes:
        config_manager: Source of configuration and change notifications.
        storage: Durable state shared by every component.
        store: EventStore holding the activity log.
        tracker: SessionTracker holding the dwell accumulator.
        digest: DigestBuilder for the daily report.
        webhook: Agent webhook client.
        logger_client: Logger endpoint client.
        content_inbox: Page text pushed by the extension, waiting for capture.
        running: Main loop flag, cleared by SIGTERM/SIGINT.
    """

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        data_dir=None,
        extractor: Optional[Callable] = None,
        clock: Callable[[], float] = time.time,
        enable_web: bool = False,
        web_port: Optional[int] = None,
    ):
        """Build every component from the current configuration.

        Args:
            config_manager: ConfigManager (uses the default singleton if None)
            data_dir: Directory for state.db (overrides storage.data_dir)
            extractor: Content extractor callable (default: content pushed by the
                extension, see handle_content())
            clock: Time source, replaceable in tests
            enable_web: Serve the local HTTP API from run()
            web_port: Port for the HTTP API (overrides web.port)

        Raises:
            StorageError: If the state database cannot be opened
        """
        self.config_manager = config_manager or get_config_manager()
        self.clock = clock
        self.enable_web = enable_web
        config = self.config_manager.config
        self.web_port = web_port or config.web.port

        self.data_dir = Path(data_dir or config.storage.data_dir).expanduser()
        self.storage = StateStorage(self.data_dir / "state.db", quota_bytes=config.storage.quota_bytes)
        self.privacy = PrivacyFilter(config.privacy)
        self.store = EventStore(self.storage, self.privacy, config.storage, clock=clock)

        self.webhook = WebhookClient(webhook_from(self.config_manager), self.storage)
        self.logger_client = LoggerClient(logger_from(self.config_manager), self.storage)

        self._lock = threading.RLock()
        self.content_inbox = PushedContentInbox()
        if extractor is None:
            extractor = PushedContentExtractor(
                self.content_inbox,
                wait=config.tracking.content_wait_seconds,
                fallback=self._fetch_fallback(config),
            )
        self.extractor = extractor
        self.capture = ContentCapture(
            extractor,
            self.store,
            timeout=config.tracking.extraction_timeout_seconds,
            on_content=self._on_page_content,
            clock=clock,
        )
        self.tracker = SessionTracker(self.privacy, config.tracking, self.storage, self.capture, clock=clock)
        self.scheduler = DurableScheduler(self.storage, clock=clock)
        self.digest = DigestBuilder(
            self.store,
            self.tracker,
            self.storage,
            [self.webhook, self.logger_client],
            self.config_manager,
            scheduler=self.scheduler,
            clock=clock,
            lock=self._lock,
        )

        self._notifier = ThreadPoolExecutor(max_workers=2, thread_name_prefix='notify')
        self._idle_state = 'active'
        self._idle_start: Optional[float] = None
        self.running = False
        self.web_thread = None

        self.config_manager.subscribe(self._on_config_change)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def load(self) -> None:
        """Load persisted state: the event log, tracker snapshot and idle start."""
        with self._lock:
            self.store.load()
            self.tracker.restore()
            try:
                self._idle_start = self.storage.get(IDLE_START_KEY)
            except StorageError as e:
                logger.warning(f"Cannot restore idle start: {e}")
                self._idle_start = None
            if self._idle_start:
                self._idle_state = 'idle'

    def start(self) -> None:
        """Load state and make sure every recurring alarm exists."""
        self.load()
        config = self.config_manager.config
        now = self.clock()
        persist_every = config.storage.persist_interval_seconds
        snapshot_every = config.tracking.snapshot_interval_seconds
        self.scheduler.ensure(PERSIST_ALARM, now + persist_every, period=persist_every)
        self.scheduler.ensure(SNAPSHOT_ALARM, now + snapshot_every, period=snapshot_every)
        self.digest.schedule()
        logger.info("Browse Digest daemon started")

    def shutdown(self) -> None:
        """Close the open session and persist everything."""
        with self._lock:
            self.tracker.on_idle()
            self.store.flush()
            self.tracker.snapshot()
        self.close(wait=False)
        logger.info("Browse Digest daemon stopped")

    def close(self, wait: bool = True) -> None:
        """Stop the capture and notification workers."""
        self.capture.shutdown(wait=wait)
        self._notifier.shutdown(wait=wait)

    def _on_config_change(self, config: Config) -> None:
        with self._lock:
            self.privacy.reload(config.privacy)
            self.store.reload(config.storage)
            self.tracker.reload(config.tracking)
            self.capture.timeout = config.tracking.extraction_timeout_seconds
            if isinstance(self.extractor, PushedContentExtractor):
                self.extractor.wait = config.tracking.content_wait_seconds
                self.extractor.fallback = self._fetch_fallback(config)
        self.digest.schedule()

    @staticmethod
    def _fetch_fallback(config: Config) -> Optional[ReadableTextExtractor]:
        if not config.tracking.fetch_fallback:
            return None
        return ReadableTextExtractor(timeout=config.tracking.extraction_timeout_seconds)

    # =========================================================================
    # Browser signals
    # =========================================================================

    def handle_signal(self, sig: dict) -> dict:
        """Process one browser signal.

        Args:
            sig: Signal dict with a ``kind`` plus kind-specific fields:
                navigation / tab.activated: url, title, tab_id, transition
                bookmark.created: url, title
                download.completed: url, filename, mime, file_size
                idle.changed: state, url, title, tab_id

        Returns:
            Dict with ``accepted`` and either ``event`` (the stored event, or
            None) or a ``reason`` for rejection.
        """
        sig = sig or {}
        kind = sig.get('kind')
        if sig.get('incognito') and not self.config_manager.config.privacy.track_incognito:
            return {'accepted': False, 'reason': 'incognito'}

        with self._lock:
            if kind in (EventType.NAVIGATION, EventType.TAB_ACTIVATED):
                event = self._handle_page(kind, sig)
            elif kind == EventType.BOOKMARK_CREATED:
                event = self._handle_bookmark(sig)
            elif kind == EventType.DOWNLOAD_COMPLETED:
                event = self._handle_download(sig)
            elif kind == 'idle.changed':
                event = self._handle_idle(sig)
            else:
                logger.warning(f"Unknown signal kind: {kind!r}")
                return {'accepted': False, 'reason': 'unknown_signal'}

        return {'accepted': True, 'event': event.to_dict() if event else None}

    def _handle_page(self, kind: str, sig: dict):
        url = sig.get('url') or ''
        title = sig.get('title') or ''
        self.tracker.on_page_change(url, title, handle=sig.get('tab_id'))
        if not self.privacy.should_track(url):
            return None
        data = {'transition': sig.get('transition')} if kind == EventType.NAVIGATION else None
        return self.store.append(kind, url=url, title=title, data=data)

    def _handle_bookmark(self, sig: dict):
        url = sig.get('url') or ''
        if not self.privacy.should_track(url):
            return None
        title = sig.get('title') or '(untitled)'
        event = self.store.append(
            EventType.BOOKMARK_CREATED, url=url, title=title, data={'url': url, 'title': title},
        )
        self._notify(self.webhook.send_bookmark, title, event.payload['url'])
        return event

    def _handle_download(self, sig: dict):
        url = sig.get('url') or ''
        if not self.privacy.should_track(url):
            return None
        filename = os.path.basename((sig.get('filename') or '').replace('\\', '/')) or 'unknown'
        mime = sig.get('mime') or 'unknown'
        event = self.store.append(
            EventType.DOWNLOAD_COMPLETED,
            url=url,
            data={'url': url, 'filename': filename, 'mime': mime, 'file_size': sig.get('file_size')},
        )
        self._notify(self.webhook.send_download, filename, mime, event.url)
        return event

    def _handle_idle(self, sig: dict):
        state = sig.get('state') or ''
        now = self.clock()
        event = self.store.append(EventType.IDLE, data={'state': state})

        if state in IDLE_STATES:
            if self._idle_state == 'active':
                self._idle_start = now
                self._save_idle_start(now)
                self.tracker.on_idle()
        elif state == 'active':
            idle_start = self._idle_start
            self._idle_start = None
            self._save_idle_start(None)

            if idle_start:
                away_minutes = round((now - idle_start) / 60)
                if away_minutes >= self.config_manager.config.digest.comeback_minutes:
                    self.store.append(EventType.USER_COMEBACK, data={'away_minutes': away_minutes})
                    self._notify(self.webhook.send_comeback, away_minutes, sig.get('url') or '')
                    logger.info(f"User returned after {away_minutes} minutes away")
            if sig.get('url'):
                self.tracker.on_resume(sig['url'], sig.get('title') or '', handle=sig.get('tab_id'))

        if state:
            self._idle_state = state
        return event

    def _save_idle_start(self, value: Optional[float]) -> None:
        try:
            if value is None:
                self.storage.delete(IDLE_START_KEY)
            else:
                self.storage.set(IDLE_START_KEY, value)
        except StorageError as e:
            logger.warning(f"Cannot persist idle start: {e}")

    def _notify(self, send: Callable, *args) -> None:
        """Run a webhook notification off the signal path."""
        def run():
            try:
                send(*args)
            except Exception as e:
                logger.error(f"Notification failed: {e}", exc_info=True)
        try:
            self._notifier.submit(run)
        except RuntimeError:
            logger.debug("Notifier stopped, dropping notification")

    def _on_page_content(self, entry: PageContent) -> None:
        self.logger_client.post_page_content(entry)

    # =========================================================================
    # Page content
    # =========================================================================

    def handle_content(self, pushed: dict) -> dict:
        """Accept readable text the extension extracted from a live page.

        Args:
            pushed: Dict with url, tab_id, text, word_count and meta (title,
                description, author, publish_date).

        Returns:
            Dict with ``accepted`` and the sanitized ``url``, or a ``reason``.
        """
        pushed = pushed or {}
        if pushed.get('incognito') and not self.config_manager.config.privacy.track_incognito:
            return {'accepted': False, 'reason': 'incognito'}
        url = pushed.get('url') or ''
        if not isinstance(url, str) or not self.privacy.should_track(url):
            return {'accepted': False, 'reason': 'not_tracked'}
        content = _pushed_content(pushed)
        if content is None:
            return {'accepted': False, 'reason': 'no_text'}

        self.content_inbox.put(pushed.get('tab_id'), url, content)
        return {'accepted': True, 'url': self.privacy.sanitize_url(url)}

    def send_current_page(self, pushed: Optional[dict] = None) -> dict:
        """Send a page's readable text to the agent webhook on request.

        Uses ``pushed`` content when given, otherwise the content available
        for the page currently being tracked.
        """
        if not self.webhook.is_configured():
            return DeliveryResult(False, 'not_configured').to_dict()

        if pushed:
            accepted = self.handle_content(pushed)
            if not accepted['accepted']:
                return DeliveryResult(False, accepted['reason']).to_dict()
            content = _pushed_content(pushed)
            title = content['meta']['title'] or pushed.get('title') or ''
            url = accepted['url']
        else:
            session = self.tracker.current_session
            if session is None:
                return DeliveryResult(False, 'no_page').to_dict()
            try:
                content = self.extractor(session) or {}
            except ExtractionError as e:
                logger.info(f"No content to send for {session.url}: {e}")
                return DeliveryResult(False, 'no_content').to_dict()
            title, url = session.title, session.url

        if not content.get('text'):
            return DeliveryResult(False, 'no_content').to_dict()
        return self.webhook.send_page(title, url, content).to_dict()

    def test_webhook(self) -> dict:
        """Post a connection test message with the current webhook settings."""
        return self.webhook.test_connection().to_dict()

    # =========================================================================
    # Alarms and digest
    # =========================================================================

    def tick(self, now: Optional[float] = None) -> List[str]:
        """Run every alarm that is due.

        The digest alarm takes the state lock itself and releases it while
        delivering, so it runs outside the lock held for the others.

        Returns:
            Names of the alarms that fired.
        """
        fired = []
        for name, scheduled_at in self.scheduler.due(now):
            fired.append(name)
            try:
                if name == PERSIST_ALARM:
                    with self._lock:
                        self.store.flush()
                        self.tracker.snapshot()
                elif name == SNAPSHOT_ALARM:
                    with self._lock:
                        self.tracker.snapshot()
                elif self.digest.handle_alarm(name, scheduled_at) is None:
                    logger.warning(f"No handler for alarm '{name}'")
            except Exception as e:
                logger.error(f"Alarm '{name}' failed: {e}", exc_info=True)
        return fired

    def send_digest_now(self, day: Optional[date] = None) -> DigestResult:
        """Build and send the digest on demand, even if already sent."""
        return self.digest.build_and_send(day, manual=True)

    def status(self) -> dict:
        """Read-only status for the API and the --stats command."""
        session = self.tracker.current_session
        page_times = self.tracker.page_times()
        return {
            'store': self.store.stats(),
            'page_times': [
                {
                    'domain': d.domain,
                    'total_seconds': round(d.total_seconds, 1),
                    'formatted': format_duration(d.total_seconds),
                    'visits': d.visits,
                }
                for d in page_times
            ],
            'total_active': format_duration(self.tracker.total_active_seconds()),
            'current_session': {'url': session.url, 'domain': session.domain} if session else None,
            'idle_state': self._idle_state,
            'digest': self.digest.status(),
            'webhook': {'configured': self.webhook.is_configured(), **self.webhook.stats()},
            'logger': {'configured': self.logger_client.is_configured(), **self.logger_client.stats()},
        }

    # =========================================================================
    # Main loop
    # =========================================================================

    def _signal_handler(self, signum, frame):
        """Stop the main loop on SIGTERM/SIGINT."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _start_web_server(self):
        from web.app import create_app

        app = create_app(self)
        host = self.config_manager.config.web.host
        logger.info(f"Starting web server on http://{host}:{self.web_port}")
        app.run(host=host, port=self.web_port, debug=False, use_reloader=False)

    def run(self):
        """Start the daemon and block until SIGTERM/SIGINT.

        Alarms are polled once a second. The loop never exits on a single
        failed tick.
        """
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self.start()
        self.running = True

        if self.enable_web:
            self.web_thread = threading.Thread(target=self._start_web_server, daemon=True)
            self.web_thread.start()

        while self.running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in main loop: {e}", exc_info=True)
            time.sleep(1)

        logger.info("Shutting down...")
        self.shutdown()


def _pushed_content(pushed: dict) -> Optional[dict]:
    """Normalize an extension extraction to the extractor result shape."""
    text = pushed.get('text')
    if not isinstance(text, str) or not text.strip():
        return None
    raw_meta = pushed.get('meta') if isinstance(pushed.get('meta'), dict) else {}
    meta = {key: str(raw_meta.get(key) or '') for key in PUSHED_META_FIELDS}
    word_count = pushed.get('word_count')
    if isinstance(word_count, bool) or not isinstance(word_count, int):
        word_count = len(text.split())
    return {'text': text.strip()[:PUSHED_TEXT_LIMIT], 'meta': meta, 'word_count': word_count}


def _parse_day(value: str) -> date:
    if value in ('today', ''):
        return date.today()
    try:
        return date_parser.parse(value).date()
    except (ValueError, OverflowError) as e:
        raise argparse.ArgumentTypeError(f"Invalid date: {value!r}") from e


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Browse Digest daemon")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.config/browsedigest/config.yaml)")
    parser.add_argument("--data-dir", type=Path, help="Directory for state.db")
    parser.add_argument("--web", action="store_true", help="Serve the local HTTP API")
    parser.add_argument("--web-port", type=int, help="HTTP API port (default: from config)")
    parser.add_argument("--send-digest", nargs="?", const="today", type=_parse_day, metavar="DATE",
                        help="Build and send the digest for DATE (default: today) and exit")
    parser.add_argument("--stats", action="store_true", help="Print status as JSON and exit")
    parser.add_argument("--export", metavar="FILE", help="Export all events as JSON ('-' for stdout) and exit")
    parser.add_argument("--clear", action="store_true", help="Erase all stored events and page content and exit")
    parser.add_argument("--init-config", action="store_true", help="Write the default config file and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    config_manager = ConfigManager(args.config) if args.config else get_config_manager()
    if args.init_config:
        config_manager.create_default_file()
        return 0

    try:
        daemon = DigestDaemon(
            config_manager,
            data_dir=args.data_dir,
            enable_web=args.web,
            web_port=args.web_port,
        )
    except StorageError as e:
        logger.error(str(e))
        return 1

    one_shot = args.send_digest or args.stats or args.export or args.clear
    if not one_shot:
        daemon.run()
        return 0

    daemon.load()
    try:
        if args.clear:
            daemon.store.clear()
            daemon.tracker.reset_page_times()
            daemon.tracker.snapshot()
            print("Cleared all stored events")
        if args.send_digest:
            result = daemon.send_digest_now(args.send_digest)
            print(json.dumps(result.to_dict(), indent=2))
            if not result.success:
                return 1
        if args.export:
            data = json.dumps(daemon.store.export(), indent=2)
            if args.export == '-':
                print(data)
            else:
                Path(args.export).write_text(data)
                print(f"Exported {daemon.store.stats()['event_count']} events to {args.export}")
        if args.stats:
            print(json.dumps(daemon.status(), indent=2))
    finally:
        daemon.close(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
