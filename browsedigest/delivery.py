"""Outbound delivery clients.

Two endpoints receive data from Browse Digest:

- The agent webhook gets the daily digest and a handful of high-value
  notifications (bookmarks, downloads, returning from a break).
- The logger endpoint gets the daily digest with its metadata and every
  captured page, for file-based archiving.

Each client decides its own success and keeps sent/failed statistics in
durable state. The digest builder only looks at ``DeliveryResult.success``.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import urlsplit
import logging
import time

import requests

from .config import LoggerConfig, WebhookConfig
from .exceptions import DeliveryError, StorageError

if TYPE_CHECKING:
    from .digest import DigestReport
    from .storage import StateStorage
    from .store import PageContent

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt.

    Attributes:
        success: True if the endpoint accepted the request.
        reason: 'ok', 'not_configured', 'disabled', 'http_error' or 'network_error'.
        status: HTTP status code, when a response was received.
        error: Error text for failed attempts.
    """
    success: bool
    reason: str = 'ok'
    status: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class _JsonEndpoint:
    """Shared POST and statistics handling for bearer-token JSON endpoints."""

    name = 'endpoint'
    stats_key = 'endpoint_stats'

    def __init__(self, config_getter: Callable, storage: Optional["StateStorage"] = None,
                 session: Optional[requests.Session] = None):
        self._config_getter = config_getter
        self.storage = storage
        self.http = session or requests.Session()

    @property
    def config(self):
        return self._config_getter()

    def is_configured(self) -> bool:
        c = self.config
        return bool(c.url and c.token and c.enabled)

    def _post(self, payload: dict) -> DeliveryResult:
        if not self.is_configured():
            return DeliveryResult(False, 'not_configured')

        c = self.config
        try:
            response = self.http.post(
                c.url,
                json=payload,
                headers={'Authorization': f"Bearer {c.token}"},
                timeout=c.timeout_seconds,
            )
            if not response.ok:
                raise DeliveryError(f"{self.name} returned {response.status_code}: {response.text[:200]}")
        except DeliveryError as e:
            logger.error(str(e))
            self._update_stats(False)
            return DeliveryResult(False, 'http_error', status=response.status_code, error=str(e))
        except requests.RequestException as e:
            logger.error(f"{self.name} request failed: {e}")
            self._update_stats(False)
            return DeliveryResult(False, 'network_error', error=str(e))

        logger.info(f"{self.name} accepted request ({response.status_code})")
        self._update_stats(True)
        return DeliveryResult(True, 'ok', status=response.status_code)

    def _update_stats(self, success: bool) -> None:
        if self.storage is None:
            return
        try:
            stats = self.stats()
            now = datetime.now().isoformat(timespec='seconds')
            if success:
                stats['sent'] += 1
                stats['last_send'] = now
            else:
                stats['failed'] += 1
                stats['last_error'] = now
            self.storage.set(self.stats_key, stats)
        except StorageError as e:
            logger.debug(f"Could not update {self.name} stats: {e}")

    def stats(self) -> dict:
        """Return sent/failed counters and last send/error times."""
        stats = {'sent': 0, 'failed': 0, 'last_send': None, 'last_error': None}
        if self.storage is not None:
            stats.update(self.storage.get(self.stats_key) or {})
        return stats


class WebhookClient(_JsonEndpoint):
    """Agent webhook client.

    Messages are plain text wrapped in the agent's wake payload.
    """

    name = 'webhook'
    stats_key = 'webhook_stats'
    AGENT_NAME = 'Browse Digest'

    def post_message(self, message: str, wake_mode: str = 'now') -> DeliveryResult:
        c: WebhookConfig = self.config
        return self._post({
            'message': message,
            'sessionKey': c.session_key or 'browsedigest',
            'name': self.AGENT_NAME,
            'wakeMode': wake_mode,
            'deliver': False,
        })

    def deliver(self, report: "DigestReport") -> DeliveryResult:
        """Send the daily digest; the agent reads it on its next heartbeat."""
        return self.post_message(report.text, wake_mode='next-heartbeat')

    def test_connection(self) -> DeliveryResult:
        """Post a fixed message so the settings page can confirm the endpoint works."""
        return self.post_message(
            "[Browse Digest] Connection test - if you see this, Browse Digest is connected!"
        )

    def send_page(self, title: str, url: str, content: dict) -> DeliveryResult:
        """Send one page's extracted text at the user's request."""
        meta = content.get('meta') or {}
        lines = [
            "[Browse Digest] User sent page content:",
            "",
            f"Title: {title or meta.get('title') or ''}",
            f"URL: {url}",
        ]
        if meta.get('author'):
            lines.append(f"Author: {meta['author']}")
        if meta.get('publish_date'):
            lines.append(f"Published: {meta['publish_date']}")
        lines += [
            f"Word count: {content.get('word_count') or 0}",
            "",
            "Content:",
            content.get('text') or '',
        ]
        return self.post_message('\n'.join(lines))

    def send_bookmark(self, title: str, url: str) -> Optional[DeliveryResult]:
        if not self.config.send_bookmarks:
            return None
        return self.post_message(f'[Browse Digest] Bookmarked: "{title}" - {url}')

    def send_download(self, filename: str, mime: str, url: str) -> Optional[DeliveryResult]:
        if not self.config.send_downloads:
            return None
        return self.post_message(f"[Browse Digest] Downloaded: {filename} ({mime}) from {url}")

    def send_comeback(self, away_minutes: int, current_url: str = '') -> Optional[DeliveryResult]:
        if not self.config.send_comeback:
            return None
        host = urlsplit(current_url).hostname if current_url else None
        suffix = f" Currently on: {host}" if host else ''
        return self.post_message(
            f"[Browse Digest] User returned after {away_minutes} minutes away.{suffix}"
        )


class LoggerClient(_JsonEndpoint):
    """Logger endpoint client for continuous, cheap archiving."""

    name = 'logger'
    stats_key = 'logger_stats'

    def post_event(self, event_type: str, data: dict) -> DeliveryResult:
        return self._post({
            'type': event_type,
            'timestamp': int(time.time() * 1000),
            'data': data,
        })

    def deliver(self, report: "DigestReport") -> DeliveryResult:
        """Send the daily digest with its metadata."""
        return self.post_event('daily.digest', {**report.metadata(), 'message': report.text})

    def post_page_content(self, entry: "PageContent") -> Optional[DeliveryResult]:
        if not self.is_configured():
            return None
        return self.post_event('page.content', entry.to_dict())


def webhook_from(config_manager) -> Callable[[], WebhookConfig]:
    return lambda: config_manager.config.webhook


def logger_from(config_manager) -> Callable[[], LoggerConfig]:
    return lambda: config_manager.config.logger
