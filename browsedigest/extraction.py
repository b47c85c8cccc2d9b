"""Readable content capture for content-worthy visits.

When the tracker closes a session that was long enough to be worth reading,
it asks this module to capture the page's readable text. Capture runs on
worker threads with a bounded timeout so a slow or stuck page never holds up
session close-out, and every failure is returned as a ``None`` result rather
than raised.

The browser extension reads the live page (with the user's session, exactly
as rendered) and pushes the result to the daemon, where it waits in a
PushedContentInbox keyed by tab. PushedContentExtractor hands that result to
the capture when the session closes. ReadableTextExtractor fetches the page
over HTTP and reduces it with BeautifulSoup; it is only used as an opt-in
fallback since it makes an outbound request per page.
"""

import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import urldefrag

import requests
from bs4 import BeautifulSoup

from .exceptions import ExtractionError
from .store import PageContent

if TYPE_CHECKING:
    from .store import EventStore
    from .tracker import Session

logger = logging.getLogger(__name__)

NOISE_SELECTORS = [
    'nav', 'header', 'footer', 'aside', '.sidebar', '.nav',
    '.menu', '.ad', '.advertisement', '.social-share',
    '.comments', '.related', '#comments', '.cookie-banner',
    '.popup', '.modal', '.overlay', '.banner', '.promo',
    'script', 'style', 'noscript', 'iframe', 'svg',
]

MAIN_CONTENT_SELECTORS = [
    'article', '[role="main"]', 'main', '.post-content',
    '.article-content', '.entry-content', '.content', '#content',
]


def _meta_content(soup, **attrs) -> str:
    tag = soup.find('meta', attrs=attrs)
    return (tag.get('content') or '').strip() if tag else ''


class ReadableTextExtractor:
    """Fetch a page and extract its main readable text.

    Attributes:
        timeout: HTTP timeout in seconds.
        max_length: Maximum characters of text returned.
        max_response_bytes: Larger responses are rejected.
    """

    def __init__(self, timeout: float = 10.0, max_length: int = 5000,
                 max_response_bytes: int = 2_000_000):
        self.timeout = timeout
        self.max_length = max_length
        self.max_response_bytes = max_response_bytes

    def __call__(self, session: "Session") -> dict:
        """Extract content for a closed session.

        Returns:
            Dict with ``text``, ``meta`` (title, description, author,
            publish_date) and ``word_count``.

        Raises:
            ExtractionError: If the page can't be fetched or isn't HTML.
        """
        # The sanitized URL has lost the query that identifies most pages
        target = session.live_url or session.url
        try:
            response = requests.get(
                target,
                timeout=self.timeout,
                headers={'User-Agent': 'browsedigest/0.3 (+reader)'},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExtractionError(f"Fetch failed for {session.url}: {type(e).__name__}") from e

        content_type = response.headers.get('content-type', '')
        if 'html' not in content_type:
            raise ExtractionError(f"Not an HTML page ({content_type or 'unknown type'})")
        if len(response.content) > self.max_response_bytes:
            raise ExtractionError(f"Response too large (>{self.max_response_bytes} bytes)")

        return self.extract_html(response.text, fallback_title=session.title)

    def extract_html(self, html: str, fallback_title: str = '') -> dict:
        """Reduce an HTML document to its readable text and metadata."""
        soup = BeautifulSoup(html, 'html.parser')

        title = soup.title.get_text(strip=True) if soup.title else fallback_title
        time_tag = soup.find('time', attrs={'datetime': True})
        meta = {
            'title': title,
            'description': (_meta_content(soup, name='description')
                            or _meta_content(soup, property='og:description')),
            'author': _meta_content(soup, name='author'),
            'publish_date': (_meta_content(soup, property='article:published_time')
                             or (time_tag.get('datetime') if time_tag else '')),
        }

        body = soup.body or soup
        for selector in NOISE_SELECTORS:
            for element in body.select(selector):
                element.decompose()

        main = body
        for selector in MAIN_CONTENT_SELECTORS:
            found = body.select_one(selector)
            if found is not None:
                main = found
                break

        text = main.get_text(separator='\n')
        text = re.sub(r'[ \t]+', ' ', text)
        text = '\n'.join(line.strip() for line in text.splitlines()).strip()
        text = re.sub(r'\n{3,}', '\n\n', text)

        return {
            'text': text[:self.max_length],
            'meta': meta,
            'word_count': len(text.split()),
        }


def _page_key(url: str) -> str:
    return urldefrag(url or '')[0]


class PushedContentInbox:
    """Latest extraction pushed by the browser extension, one per tab.

    Entries are matched on the live URL so a result pushed for the previous
    page in a tab is never handed out for the next one. They live in memory
    only and the oldest are dropped past ``max_entries``.
    """

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._entries = OrderedDict()
        self._cond = threading.Condition()

    def put(self, handle, url: str, content: dict) -> None:
        key = handle if handle is not None else _page_key(url)
        with self._cond:
            self._entries.pop(key, None)
            self._entries[key] = (_page_key(url), content)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            self._cond.notify_all()

    def get(self, handle, url: str, timeout: float = 0.0) -> Optional[dict]:
        """Return the content pushed for this tab and page, waiting up to timeout."""
        page = _page_key(url)
        key = handle if handle is not None else page
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                entry = self._entries.get(key)
                if entry is not None and entry[0] == page:
                    return entry[1]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def clear(self) -> None:
        with self._cond:
            self._entries.clear()

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)


class PushedContentExtractor:
    """Extractor backed by content the extension read from the live page.

    Attributes:
        inbox: PushedContentInbox receiving the extension's results.
        wait: Seconds to wait for a result that hasn't arrived yet.
        fallback: Optional extractor used when nothing arrives in time.
    """

    def __init__(self, inbox: PushedContentInbox, wait: float = 5.0,
                 fallback: Optional[Callable[["Session"], dict]] = None):
        self.inbox = inbox
        self.wait = wait
        self.fallback = fallback

    def __call__(self, session: "Session") -> dict:
        # Sessions restored from a snapshot have no live page to match
        if not session.live_url:
            raise ExtractionError(f"No live page for restored session on {session.url}")
        content = self.inbox.get(session.handle, session.live_url, timeout=self.wait)
        if content is not None:
            return content
        if self.fallback is not None:
            return self.fallback(session)
        raise ExtractionError(f"No page content received for {session.url}")


class ContentCapture:
    """Runs an extractor for closed sessions and stores the result.

    Attributes:
        extractor: Callable taking a Session and returning extracted content.
        store: EventStore receiving the PageContent entries.
        timeout: Seconds to wait for the extractor before giving up.
        text_limit: Characters of text kept per page.
        min_text_length: Shorter extractions are discarded.
        on_content: Optional callback receiving each stored PageContent.
    """

    def __init__(
        self,
        extractor: Callable[["Session"], dict],
        store: "EventStore",
        timeout: float = 10.0,
        text_limit: int = 2000,
        min_text_length: int = 100,
        on_content: Optional[Callable[[PageContent], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.extractor = extractor
        self.store = store
        self.timeout = timeout
        self.text_limit = text_limit
        self.min_text_length = min_text_length
        self.on_content = on_content
        self.clock = clock

        self._jobs = ThreadPoolExecutor(max_workers=2, thread_name_prefix='capture')
        self._calls = ThreadPoolExecutor(max_workers=4, thread_name_prefix='extract')

    def request(self, session: "Session", time_spent: float) -> "Future[Optional[PageContent]]":
        """Start capturing content for a session that just closed.

        Returns:
            Future resolving to the stored PageContent, or None if nothing
            was captured.
        """
        return self._jobs.submit(self._capture, session, time_spent)

    def _capture(self, session: "Session", time_spent: float) -> Optional[PageContent]:
        try:
            result = self._calls.submit(self.extractor, session).result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(f"Content extraction timed out after {self.timeout}s: {session.url}")
            return None
        except Exception as e:
            logger.debug(f"Content extraction unavailable for {session.url}: {e}")
            return None

        text = (result or {}).get('text') or ''
        if len(text) <= self.min_text_length:
            logger.debug(f"Too little text on {session.url} ({len(text)} chars), skipping")
            return None

        meta = dict(result.get('meta') or {})
        entry = PageContent(
            url=session.url,
            title=session.title or meta.get('title', ''),
            time_spent=time_spent,
            content=text[:self.text_limit],
            meta=meta,
            timestamp=self.clock(),
        )
        try:
            self.store.add_page_content(entry)
        except Exception as e:
            logger.error(f"Failed to store page content for {session.url}: {e}")
            return None

        if self.on_content:
            try:
                self.on_content(entry)
            except Exception as e:
                logger.error(f"Page content callback error: {e}")
        return entry

    def shutdown(self, wait: bool = False) -> None:
        """Stop accepting capture requests."""
        self._jobs.shutdown(wait=wait)
        self._calls.shutdown(wait=wait)
