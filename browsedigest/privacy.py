"""Privacy filter and URL sanitization.

Decides whether a URL may be tracked at all, strips everything but search
terms from query strings, and extracts hostnames. Nothing that fails these
checks reaches the event log or the session tracker.
"""

import logging
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .config import PrivacyConfig

logger = logging.getLogger(__name__)

INTERNAL_PATTERNS = [
    re.compile(r'^chrome://'),
    re.compile(r'^chrome-extension://'),
    re.compile(r'^about:'),
    re.compile(r'^edge://'),
    re.compile(r'^brave://'),
    re.compile(r'^file://'),
    re.compile(r'^view-source:'),
]


class PrivacyFilter:
    """URL admission and sanitization rules.

    Attributes:
        config: Active PrivacyConfig (replaced via reload()).
    """

    def __init__(self, config: PrivacyConfig = None):
        self.config = config or PrivacyConfig()

    def reload(self, config: PrivacyConfig) -> None:
        """Swap in new privacy settings (called on configuration change)."""
        self.config = config
        logger.info(f"Privacy settings reloaded (tracking {'on' if config.enabled else 'off'})")

    def should_track(self, url: str) -> bool:
        """Return True if the URL may be recorded.

        Internal browser pages and hosts matching a blocklist term are never
        tracked. URLs that cannot be parsed are let through; sanitize_url()
        reduces them to an empty string.
        """
        if not self.config.enabled or not url:
            return False

        for pattern in INTERNAL_PATTERNS:
            if pattern.match(url):
                return False

        try:
            hostname = (urlsplit(url).hostname or '').lower()
        except ValueError:
            return True

        for term in self.config.domain_blocklist:
            term = (term or '').strip().lower()
            if term and term in hostname:
                return False
        return True

    def sanitize_url(self, url: str) -> str:
        """Strip query parameters (except search terms) and fragments.

        Returns:
            ``scheme://host/path[?search]`` or an empty string when the URL
            cannot be parsed.
        """
        if not url:
            return ''
        try:
            parts = urlsplit(url)
            params = parse_qsl(parts.query, keep_blank_values=False)
            hostname = parts.hostname
            port = parts.port
        except ValueError:
            logger.debug("Dropping unparseable URL")
            return ''

        if not parts.scheme or not hostname:
            return ''

        # Rebuilt from host and port so user:password@ never survives
        host = f"[{hostname}]" if ':' in hostname else hostname
        netloc = f"{host}:{port}" if port is not None else host

        keep = set(self.config.keep_query_params)
        kept = {}
        for key, value in params:
            if key in keep and key not in kept:
                kept[key] = value
        query = urlencode(kept)
        return urlunsplit((parts.scheme, netloc, parts.path or '/', query, ''))

    def get_domain(self, url: str) -> str:
        """Return the lowercase hostname of a URL, or an empty string."""
        if not url:
            return ''
        try:
            return (urlsplit(url).hostname or '').lower()
        except ValueError:
            return ''
