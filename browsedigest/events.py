"""Activity event model.

Events are immutable once appended to the log. Each event keeps only the
payload fields relevant to its type; everything else a browser signal
carries is dropped before storage.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional


class EventType:
    """Known event kinds."""
    NAVIGATION = 'navigation'
    TAB_ACTIVATED = 'tab.activated'
    BOOKMARK_CREATED = 'bookmark.created'
    DOWNLOAD_COMPLETED = 'download.completed'
    IDLE = 'idle'
    USER_COMEBACK = 'user.comeback'


EVENT_TYPES = frozenset({
    EventType.NAVIGATION,
    EventType.TAB_ACTIVATED,
    EventType.BOOKMARK_CREATED,
    EventType.DOWNLOAD_COMPLETED,
    EventType.IDLE,
    EventType.USER_COMEBACK,
})

# Events that say nothing about which site the user was on
NON_VISIT_TYPES = frozenset({EventType.IDLE, EventType.USER_COMEBACK})

PAGE_LOAD_TYPES = frozenset({EventType.NAVIGATION, EventType.TAB_ACTIVATED})


@dataclass(frozen=True)
class Event:
    """A single recorded activity event.

    Attributes:
        timestamp: Unix timestamp (seconds) the event was recorded.
        type: One of EVENT_TYPES.
        url: Sanitized URL (may be empty).
        domain: Hostname derived from the URL.
        category: Category label derived from the domain.
        title: Page title, truncated.
        payload: Type-specific compact data.
    """
    timestamp: float
    type: str
    url: str = ''
    domain: str = ''
    category: str = 'other'
    title: str = ''
    payload: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            't': self.timestamp,
            'type': self.type,
            'url': self.url,
            'domain': self.domain,
            'cat': self.category,
            'title': self.title,
            'data': dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Event':
        """Rebuild an event from its stored form.

        Raises:
            KeyError, TypeError, ValueError: If the stored entry is malformed.
        """
        return cls(
            timestamp=float(data['t']),
            type=data['type'],
            url=data.get('url') or '',
            domain=data.get('domain') or '',
            category=data.get('cat') or 'other',
            title=data.get('title') or '',
            payload=dict(data.get('data') or {}),
        )


def _as_int(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def compact_payload(event_type: str, data: Optional[dict],
                    sanitize: Callable[[str], str]) -> dict:
    """Reduce raw signal data to the fields worth keeping for an event type.

    Args:
        event_type: One of EVENT_TYPES.
        data: Raw signal data (may be None).
        sanitize: URL sanitizer applied to any URL kept in the payload.

    Returns:
        Compact payload dict.
    """
    data = data or {}
    if event_type == EventType.NAVIGATION:
        return {'transition': data.get('transition') or ''}
    if event_type == EventType.BOOKMARK_CREATED:
        return {
            'url': sanitize(data.get('url') or ''),
            'title': data.get('title') or '',
        }
    if event_type == EventType.DOWNLOAD_COMPLETED:
        return {
            'filename': data.get('filename') or '',
            'mime': data.get('mime') or '',
            'file_size': _as_int(data.get('file_size')),
            'url': sanitize(data.get('url') or ''),
        }
    if event_type == EventType.USER_COMEBACK:
        return {'away_minutes': _as_int(data.get('away_minutes'))}
    if event_type == EventType.IDLE:
        return {'state': data.get('state') or ''}
    return {}
