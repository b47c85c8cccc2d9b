"""Restart-durable alarm scheduler.

Recurring work (periodic flushes, tracker snapshots, the daily digest) is
registered as named alarms whose next fire time lives in durable state, not
in an in-process timer. The daemon polls due() from its main loop; after a
restart the alarms are still there, and a fire that was missed while the
process was down is delivered once on the next poll.

Example:
    >>> scheduler = DurableScheduler(storage)
    >>> scheduler.schedule('persist', time.time() + 300, period=300)
    >>> for name, scheduled_at in scheduler.due():
    ...     handle(name, scheduled_at)
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from .exceptions import StorageError
from .storage import StateStorage

logger = logging.getLogger(__name__)

ALARMS_KEY = 'alarms'


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM`` into (hour, minute).

    Raises:
        ValueError: If the value is not a valid time of day.
    """
    try:
        hours, minutes = (int(part) for part in str(value).strip().split(':'))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)") from None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM)")
    return hours, minutes


def next_occurrence(hhmm: str, now: Optional[datetime] = None) -> datetime:
    """Return the next local datetime at ``hhmm``: today if still ahead, else tomorrow."""
    now = now or datetime.now()
    hours, minutes = parse_hhmm(hhmm)
    target = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target


class DurableScheduler:
    """Named alarms persisted in StateStorage.

    Each alarm is stored as ``{next_fire, period, tag}``. ``period`` is None
    for one-shot alarms. ``tag`` is free-form and lets callers detect that an
    alarm was created for different settings.
    """

    def __init__(self, storage: StateStorage, clock: Callable[[], float] = time.time):
        self.storage = storage
        self.clock = clock
        self._lock = threading.Lock()

    def _load(self) -> dict:
        alarms = self.storage.get(ALARMS_KEY) or {}
        return alarms if isinstance(alarms, dict) else {}

    def schedule(self, name: str, first_fire: float, period: Optional[float] = None,
                 tag: Optional[str] = None) -> None:
        """Create or replace an alarm.

        Args:
            name: Alarm name.
            first_fire: Unix timestamp of the first fire.
            period: Repeat interval in seconds (None for one-shot).
            tag: Optional marker stored with the alarm.
        """
        with self._lock:
            alarms = self._load()
            alarms[name] = {'next_fire': float(first_fire), 'period': period, 'tag': tag}
            self.storage.set(ALARMS_KEY, alarms)
        logger.info(
            f"Alarm '{name}' scheduled for {datetime.fromtimestamp(first_fire):%Y-%m-%d %H:%M:%S}"
            + (f" (every {period:g}s)" if period else "")
        )

    def ensure(self, name: str, first_fire: float, period: Optional[float] = None,
               tag: Optional[str] = None) -> bool:
        """Schedule an alarm unless one with the same period and tag exists.

        Returns:
            True if the alarm was (re)created.
        """
        existing = self.get(name)
        if existing and existing.get('period') == period and existing.get('tag') == tag:
            return False
        self.schedule(name, first_fire, period, tag)
        return True

    def cancel(self, name: str) -> None:
        with self._lock:
            alarms = self._load()
            if alarms.pop(name, None) is not None:
                self.storage.set(ALARMS_KEY, alarms)
                logger.info(f"Alarm '{name}' cancelled")

    def get(self, name: str) -> Optional[dict]:
        try:
            return self._load().get(name)
        except StorageError as e:
            logger.warning(f"Cannot read alarms: {e}")
            return None

    def due(self, now: Optional[float] = None) -> List[Tuple[str, float]]:
        """Collect alarms whose fire time has passed and advance them.

        Periodic alarms move to their first slot after ``now`` (missed slots
        collapse into a single fire); one-shot alarms are removed. The new
        state is written before returning, so a crash while handling the
        fires cannot replay them.

        Returns:
            List of (name, scheduled_at) for each alarm that fired, earliest first.
        """
        now = self.clock() if now is None else now
        fired = []
        with self._lock:
            try:
                alarms = self._load()
            except StorageError as e:
                logger.warning(f"Cannot read alarms: {e}")
                return []

            for name, alarm in list(alarms.items()):
                next_fire = alarm.get('next_fire')
                if next_fire is None or next_fire > now:
                    continue
                fired.append((name, next_fire))
                period = alarm.get('period')
                if period:
                    missed = int((now - next_fire) // period) + 1
                    alarm['next_fire'] = next_fire + missed * period
                else:
                    del alarms[name]

            if fired:
                try:
                    self.storage.set(ALARMS_KEY, alarms)
                except StorageError as e:
                    logger.error(f"Failed to advance alarms, will retry: {e}")
                    return []

        fired.sort(key=lambda item: item[1])
        return fired
