"""Primed instance window evaluation."""
import logging
from datetime import datetime
from typing import Optional

from fleet_controller.models import PrimedWindow, Template, WEEKDAYS

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def parse_hhmm(value: str) -> Optional[int]:
    """Parse "HH:MM" into minutes since midnight, or None if malformed."""
    parts = value.strip().split(":")
    if len(parts) != 2:
        return None
    try:
        hour = int(parts[0])
        minute = int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        return None
    return hour * 60 + minute


class PrimedWindowScheduler:
    """Decides whether a template's primed target applies at a given time."""

    def is_active(self, template: Template, now: Optional[datetime] = None) -> bool:
        """True if any of the template's windows covers now.

        A template without windows is always active.
        """
        now = now or datetime.now()
        if not template.primed_windows:
            return True
        return any(self.window_is_active(window, now) for window in template.primed_windows)

    def window_is_active(self, window: PrimedWindow, now: datetime) -> bool:
        if window.days is not None and WEEKDAYS[now.weekday()] not in window.days:
            return False

        if window.is_unbounded:
            return True

        start = parse_hhmm(window.start_time)
        end = parse_hhmm(window.end_time)
        if start is None or end is None:
            logger.warning(
                f"Ignoring primed window with malformed bounds: "
                f"start={window.start_time!r}, end={window.end_time!r}"
            )
            return False

        now_minutes = now.hour * 60 + now.minute
        if end < start:
            # wraps past midnight
            if now_minutes < start:
                start -= MINUTES_PER_DAY
            else:
                end += MINUTES_PER_DAY

        active = start <= now_minutes < end
        logger.debug(
            f"Primed window {window.start_time}-{window.end_time} at {now:%H:%M}: "
            f"{'in' if active else 'not in'} time period"
        )
        return active
