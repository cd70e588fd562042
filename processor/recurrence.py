"""Expansion of parsed calendar components into concrete event instances."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from dateutil.rrule import rrulestr

from processor.models import (
    CalendarComponent,
    EventInstance,
    RecurringEvent,
    SingleEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = 'Training'
PLACEHOLDER_TITLES = {'busy', 'occupied', 'blocked', 'occupé', 'occupe'}
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_OCCURRENCES = 8000


def expand(components: Dict[str, CalendarComponent],
           window_start: datetime,
           window_end: datetime) -> List[EventInstance]:
    """
    Expand components into the occurrences falling inside a window.

    Both window bounds are inclusive. Output order is not meaningful.

    Args:
        components: Parsed components keyed by UID
        window_start: Earliest occurrence start to keep (aware)
        window_end: Latest occurrence start to keep (aware)

    Returns:
        List of EventInstance objects
    """
    instances = []
    for component in components.values():
        if isinstance(component, RecurringEvent):
            instances.extend(_expand_series(component, window_start, window_end))
        elif isinstance(component, SingleEvent):
            if window_start <= component.start <= window_end:
                instances.append(build_instance(component, component.start))
        else:
            raise TypeError(f'Unknown calendar component: {type(component).__name__}')

    logger.info(
        f"Expanded {len(components)} components into {len(instances)} instances "
        f"between {window_start.isoformat()} and {window_end.isoformat()}"
    )
    return instances


def _expand_series(series: RecurringEvent,
                   window_start: datetime,
                   window_end: datetime) -> Iterable[EventInstance]:
    starts = set(_rule_occurrences(series, window_start, window_end))
    starts.update(
        rdate for rdate in series.recurrence_dates
        if window_start <= rdate <= window_end
    )

    for start in sorted(starts):
        if start in series.exception_dates or start in series.recurrence_overrides:
            continue
        yield build_instance(series, start)

    for original_start, override in series.recurrence_overrides.items():
        if original_start in series.exception_dates:
            continue
        if window_start <= override.start <= window_end:
            yield build_instance(override, override.start)


def _rule_occurrences(series: RecurringEvent,
                      window_start: datetime,
                      window_end: datetime) -> Iterable[datetime]:
    # Rules repeat on the local wall clock, so expand naive local times
    tz = series.tz
    local_start = series.start.astimezone(tz).replace(tzinfo=None)
    rule = rrulestr(series.recurrence_rule, dtstart=local_start)

    lower = window_start.astimezone(tz).replace(tzinfo=None) - timedelta(days=1)
    upper = window_end.astimezone(tz).replace(tzinfo=None) + timedelta(days=1)

    count = 0
    for occurrence in rule.xafter(lower, count=MAX_OCCURRENCES, inc=True):
        if occurrence > upper:
            return
        count += 1
        instant = occurrence.replace(tzinfo=tz).astimezone(timezone.utc)
        if window_start <= instant <= window_end:
            yield instant

    if count >= MAX_OCCURRENCES:
        logger.warning(
            f"Series {series.uid} hit the {MAX_OCCURRENCES} occurrence cap, "
            f"later occurrences were dropped"
        )


def build_instance(component: CalendarComponent, start: datetime) -> EventInstance:
    """Materialize one occurrence of a component starting at ``start``."""
    end = start + _duration(component)
    status = component.status or 'CONFIRMED'

    return EventInstance(
        uid=component.uid,
        title=normalize_title(component.title, component.description)[:MAX_TITLE_LENGTH],
        description=component.description[:MAX_DESCRIPTION_LENGTH],
        location=component.location,
        status=status,
        cancelled=status == 'CANCELLED',
        is_all_day=component.is_all_day,
        start=start,
        end=end,
        display_tz=component.display_tz,
    )


def _duration(component: CalendarComponent) -> timedelta:
    if component.end is not None:
        duration = component.end - component.start
    elif component.duration is not None:
        duration = component.duration
    else:
        duration = timedelta(0)
    return max(duration, timedelta(0))


def normalize_title(title: Optional[str], description: Optional[str]) -> str:
    """
    Replace empty or placeholder titles ("Busy", "Occupé", ...).

    Args:
        title: Raw SUMMARY text
        description: Raw DESCRIPTION text

    Returns:
        The title, the first description line, or the default label
    """
    cleaned = (title or '').strip()
    if cleaned and cleaned.casefold() not in PLACEHOLDER_TITLES:
        return cleaned

    for line in (description or '').splitlines():
        if line.strip():
            return line.strip()
    return DEFAULT_TITLE
