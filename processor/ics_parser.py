"""Parser turning raw iCalendar text into calendar components."""
import logging
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser
from dateutil.rrule import rrulestr
from icalendar import Calendar

from processor.exceptions import ParseError
from processor.models import CalendarComponent, RecurringEvent, SingleEvent

logger = logging.getLogger(__name__)

DEFAULT_TIME_ZONE = 'Europe/Paris'
DEFAULT_STATUS = 'CONFIRMED'
UTC_NAMES = {'UTC', 'ETC/UTC', 'GMT', 'ETC/GMT', 'Z', 'ZULU'}
UNTIL_PATTERN = re.compile(r'UNTIL=(\d{8})(T(\d{6})(Z?))?', re.IGNORECASE)


def parse(text: str, default_tz: str = DEFAULT_TIME_ZONE) -> Dict[str, CalendarComponent]:
    """
    Parse iCalendar text into components keyed by UID.

    Args:
        text: Raw iCalendar document
        default_tz: Team zone used for floating times and all-day dates

    Returns:
        Mapping of component key to SingleEvent or RecurringEvent

    Raises:
        ParseError: If the text cannot be tokenized as iCalendar
    """
    try:
        calendar = Calendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as e:
        raise ParseError(f'Unparseable ICS: {e}') from e

    calendar_tz_name = _text(calendar, 'X-WR-TIMEZONE') or None
    floating_tz = (
        _zone(calendar_tz_name) or _zone(default_tz) or ZoneInfo('UTC')
    )
    fallback_display = _display_zone_name(calendar_tz_name, default_tz)

    masters = []
    overrides = []
    for component in calendar.walk('VEVENT'):
        if component.get('RECURRENCE-ID') is not None:
            overrides.append(component)
        else:
            masters.append(component)

    components: Dict[str, CalendarComponent] = {}
    for vevent in masters:
        parsed = _parse_master(vevent, floating_tz, fallback_display)
        if parsed is None:
            continue
        key = parsed.uid
        if key in components:
            key = f'{parsed.uid}-{_millis(parsed.start)}'
            logger.warning(f"Duplicate UID {parsed.uid}, keeping both as {key}")
        components[key] = parsed

    for vevent in overrides:
        _attach_override(components, vevent, floating_tz, fallback_display)

    logger.info(f"Parsed {len(components)} calendar components from ICS")
    return components


def _parse_master(vevent, floating_tz: tzinfo, fallback_display: str) -> Optional[CalendarComponent]:
    event = _parse_single(vevent, floating_tz, fallback_display)
    if event is None:
        return None

    rule_prop = vevent.get('RRULE')
    if rule_prop is None:
        return event
    if isinstance(rule_prop, list):
        logger.warning(f"Event {event.uid} has several RRULEs, using the first")
        rule_prop = rule_prop[0]

    series_tz = _series_zone(vevent, floating_tz)
    rule_text = _localize_until(rule_prop.to_ical().decode('utf-8'), series_tz)
    local_start = event.start.astimezone(series_tz).replace(tzinfo=None)
    try:
        rrulestr(rule_text, dtstart=local_start)
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid RRULE on event {event.uid} ({e}), treating it as a single event")
        return event

    return RecurringEvent(
        uid=event.uid,
        title=event.title,
        description=event.description,
        location=event.location,
        status=event.status,
        start=event.start,
        end=event.end,
        is_all_day=event.is_all_day,
        duration=event.duration,
        display_tz=event.display_tz,
        recurrence_rule=rule_text,
        tz=series_tz,
        exception_dates=set(_date_list(vevent, 'EXDATE', floating_tz)),
        recurrence_dates=set(_date_list(vevent, 'RDATE', floating_tz)),
    )


def _parse_single(vevent, floating_tz: tzinfo, fallback_display: str) -> Optional[SingleEvent]:
    start_prop = vevent.get('DTSTART')
    start = _to_instant(start_prop, floating_tz)
    title = _text(vevent, 'SUMMARY')
    if start is None:
        logger.warning(f"Skipping VEVENT without usable DTSTART: {title or '(untitled)'}")
        return None
    start_at, is_all_day = start

    end = _to_instant(vevent.get('DTEND'), floating_tz)
    duration_prop = vevent.get('DURATION')
    duration = getattr(duration_prop, 'dt', None)
    if not isinstance(duration, timedelta):
        duration = None

    uid = _text(vevent, 'UID') or f'{title}-{_millis(start_at)}'

    return SingleEvent(
        uid=uid,
        title=title,
        description=_text(vevent, 'DESCRIPTION'),
        location=_text(vevent, 'LOCATION'),
        status=(_text(vevent, 'STATUS') or DEFAULT_STATUS).upper(),
        start=start_at,
        end=end[0] if end else None,
        is_all_day=is_all_day,
        duration=duration,
        display_tz=_display_zone_name(_tzid(start_prop), fallback_display),
    )


def _attach_override(components: Dict[str, CalendarComponent], vevent,
                     floating_tz: tzinfo, fallback_display: str) -> None:
    override = _parse_single(vevent, floating_tz, fallback_display)
    recurrence_id = _to_instant(vevent.get('RECURRENCE-ID'), floating_tz)
    if override is None or recurrence_id is None:
        return
    original_start = recurrence_id[0]

    master = components.get(override.uid)
    if isinstance(master, RecurringEvent):
        master.recurrence_overrides[original_start] = override
    elif isinstance(master, SingleEvent) and master.start == original_start:
        components[override.uid] = override
    else:
        key = f'{override.uid}-{_millis(original_start)}'
        logger.info(f"Override without recurring master kept as single event: {key}")
        components[key] = override


def _to_instant(prop, floating_tz: tzinfo) -> Optional[Tuple[datetime, bool]]:
    """Return (UTC instant, is_all_day) for a date property."""
    if prop is None:
        return None
    if isinstance(prop, list):
        prop = prop[0]

    value = getattr(prop, 'dt', None)
    if value is None:
        # Untyped value, fall back to a lenient read as a timed event
        try:
            value = date_parser.parse(str(prop))
        except (ValueError, OverflowError):
            return None
    return _instant_from_value(value, floating_tz)


def _instant_from_value(value, floating_tz: tzinfo) -> Optional[Tuple[datetime, bool]]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=floating_tz)
        return value.astimezone(timezone.utc), False
    if isinstance(value, date):
        midnight = datetime.combine(value, time.min, tzinfo=floating_tz)
        return midnight.astimezone(timezone.utc), True
    return None


def _date_list(vevent, name: str, floating_tz: tzinfo) -> List[datetime]:
    props = vevent.get(name)
    if props is None:
        return []
    if not isinstance(props, list):
        props = [props]

    instants = []
    for prop in props:
        for entry in getattr(prop, 'dts', []):
            converted = _instant_from_value(entry.dt, floating_tz)
            if converted is not None:
                instants.append(converted[0])
    return instants


def _series_zone(vevent, floating_tz: tzinfo) -> tzinfo:
    value = getattr(vevent.get('DTSTART'), 'dt', None)
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.tzinfo
    return floating_tz


def _localize_until(rule_text: str, series_tz: tzinfo) -> str:
    """Rewrite UNTIL to the series' local wall time so expansion stays naive."""
    def replace(match):
        day = match.group(1)
        clock = match.group(3)
        if clock is None:
            return f'UNTIL={day}T235959'
        if match.group(4):
            until = datetime.strptime(day + clock, '%Y%m%d%H%M%S').replace(tzinfo=timezone.utc)
            local = until.astimezone(series_tz)
            return f"UNTIL={local.strftime('%Y%m%dT%H%M%S')}"
        return f'UNTIL={day}T{clock}'

    return UNTIL_PATTERN.sub(replace, rule_text)


def _tzid(prop) -> Optional[str]:
    if prop is None or isinstance(prop, list):
        return None
    params = getattr(prop, 'params', None) or {}
    tzid = params.get('TZID')
    if tzid:
        return str(tzid)
    value = getattr(prop, 'dt', None)
    key = getattr(getattr(value, 'tzinfo', None), 'key', None)
    return key


def _display_zone_name(candidate: Optional[str], fallback: Optional[str]) -> str:
    for name in (candidate, fallback):
        if name and name.strip().upper() not in UTC_NAMES and _zone(name):
            return name.strip()
    return DEFAULT_TIME_ZONE


def _zone(name: Optional[str]) -> Optional[tzinfo]:
    if not name:
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _text(component, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ''
    if isinstance(value, list):
        value = value[0] if value else ''
    return str(value).strip()


def _millis(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)
