"""Unit tests for recurrence expansion."""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from processor.ics_parser import parse
from processor.models import RecurringEvent, SingleEvent
from processor.recurrence import expand, normalize_title


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def single(title='Sprint training', description='', start=None, end=None, **kwargs):
    start = start or utc(2025, 3, 10, 18, 0)
    return SingleEvent(
        uid=kwargs.pop('uid', 'single@test'),
        title=title,
        description=description,
        location=kwargs.pop('location', ''),
        status=kwargs.pop('status', 'CONFIRMED'),
        start=start,
        end=end,
        is_all_day=kwargs.pop('is_all_day', False),
        **kwargs
    )


def daily_series(count=3, start=None, **kwargs):
    start = start or utc(2025, 3, 1, 10, 0)
    return RecurringEvent(
        uid='daily@test',
        title='Conditioning',
        description='',
        location='Gym',
        status='CONFIRMED',
        start=start,
        end=start + timedelta(hours=1),
        is_all_day=False,
        recurrence_rule=f'FREQ=DAILY;COUNT={count}',
        tz=timezone.utc,
        **kwargs
    )


class TestExpand:
    """Test cases for expand()."""

    def test_single_event_inside_window(self):
        event = single(end=utc(2025, 3, 10, 19, 30))

        instances = expand({'a': event}, utc(2025, 3, 1), utc(2025, 3, 31))

        assert len(instances) == 1
        instance = instances[0]
        assert instance.title == 'Sprint training'
        assert instance.start == utc(2025, 3, 10, 18, 0)
        assert instance.end == utc(2025, 3, 10, 19, 30)
        assert instance.cancelled is False

    def test_single_event_outside_window(self):
        event = single(start=utc(2025, 5, 1, 18, 0))

        assert expand({'a': event}, utc(2025, 3, 1), utc(2025, 3, 31)) == []

    def test_exception_dates_are_skipped(self):
        """Test occurrences {T1, T2, T3} minus EXDATE {T2} yields {T1, T3}."""
        series = daily_series(exception_dates={utc(2025, 3, 2, 10, 0)})

        instances = expand({'s': series}, utc(2025, 2, 1), utc(2025, 4, 1))

        assert sorted(i.start for i in instances) == [
            utc(2025, 3, 1, 10, 0), utc(2025, 3, 3, 10, 0)
        ]

    def test_window_bounds_are_inclusive(self):
        series = daily_series(count=5)

        instances = expand(
            {'s': series}, utc(2025, 3, 2, 10, 0), utc(2025, 3, 4, 10, 0)
        )

        assert sorted(i.start for i in instances) == [
            utc(2025, 3, 2, 10, 0), utc(2025, 3, 3, 10, 0), utc(2025, 3, 4, 10, 0)
        ]

    def test_single_event_on_window_edges(self):
        at_start = single(uid='a', start=utc(2025, 3, 1))
        at_end = single(uid='b', start=utc(2025, 3, 31))

        instances = expand({'a': at_start, 'b': at_end}, utc(2025, 3, 1), utc(2025, 3, 31))

        assert len(instances) == 2

    def test_rule_without_matches_in_window(self):
        series = daily_series(count=2, start=utc(2025, 1, 1, 10, 0))

        assert expand({'s': series}, utc(2025, 3, 1), utc(2025, 3, 31)) == []

    def test_series_duration_applies_to_each_occurrence(self):
        instances = expand({'s': daily_series()}, utc(2025, 2, 1), utc(2025, 4, 1))

        assert all(i.end - i.start == timedelta(hours=1) for i in instances)
        assert {i.location for i in instances} == {'Gym'}

    def test_series_without_end_or_duration_is_zero_length(self):
        series = daily_series()
        series.end = None

        instances = expand({'s': series}, utc(2025, 2, 1), utc(2025, 4, 1))

        assert all(i.end == i.start for i in instances)

    def test_override_replaces_template(self):
        override = single(
            uid='daily@test', title='Conditioning (pool)',
            start=utc(2025, 3, 2, 15, 0), end=utc(2025, 3, 2, 16, 0)
        )
        series = daily_series(recurrence_overrides={utc(2025, 3, 2, 10, 0): override})

        instances = expand({'s': series}, utc(2025, 2, 1), utc(2025, 4, 1))

        by_start = {i.start: i for i in instances}
        assert set(by_start) == {
            utc(2025, 3, 1, 10, 0), utc(2025, 3, 2, 15, 0), utc(2025, 3, 3, 10, 0)
        }
        assert by_start[utc(2025, 3, 2, 15, 0)].title == 'Conditioning (pool)'

    def test_cancelled_override(self):
        override = single(
            uid='daily@test', title='Conditioning', status='CANCELLED',
            start=utc(2025, 3, 3, 10, 0), end=utc(2025, 3, 3, 11, 0)
        )
        series = daily_series(recurrence_overrides={utc(2025, 3, 3, 10, 0): override})

        instances = expand({'s': series}, utc(2025, 2, 1), utc(2025, 4, 1))

        cancelled = [i for i in instances if i.cancelled]
        assert [i.start for i in cancelled] == [utc(2025, 3, 3, 10, 0)]
        assert len(instances) == 3

    def test_recurrence_dates_are_added(self):
        series = daily_series(count=1, recurrence_dates={utc(2025, 3, 20, 10, 0)})

        instances = expand({'s': series}, utc(2025, 2, 1), utc(2025, 4, 1))

        assert sorted(i.start for i in instances) == [
            utc(2025, 3, 1, 10, 0), utc(2025, 3, 20, 10, 0)
        ]

    def test_weekly_rule_keeps_local_wall_clock_across_dst(self):
        paris = ZoneInfo('Europe/Paris')
        series = RecurringEvent(
            uid='weekly@test', title='Practice', description='', location='',
            status='CONFIRMED', start=utc(2025, 3, 24, 17, 0), end=None,
            is_all_day=False, recurrence_rule='FREQ=WEEKLY;COUNT=2', tz=paris,
        )

        instances = expand({'s': series}, utc(2025, 3, 1), utc(2025, 4, 30))

        assert sorted(i.start for i in instances) == [
            utc(2025, 3, 24, 17, 0), utc(2025, 3, 31, 16, 0)
        ]
        assert {i.start.astimezone(paris).hour for i in instances} == {18}

    def test_parsed_feed_with_exdate_and_until(self, build_ics):
        text = build_ics([
            'UID:daily@test',
            'SUMMARY:Camp',
            'DTSTART;TZID=Europe/Paris:20250303T180000',
            'DTEND;TZID=Europe/Paris:20250303T190000',
            'RRULE:FREQ=DAILY;UNTIL=20250306T170000Z',
            'EXDATE;TZID=Europe/Paris:20250304T180000',
        ])

        instances = expand(parse(text), utc(2025, 3, 1), utc(2025, 3, 31))

        assert sorted(i.start for i in instances) == [
            utc(2025, 3, 3, 17, 0), utc(2025, 3, 5, 17, 0), utc(2025, 3, 6, 17, 0)
        ]

    def test_long_fields_are_truncated(self):
        event = single(title='x' * 500, description='y' * 5000)

        instance = expand({'a': event}, utc(2025, 3, 1), utc(2025, 3, 31))[0]

        assert len(instance.title) == 200
        assert len(instance.description) == 2000


class TestTitleNormalization:
    """Test cases for placeholder title substitution."""

    def test_busy_uses_description(self):
        event = single(title='Busy', description='Physio session')

        instance = expand({'a': event}, utc(2025, 3, 1), utc(2025, 3, 31))[0]

        assert instance.title == 'Physio session'

    def test_busy_without_description_uses_default_label(self):
        event = single(title='Busy', description='')

        instance = expand({'a': event}, utc(2025, 3, 1), utc(2025, 3, 31))[0]

        assert instance.title == 'Training'

    @pytest.mark.parametrize('title', ['busy', 'OCCUPIED', ' Blocked ', 'Occupé', 'occupe', ''])
    def test_placeholders(self, title):
        assert normalize_title(title, '') == 'Training'

    def test_first_description_line_is_used(self):
        assert normalize_title('Busy', '\nVideo review\nRoom 2') == 'Video review'

    def test_real_title_is_kept(self):
        assert normalize_title('  Busy legs day ', 'ignored') == 'Busy legs day'
