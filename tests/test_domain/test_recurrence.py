"""Tests for recurrence rules and occurrence expansion"""
from datetime import date, datetime, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from estatecrm.domain.errors import QueryCancelled, ValidationError
from estatecrm.domain.recurrence import (
    CancellationToken, Frequency, RecurrenceRule, add_months, expand, expand_window,
    format_weekdays, occurrence_at, parse_weekdays,
)

UTC = timezone.utc
NY = ZoneInfo("America/New_York")
FAR = datetime(2100, 1, 1, tzinfo=UTC)


def _appt(start, end, tz="UTC", appointment_id=1):
    return SimpleNamespace(id=appointment_id, start_at=start, end_at=end, timezone=tz)


def _utc(y, m, d, h=9, mi=0):
    return datetime(y, m, d, h, mi, tzinfo=UTC)


class TestRuleValidation:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(Frequency.DAILY, interval=0)

    def test_interval_upper_bound(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(Frequency.DAILY, interval=366)

    def test_end_date_and_count_are_exclusive(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(Frequency.DAILY, end_date=date(2026, 5, 1), max_count=3)

    def test_weekdays_only_for_weekly(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(Frequency.MONTHLY, weekdays=frozenset({0}))

    def test_unknown_frequency(self):
        with pytest.raises(ValidationError):
            RecurrenceRule("YEARLY")

    def test_max_count_positive(self):
        with pytest.raises(ValidationError):
            RecurrenceRule(Frequency.DAILY, max_count=0)

    def test_dict_round_trip_keeps_fields(self):
        rule = RecurrenceRule(Frequency.WEEKLY, interval=2, weekdays=frozenset({0, 2}), max_count=4)
        assert rule.to_dict() == {"frequency": "WEEKLY", "interval": 2, "weekdays": [0, 2], "max_count": 4}
        assert RecurrenceRule.from_dict(rule.to_dict()) == rule


class TestExpansion:
    def test_daily_max_count(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, max_count=5)
        occs = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        assert [o.sequence_index for o in occs] == [0, 1, 2, 3, 4]
        assert occs[-1].start == _utc(2026, 3, 6)
        assert all(o.end - o.start == timedelta(hours=1) for o in occs)

    def test_first_occurrence_is_the_base_appointment(self):
        appt = _appt(_utc(2026, 3, 3), _utc(2026, 3, 3, 10))  # Tuesday
        rule = RecurrenceRule(Frequency.WEEKLY, weekdays=frozenset({0, 2}), max_count=4)
        starts = [o.start.date() for o in expand(appt, rule, _utc(2026, 1, 1), FAR)]
        assert starts == [date(2026, 3, 3), date(2026, 3, 4), date(2026, 3, 9), date(2026, 3, 11)]

    def test_weekly_weekdays(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))  # Monday
        rule = RecurrenceRule(Frequency.WEEKLY, weekdays=frozenset({0, 2, 4}), max_count=6)
        starts = [o.start.date() for o in expand(appt, rule, _utc(2026, 1, 1), FAR)]
        assert starts == [
            date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 6),
            date(2026, 3, 9), date(2026, 3, 11), date(2026, 3, 13),
        ]

    def test_every_other_week(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.WEEKLY, interval=2, max_count=3)
        starts = [o.start.date() for o in expand(appt, rule, _utc(2026, 1, 1), FAR)]
        assert starts == [date(2026, 3, 2), date(2026, 3, 16), date(2026, 3, 30)]

    def test_monthly_on_31st_clips_without_drifting(self):
        appt = _appt(_utc(2026, 1, 31), _utc(2026, 1, 31, 10))
        rule = RecurrenceRule(Frequency.MONTHLY, max_count=4)
        starts = [o.start.date() for o in expand(appt, rule, _utc(2026, 1, 1), FAR)]
        assert starts == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30)]

    def test_end_date_is_inclusive(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, end_date=date(2026, 3, 5))
        occs = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        assert [o.start.date() for o in occs][-1] == date(2026, 3, 5)
        assert len(occs) == 4

    def test_exceptions_are_skipped_but_keep_their_slot(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, max_count=5)
        occs = list(expand(appt, rule, _utc(2026, 1, 1), FAR, exceptions={1, 3}))
        assert [o.sequence_index for o in occs] == [0, 2, 4]

    def test_window_returns_only_overlapping(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, max_count=30)
        occs = list(expand(appt, rule, _utc(2026, 3, 4, 9, 30), _utc(2026, 3, 6, 9)))
        assert [o.start.date() for o in occs] == [date(2026, 3, 4), date(2026, 3, 5)]

    def test_empty_window(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        assert list(expand(appt, rule, _utc(2026, 3, 5), _utc(2026, 3, 5))) == []

    def test_expansion_is_restartable(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.WEEKLY, weekdays=frozenset({1, 3}), max_count=10)
        first = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        second = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        assert first == second

    def test_ordered_and_non_overlapping_with_each_other(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.WEEKLY, weekdays=frozenset({0, 1, 2, 3, 4}), max_count=40)
        occs = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        for a, b in zip(occs, occs[1:]):
            assert a.start < b.start
            assert a.sequence_index < b.sequence_index

    def test_dst_keeps_local_wall_clock(self):
        start = datetime(2026, 3, 2, 9, 0, tzinfo=NY)  # EST, before the March 8 change
        appt = _appt(start, start + timedelta(hours=1), tz="America/New_York")
        rule = RecurrenceRule(Frequency.WEEKLY, max_count=3)
        occs = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        assert [o.start.astimezone(NY).hour for o in occs] == [9, 9, 9]
        assert [o.end.astimezone(NY).hour for o in occs] == [10, 10, 10]
        assert occs[0].start.astimezone(UTC).hour == 14
        assert occs[1].start.astimezone(UTC).hour == 13

    def test_truncation_is_flagged_not_raised(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        result = expand_window(appt, rule, _utc(2026, 1, 1), _utc(2030, 1, 1), safety_limit=500)
        assert result.truncated is True
        assert len(result.occurrences) == 500

    def test_terminated_rule_is_not_truncated(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, max_count=600)
        result = expand_window(appt, rule, _utc(2026, 1, 1), _utc(2030, 1, 1), safety_limit=500)
        assert result.truncated is False
        assert len(result.occurrences) == 600

    def test_window_end_before_limit_is_not_truncation(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        result = expand_window(appt, rule, _utc(2026, 3, 1), _utc(2026, 3, 9))
        assert result.truncated is False
        assert len(result.occurrences) == 7

    def test_window_served_exactly_at_limit_is_not_truncation(self):
        # indexes 0..2 fill the window; index 3 is both past the window and at the limit
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        result = expand_window(appt, rule, _utc(2026, 3, 2, 0), _utc(2026, 3, 5, 0), safety_limit=3)
        assert [o.sequence_index for o in result.occurrences] == [0, 1, 2]
        assert result.truncated is False

    def test_limit_inside_window_is_truncation(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        result = expand_window(appt, rule, _utc(2026, 3, 2, 0), _utc(2026, 3, 6, 0), safety_limit=3)
        assert len(result.occurrences) == 3
        assert result.truncated is True

    def test_cancellation(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(QueryCancelled):
            list(expand(appt, rule, _utc(2026, 1, 1), FAR, token=token))


class TestOccurrenceAt:
    def test_matches_expansion(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.WEEKLY, weekdays=frozenset({0, 3}), max_count=8)
        expanded = list(expand(appt, rule, _utc(2026, 1, 1), FAR))
        assert occurrence_at(appt, rule, 5) == expanded[5]

    def test_beyond_count(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, max_count=3)
        assert occurrence_at(appt, rule, 3) is None

    def test_beyond_end_date(self):
        appt = _appt(_utc(2026, 3, 2), _utc(2026, 3, 2, 10))
        rule = RecurrenceRule(Frequency.DAILY, end_date=date(2026, 3, 3))
        assert occurrence_at(appt, rule, 2) is None


def test_add_months_clips_to_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2026, 11, 30), 3) == date(2027, 2, 28)


def test_weekday_parsing():
    assert parse_weekdays("MO, we,FR") == frozenset({0, 2, 4})
    assert parse_weekdays("0,6") == frozenset({0, 6})
    assert parse_weekdays("") is None
    assert format_weekdays(frozenset({4, 0})) == "MO,FR"
