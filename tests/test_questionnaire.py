"""Unit tests for the questionnaire availability window."""
from datetime import datetime, timedelta, timezone

import pytest

from processor.questionnaire import (
    QuestionnaireStatus,
    questionnaire_status,
    questionnaire_window,
)

END = datetime(2025, 3, 10, 19, 30, tzinfo=timezone.utc)


def test_window_opens_half_an_hour_after_end():
    open_at, close_at = questionnaire_window(END)

    assert open_at == END + timedelta(minutes=30)
    assert close_at == END + timedelta(hours=5, minutes=30)


@pytest.mark.parametrize('offset, expected', [
    (timedelta(minutes=-10), QuestionnaireStatus.CLOSED),
    (timedelta(minutes=10), QuestionnaireStatus.NOT_OPEN_YET),
    (timedelta(minutes=30), QuestionnaireStatus.OPEN),
    (timedelta(hours=3), QuestionnaireStatus.OPEN),
    (timedelta(hours=5, minutes=30), QuestionnaireStatus.OPEN),
    (timedelta(hours=6), QuestionnaireStatus.CLOSED),
])
def test_status_over_time(offset, expected):
    assert questionnaire_status(END, END + offset) == expected


def test_completed_wins():
    assert questionnaire_status(END, END + timedelta(hours=1), completed=True) == (
        QuestionnaireStatus.COMPLETED
    )


def test_training_without_end_is_closed():
    assert questionnaire_status(None, END) == QuestionnaireStatus.CLOSED
