"""Post-session questionnaire availability window."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

OPEN_DELAY = timedelta(minutes=30)
AVAILABLE_FOR = timedelta(hours=5)


class QuestionnaireStatus(Enum):
    NOT_OPEN_YET = 'not_open_yet'
    OPEN = 'open'
    CLOSED = 'closed'
    COMPLETED = 'completed'


def questionnaire_window(end: datetime) -> Tuple[datetime, datetime]:
    """Return (open_at, close_at) for a training ending at ``end``."""
    open_at = end + OPEN_DELAY
    return open_at, open_at + AVAILABLE_FOR


def questionnaire_status(end: Optional[datetime], now: datetime,
                         completed: bool = False) -> QuestionnaireStatus:
    if completed:
        return QuestionnaireStatus.COMPLETED
    # Trainings without an end, or not finished yet, accept no answers
    if end is None or now < end:
        return QuestionnaireStatus.CLOSED

    open_at, close_at = questionnaire_window(end)
    if now < open_at:
        return QuestionnaireStatus.NOT_OPEN_YET
    if now > close_at:
        return QuestionnaireStatus.CLOSED
    return QuestionnaireStatus.OPEN
