"""Data models for calendar ingestion and training persistence."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Dict, List, Optional, Set, Union


@dataclass
class SingleEvent:
    """Parsed VEVENT without a recurrence rule."""
    uid: str
    title: str
    description: str
    location: str
    status: str
    start: datetime
    end: Optional[datetime]
    is_all_day: bool
    duration: Optional[timedelta] = None
    display_tz: str = 'Europe/Paris'


@dataclass
class RecurringEvent:
    """Parsed VEVENT carrying an RRULE.

    ``start`` is the series DTSTART as a UTC instant; ``tz`` is the zone
    whose wall clock the rule repeats in.
    """
    uid: str
    title: str
    description: str
    location: str
    status: str
    start: datetime
    end: Optional[datetime]
    is_all_day: bool
    recurrence_rule: str
    tz: tzinfo
    duration: Optional[timedelta] = None
    display_tz: str = 'Europe/Paris'
    exception_dates: Set[datetime] = field(default_factory=set)
    recurrence_dates: Set[datetime] = field(default_factory=set)
    recurrence_overrides: Dict[datetime, SingleEvent] = field(default_factory=dict)


CalendarComponent = Union[SingleEvent, RecurringEvent]


@dataclass
class EventInstance:
    """One concrete occurrence inside the expansion window."""
    uid: str
    title: str
    description: str
    location: str
    status: str
    cancelled: bool
    is_all_day: bool
    start: datetime
    end: datetime
    display_tz: str = 'Europe/Paris'


@dataclass
class PersistedTraining:
    """Durable training row, one per (team, uid, start)."""
    instance_id: str
    team_id: str
    uid: str
    title: str
    description: str
    location: str
    status: str
    cancelled: bool
    is_all_day: bool
    start: datetime
    end: datetime
    time_zone: str
    display_tz: str
    hash: str
    last_seen_at: datetime
    updated_at: datetime
    created_at: datetime
    source: str = 'ics'
    questionnaire_notified: bool = False


@dataclass
class Team:
    """Team metadata needed to sync its calendar."""
    team_id: str
    ics_url: Optional[str]
    time_zone: Optional[str] = None
    last_ics_sync_at: Optional[datetime] = None


class Decision(Enum):
    """Outcome of reconciling one training."""
    CREATE = 'create'
    UPDATE = 'update'
    TOUCH = 'touch'
    REAP = 'reap'


@dataclass
class TrainingWrite:
    """A pending write produced by the reconciler."""
    decision: Decision
    training: PersistedTraining


@dataclass
class SyncResult:
    """Tally of one team's sync pass."""
    seen: int = 0
    created: int = 0
    updated: int = 0
    cancelled: int = 0
    reaped: int = 0
    note: Optional[str] = None

    def to_dict(self) -> dict:
        body = {
            'seen': self.seen,
            'created': self.created,
            'updated': self.updated,
            'cancelled': self.cancelled,
            'reaped': self.reaped,
        }
        if self.note:
            body['note'] = self.note
        return body


@dataclass
class ReconcileOutcome:
    """Counts plus the writes needed to bring the store in line."""
    result: SyncResult
    writes: List[TrainingWrite]


@dataclass
class SweepResult:
    """Aggregate of a scheduled sweep across teams."""
    totals: SyncResult
    teams_synced: int
    failures: Dict[str, str]
    skipped: List[str] = field(default_factory=list)
