"""Per-team calendar sync pipeline and the multi-team sweep."""
import logging
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import SyncConfig
from feed.ics_feed import IcsFeedFetcher, normalize_feed_url
from processor.exceptions import (
    PersistenceError,
    SyncInProgressError,
    SyncTimeoutError,
    ValidationError,
)
from processor.ics_parser import parse
from processor.models import SweepResult, SyncResult
from processor.reconciler import reconcile
from processor.recurrence import expand
from storage.dynamodb_manager import DynamoDBManager

logger = logging.getLogger(__name__)

TEAM_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,128}$')
LOCK_MARGIN_SECONDS = 60
MIN_TEAM_BUDGET_SECONDS = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Deadline:
    """Wall-clock budget for one team's pipeline run."""

    def __init__(self, seconds: float, clock=time.monotonic):
        self._clock = clock
        self._expires_at = clock() + seconds
        self.seconds = seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def check(self, stage: str) -> None:
        if self._clock() >= self._expires_at:
            raise SyncTimeoutError(
                f'Sync exceeded {self.seconds:g}s budget during {stage}'
            )


def validate_team_id(team_id) -> str:
    if not isinstance(team_id, str) or not TEAM_ID_PATTERN.match(team_id):
        raise ValidationError('teamId is required and must be alphanumeric')
    return team_id


def _same_feed(url: str, team_url: Optional[str]) -> bool:
    if not team_url:
        return False
    try:
        return normalize_feed_url(team_url) == url
    except ValidationError:
        return False


class TeamCalendarSync:
    """Runs fetch, parse, expand and reconcile for one team at a time."""

    def __init__(self, fetcher: IcsFeedFetcher, store: DynamoDBManager,
                 config: SyncConfig, clock=time.monotonic, wall_clock=utc_now):
        """
        Initialize the pipeline.

        Args:
            fetcher: Feed fetcher
            store: Team and training store
            config: Runtime settings
            clock: Monotonic clock used for time budgets
            wall_clock: UTC clock used for lock leases
        """
        self.fetcher = fetcher
        self.store = store
        self.config = config
        self._clock = clock
        self._wall_clock = wall_clock

    def sync_team(self, team_id: str, ics_url: Optional[str] = None,
                  now: Optional[datetime] = None,
                  budget_seconds: Optional[float] = None) -> SyncResult:
        """
        Synchronize one team's trainings with its calendar feed.

        Trainings missing from the feed are only reaped when the synced URL
        is the team's own feed.

        Args:
            team_id: Team identifier
            ics_url: Feed URL overriding the team's configured one
            now: Time of the sync pass (default: current UTC time)
            budget_seconds: Caps the configured per-team time budget

        Returns:
            SyncResult with seen/created/updated/cancelled/reaped counts

        Raises:
            ValidationError: Bad team id or URL, or unknown team
            SyncInProgressError: Another invocation is syncing this team
            SyncTimeoutError: The per-team time budget ran out
            CalendarSyncError: Any fetch, parse or persistence failure
        """
        validate_team_id(team_id)
        now = now or utc_now()

        team = self.store.get_team(team_id)
        if team is None:
            raise ValidationError(f'Team {team_id} not found')

        feed_url = ics_url or team.ics_url
        if not feed_url:
            logger.info(f"Team {team_id} has no calendar feed configured")
            return SyncResult(note='no icsUrl')
        feed_url = normalize_feed_url(feed_url)
        own_feed = _same_feed(feed_url, team.ics_url)

        budget = self.config.sync_timeout_seconds
        if budget_seconds is not None:
            budget = min(budget, budget_seconds)

        owner = uuid.uuid4().hex
        lock_ttl = int(budget) + LOCK_MARGIN_SECONDS
        if not self.store.acquire_sync_lock(team_id, owner, self._wall_clock(), lock_ttl):
            raise SyncInProgressError(f'A sync is already running for team {team_id}')

        try:
            return self._run(team_id, feed_url, team.time_zone, now, budget, own_feed)
        finally:
            try:
                self.store.release_sync_lock(team_id, owner)
            except PersistenceError as e:
                logger.error(
                    f"Failed to release sync lock for team {team_id}: {e}",
                    extra={'team_id': team_id, 'error_type': type(e).__name__}
                )

    def _run(self, team_id: str, feed_url: str, time_zone: Optional[str],
             now: datetime, budget: float, own_feed: bool) -> SyncResult:
        deadline = Deadline(budget, clock=self._clock)
        time_zone = time_zone or self.config.default_time_zone
        logger.info(
            f"Starting calendar sync for team {team_id} (timezone {time_zone})",
            extra={'team_id': team_id}
        )

        deadline.check('start')
        text = self.fetcher.fetch(
            feed_url, timeout=min(self.config.timeout_seconds, deadline.remaining())
        )
        deadline.check('fetch')

        components = parse(text, default_tz=time_zone)
        window_start = now - timedelta(days=self.config.lookback_days)
        window_end = now + timedelta(days=self.config.lookahead_days)
        instances = expand(components, window_start, window_end)
        deadline.check('expand')

        existing = self.store.get_trainings(team_id)
        deadline.check('load')

        reap_window = None
        if self.config.reap_missing_events and own_feed:
            reap_window = (window_start, window_end)
        elif self.config.reap_missing_events:
            logger.info(f"Feed {feed_url} is not the team feed of {team_id}, not reaping")
        outcome = reconcile(
            team_id, instances, existing, now,
            time_zone=time_zone, reap_window=reap_window
        )

        self.store.apply_writes(
            outcome.writes, before_batch=lambda: deadline.check('write')
        )
        self.store.mark_team_synced(team_id, now)

        logger.info(
            f"Calendar sync done for team {team_id}: {outcome.result.to_dict()}",
            extra={'team_id': team_id}
        )
        return outcome.result

    def sweep(self, now: Optional[datetime] = None,
              budget_seconds: Optional[float] = None) -> SweepResult:
        """
        Sync every team with a feed, isolating failures per team.

        Args:
            now: Time of the sync pass (default: current UTC time)
            budget_seconds: Time available to the whole sweep; each team gets
                at most what is left, and teams are skipped once too little
                remains

        Returns:
            SweepResult whose totals only include teams that succeeded
        """
        now = now or utc_now()
        sweep_deadline = None
        if budget_seconds is not None:
            sweep_deadline = Deadline(budget_seconds, clock=self._clock)

        totals = SyncResult()
        failures = {}
        skipped = []
        synced = 0

        for team in self.store.get_teams_with_feed():
            team_budget = None
            if sweep_deadline is not None:
                team_budget = sweep_deadline.remaining()
                if team_budget < MIN_TEAM_BUDGET_SECONDS:
                    logger.warning(
                        f"Sweep budget exhausted, skipping team {team.team_id}",
                        extra={'team_id': team.team_id}
                    )
                    skipped.append(team.team_id)
                    continue

            try:
                result = self.sync_team(team.team_id, now=now, budget_seconds=team_budget)
            except Exception as e:
                logger.error(
                    f"Calendar sync failed for team {team.team_id}: {e}",
                    extra={'team_id': team.team_id, 'error_type': type(e).__name__}
                )
                failures[team.team_id] = f'{type(e).__name__}: {e}'
                continue

            synced += 1
            totals.seen += result.seen
            totals.created += result.created
            totals.updated += result.updated
            totals.cancelled += result.cancelled
            totals.reaped += result.reaped

        logger.info(
            f"ICS sweep done: {synced} teams synced, {len(failures)} failed, "
            f"{len(skipped)} skipped, totals {totals.to_dict()}"
        )
        return SweepResult(
            totals=totals, teams_synced=synced, failures=failures, skipped=skipped
        )
