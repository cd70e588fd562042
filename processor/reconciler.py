"""Reconciliation of expanded event instances against persisted trainings."""
import hashlib
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from processor.models import (
    Decision,
    EventInstance,
    PersistedTraining,
    ReconcileOutcome,
    SyncResult,
    TrainingWrite,
)

logger = logging.getLogger(__name__)

SOURCE = 'ics'


def iso_instant(instant: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    utc = instant.astimezone(timezone.utc)
    return utc.strftime('%Y-%m-%dT%H:%M:%S.') + f'{utc.microsecond // 1000:03d}Z'


def instance_id(team_id: str, uid: str, start: datetime) -> str:
    """
    Generate the deterministic identity of a training occurrence.

    Title or description drift never changes the identity, only the hash.

    Args:
        team_id: Owning team
        uid: Calendar UID (or its synthesized fallback)
        start: Occurrence start instant

    Returns:
        20 character hex identifier
    """
    start_millis = int(start.timestamp() * 1000)
    composite = f'{team_id}:{uid}:{start_millis}'
    return hashlib.sha1(composite.encode('utf-8')).hexdigest()[:20]


def content_hash(title: str, description: str, location: str, start: datetime,
                 end: datetime, status: str, all_day: bool, cancelled: bool) -> str:
    """Fingerprint the fields whose change requires a rewrite."""
    payload = json.dumps({
        'title': title or '',
        'description': description or '',
        'location': location or '',
        'start': iso_instant(start),
        'end': iso_instant(end),
        'status': status or '',
        'allDay': bool(all_day),
        'cancelled': bool(cancelled),
    }, separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def instance_hash(instance: EventInstance) -> str:
    return content_hash(
        instance.title, instance.description, instance.location, instance.start,
        instance.end, instance.status, instance.is_all_day, instance.cancelled
    )


def reconcile(team_id: str,
              instances: List[EventInstance],
              existing: Mapping[str, PersistedTraining],
              now: datetime,
              time_zone: str = 'Europe/Paris',
              reap_window: Optional[Tuple[datetime, datetime]] = None) -> ReconcileOutcome:
    """
    Decide create, update or touch for every instance of a sync pass.

    Args:
        team_id: Team being synced
        instances: Expanded occurrences from the feed
        existing: Persisted trainings of the team keyed by instance id
        now: Timestamp of this sync pass
        time_zone: Team zone stored alongside each training
        reap_window: When given, existing feed trainings starting inside this
            window that the feed no longer produces are marked cancelled

    Returns:
        ReconcileOutcome with the tally and the writes to apply
    """
    result = SyncResult()
    writes: List[TrainingWrite] = []
    produced: Dict[str, PersistedTraining] = {}

    for instance in instances:
        result.seen += 1
        training_id = instance_id(team_id, instance.uid, instance.start)
        if training_id in produced:
            logger.info(f"Duplicate occurrence {training_id} in feed, skipping")
            continue

        candidate = _to_training(team_id, training_id, instance, now, time_zone)
        previous = existing.get(training_id)

        if previous is None:
            write = TrainingWrite(Decision.CREATE, candidate)
            if candidate.cancelled:
                result.cancelled += 1
            else:
                result.created += 1
        elif previous.hash != candidate.hash or previous.cancelled != candidate.cancelled:
            write = TrainingWrite(Decision.UPDATE, replace(
                candidate,
                created_at=previous.created_at,
                questionnaire_notified=previous.questionnaire_notified,
            ))
            if candidate.cancelled and not previous.cancelled:
                result.cancelled += 1
            else:
                result.updated += 1
        else:
            write = TrainingWrite(Decision.TOUCH, replace(previous, last_seen_at=now))

        produced[training_id] = write.training
        writes.append(write)

    if reap_window is not None:
        for training in _stale_trainings(existing, produced, reap_window):
            writes.append(TrainingWrite(Decision.REAP, _cancelled_copy(training, now)))
            result.reaped += 1

    logger.info(
        f"Reconciled team {team_id}: seen={result.seen} created={result.created} "
        f"updated={result.updated} cancelled={result.cancelled} reaped={result.reaped}"
    )
    return ReconcileOutcome(result=result, writes=writes)


def _to_training(team_id: str, training_id: str, instance: EventInstance,
                 now: datetime, time_zone: str) -> PersistedTraining:
    return PersistedTraining(
        instance_id=training_id,
        team_id=team_id,
        uid=instance.uid,
        title=instance.title,
        description=instance.description,
        location=instance.location,
        status=instance.status,
        cancelled=instance.cancelled,
        is_all_day=instance.is_all_day,
        start=instance.start,
        end=instance.end,
        time_zone=time_zone,
        display_tz=instance.display_tz,
        hash=instance_hash(instance),
        last_seen_at=now,
        updated_at=now,
        created_at=now,
        source=SOURCE,
        questionnaire_notified=False,
    )


def _stale_trainings(existing: Mapping[str, PersistedTraining],
                     produced: Mapping[str, PersistedTraining],
                     window: Tuple[datetime, datetime]) -> List[PersistedTraining]:
    window_start, window_end = window
    return [
        training for training_id, training in existing.items()
        if training_id not in produced
        and training.source == SOURCE
        and not training.cancelled
        and window_start <= training.start <= window_end
    ]


def _cancelled_copy(training: PersistedTraining, now: datetime) -> PersistedTraining:
    return replace(
        training,
        status='CANCELLED',
        cancelled=True,
        hash=content_hash(
            training.title, training.description, training.location, training.start,
            training.end, 'CANCELLED', training.is_all_day, True
        ),
        updated_at=now,
    )
