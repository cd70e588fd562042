"""DynamoDB manager for team and training storage operations."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from processor.exceptions import PersistenceError
from processor.models import PersistedTraining, Team, TrainingWrite
from processor.reconciler import iso_instant

logger = logging.getLogger(__name__)

ISO_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, teams_table_name: str, trainings_table_name: str,
                 region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table references.

        Args:
            teams_table_name: Table holding team metadata (hash key team_id)
            trainings_table_name: Table holding trainings (team_id, instance_id)
            region_name: Optional AWS region override
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.teams = self.dynamodb.Table(teams_table_name)
        self.trainings = self.dynamodb.Table(trainings_table_name)
        logger.info(
            f"Initialized DynamoDBManager for tables: {teams_table_name}, "
            f"{trainings_table_name}"
        )

    def get_team(self, team_id: str) -> Optional[Team]:
        """
        Load a team's calendar settings.

        Args:
            team_id: Team identifier

        Returns:
            Team object or None if the team does not exist
        """
        try:
            response = self.teams.get_item(Key={'team_id': team_id})
        except ClientError as e:
            logger.error(f"Error reading team {team_id}: {e}")
            raise PersistenceError(f'Failed to read team {team_id}: {e}') from e

        item = response.get('Item')
        return self._item_to_team(item) if item else None

    def get_teams_with_feed(self) -> List[Team]:
        """
        Scan for every team with a configured feed URL.

        Returns:
            List of Team objects
        """
        logger.info("Scanning teams table for configured calendar feeds")
        scan_filter = Attr('ics_url').exists() & Attr('ics_url').ne('')

        try:
            response = self.teams.scan(FilterExpression=scan_filter)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.teams.scan(
                    FilterExpression=scan_filter,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning teams table: {e}")
            raise PersistenceError(f'Failed to list teams: {e}') from e

        teams = [self._item_to_team(item) for item in items]
        logger.info(f"Found {len(teams)} teams with a calendar feed")
        return teams

    def get_trainings(self, team_id: str) -> Dict[str, PersistedTraining]:
        """
        Retrieve every persisted training of a team.

        Args:
            team_id: Team identifier

        Returns:
            Dictionary mapping instance_id to PersistedTraining objects
        """
        condition = Key('team_id').eq(team_id)
        try:
            response = self.trainings.query(KeyConditionExpression=condition)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.trainings.query(
                    KeyConditionExpression=condition,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error querying trainings for team {team_id}: {e}")
            raise PersistenceError(f'Failed to read trainings of {team_id}: {e}') from e

        trainings = {}
        for item in items:
            training = self._item_to_training(item)
            if training:
                trainings[training.instance_id] = training

        logger.info(f"Retrieved {len(trainings)} trainings for team {team_id}")
        return trainings

    def apply_writes(self, writes: List[TrainingWrite],
                     before_batch: Optional[Callable[[], None]] = None) -> int:
        """
        Write reconciled trainings in batches of 25 items.

        A failed batch aborts the remaining ones; rerunning the sync is safe
        because every write is keyed by the training identity.

        Args:
            writes: Writes produced by the reconciler
            before_batch: Called before each batch is flushed, may raise to abort

        Returns:
            Count of written trainings

        Raises:
            PersistenceError: If DynamoDB rejects a batch
        """
        if not writes:
            return 0

        logger.info(f"Writing {len(writes)} trainings to DynamoDB")
        written = 0

        for i in range(0, len(writes), self.BATCH_SIZE):
            batch = writes[i:i + self.BATCH_SIZE]
            if before_batch is not None:
                before_batch()

            try:
                with self.trainings.batch_writer() as writer:
                    for write in batch:
                        writer.put_item(Item=self._training_to_item(write.training))
            except ClientError as e:
                logger.error(f"Error writing batch {i // self.BATCH_SIZE + 1}: {e}")
                raise PersistenceError(f'Failed to write trainings: {e}') from e
            written += len(batch)

        logger.info(f"Successfully wrote {written} trainings")
        return written

    def mark_team_synced(self, team_id: str, synced_at: datetime) -> None:
        try:
            self.teams.update_item(
                Key={'team_id': team_id},
                UpdateExpression='SET last_ics_sync_at = :at',
                ExpressionAttributeValues={':at': iso_instant(synced_at)}
            )
        except ClientError as e:
            logger.error(f"Error recording sync time for team {team_id}: {e}")
            raise PersistenceError(f'Failed to update team {team_id}: {e}') from e

    def acquire_sync_lock(self, team_id: str, owner: str, now: datetime,
                          ttl_seconds: int) -> bool:
        """
        Take the per-team sync lock unless an unexpired one is held.

        Args:
            team_id: Team identifier
            owner: Token identifying this invocation
            now: Current time
            ttl_seconds: Lease length, after which the lock may be taken over

        Returns:
            True if the lock was acquired, False if another owner holds it
        """
        try:
            self.teams.update_item(
                Key={'team_id': team_id},
                UpdateExpression='SET sync_lock_owner = :owner, sync_lock_until = :until',
                ConditionExpression=(
                    'attribute_exists(team_id) AND '
                    '(attribute_not_exists(sync_lock_until) OR sync_lock_until < :now)'
                ),
                ExpressionAttributeValues={
                    ':owner': owner,
                    ':until': iso_instant(now + timedelta(seconds=ttl_seconds)),
                    ':now': iso_instant(now),
                }
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                logger.warning(f"Sync lock for team {team_id} is held by another invocation")
                return False
            raise PersistenceError(f'Failed to lock team {team_id}: {e}') from e
        return True

    def release_sync_lock(self, team_id: str, owner: str) -> None:
        try:
            self.teams.update_item(
                Key={'team_id': team_id},
                UpdateExpression='REMOVE sync_lock_owner, sync_lock_until',
                ConditionExpression='sync_lock_owner = :owner',
                ExpressionAttributeValues={':owner': owner}
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
                logger.warning(f"Sync lock for team {team_id} was taken over before release")
                return
            raise PersistenceError(f'Failed to unlock team {team_id}: {e}') from e

    def _item_to_team(self, item: dict) -> Team:
        return Team(
            team_id=item['team_id'],
            ics_url=item.get('ics_url') or None,
            time_zone=item.get('time_zone') or None,
            last_ics_sync_at=parse_instant(item.get('last_ics_sync_at')),
        )

    def _item_to_training(self, item: dict) -> Optional[PersistedTraining]:
        """
        Convert DynamoDB item to PersistedTraining object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            PersistedTraining object or None if conversion fails
        """
        try:
            return PersistedTraining(
                instance_id=item['instance_id'],
                team_id=item['team_id'],
                uid=item['uid'],
                title=item.get('title', ''),
                description=item.get('description', ''),
                location=item.get('location', ''),
                status=item.get('status', 'CONFIRMED'),
                cancelled=bool(item.get('cancelled', False)),
                is_all_day=bool(item.get('all_day', False)),
                start=parse_instant(item['start']),
                end=parse_instant(item['end']),
                time_zone=item.get('time_zone', 'Europe/Paris'),
                display_tz=item.get('display_tz', 'Europe/Paris'),
                hash=item.get('hash', ''),
                last_seen_at=parse_instant(item['last_seen_at']),
                updated_at=parse_instant(item['updated_at']),
                created_at=parse_instant(item['created_at']),
                source=item.get('source', 'ics'),
                questionnaire_notified=bool(item.get('questionnaire_notified', False)),
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to PersistedTraining: {e}")
            return None

    def _training_to_item(self, training: PersistedTraining) -> dict:
        return {
            'team_id': training.team_id,
            'instance_id': training.instance_id,
            'uid': training.uid,
            'title': training.title,
            'description': training.description,
            'location': training.location,
            'status': training.status,
            'cancelled': training.cancelled,
            'all_day': training.is_all_day,
            'start': iso_instant(training.start),
            'end': iso_instant(training.end),
            'time_zone': training.time_zone,
            'display_tz': training.display_tz,
            'source': training.source,
            'hash': training.hash,
            'last_seen_at': iso_instant(training.last_seen_at),
            'updated_at': iso_instant(training.updated_at),
            'created_at': iso_instant(training.created_at),
            'questionnaire_notified': training.questionnaire_notified,
        }
