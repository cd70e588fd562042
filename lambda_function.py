"""AWS Lambda handlers for team calendar (ICS) sync."""
import base64
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from config import SyncConfig
from feed.ics_feed import IcsFeedFetcher, normalize_feed_url
from processor.exceptions import (
    FetchError,
    InvalidFeedError,
    ParseError,
    SyncInProgressError,
    SyncTimeoutError,
    ValidationError,
)
from storage.dynamodb_manager import DynamoDBManager
from sync.team_sync import TeamCalendarSync, validate_team_id

EXTRA_FIELDS = (
    'team_id', 'error_type', 'duration_seconds', 'teams_synced', 'teams_failed',
    'teams_skipped'
)
REMAINING_TIME_MARGIN_SECONDS = 5


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def build_team_sync(config: SyncConfig) -> TeamCalendarSync:
    """Wire the fetcher, store and pipeline from configuration."""
    return TeamCalendarSync(
        fetcher=IcsFeedFetcher(timeout=config.timeout_seconds),
        store=DynamoDBManager(
            teams_table_name=config.teams_table_name,
            trainings_table_name=config.trainings_table_name,
            region_name=config.region_name
        ),
        config=config
    )


def _remaining_budget(context: Any) -> Optional[float]:
    """Seconds left before the Lambda times out, minus a safety margin."""
    remaining_ms = getattr(context, 'get_remaining_time_in_millis', None)
    remaining_ms = remaining_ms() if callable(remaining_ms) else None
    if not isinstance(remaining_ms, (int, float)):
        return None
    return max(0.0, remaining_ms / 1000 - REMAINING_TIME_MARGIN_SECONDS)


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _error(status_code: int, error: Exception) -> Dict[str, Any]:
    return _response(status_code, {
        'error': str(error),
        'error_type': type(error).__name__
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Scheduled sweep syncing every team that has a calendar feed.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    config = SyncConfig.from_env()
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info("ICS sweep started")

    try:
        team_sync = build_team_sync(config)
        sweep = team_sync.sweep(budget_seconds=_remaining_budget(context))
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"ICS sweep failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    logger.info(
        "ICS sweep completed",
        extra={
            'duration_seconds': round(duration, 2),
            'teams_synced': sweep.teams_synced,
            'teams_failed': len(sweep.failures),
            'teams_skipped': len(sweep.skipped)
        }
    )

    return _response(200, {
        'message': 'Sync completed',
        'statistics': dict(
            sweep.totals.to_dict(),
            teams_synced=sweep.teams_synced,
            teams_failed=len(sweep.failures),
            teams_skipped=len(sweep.skipped),
            duration_seconds=round(duration, 2)
        ),
        'errors': sweep.failures,
        'skipped': sweep.skipped
    })


def _read_body(event: Dict[str, Any]) -> Dict[str, Any]:
    raw = event.get('body') or '{}'
    if event.get('isBase64Encoded'):
        raw = base64.b64decode(raw).decode('utf-8')
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f'Request body is not valid JSON: {e}') from e
    if not isinstance(body, dict):
        raise ValidationError('Request body must be a JSON object')
    return body


def _authorized(event: Dict[str, Any], token: Optional[str]) -> bool:
    if not token:
        return False
    headers = {k.lower(): v for k, v in (event.get('headers') or {}).items()}
    supplied = headers.get('authorization') or ''
    return hmac.compare_digest(supplied.encode('utf-8'), f'Bearer {token}'.encode('utf-8'))


def http_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    API Gateway "sync now" endpoint for one team.

    Expects ``Authorization: Bearer <token>`` and a JSON body
    ``{"teamId": "...", "icsUrl": "..."}`` where icsUrl is optional.

    Args:
        event: API Gateway proxy event
        context: Lambda context object

    Returns:
        API Gateway proxy response
    """
    config = SyncConfig.from_env()
    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    if not _authorized(event, config.api_token):
        logger.warning("Rejected sync request with missing or invalid bearer token")
        return _response(401, {'error': 'Unauthorized', 'error_type': 'AuthError'})

    try:
        body = _read_body(event)
        team_id = validate_team_id(body.get('teamId'))
        ics_url = body.get('icsUrl')
        if ics_url is not None:
            if not isinstance(ics_url, str):
                raise ValidationError('icsUrl must be a string')
            ics_url = normalize_feed_url(ics_url) if ics_url.strip() else None
    except ValidationError as e:
        return _error(400, e)

    try:
        team_sync = build_team_sync(config)
        result = team_sync.sync_team(
            team_id, ics_url=ics_url, budget_seconds=_remaining_budget(context)
        )
    except ValidationError as e:
        return _error(400, e)
    except SyncInProgressError as e:
        return _error(409, e)
    except (FetchError, InvalidFeedError, ParseError) as e:
        logger.error(
            f"Calendar feed error for team {team_id}: {e}",
            extra={'team_id': team_id, 'error_type': type(e).__name__}
        )
        return _error(502, e)
    except SyncTimeoutError as e:
        logger.error(f"Sync timed out for team {team_id}: {e}", extra={'team_id': team_id})
        return _error(504, e)
    except Exception as e:
        logger.error(
            f"Sync failed for team {team_id}: {e}",
            extra={'team_id': team_id, 'error_type': type(e).__name__},
            exc_info=True
        )
        return _error(500, e)

    return _response(200, result.to_dict())
