"""Runtime configuration read from Lambda environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _flag(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class SyncConfig:
    """Settings shared by the scheduled and on-demand handlers."""
    teams_table_name: str = 'teams'
    trainings_table_name: str = 'trainings'
    region_name: Optional[str] = None
    log_level: str = 'INFO'
    timeout_seconds: int = 30
    sync_timeout_seconds: int = 240
    lookback_days: int = 1
    lookahead_days: int = 180
    default_time_zone: str = 'Europe/Paris'
    api_token: Optional[str] = None
    reap_missing_events: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'SyncConfig':
        """
        Build the configuration from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            SyncConfig instance
        """
        env = os.environ if environ is None else environ
        return cls(
            teams_table_name=env.get('TEAMS_TABLE_NAME', 'teams'),
            trainings_table_name=env.get('TRAININGS_TABLE_NAME', 'trainings'),
            region_name=env.get('AWS_REGION') or None,
            log_level=env.get('LOG_LEVEL', 'INFO'),
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '30')),
            sync_timeout_seconds=int(env.get('SYNC_TIMEOUT_SECONDS', '240')),
            lookback_days=int(env.get('LOOKBACK_DAYS', '1')),
            lookahead_days=int(env.get('LOOKAHEAD_DAYS', '180')),
            default_time_zone=env.get('DEFAULT_TIME_ZONE', 'Europe/Paris'),
            api_token=env.get('SYNC_API_TOKEN') or None,
            reap_missing_events=_flag(env.get('REAP_MISSING_EVENTS', 'true')),
        )
