"""Shared fixtures for calendar sync tests."""
from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from storage.dynamodb_manager import DynamoDBManager


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def dynamodb_tables():
    """Create mock teams and trainings tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        teams = dynamodb.create_table(
            TableName='test-teams',
            KeySchema=[{'AttributeName': 'team_id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'team_id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )
        trainings = dynamodb.create_table(
            TableName='test-trainings',
            KeySchema=[
                {'AttributeName': 'team_id', 'KeyType': 'HASH'},
                {'AttributeName': 'instance_id', 'KeyType': 'RANGE'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'team_id', 'AttributeType': 'S'},
                {'AttributeName': 'instance_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield teams, trainings


@pytest.fixture
def dynamodb_manager(dynamodb_tables):
    """DynamoDBManager bound to the mock tables."""
    return DynamoDBManager('test-teams', 'test-trainings', region_name='us-east-1')


@pytest.fixture
def build_ics():
    """Return a helper assembling a VCALENDAR around VEVENT bodies."""
    def _build(*events, headers=()):
        lines = ['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//ChampionTrack//Tests//EN']
        lines.extend(headers)
        for event in events:
            lines.append('BEGIN:VEVENT')
            lines.extend(event)
            lines.append('END:VEVENT')
        lines.append('END:VCALENDAR')
        return '\r\n'.join(lines) + '\r\n'

    return _build


@pytest.fixture
def sync_now():
    """Fixed sync time shared by pipeline tests."""
    return datetime(2025, 3, 9, 12, 0, tzinfo=timezone.utc)
