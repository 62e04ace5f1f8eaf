"""
Shared test configuration and fixtures for the traffic fetcher tests.
"""

import pytest
import os
import tempfile
import shutil
from datetime import datetime, timezone
from unittest.mock import Mock, patch
from typing import Dict

from tests.fixtures.fakes import FakeBackend, fake_tool_run

from traffic_fetcher import (TimeRange, FetcherConfig, S3Config, AzureConfig,
                             MergeEngine, FilterEngine)


FETCHER_ENV_VARS = [
    'FETCHER_FROM', 'FETCHER_TO', 'FETCHER_TOKEN', 'FETCHER_API_URL', 'FETCHER_ORGANIZATION_ID',
    'FETCHER_S3_BUCKET', 'FETCHER_S3_REGION', 'FETCHER_S3_ENDPOINT_URL',
    'FETCHER_AWS_ACCESS_KEY_ID', 'FETCHER_AWS_SECRET_ACCESS_KEY',
    'FETCHER_AZURE_CONTAINER', 'FETCHER_AZURE_CONNECTION_STRING',
    'FETCHER_AZURE_ACCOUNT_URL', 'FETCHER_AZURE_SAS_TOKEN',
]


@pytest.fixture(autouse=True)
def clean_fetcher_env():
    """Keep FETCHER_* variables from the developer's shell out of the tests"""
    original_env = {}

    for key in FETCHER_ENV_VARS:
        original_env[key] = os.environ.pop(key, None)

    yield

    for key, value in original_env.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def fake_backend_class():
    return FakeBackend


@pytest.fixture
def scenario_backend():
    """Two pcap files inside 2020-12-20T05:00Z..07:30Z, plus files on and outside the bounds"""
    return FakeBackend({
        '2020/12/20/04/55.pcap': 50,
        '2020/12/20/05/00.pcap': 70,
        '2020/12/20/05/10.pcap': 100,
        '2020/12/20/06/40.pcap': 200,
        '2020/12/20/07/30.pcap': 80,
    })


@pytest.fixture
def scenario_range():
    return TimeRange(datetime(2020, 12, 20, 5, 0, tzinfo=timezone.utc),
                     datetime(2020, 12, 20, 7, 30, tzinfo=timezone.utc))


@pytest.fixture
def s3_config():
    return S3Config(bucket='traffic-bucket', region='eu-central-1',
                    access_key_id='test_access_key', secret_access_key='test_secret_key')


@pytest.fixture
def azure_config():
    return AzureConfig(container='traffic', connection_string='UseDevelopmentStorage=true')


@pytest.fixture
def make_config(scenario_range, s3_config, temp_dir):
    def _make(**overrides):
        values = {
            'time_range': scenario_range,
            'storage': s3_config,
            'output_dir': os.path.join(temp_dir, 'out'),
            'scratch_base': temp_dir,
        }
        values.update(overrides)
        return FetcherConfig(**values)
    return _make


@pytest.fixture
def s3_argv():
    return [
        '--from', '2020-12-20T05:00:00Z',
        '--to', '2020-12-20T07:30:00Z',
        '--s3-bucket', 'traffic-bucket',
        '--s3-region', 'eu-central-1',
        '--aws-access-key-id', 'test_access_key',
        '--aws-secret-access-key', 'test_secret_key',
    ]


@pytest.fixture
def available_engines():
    """Merge and filter engines whose binaries are 'installed' and whose runs are faked"""
    with patch('traffic_fetcher.shutil.which', return_value='/usr/bin/tool'), \
         patch('traffic_fetcher.subprocess.run', side_effect=fake_tool_run) as mock_run:
        yield MergeEngine(), FilterEngine(), mock_run


@pytest.fixture
def mock_lookup():
    """Lookup client answering from a dict of identifier -> ipv4"""
    def _make(addresses: Dict[str, str]):
        lookup = Mock()
        lookup.get_sim.side_effect = lambda identifier: {'ipv4': addresses[identifier]}
        return lookup
    return _make
