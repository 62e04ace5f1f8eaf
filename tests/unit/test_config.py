"""
Unit tests for command line parsing and configuration validation.
"""

import os
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import patch

from traffic_fetcher import (parse_command_line_args, build_config, parse_datetime, S3Config, AzureConfig,
                             ConfigurationError, MissingCredential, DEFAULT_API_URL)


class TestParseDatetime:

    def test_zulu(self):
        assert parse_datetime('2020-12-20T18:00:00Z', 'from') == datetime(2020, 12, 20, 18, tzinfo=timezone.utc)

    def test_offset_is_converted_to_utc(self):
        assert parse_datetime('2020-12-20T19:00:00+01:00', 'from') == datetime(2020, 12, 20, 18, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_datetime('2020-12-20T18:00:00', 'from').tzinfo == timezone.utc

    @pytest.mark.parametrize('value', ['yesterday', '2020-13-01T00:00:00Z', '20/12/2020'])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError, match='2020-12-20T18:00:00Z'):
            parse_datetime(value, 'from')

    def test_missing(self):
        with pytest.raises(ConfigurationError, match='--to is required'):
            parse_datetime(None, 'to')


class TestParseCommandLineArgs:
    """Test argparse wiring"""

    def test_repeatable_filters(self, s3_argv):
        args = parse_command_line_args(s3_argv + ['--ip', '10.0.0.1', '--ip', '10.0.0.2',
                                                  '--iccid', '8991101200003204514', '--simid', '000123456'])

        assert args.ip == ['10.0.0.1', '10.0.0.2']
        assert args.iccid == ['8991101200003204514']
        assert args.simid == ['000123456']

    def test_defaults(self, s3_argv):
        args = parse_command_line_args(s3_argv)

        assert args.api_url == DEFAULT_API_URL
        assert args.output_dir == '.'
        assert args.dry_run is False
        assert args.keep_tmp is False

    def test_environment_fallback(self):
        env = {
            'FETCHER_FROM': '2020-12-20T05:00:00Z',
            'FETCHER_TO': '2020-12-20T07:30:00Z',
            'FETCHER_AZURE_CONTAINER': 'traffic',
            'FETCHER_AZURE_CONNECTION_STRING': 'UseDevelopmentStorage=true',
            'FETCHER_TOKEN': 'env_token',
        }
        with patch.dict(os.environ, env):
            args = parse_command_line_args([])

        assert args.from_time == '2020-12-20T05:00:00Z'
        assert args.azure_container == 'traffic'
        assert args.token == 'env_token'

    def test_command_line_overrides_environment(self, s3_argv):
        with patch.dict(os.environ, {'FETCHER_S3_BUCKET': 'from-env'}):
            args = parse_command_line_args(s3_argv)

        assert args.s3_bucket == 'traffic-bucket'

    def test_verbose_and_quiet_conflict(self, s3_argv):
        with pytest.raises(SystemExit):
            parse_command_line_args(s3_argv + ['--verbose', '--quiet'])

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse_command_line_args(['--version'])

        assert exc_info.value.code == 0
        assert 'traffic-fetcher' in capsys.readouterr().out


class TestBuildConfig:
    """Test eager validation of the run configuration"""

    def test_valid_s3_config(self, s3_argv):
        config = build_config(parse_command_line_args(s3_argv + ['--ip', '10.0.0.1']))

        assert config.time_range.start == datetime(2020, 12, 20, 5, 0, tzinfo=timezone.utc)
        assert config.time_range.end == datetime(2020, 12, 20, 7, 30, tzinfo=timezone.utc)
        assert config.storage == S3Config('traffic-bucket', 'eu-central-1', 'test_access_key', 'test_secret_key')
        assert config.ips == ('10.0.0.1',)
        assert config.has_filters is True

    def test_config_is_immutable(self, s3_argv):
        config = build_config(parse_command_line_args(s3_argv))

        with pytest.raises(AttributeError):
            config.token = 'changed'

    def test_valid_azure_connection_string(self):
        args = parse_command_line_args([
            '--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z',
            '--azure-container', 'traffic', '--azure-connection-string', 'UseDevelopmentStorage=true',
        ])

        assert build_config(args).storage == AzureConfig(container='traffic',
                                                         connection_string='UseDevelopmentStorage=true')

    def test_valid_azure_sas(self):
        args = parse_command_line_args([
            '--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z',
            '--azure-container', 'traffic', '--azure-account-url', 'https://acct.blob.core.windows.net',
            '--azure-sas-token', 'sv=2020&sig=abc',
        ])

        storage = build_config(args).storage
        assert storage.account_url == 'https://acct.blob.core.windows.net'
        assert storage.sas_token == 'sv=2020&sig=abc'

    def test_equal_range_is_rejected(self, s3_argv):
        argv = s3_argv[:]
        argv[3] = argv[1]
        with pytest.raises(ConfigurationError, match='must be before'):
            build_config(parse_command_line_args(argv))

    def test_inverted_range_is_rejected(self, s3_argv):
        argv = s3_argv[:]
        argv[1], argv[3] = argv[3], argv[1]
        with pytest.raises(ConfigurationError):
            build_config(parse_command_line_args(argv))

    def test_identifier_without_token(self, s3_argv):
        with pytest.raises(MissingCredential, match='--token'):
            build_config(parse_command_line_args(s3_argv + ['--iccid', '8991101200003204514']))

    def test_partial_s3_credentials(self, s3_argv):
        argv = s3_argv[:-2]
        with pytest.raises(ConfigurationError, match='--aws-secret-access-key'):
            build_config(parse_command_line_args(argv))

    def test_no_backend_credentials(self):
        args = parse_command_line_args(['--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z'])
        with pytest.raises(ConfigurationError, match='S3 or Azure'):
            build_config(args)

    def test_both_backends(self, s3_argv):
        args = parse_command_line_args(s3_argv + ['--azure-container', 'traffic'])
        with pytest.raises(ConfigurationError, match='not both'):
            build_config(args)

    def test_azure_without_container(self):
        args = parse_command_line_args(['--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z',
                                        '--azure-connection-string', 'UseDevelopmentStorage=true'])
        with pytest.raises(ConfigurationError, match='--azure-container'):
            build_config(args)

    def test_azure_sas_without_account_url(self):
        args = parse_command_line_args(['--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z',
                                        '--azure-container', 'traffic', '--azure-sas-token', 'sig'])
        with pytest.raises(ConfigurationError, match='--azure-account-url'):
            build_config(args)

    def test_azure_contradictory_credentials(self):
        args = parse_command_line_args(['--from', '2020-12-20T05:00:00Z', '--to', '2020-12-20T07:30:00Z',
                                        '--azure-container', 'traffic',
                                        '--azure-connection-string', 'UseDevelopmentStorage=true',
                                        '--azure-sas-token', 'sig'])
        with pytest.raises(ConfigurationError, match='not both'):
            build_config(args)

    def test_output_options(self, s3_argv, temp_dir):
        config = build_config(parse_command_line_args(
            s3_argv + ['--output-dir', temp_dir, '--output', 'mine.pcap', '--keep-tmp', '--dry-run']))

        assert config.output_dir == temp_dir
        assert config.output_name == 'mine.pcap'
        assert config.keep_scratch is True
        assert config.dry_run is True

    def test_tool_options(self, s3_argv):
        config = build_config(parse_command_line_args(s3_argv + ['--mergecap', '/opt/ws/mergecap']))

        assert config.mergecap_binary == '/opt/ws/mergecap'
        assert config.tshark_binary == 'tshark'
