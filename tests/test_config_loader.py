#!/usr/bin/env python3
"""
Tests for configuration loading and validation
Tests load_config() precedence and the validate_config() fail-fast gate
Uses only Python stdlib and unittest
"""

import unittest
import sys
import os
import json
import logging
import tempfile
from unittest.mock import patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from build_monitor import config_loader
from build_monitor.config_loader import load_config, validate_config, parse_csv_list
from build_monitor.errors import ConfigurationError

MISSING_FILE = '/nonexistent/config.json'


def valid_config(**overrides):
    config = {
        'gitlab': 'gitlab.example.com',
        'token': 'glpat-test-token',
        'projects': 'team/api',
        'groups': [],
        'poll_interval_sec': 60,
    }
    config.update(overrides)
    return config


class TestLoadConfigFromEnvironment(unittest.TestCase):

    def test_defaults(self):
        config = load_config(MISSING_FILE, environ={})
        self.assertIsNone(config['gitlab'])
        self.assertIsNone(config['token'])
        self.assertEqual(config['groups'], [])
        self.assertEqual(config['blacklist'], [])
        self.assertIsNone(config['ref'])
        self.assertEqual(config['poll_interval_sec'], 60)
        self.assertEqual(config['port'], 8080)
        self.assertEqual(config['max_retries'], 3)
        self.assertFalse(config['insecure_skip_verify'])
        self.assertFalse(config['use_cookie'])

    def test_environment_values(self):
        environ = {
            'GITLAB_HOST': 'gitlab.example.com',
            'GITLAB_TOKEN': 'secret',
            'GITLAB_PROJECTS': 'team/api,team/web/develop',
            'GITLAB_GROUPS': 'platform, infra',
            'GITLAB_BLACKLIST': 'sandbox',
            'GITLAB_REF': 'release',
            'POLL_INTERVAL': '30',
            'PORT': '9000',
            'INSECURE_SKIP_VERIFY': 'true',
        }
        config = load_config(MISSING_FILE, environ=environ)
        self.assertEqual(config['gitlab'], 'gitlab.example.com')
        self.assertEqual(config['token'], 'secret')
        self.assertEqual(config['projects'], 'team/api,team/web/develop')
        self.assertEqual(config['groups'], ['platform', 'infra'])
        self.assertEqual(config['blacklist'], ['sandbox'])
        self.assertEqual(config['ref'], 'release')
        self.assertEqual(config['poll_interval_sec'], 30)
        self.assertEqual(config['port'], 9000)
        self.assertTrue(config['insecure_skip_verify'])

    def test_invalid_integer_falls_back_to_default(self):
        config = load_config(MISSING_FILE, environ={'POLL_INTERVAL': 'often'})
        self.assertEqual(config['poll_interval_sec'], 60)

    def test_empty_ref_means_default_branch(self):
        config = load_config(MISSING_FILE, environ={'GITLAB_REF': ''})
        self.assertIsNone(config['ref'])


class TestLoadConfigFromFile(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_file = os.path.join(self.tmpdir.name, 'config.json')
        with open(self.config_file, 'w') as f:
            json.dump({
                'gitlab': 'gitlab.file.example.com',
                'token': 'file-token',
                'projects': ['team/api', 'team/web/main'],
                'groups': ['platform'],
                'poll_interval_sec': 120,
            }, f)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_file_values(self):
        config = load_config(self.config_file, environ={})
        self.assertEqual(config['gitlab'], 'gitlab.file.example.com')
        self.assertEqual(config['projects'], 'team/api,team/web/main')
        self.assertEqual(config['groups'], ['platform'])
        self.assertEqual(config['poll_interval_sec'], 120)

    def test_environment_overrides_file(self):
        config = load_config(self.config_file, environ={'GITLAB_HOST': 'gitlab.env.example.com', 'POLL_INTERVAL': '15'})
        self.assertEqual(config['gitlab'], 'gitlab.env.example.com')
        self.assertEqual(config['token'], 'file-token')
        self.assertEqual(config['poll_interval_sec'], 15)

    def test_malformed_file_is_ignored(self):
        with open(self.config_file, 'w') as f:
            f.write('{not json')
        config = load_config(self.config_file, environ={'GITLAB_TOKEN': 'env-token'})
        self.assertEqual(config['token'], 'env-token')
        self.assertIsNone(config['gitlab'])


class TestAmbientSessionMode(unittest.TestCase):

    def test_host_inferred_from_ci(self):
        environ = {'GITLAB_TOKEN': 'use_cookie', 'GITLAB_HOST': 'ignored.example.com', 'CI_SERVER_HOST': 'gitlab.corp'}
        config = load_config(MISSING_FILE, environ=environ)
        self.assertTrue(config['use_cookie'])
        self.assertEqual(config['gitlab'], 'gitlab.corp')

    def test_host_inferred_from_fqdn(self):
        with patch('build_monitor.gitlab_client.socket.getfqdn', return_value='gitlab01.corp'):
            config = load_config(MISSING_FILE, environ={'GITLAB_TOKEN': 'use_cookie'})
        self.assertEqual(config['gitlab'], 'gitlab01.corp')


class TestValidateConfig(unittest.TestCase):

    def test_valid_configuration_passes(self):
        validate_config(valid_config())

    def test_groups_alone_are_enough(self):
        validate_config(valid_config(projects='', groups=['platform']))

    def test_no_projects_or_groups(self):
        with self.assertRaises(ConfigurationError) as ctx:
            validate_config(valid_config(projects=None, groups=[]))
        self.assertEqual(ctx.exception.message, "You need to set projects or groups")

    def test_missing_token(self):
        with self.assertRaises(ConfigurationError) as ctx:
            validate_config(valid_config(token=None))
        self.assertIn('token', ctx.exception.message)

    def test_missing_host(self):
        with self.assertRaises(ConfigurationError) as ctx:
            validate_config(valid_config(gitlab=''))
        self.assertIn('host', ctx.exception.message)

    def test_non_positive_poll_interval(self):
        with self.assertRaises(ConfigurationError):
            validate_config(valid_config(poll_interval_sec=0))

    def test_ambient_session_token_passes(self):
        validate_config(valid_config(token='use_cookie', use_cookie=True))

    def test_validation_logs_errors(self):
        with self.assertLogs(config_loader.logger, level='ERROR'):
            with self.assertRaises(ConfigurationError):
                validate_config(valid_config(token=''))


class TestLogLevel(unittest.TestCase):

    def test_log_level_from_environment(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'debug'}):
            self.assertEqual(config_loader.get_log_level(), logging.DEBUG)

    def test_invalid_log_level_defaults_to_info(self):
        with patch.dict(os.environ, {'LOG_LEVEL': 'chatty'}):
            self.assertEqual(config_loader.get_log_level(), logging.INFO)

    def test_config_log_level(self):
        config = load_config(MISSING_FILE, environ={'LOG_LEVEL': 'warning'})
        self.assertEqual(config['log_level'], 'WARNING')
        logging.getLogger().setLevel(logging.INFO)


class TestParseCsvList(unittest.TestCase):

    def test_strips_and_drops_empty(self):
        self.assertEqual(parse_csv_list(' a, ,b ,'), ['a', 'b'])
        self.assertEqual(parse_csv_list(None), [])


if __name__ == '__main__':
    unittest.main()
