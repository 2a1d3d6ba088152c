#!/usr/bin/env python3
"""
Unit tests for the main reconcile orchestrator.

Tests the reconciliation run with a mocked configuration and an in-memory
directory standing in for the LDAP client.
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add parent directory to path to import ldap_reconciler modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_directory import InMemoryDirectory

from ldap_reconciler.main import ReconcileOrchestrator, main
from ldap_reconciler.config import ConfigurationError
from ldap_reconciler.ldap_client import LDAPConnectionError

DEVS_DN = 'cn=devs,ou=groups,dc=example,dc=com'
OPS_DN = 'cn=ops,ou=groups,dc=example,dc=com'
OLD_DN = 'cn=old,ou=groups,dc=example,dc=com'


def connectable(directory):
    directory.connect = Mock(return_value=True)
    directory.disconnect = Mock()
    return directory


@patch('ldap_reconciler.main.setup_logging')
@patch('ldap_reconciler.main.LDAPClient')
@patch('ldap_reconciler.main.load_config')
class TestReconcileOrchestrator(unittest.TestCase):
    """Test cases for ReconcileOrchestrator class."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_config = {
            'ldap': {
                'server_url': 'ldap://test.example.com',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'test_password',
            },
            'error_handling': {
                'max_retries': 2,
                'retry_wait_seconds': 1,
            },
            'logging': {'level': 'INFO'},
            'invalid_attribute_values': ['N/A'],
            'objects': [
                {
                    'dn': DEVS_DN,
                    'gid_number': 1000,
                    'member_uid': ['alice', 'bob'],
                    'state': 'present',
                },
                {
                    'dn': OPS_DN,
                    'description': 'Operations',
                    'gid_number': 1001,
                    'state': 'present',
                },
                {
                    'dn': OLD_DN,
                    'state': 'absent',
                },
            ],
        }
        self.directory = connectable(InMemoryDirectory({
            OPS_DN: {'objectClass': ['posixGroup'], 'cn': ['ops'], 'gidNumber': ['1001']},
            OLD_DN: {'objectClass': ['posixGroup'], 'cn': ['old'], 'gidNumber': ['999']},
        }))

    def test_successful_run(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        orchestrator = ReconcileOrchestrator('config.yaml')
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 0)
        self.assertEqual(orchestrator.stats['objects_created'], 1)
        self.assertEqual(orchestrator.stats['objects_updated'], 1)
        self.assertEqual(orchestrator.stats['objects_deleted'], 1)
        self.assertEqual(orchestrator.stats['objects_failed'], 0)
        self.assertEqual(self.directory.values(DEVS_DN, 'memberUid'), ['alice', 'bob'])
        self.assertEqual(self.directory.values(OPS_DN, 'description'), ['Operations'])
        self.assertNotIn(OLD_DN, self.directory.entries)
        self.directory.connect.assert_called_once_with(max_retries=2, retry_wait=1)
        self.directory.disconnect.assert_called_once()

    def test_second_run_changes_nothing(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        ReconcileOrchestrator().run()
        self.directory.calls.clear()
        orchestrator = ReconcileOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 0)
        self.assertEqual(orchestrator.stats['objects_unchanged'], 3)
        self.assertEqual(self.directory.write_calls(), [])

    def test_failed_object_does_not_stop_others(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        self.test_config['objects'].insert(0, {'dn': 'cn=broken,dc=example,dc=com', 'state': 'present'})
        self.test_config['objects'].insert(1, {
            'dn': 'cn=bad,dc=example,dc=com',
            'gid_number': 5,
            'attributes': [{'mail': 'n/a'}],
            'state': 'present',
        })
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        orchestrator = ReconcileOrchestrator()
        exit_code = orchestrator.run()

        self.assertEqual(exit_code, 1)
        self.assertEqual(orchestrator.stats['objects_failed'], 2)
        self.assertEqual(orchestrator.stats['objects_created'], 1)
        self.assertEqual(orchestrator.stats['object_details']['cn=broken,dc=example,dc=com'], 'failed')

    def test_dry_run_sends_no_writes(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        orchestrator = ReconcileOrchestrator()
        exit_code = orchestrator.run(dry_run=True)

        self.assertEqual(exit_code, 0)
        self.assertEqual(self.directory.write_calls(), [])
        self.assertEqual(orchestrator.stats['objects_created'], 1)
        self.assertEqual(orchestrator.stats['objects_deleted'], 1)

    def test_configuration_error(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.side_effect = ConfigurationError("Missing required LDAP field: bind_dn")

        self.assertEqual(ReconcileOrchestrator().run(), 2)
        mock_ldap_client.assert_not_called()

    def test_ldap_connection_error(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value.connect.side_effect = LDAPConnectionError("Connection failed")

        self.assertEqual(ReconcileOrchestrator().run(), 3)

    def test_unexpected_error(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.side_effect = RuntimeError("boom")

        self.assertEqual(ReconcileOrchestrator().run(), 4)

    def test_import_object(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        state = ReconcileOrchestrator().import_object(OPS_DN)

        self.assertEqual(state, {'dn': OPS_DN, 'object_classes': ['posixGroup'], 'gid_number': 1001})
        self.directory.disconnect.assert_called_once()

    def test_import_missing_object(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        self.assertIsNone(ReconcileOrchestrator().import_object(DEVS_DN))

    def test_health_check(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        self.test_config['objects'].append({'dn': OPS_DN, 'gid_number': 'abc', 'state': 'present'})
        mock_load_config.return_value = self.test_config

        health = ReconcileOrchestrator().health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'pass')
        self.assertEqual(health['checks']['ldap']['status'], 'pass')
        self.assertEqual(health['checks']['objects'][DEVS_DN]['status'], 'pass')
        self.assertEqual(health['checks']['objects'][OPS_DN]['status'], 'fail')

    @patch('sys.argv', ['ldap-reconcile', '--config', 'config.yaml', '--import', OPS_DN])
    def test_main_import_prints_yaml(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.return_value = self.test_config
        mock_ldap_client.return_value = self.directory

        with patch('builtins.print') as mock_print:
            with self.assertRaises(SystemExit) as context:
                main()

        self.assertEqual(context.exception.code, 0)
        output = mock_print.call_args[0][0]
        self.assertIn(f'dn: {OPS_DN}', output)
        self.assertIn('gid_number: 1001', output)

    @patch('sys.argv', ['ldap-reconcile', '--dry-run'])
    def test_main_exit_code(self, mock_load_config, mock_ldap_client, mock_setup_logging):
        mock_load_config.side_effect = ConfigurationError("Configuration file not found: config.yaml")

        with self.assertRaises(SystemExit) as context:
            main()

        self.assertEqual(context.exception.code, 2)


if __name__ == '__main__':
    unittest.main()
