#!/usr/bin/env python3
"""
Unit tests for the ldap3-backed directory connection.

These tests cover:
- Client initialization and TLS configuration
- Connection establishment with retry logic
- Rendering of Add and Modify requests
- Mapping of LDAP result codes to exceptions
- Decoding of search results
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import BASE, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError

from ldap_reconciler.connection import SEARCH_ATTRIBUTES, SEARCH_FILTER, NotFoundError, ProtocolError
from ldap_reconciler.ldap_client import LDAPClient, LDAPConnectionError
from ldap_reconciler.operations import Change, ChangeType

GROUP_DN = 'cn=devs,ou=groups,dc=example,dc=com'


def base_config(**overrides):
    config = {
        'server_url': 'ldap://ldap.example.com:389',
        'bind_dn': 'cn=admin,dc=example,dc=com',
        'bind_password': 'password123',
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 0,
        },
    }
    config.update(overrides)
    return config


class TestLDAPClientInitialization(unittest.TestCase):
    """Test cases for client configuration."""

    def test_ldaps_url_enables_ssl(self):
        client = LDAPClient(base_config(server_url='ldaps://ldap.example.com:636'))

        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertTrue(client.verify_ssl)

    def test_advanced_configuration(self):
        client = LDAPClient(base_config(
            start_tls=True,
            verify_ssl=False,
            connection_timeout=30,
            receive_timeout=20,
            error_handling={'max_retries': 5, 'retry_wait_seconds': 10},
        ))

        self.assertFalse(client.use_ssl)
        self.assertTrue(client.start_tls)
        self.assertFalse(client.verify_ssl)
        self.assertEqual(client.connection_timeout, 30)
        self.assertEqual(client.receive_timeout, 20)
        self.assertEqual(client.max_retries, 5)
        self.assertEqual(client.retry_wait, 10)

    def test_no_tls_config_for_plain_ldap(self):
        self.assertIsNone(LDAPClient(base_config())._create_tls_config())

    def test_tls_config_for_ssl_and_start_tls(self):
        self.assertIsNotNone(LDAPClient(base_config(use_ssl=True, verify_ssl=False))._create_tls_config())
        self.assertIsNotNone(LDAPClient(base_config(start_tls=True))._create_tls_config())

    def test_stats_before_connecting(self):
        stats = LDAPClient(base_config()).get_connection_stats()

        self.assertFalse(stats['connected'])
        self.assertEqual(stats['server_url'], 'ldap://ldap.example.com:389')
        self.assertNotIn('bind_password', stats)


@patch('ldap_reconciler.retry.time.sleep')
@patch('ldap_reconciler.ldap_client.Connection')
@patch('ldap_reconciler.ldap_client.Server')
class TestLDAPClientConnect(unittest.TestCase):
    """Test cases for connect and disconnect."""

    def test_successful_connection(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.bind.return_value = True

        client = LDAPClient(base_config())

        self.assertTrue(client.connect())
        conn.open.assert_called_once()
        conn.bind.assert_called_once()
        conn.start_tls.assert_not_called()
        self.assertTrue(client.get_connection_stats()['connected'])

    def test_start_tls_is_negotiated_before_bind(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.start_tls.return_value = True
        conn.bind.return_value = True

        LDAPClient(base_config(start_tls=True)).connect()

        conn.start_tls.assert_called_once()

    def test_transient_failure_is_retried(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.open.side_effect = [LDAPSocketOpenError('connection refused'), None]
        conn.bind.return_value = True

        self.assertTrue(LDAPClient(base_config()).connect())
        self.assertEqual(mock_connection.call_count, 2)
        mock_sleep.assert_called_once()

    def test_retries_exhausted(self, mock_server, mock_connection, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError('connection refused')

        with self.assertRaises(LDAPConnectionError) as context:
            LDAPClient(base_config()).connect()

        self.assertIn('3 attempts', str(context.exception))
        self.assertEqual(mock_connection.call_count, 3)

    def test_explicit_zero_retries_makes_one_attempt(self, mock_server, mock_connection, mock_sleep):
        mock_connection.return_value.open.side_effect = LDAPSocketOpenError('connection refused')

        with self.assertRaises(LDAPConnectionError) as context:
            LDAPClient(base_config()).connect(max_retries=0)

        self.assertIn('1 attempts', str(context.exception))
        self.assertEqual(mock_connection.call_count, 1)

    def test_bind_failure_is_not_retried(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.bind.return_value = False
        conn.result = {'result': 49, 'description': 'invalidCredentials'}

        with self.assertRaises(LDAPConnectionError):
            LDAPClient(base_config()).connect()

        self.assertEqual(mock_connection.call_count, 1)
        mock_sleep.assert_not_called()

    def test_disconnect_unbinds(self, mock_server, mock_connection, mock_sleep):
        conn = mock_connection.return_value
        conn.bind.return_value = True

        with LDAPClient(base_config()) as client:
            client.connect()

        conn.unbind.assert_called_once()
        self.assertIsNone(client.connection)


class ConnectedClientTestCase(unittest.TestCase):
    """Base class providing a client bound to a mocked ldap3 connection."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = LDAPClient(base_config())
        self.conn = Mock()
        self.client.connection = self.conn
        self.client._connected = True


class TestLDAPClientWrites(ConnectedClientTestCase):
    """Test cases for add, modify and delete."""

    def test_add_passes_attributes(self):
        self.conn.add.return_value = True
        attributes = {'objectClass': ['posixGroup'], 'cn': ['devs'], 'gidNumber': ['1000']}

        self.client.add(GROUP_DN, attributes)

        self.conn.add.assert_called_once_with(GROUP_DN, attributes=attributes)

    def test_add_failure_carries_result_code(self):
        self.conn.add.return_value = False
        self.conn.result = {'result': 68, 'description': 'entryAlreadyExists', 'message': ''}

        with self.assertRaises(ProtocolError) as context:
            self.client.add(GROUP_DN, {'objectClass': ['posixGroup']})

        self.assertNotIsInstance(context.exception, NotFoundError)
        self.assertEqual(context.exception.result_code, 68)
        self.assertEqual(context.exception.description, 'entryAlreadyExists')

    def test_add_ldap_exception_becomes_protocol_error(self):
        self.conn.add.side_effect = LDAPException('insufficientAccessRights')

        with self.assertRaises(ProtocolError):
            self.client.add(GROUP_DN, {'objectClass': ['posixGroup']})

    def test_modify_renders_changes_in_order(self):
        self.conn.modify.return_value = True
        changes = [
            Change(ChangeType.REPLACE, 'description', ()),
            Change(ChangeType.DELETE, 'memberUid', ('alice',)),
            Change(ChangeType.ADD, 'memberUid', ('carol',)),
            Change(ChangeType.DELETE, 'mail'),
        ]

        self.client.modify(GROUP_DN, changes)

        self.conn.modify.assert_called_once_with(GROUP_DN, {
            'description': [(MODIFY_REPLACE, [])],
            'memberUid': [(MODIFY_DELETE, ['alice']), (MODIFY_ADD, ['carol'])],
            'mail': [(MODIFY_DELETE, [])],
        })

    def test_modify_missing_entry(self):
        self.conn.modify.return_value = False
        self.conn.result = {'result': 32, 'description': 'noSuchObject', 'message': ''}

        with self.assertRaises(NotFoundError):
            self.client.modify(GROUP_DN, [Change(ChangeType.ADD, 'mail', ('a@x.com',))])

    def test_delete(self):
        self.conn.delete.return_value = True
        self.client.delete(GROUP_DN)
        self.conn.delete.assert_called_once_with(GROUP_DN)

    def test_operations_require_connection(self):
        client = LDAPClient(base_config())
        with self.assertRaises(ProtocolError):
            client.delete(GROUP_DN)


class TestLDAPClientSearch(ConnectedClientTestCase):
    """Test cases for reading entries."""

    def test_search_decodes_raw_values(self):
        self.conn.search.return_value = True
        self.conn.response = [{
            'type': 'searchResEntry',
            'dn': GROUP_DN,
            'raw_attributes': {
                'objectClass': [b'posixGroup'],
                'cn': [b'devs'],
                'description': ['Café team'.encode('utf-8')],
            },
        }]

        wire = self.client.search(GROUP_DN)

        self.assertEqual(wire, [
            ('objectClass', ['posixGroup']),
            ('cn', ['devs']),
            ('description', ['Café team']),
        ])
        self.conn.search.assert_called_once_with(
            search_base=GROUP_DN,
            search_filter=SEARCH_FILTER,
            search_scope=BASE,
            attributes=SEARCH_ATTRIBUTES,
        )

    def test_search_skips_binary_generic_attributes(self):
        self.conn.search.return_value = True
        self.conn.response = [{
            'type': 'searchResEntry',
            'dn': GROUP_DN,
            'raw_attributes': {
                'cn': [b'staff'],
                'jpegPhoto': [b'\xff\xd8\xff\xe0'],
                'mail': [b'staff@example.com'],
            },
        }]

        wire = self.client.search(GROUP_DN)

        self.assertEqual(wire, [('cn', ['staff']), ('mail', ['staff@example.com'])])

    def test_search_rejects_binary_well_known_attribute(self):
        self.conn.search.return_value = True
        self.conn.response = [{
            'type': 'searchResEntry',
            'dn': GROUP_DN,
            'raw_attributes': {'description': [b'\xff\xfe']},
        }]

        with self.assertRaises(ProtocolError):
            self.client.search(GROUP_DN)

    def test_search_ignores_referrals(self):
        self.conn.search.return_value = True
        self.conn.response = [{'type': 'searchResRef', 'uri': ['ldap://other/']}]

        with self.assertRaises(NotFoundError):
            self.client.search(GROUP_DN)

    def test_search_no_such_object(self):
        self.conn.search.return_value = False
        self.conn.result = {'result': 32, 'description': 'noSuchObject', 'message': ''}
        self.conn.response = []

        with self.assertRaises(NotFoundError) as context:
            self.client.search(GROUP_DN)
        self.assertEqual(context.exception.result_code, 32)

    def test_connection_check(self):
        self.conn.search.return_value = True
        self.assertTrue(self.client.test_connection())

    @patch('ldap_reconciler.retry.time.sleep')
    @patch('ldap_reconciler.ldap_client.Server')
    def test_connection_check_when_unreachable(self, mock_server, mock_sleep):
        client = LDAPClient(base_config())
        with patch('ldap_reconciler.ldap_client.Connection') as mock_connection:
            mock_connection.return_value.open.side_effect = LDAPSocketOpenError('connection refused')
            self.assertFalse(client.test_connection())

    def test_search_other_failure(self):
        self.conn.search.return_value = False
        self.conn.result = {'result': 50, 'description': 'insufficientAccessRights', 'message': ''}

        with self.assertRaises(ProtocolError) as context:
            self.client.search(GROUP_DN)
        self.assertNotIsInstance(context.exception, NotFoundError)


if __name__ == '__main__':
    unittest.main()
