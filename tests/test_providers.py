#!/usr/bin/env python3
"""
Unit tests for the identity provider base class and the Keycloak provider.

HTTP traffic is replaced with mock connections and mocked request() calls.
"""

import json
import os
import sys
import unittest
from unittest.mock import Mock, patch, call

# Add parent directory to path to import idp_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from idp_sync.config import ConfigurationError
from idp_sync.providers import (
    KeycloakProvider,
    ProviderError,
    ProviderConnectionError,
    ProviderAuthenticationError,
    UnsupportedProviderError,
    create_provider,
)


def make_response(status, body=None, reason='OK'):
    """Build a mock HTTP response."""
    response = Mock()
    response.status = status
    response.reason = reason
    data = json.dumps(body) if body is not None else ''
    response.read.return_value = data.encode('utf-8')
    return response


class ProviderTestCase(unittest.TestCase):
    """Shared fixtures for provider tests."""

    def setUp(self):
        """Set up test fixtures."""
        self.config = {
            'url': 'https://kc.example.com/',
            'realm': 'test',
            'client_id': 'octelium-sync',
            'client_secret': 'secret-value',
            'page_size': 2,
        }
        self.provider = KeycloakProvider(self.config)


class TestKeycloakConnect(ProviderTestCase):
    """Test cases for KeycloakProvider.connect."""

    def test_endpoints(self):
        """Test token and admin endpoint construction."""
        self.assertEqual(self.provider.token_url,
                         'https://kc.example.com/realms/test/protocol/openid-connect/token')
        self.assertEqual(self.provider.admin_path, '/admin/realms/test')
        self.assertEqual(self.provider.host, 'kc.example.com')

    @patch.object(KeycloakProvider, '_oauth2_get_token')
    def test_connect_success(self, mock_token):
        """Test a successful client credentials login."""
        self.provider.connect()

        self.assertTrue(self.provider.connected)
        mock_token.assert_called_once_with(
            'https://kc.example.com/realms/test/protocol/openid-connect/token',
            'octelium-sync', 'secret-value')

    @patch.object(KeycloakProvider, '_oauth2_get_token')
    def test_connect_failure(self, mock_token):
        """Test that login failures become connection errors."""
        mock_token.side_effect = ProviderAuthenticationError("Token request rejected by Keycloak: 401 Unauthorized")

        with self.assertRaises(ProviderConnectionError) as context:
            self.provider.connect()

        self.assertIn("Failed to connect to Keycloak", str(context.exception))
        self.assertFalse(self.provider.connected)

    def test_calls_require_connection(self):
        """Test listing before connect() is refused."""
        for method, args in [('get_users', ()), ('get_groups', ()),
                             ('get_group_members', ('g1',)), ('get_users_with_groups', ())]:
            with self.assertRaises(ProviderError):
                getattr(self.provider, method)(*args)


class TestOAuth2Token(ProviderTestCase):
    """Test cases for the OAuth2 client credentials exchange."""

    def setUp(self):
        super().setUp()
        self.token_conn = Mock()
        patcher = patch.object(KeycloakProvider, '_new_connection', return_value=self.token_conn)
        self.mock_new_connection = patcher.start()
        self.addCleanup(patcher.stop)

    def test_token_stored_as_bearer_header(self):
        """Test a successful token response."""
        self.token_conn.getresponse.return_value = make_response(200, {'access_token': 'abc', 'expires_in': 300})

        self.provider._oauth2_get_token(self.provider.token_url, 'octelium-sync', 'secret-value')

        self.assertEqual(self.provider.auth_headers['Authorization'], 'Bearer abc')
        self.mock_new_connection.assert_called_once_with('kc.example.com', 'https')
        method, path, body, headers = self.token_conn.request.call_args[0]
        self.assertEqual(method, 'POST')
        self.assertEqual(path, '/realms/test/protocol/openid-connect/token')
        self.assertIn('grant_type=client_credentials', body)
        self.assertIn('client_id=octelium-sync', body)
        self.token_conn.close.assert_called_once()

    def test_rejected_credentials(self):
        """Test a 401 from the token endpoint."""
        self.token_conn.getresponse.return_value = make_response(401, {'error': 'unauthorized_client'},
                                                                 reason='Unauthorized')

        with self.assertRaises(ProviderAuthenticationError):
            self.provider._oauth2_get_token(self.provider.token_url, 'octelium-sync', 'wrong')

    def test_missing_access_token(self):
        """Test a 200 response without a token."""
        self.token_conn.getresponse.return_value = make_response(200, {'token_type': 'Bearer'})

        with self.assertRaises(ProviderConnectionError):
            self.provider._oauth2_get_token(self.provider.token_url, 'octelium-sync', 'secret-value')

    def test_unreachable_endpoint(self):
        """Test a socket error talking to the token endpoint."""
        self.token_conn.request.side_effect = OSError("Connection refused")

        with self.assertRaises(ProviderConnectionError):
            self.provider._oauth2_get_token(self.provider.token_url, 'octelium-sync', 'secret-value')
        self.token_conn.close.assert_called_once()


class TestRequest(ProviderTestCase):
    """Test cases for IdentityProviderBase.request."""

    def setUp(self):
        super().setUp()
        self.conn = Mock()
        self.provider.connection = self.conn
        self.provider.auth_headers['Authorization'] = 'Bearer abc'

    def test_json_response(self):
        """Test a successful GET with query parameters."""
        self.conn.getresponse.return_value = make_response(200, [{'id': 'u1'}])

        result = self.provider.request('GET', '/admin/realms/test/users', {'first': 0, 'max': 2})

        self.assertEqual(result, [{'id': 'u1'}])
        method, path, body, headers = self.conn.request.call_args[0]
        self.assertEqual(path, '/admin/realms/test/users?first=0&max=2')
        self.assertEqual(headers['Authorization'], 'Bearer abc')

    def test_empty_body(self):
        """Test a response without content."""
        self.conn.getresponse.return_value = make_response(204)

        self.assertIsNone(self.provider.request('GET', '/x'))

    def test_forbidden(self):
        """Test that 403 responses are authentication errors."""
        self.conn.getresponse.return_value = make_response(403, reason='Forbidden')

        with self.assertRaises(ProviderAuthenticationError):
            self.provider.request('GET', '/admin/realms/test/users')

    def test_expired_token_refreshed_once(self):
        """Test that a 401 fetches a new token and repeats the request."""
        self.provider.connected = True
        self.conn.getresponse.side_effect = [
            make_response(401, reason='Unauthorized'),
            make_response(200, [{'id': 'u1'}]),
        ]

        def new_token(*args):
            self.provider.auth_headers['Authorization'] = 'Bearer fresh'

        with patch.object(self.provider, '_oauth2_get_token', side_effect=new_token) as mock_token:
            result = self.provider.request('GET', '/admin/realms/test/users')

        self.assertEqual(result, [{'id': 'u1'}])
        mock_token.assert_called_once_with(self.provider.token_url, 'octelium-sync', 'secret-value')
        self.assertEqual(self.conn.request.call_count, 2)
        retried_headers = self.conn.request.call_args_list[1][0][3]
        self.assertEqual(retried_headers['Authorization'], 'Bearer fresh')

    def test_unauthorized_after_refresh(self):
        """Test that a second 401 is an authentication error without further refreshes."""
        self.provider.connected = True
        self.conn.getresponse.side_effect = [
            make_response(401, reason='Unauthorized'),
            make_response(401, reason='Unauthorized'),
        ]

        with patch.object(self.provider, '_oauth2_get_token') as mock_token:
            with self.assertRaises(ProviderAuthenticationError):
                self.provider.request('GET', '/admin/realms/test/users')

        mock_token.assert_called_once()
        self.assertEqual(self.conn.request.call_count, 2)

    def test_unauthorized_before_connect_not_refreshed(self):
        """Test that no refresh is attempted without an established session."""
        self.conn.getresponse.return_value = make_response(401, reason='Unauthorized')

        with patch.object(self.provider, '_oauth2_get_token') as mock_token:
            with self.assertRaises(ProviderAuthenticationError):
                self.provider.request('GET', '/admin/realms/test/users')

        mock_token.assert_not_called()

    def test_server_error(self):
        """Test that other HTTP errors are provider errors."""
        self.conn.getresponse.return_value = make_response(500, reason='Internal Server Error')

        with self.assertRaises(ProviderError) as context:
            self.provider.request('GET', '/admin/realms/test/users')

        self.assertIn('HTTP 500', str(context.exception))

    def test_connection_error_resets_connection(self):
        """Test that socket errors drop the cached connection."""
        self.conn.request.side_effect = ConnectionResetError("reset")

        with self.assertRaises(ProviderError):
            self.provider.request('GET', '/admin/realms/test/users')

        self.assertIsNone(self.provider.connection)

    def test_invalid_json(self):
        """Test a garbled response body."""
        response = make_response(200)
        response.read.return_value = b'<html>'
        self.conn.getresponse.return_value = response

        with self.assertRaises(ProviderError):
            self.provider.request('GET', '/x')

    def test_context_manager_closes_connection(self):
        """Test that leaving the context closes the connection."""
        with self.provider:
            pass

        self.conn.close.assert_called_once()
        self.assertIsNone(self.provider.connection)


class TestKeycloakListing(ProviderTestCase):
    """Test cases for users, groups and members listing."""

    def setUp(self):
        super().setUp()
        self.provider.connected = True
        patcher = patch.object(KeycloakProvider, 'request')
        self.mock_request = patcher.start()
        self.addCleanup(patcher.stop)

    def test_get_users_pages_and_normalizes(self):
        """Test paging through users and normalizing records."""
        self.mock_request.side_effect = [
            [
                {'id': 'u1', 'username': 'alice', 'email': 'alice@example.com', 'enabled': True,
                 'firstName': 'Alice', 'lastName': 'Liddell'},
                {'id': 'u2', 'username': 'bob', 'enabled': False},
            ],
            [
                {'id': 'u3', 'username': 'carol'},
            ],
        ]

        users = self.provider.get_users()

        self.assertEqual(users, [
            {'id': 'u1', 'username': 'alice', 'email': 'alice@example.com', 'enabled': True,
             'first_name': 'Alice', 'last_name': 'Liddell'},
            {'id': 'u2', 'username': 'bob', 'email': '', 'enabled': False,
             'first_name': None, 'last_name': None},
            {'id': 'u3', 'username': 'carol', 'email': '', 'enabled': True,
             'first_name': None, 'last_name': None},
        ])
        self.assertEqual(self.mock_request.call_args_list, [
            call('GET', '/admin/realms/test/users', {'briefRepresentation': 'false', 'first': 0, 'max': 2}),
            call('GET', '/admin/realms/test/users', {'briefRepresentation': 'false', 'first': 2, 'max': 2}),
        ])

    def test_full_last_page_requests_one_more(self):
        """Test that a full page triggers a further request."""
        self.mock_request.side_effect = [
            [{'id': 'u1', 'username': 'a'}, {'id': 'u2', 'username': 'b'}],
            [],
        ]

        self.assertEqual(len(self.provider.get_users()), 2)
        self.assertEqual(self.mock_request.call_count, 2)

    def test_get_groups_flattens_inline_subgroups(self):
        """Test depth-first flattening of nested groups."""
        self.mock_request.return_value = [
            {'id': 'g1', 'name': 'eng', 'path': '/eng', 'subGroups': [
                {'id': 'g2', 'name': 'backend', 'path': '/eng/backend', 'subGroups': [
                    {'id': 'g3', 'name': 'db', 'path': '/eng/backend/db'},
                ]},
            ]},
        ]

        groups = self.provider.get_groups()

        self.assertEqual(groups, [
            {'id': 'g1', 'name': 'eng', 'path': '/eng'},
            {'id': 'g2', 'name': 'backend', 'path': '/eng/backend'},
            {'id': 'g3', 'name': 'db', 'path': '/eng/backend/db'},
        ])

    def test_get_groups_fetches_children_by_count(self):
        """Test that sub-groups reported only by count are fetched."""
        self.mock_request.side_effect = [
            [{'id': 'g1', 'name': 'eng', 'path': '/eng', 'subGroupCount': 1, 'subGroups': []}],
            [{'id': 'g2', 'name': 'backend', 'path': '/eng/backend', 'subGroupCount': 0}],
        ]

        groups = self.provider.get_groups()

        self.assertEqual([group['name'] for group in groups], ['eng', 'backend'])
        self.assertEqual(self.mock_request.call_args_list[1][0][1], '/admin/realms/test/groups/g1/children')

    def test_get_group_members(self):
        """Test listing and normalizing group members."""
        self.mock_request.return_value = [{'id': 'u1', 'username': 'alice', 'email': 'a@example.com'}]

        members = self.provider.get_group_members('g1')

        self.assertEqual(members[0]['username'], 'alice')
        self.assertEqual(self.mock_request.call_args[0][1], '/admin/realms/test/groups/g1/members')


class TestUsersWithGroups(ProviderTestCase):
    """Test cases for IdentityProviderBase.get_users_with_groups."""

    def setUp(self):
        super().setUp()
        self.provider.connected = True
        self.users = [
            {'id': 'u1', 'username': 'alice', 'email': '', 'enabled': True},
            {'id': 'u2', 'username': 'bob', 'email': '', 'enabled': False},
        ]
        self.groups = [
            {'id': 'g1', 'name': 'admins', 'path': '/admins'},
            {'id': 'g2', 'name': 'guests', 'path': '/guests'},
            {'id': 'g3', 'name': 'broken', 'path': '/broken'},
        ]

    def test_memberships_assembled_per_group(self):
        """Test reverse mapping from group members to users."""
        members = {
            'g1': [{'id': 'u1'}],
            'g2': [{'id': 'u1'}, {'id': 'u2'}, {'id': 'u-unknown'}],
            'g3': [],
        }

        with patch.object(self.provider, 'get_users', return_value=self.users), \
                patch.object(self.provider, 'get_groups', return_value=self.groups), \
                patch.object(self.provider, 'get_group_members', side_effect=lambda gid: members[gid]):
            result = self.provider.get_users_with_groups()

        self.assertEqual([user['username'] for user in result], ['alice', 'bob'])
        self.assertEqual(result[0]['groups'], ['admins', 'guests'])
        self.assertEqual(result[1]['groups'], ['guests'])
        self.assertNotIn('groups', self.users[0])

    def test_member_fetch_failure_counts_as_empty(self):
        """Test that one failing group does not abort the lookup."""
        def get_members(group_id):
            if group_id == 'g3':
                raise ProviderError("HTTP 500: Internal Server Error")
            return [{'id': 'u1'}]

        with patch.object(self.provider, 'get_users', return_value=self.users), \
                patch.object(self.provider, 'get_groups', return_value=self.groups), \
                patch.object(self.provider, 'get_group_members', side_effect=get_members):
            with self.assertLogs('idp_sync.providers.base', level='WARNING') as logs:
                result = self.provider.get_users_with_groups()

        self.assertEqual(result[0]['groups'], ['admins', 'guests'])
        self.assertTrue(any('broken' in line for line in logs.output))

    def test_lost_credentials_abort_lookup(self):
        """Test that an authentication failure is not treated as an empty group."""
        def get_members(group_id):
            if group_id == 'g2':
                raise ProviderAuthenticationError("Access denied by Keycloak: 401 Unauthorized")
            return [{'id': 'u1'}]

        with patch.object(self.provider, 'get_users', return_value=self.users), \
                patch.object(self.provider, 'get_groups', return_value=self.groups), \
                patch.object(self.provider, 'get_group_members', side_effect=get_members) as mock_members:
            with self.assertRaises(ProviderAuthenticationError):
                self.provider.get_users_with_groups()

        self.assertEqual(mock_members.call_count, 2)


class TestCreateProvider(unittest.TestCase):
    """Test cases for create_provider."""

    def test_keycloak(self):
        """Test building the Keycloak provider from settings."""
        settings = {'keycloak': {'url': 'http://localhost:8080', 'realm': 'master',
                                 'client_id': 'c', 'client_secret': 's'}}

        provider = create_provider('keycloak', settings)

        self.assertIsInstance(provider, KeycloakProvider)
        self.assertIsNone(provider.ssl_context)

    def test_unsupported(self):
        """Test that unknown providers are configuration errors."""
        with self.assertRaises(UnsupportedProviderError) as context:
            create_provider('okta', {})

        self.assertIsInstance(context.exception, ConfigurationError)
        self.assertIn('Unsupported provider: okta', str(context.exception))


if __name__ == '__main__':
    unittest.main()
