"""
Base identity provider interface and common functionality.

This module defines the abstract base class that identity provider integrations
implement, along with the shared HTTP client, SSL and OAuth2 handling.
"""

import json
import ssl
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for identity provider errors."""
    pass


class ProviderConnectionError(ProviderError):
    """Raised when a session with the identity provider cannot be established."""
    pass


class ProviderAuthenticationError(ProviderError):
    """Raised when the identity provider rejects our credentials."""
    pass


class IdentityProviderBase(ABC):
    """
    Abstract base class for identity provider integrations.

    Subclasses implement connect() and the listing methods. User records are
    dictionaries with ``id``, ``username``, ``email``, ``enabled``,
    ``first_name`` and ``last_name``; group records carry ``id``, ``name``
    and ``path``.
    """

    def __init__(self, name: str, base_url: str, config: Dict[str, Any]):
        """
        Initialize provider client.

        Args:
            name: Provider name used in log messages
            base_url: Root URL of the provider
            config: Provider configuration dictionary
        """
        self.name = name
        self.config = config
        self.base_url = base_url.rstrip('/')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}
        self.connected = False

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom CA certificates from a PEM or PKCS12 truststore."""
        truststore_type = str(self.config.get('truststore_type', 'PEM')).upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                from cryptography.hazmat.primitives import serialization
                from cryptography.hazmat.primitives.serialization import pkcs12

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata='\n'.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise ProviderError(f"Unsupported truststore type: {truststore_type}")

        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise ProviderError(f"Truststore loading failed: {e}")

    def _new_connection(self, netloc: str, scheme: str) -> Union[HTTPSConnection, HTTPConnection]:
        if scheme == 'https':
            return HTTPSConnection(netloc, context=self.ssl_context, timeout=self.timeout)
        return HTTPConnection(netloc, timeout=self.timeout)

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection is None:
            self.connection = self._new_connection(self.host, self.parsed_url.scheme)
        return self.connection

    def _oauth2_get_token(self, token_url: str, client_id: str, client_secret: str,
                          scope: Optional[str] = None):
        """
        Retrieve an OAuth2 access token using the client credentials flow.

        Raises:
            ProviderAuthenticationError: If the token endpoint rejects the credentials
            ProviderConnectionError: If the token endpoint cannot be reached or answers garbage
        """
        parsed_token_url = urlparse(token_url)
        token_conn = self._new_connection(parsed_token_url.netloc, parsed_token_url.scheme)

        token_data = {
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret
        }
        if scope:
            token_data['scope'] = scope

        token_headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        try:
            logger.debug(f"Requesting OAuth2 token for {self.name}")
            token_conn.request('POST', parsed_token_url.path or '/', urlencode(token_data), token_headers)

            response = token_conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (ConnectionError, OSError) as e:
            raise ProviderConnectionError(f"Could not reach token endpoint {token_url}: {e}")
        finally:
            token_conn.close()

        if response.status in (400, 401, 403):
            raise ProviderAuthenticationError(
                f"Token request rejected by {self.name}: {response.status} {response.reason}")
        if response.status != 200:
            raise ProviderConnectionError(
                f"Token request failed for {self.name}: {response.status} {response.reason}")

        try:
            access_token = json.loads(response_data).get('access_token')
        except (json.JSONDecodeError, AttributeError) as e:
            raise ProviderConnectionError(f"Invalid JSON in OAuth2 token response for {self.name}: {e}")

        if not access_token:
            raise ProviderConnectionError(f"OAuth2 response missing access_token for {self.name}")

        self.auth_headers['Authorization'] = f"Bearer {access_token}"
        logger.debug(f"Obtained OAuth2 token for {self.name}")

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make a JSON request to the provider API.

        A 401 response triggers one token refresh through _refresh_token() and a
        retry of the same request.

        Args:
            method: HTTP method
            path: API path relative to the base URL
            params: Query string parameters

        Returns:
            Parsed JSON response

        Raises:
            ProviderAuthenticationError: On 401/403 responses that survive a refresh
            ProviderError: On any other failure
        """
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            full_path += '?' + urlencode(params)

        max_auth_retries = 1
        for auth_attempt in range(max_auth_retries + 1):
            request_headers = dict(self.auth_headers)
            request_headers['Accept'] = 'application/json'

            try:
                conn = self._get_connection()
                logger.debug(f"Making {method} request to {self.host}{full_path}")
                conn.request(method, full_path, None, request_headers)

                response = conn.getresponse()
                response_data = response.read().decode('utf-8')
            except (ConnectionError, OSError) as e:
                self.close_connection()
                raise ProviderError(f"Connection error to {self.name}: {e}")

            logger.debug(f"Response status: {response.status} {response.reason}")

            if response.status == 401 and auth_attempt < max_auth_retries:
                if self._refresh_token():
                    continue
            break

        if response.status in (401, 403):
            raise ProviderAuthenticationError(
                f"Access denied by {self.name}: {response.status} {response.reason}")
        if response.status >= 400:
            raise ProviderError(f"HTTP {response.status}: {response.reason} ({method} {full_path})")

        try:
            return json.loads(response_data) if response_data else None
        except json.JSONDecodeError as e:
            raise ProviderError(f"Invalid JSON response from {self.name}: {e}")

    def _refresh_token(self) -> bool:
        """
        Obtain a fresh access token after the current one was rejected.

        Returns:
            True if new credentials are in place and the request should be retried
        """
        return False

    def ensure_connected(self):
        if not self.connected:
            raise ProviderError(f"Not connected to {self.name}. Call connect() first.")

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    @abstractmethod
    def connect(self):
        """
        Authenticate to the identity provider.

        Raises:
            ProviderConnectionError: If the session cannot be established
        """
        pass

    @abstractmethod
    def get_users(self) -> List[Dict[str, Any]]:
        """Get all users."""
        pass

    @abstractmethod
    def get_groups(self) -> List[Dict[str, Any]]:
        """Get all groups, nested groups flattened."""
        pass

    @abstractmethod
    def get_group_members(self, group_id: str) -> List[Dict[str, Any]]:
        """Get the direct members of a group."""
        pass

    def get_users_with_groups(self) -> List[Dict[str, Any]]:
        """
        Get all users paired with the names of the groups they belong to.

        Membership is built from each group's member list rather than per-user
        lookups. A group whose members cannot be listed is logged and treated
        as empty; lost credentials abort the whole lookup instead.

        Returns:
            User dictionaries, in user listing order, each with a ``groups`` list
        """
        self.ensure_connected()

        users = self.get_users()
        groups = self.get_groups()

        user_groups = {user['id']: [] for user in users}

        logger.info(f"Fetching members for {len(groups)} groups...")
        for group in groups:
            try:
                members = self.get_group_members(group['id'])
            except ProviderAuthenticationError:
                raise
            except ProviderError as e:
                logger.warning(f"Could not get members for group {group['name']}: {e}")
                continue

            for member in members:
                memberships = user_groups.get(member['id'])
                if memberships is not None:
                    memberships.append(group['name'])

        return [dict(user, groups=user_groups[user['id']]) for user in users]

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
