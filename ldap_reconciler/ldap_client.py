"""
LDAP client implementing the directory connection on top of ldap3.

This module provides functionality to connect and bind to LDAP servers and to
add, modify, delete and read single entries on behalf of the reconciler.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional, Sequence, Tuple

from ldap3 import Server, Connection, ALL, BASE, Tls
from ldap3.core.exceptions import LDAPException, LDAPBindError

from ldap_reconciler.attributes import is_reserved_attribute
from ldap_reconciler.connection import (
    RESULT_NO_SUCH_OBJECT,
    SEARCH_ATTRIBUTES,
    SEARCH_FILTER,
    DirectoryConnection,
    NotFoundError,
    ProtocolError,
)
from ldap_reconciler.logging_setup import security_logger
from ldap_reconciler.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call

logger = logging.getLogger(__name__)


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPClient(DirectoryConnection):
    """
    LDAP client for a single bound connection.

    Directory operations are sent once; only connecting and binding are
    retried.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        # Retry settings from error_handling config
        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries if max_retries is not None else self.max_retries
        retry_wait = retry_wait if retry_wait is not None else self.retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPException,),
                on_retry=create_retry_callback("LDAP connection"),
                retry_if=is_retryable_error
            )
        except MaxRetriesExceeded as e:
            security_logger.log_bind_attempt(self.server_url, self.bind_dn, False)
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")
        except LDAPException as e:
            security_logger.log_bind_attempt(self.server_url, self.bind_dn, False)
            raise LDAPConnectionError(f"Failed to connect to LDAP: {e}")
        except Exception as e:
            security_logger.log_bind_attempt(self.server_url, self.bind_dn, False)
            raise LDAPConnectionError(f"Unexpected error during LDAP connection: {e}")

        self._connected = True
        security_logger.log_bind_attempt(self.server_url, self.bind_dn, True)
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            self.connection.open()

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPException(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except LDAPException:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected or not self.connection:
            raise ProtocolError("Not connected to LDAP server")

    def _raise_for_result(self, operation: str, dn: str):
        result = self.connection.result or {}
        code = result.get('result')
        description = result.get('description')
        message = f"LDAP {operation} of {dn!r} failed: {description} ({code}) {result.get('message', '')}".rstrip()
        if code == RESULT_NO_SUCH_OBJECT:
            raise NotFoundError(message, result_code=code, description=description)
        raise ProtocolError(message, result_code=code, description=description)

    def add(self, dn: str, attributes: Dict[str, List[str]]) -> None:
        self._require_connection()
        logger.debug(f"Adding entry {dn} with attributes {sorted(attributes)}")
        try:
            success = self.connection.add(dn, attributes=attributes)
        except LDAPException as e:
            raise ProtocolError(f"LDAP add of {dn!r} failed: {e}")
        security_logger.log_directory_operation('add', dn, success)
        if not success:
            self._raise_for_result('add', dn)

    def modify(self, dn: str, changes: Sequence) -> None:
        """
        Send a Modify request.

        Args:
            dn: DN of the entry
            changes: Sequence of operations.Change, applied in order
        """
        self._require_connection()
        ldap_changes: Dict[str, List[Tuple[str, List[str]]]] = {}
        for change in changes:
            ldap_changes.setdefault(change.name, []).append((change.operation.value, list(change.values)))

        logger.debug(f"Modifying entry {dn} ({len(changes)} changes)")
        try:
            success = self.connection.modify(dn, ldap_changes)
        except LDAPException as e:
            raise ProtocolError(f"LDAP modify of {dn!r} failed: {e}")
        security_logger.log_directory_operation('modify', dn, success)
        if not success:
            self._raise_for_result('modify', dn)

    def delete(self, dn: str) -> None:
        self._require_connection()
        try:
            success = self.connection.delete(dn)
        except LDAPException as e:
            raise ProtocolError(f"LDAP delete of {dn!r} failed: {e}")
        security_logger.log_directory_operation('delete', dn, success)
        if not success:
            self._raise_for_result('delete', dn)

    def search(self, dn: str, attributes: Optional[List[str]] = None) -> List[Tuple[str, List[str]]]:
        """
        Read a single entry by DN.

        Args:
            dn: DN of the entry
            attributes: Attributes to request (defaults to all user attributes plus the well-known ones)

        Returns:
            (name, values) pairs with values decoded as UTF-8; generic attributes
            holding binary values are left out

        Raises:
            NotFoundError: If the entry does not exist
            ProtocolError: If the search fails
        """
        self._require_connection()
        try:
            success = self.connection.search(
                search_base=dn,
                search_filter=SEARCH_FILTER,
                search_scope=BASE,
                attributes=attributes or SEARCH_ATTRIBUTES
            )
        except LDAPException as e:
            raise ProtocolError(f"LDAP search of {dn!r} failed: {e}")

        if not success:
            result = self.connection.result or {}
            if result.get('result') not in (None, 0):
                self._raise_for_result('search', dn)

        entries = [item for item in (self.connection.response or []) if item.get('type') == 'searchResEntry']
        if not entries:
            raise NotFoundError(f"No entry found for {dn!r}", result_code=RESULT_NO_SUCH_OBJECT)

        wire: List[Tuple[str, List[str]]] = []
        for name, values in entries[0].get('raw_attributes', {}).items():
            try:
                wire.append((name, [self._decode_value(value) for value in values]))
            except UnicodeDecodeError:
                if is_reserved_attribute(name):
                    raise ProtocolError(f"Attribute {name!r} of {dn!r} is not valid UTF-8")
                # binary attributes (jpegPhoto, userCertificate, ...) are never managed
                logger.debug(f"Skipping binary attribute {name!r} of {dn}")
        return wire

    @staticmethod
    def _decode_value(value) -> str:
        if isinstance(value, bytes):
            return value.decode('utf-8')
        return str(value)

    def test_connection(self) -> bool:
        """
        Test LDAP connection without throwing exceptions.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            if not self._connected:
                self.connect()

            return self.connection.search(
                search_base='',
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['namingContexts'],
                size_limit=1
            )
        except Exception as e:
            logger.debug(f"Connection test failed: {e}")
            return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.

        Returns:
            Dictionary with connection information
        """
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_dn': self.bind_dn,
        }

        if self.connection:
            stats.update({
                'server_host': getattr(self.connection.server, 'host', None),
                'server_port': getattr(self.connection.server, 'port', None),
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })

        return stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
