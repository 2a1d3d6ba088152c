"""
Directory connection interface.

This module defines the narrow set of blocking operations the reconciler needs
from a directory connection. The production implementation lives in
ldap_client; tests substitute an in-memory directory.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

SEARCH_FILTER = '(objectclass=*)'
SEARCH_ATTRIBUTES = ['*', 'cn', 'description', 'gidNumber', 'member', 'memberUid', 'uniqueMember', 'memberURL']

# LDAP result codes the reconciler cares about
RESULT_NO_SUCH_OBJECT = 32
RESULT_ENTRY_ALREADY_EXISTS = 68


class ProtocolError(Exception):
    """Raised when the directory rejects an operation."""

    def __init__(self, message: str, result_code: Optional[int] = None, description: Optional[str] = None):
        super().__init__(message)
        self.result_code = result_code
        self.description = description


class NotFoundError(ProtocolError):
    """Raised when the requested entry does not exist."""
    pass


class DirectoryConnection(ABC):
    """
    Abstract directory connection.

    Implementations may be shared between objects; they either serialize
    requests internally or are safe for concurrent use. Every call blocks
    until the directory answers and raises ProtocolError on failure.
    """

    @abstractmethod
    def add(self, dn: str, attributes: Dict[str, List[str]]) -> None:
        """
        Create an entry.

        Args:
            dn: DN of the new entry
            attributes: Attribute name => values
        """
        pass

    @abstractmethod
    def modify(self, dn: str, changes: Sequence) -> None:
        """
        Apply an ordered list of changes to an entry.

        Args:
            dn: DN of the entry
            changes: Sequence of operations.Change
        """
        pass

    @abstractmethod
    def delete(self, dn: str) -> None:
        """Remove an entry."""
        pass

    @abstractmethod
    def search(self, dn: str, attributes: Optional[List[str]] = None) -> List[Tuple[str, List[str]]]:
        """
        Read a single entry by DN (base scope, filter ``(objectclass=*)``).

        Args:
            dn: DN of the entry
            attributes: Attributes to request, defaults to SEARCH_ATTRIBUTES

        Returns:
            (name, values) pairs of the entry

        Raises:
            NotFoundError: If the entry does not exist
        """
        pass
