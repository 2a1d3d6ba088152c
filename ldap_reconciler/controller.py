"""
Reconciliation of directory objects against a directory connection.

The ObjectReconciler drives one object through create, read, update and
delete. Each call runs to completion before returning; nothing is cached
between calls, and the entry in the directory is always re-read after a
write so the caller holds its normalized state.
"""

import logging
from typing import Iterable, List, Optional, Union

from ldap_reconciler.connection import SEARCH_ATTRIBUTES, DirectoryConnection, NotFoundError
from ldap_reconciler.models import DirectoryObject
from ldap_reconciler.operations import (
    AddOperation,
    DeleteOperation,
    ModifyOperation,
    ObjectValidationError,
    build_create_operation,
    plan_update,
    validate,
)

Operation = Union[AddOperation, ModifyOperation, DeleteOperation]


class ObjectReconciler:
    """
    Create, read, update and delete directory objects.

    The connection is injected and may be shared with other reconcilers; no
    locking happens here. Protocol errors propagate unchanged and nothing is
    retried or rolled back.
    """

    def __init__(self, connection: DirectoryConnection, invalid_attribute_values: Iterable[str] = (),
                 require_cn: bool = True, logger: Optional[logging.Logger] = None):
        """
        Args:
            connection: Directory connection capability
            invalid_attribute_values: Generic attribute values that are refused
            require_cn: Require cn-named DNs when creating objects
            logger: Logger receiving reconciliation events
        """
        self.connection = connection
        self.invalid_attribute_values = list(invalid_attribute_values)
        self.require_cn = require_cn
        self.logger = logger or logging.getLogger(__name__)

    def _validate(self, desired: DirectoryObject):
        errors = validate(desired, self.invalid_attribute_values)
        if errors:
            for error in errors:
                self.logger.error(f"Validation failed for {desired.dn}: {error}")
            raise ObjectValidationError(desired.dn, errors)

    def read(self, dn: str) -> Optional[DirectoryObject]:
        """
        Read the normalized state of an object.

        Returns:
            DirectoryObject, or None when the entry no longer exists
        """
        self.logger.debug(f"Looking for object {dn}")
        try:
            wire = self.connection.search(dn, SEARCH_ATTRIBUTES)
        except NotFoundError:
            self.logger.warning(f"Object {dn} not found, treating it as removed from the directory")
            return None

        for name, values in wire:
            self.logger.debug(f"Read attribute {name!r} of {dn} ({len(values)} values)")
        obj = DirectoryObject.from_entry(dn, wire)
        self.logger.debug(f"Finished reading object {dn}")
        return obj

    def import_object(self, dn: str) -> Optional[DirectoryObject]:
        """Reconstruct the full state of an existing object from its DN alone."""
        return self.read(dn)

    def _send_add(self, operation: AddOperation):
        try:
            self.connection.add(operation.dn, operation.attributes)
        except Exception as e:
            self.logger.error(f"Error while creating object {operation.dn}: {e}")
            raise
        self.logger.info(f"Object {operation.dn} added to LDAP server")

    def _send_modify(self, operation: ModifyOperation):
        try:
            self.connection.modify(operation.dn, operation.changes)
        except Exception as e:
            self.logger.error(f"Error updating object {operation.dn}: {e}")
            raise
        self.logger.info(f"Object {operation.dn} updated ({len(operation.changes)} changes)")

    def create(self, desired: DirectoryObject) -> Optional[DirectoryObject]:
        """
        Create an object in the directory.

        Args:
            desired: Desired state

        Returns:
            Normalized state read back after the Add

        Raises:
            ObjectValidationError: If the desired state violates policy
            MalformedInputError: If the DN cannot name the object
            ProtocolError: If the directory rejects the Add
        """
        self.logger.debug(f"Creating object {desired.dn}")
        self._validate(desired)
        self._send_add(build_create_operation(desired, require_cn=self.require_cn))
        return self.read(desired.dn)

    def update(self, previous: DirectoryObject, desired: DirectoryObject) -> Optional[DirectoryObject]:
        """
        Bring an existing object from its previous to its desired state.

        No Modify request is sent when both states already match.

        Returns:
            Normalized state read back after the update
        """
        self.logger.debug(f"Updating object {desired.dn}")
        self._validate(desired)
        operation = plan_update(previous, desired)

        if operation.is_empty:
            self.logger.debug(f"Object {desired.dn} is up to date")
            return previous

        self._send_modify(operation)
        return self.read(desired.dn)

    def delete(self, dn: str) -> None:
        self.logger.debug(f"Removing object {dn}")
        try:
            self.connection.delete(dn)
        except Exception as e:
            self.logger.error(f"Error removing object {dn}: {e}")
            raise
        self.logger.info(f"Object {dn} removed")

    def reconcile(self, desired: DirectoryObject, dry_run: bool = False) -> List[Operation]:
        """
        Bring an object to its desired state from a single read of its entry.

        Args:
            desired: Desired state
            dry_run: Compute the operations without sending them

        Returns:
            The Add or Modify operation sent (or due), empty when the object is in sync

        Raises:
            ObjectValidationError: If the desired state violates policy
            ProtocolError: If the directory rejects the write
        """
        self._validate(desired)
        previous = self.read(desired.dn)

        if previous is None:
            operation = build_create_operation(desired, require_cn=self.require_cn)
            if not dry_run:
                self._send_add(operation)
            return [operation]

        operation = plan_update(previous, desired)
        if operation.is_empty:
            self.logger.debug(f"Object {desired.dn} is up to date")
            return []
        if not dry_run:
            self._send_modify(operation)
        return [operation]

    def plan(self, desired: DirectoryObject) -> List[Operation]:
        """
        Compute the operations apply() would send, without sending them.

        Raises:
            ObjectValidationError: If the desired state violates policy
        """
        return self.reconcile(desired, dry_run=True)

    def plan_removal(self, dn: str) -> List[Operation]:
        """Compute the operations remove() would send, without sending them."""
        return [] if self.read(dn) is None else [DeleteOperation(dn)]

    def apply(self, desired: DirectoryObject) -> Optional[DirectoryObject]:
        """Create the object when absent, otherwise update it."""
        previous = self.read(desired.dn)
        if previous is None:
            return self.create(desired)
        return self.update(previous, desired)

    def remove(self, dn: str) -> bool:
        """
        Delete the object when it exists.

        Returns:
            True if an entry was deleted, False if it was already absent
        """
        if self.read(dn) is None:
            return False
        self.delete(dn)
        return True
