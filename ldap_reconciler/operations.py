"""
Rendering of directory operations from a desired state or a delta.

This module turns DirectoryObjects and deltas into ordered Add and Modify
operations, filters attributes that have a dedicated path out of the generic
bag, and checks the object-class policy before anything is written.
"""

import dataclasses
import enum
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ldap3 import MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE

from ldap_reconciler.attributes import (
    WELL_KNOWN_SET_ATTRIBUTES,
    GenericAttributeBag,
    MalformedInputError,
    align_attribute_names,
    decode_attributes,
    encode_attributes,
    encode_values,
    leading_rdn,
)
from ldap_reconciler.delta import Delta, SetDelta, compute_bag_delta, compute_scalar_changes, compute_set_delta
from ldap_reconciler.models import DirectoryObject

logger = logging.getLogger(__name__)

# object class => (declarative field, wire attribute) it cannot do without
REQUIRED_ATTRIBUTES = {
    'posixgroup': (('gid_number', 'gidNumber'),),
}


class ValidationError(Exception):
    """A single object-class or attribute policy violation."""

    def __init__(self, message: str, attribute: Optional[str] = None, object_class: Optional[str] = None):
        super().__init__(message)
        self.attribute = attribute
        self.object_class = object_class


class ObjectValidationError(Exception):
    """Raised when a desired state violates policy; nothing was written."""

    def __init__(self, dn: str, errors: Sequence[ValidationError]):
        self.dn = dn
        self.errors = list(errors)
        super().__init__(f"validation failed for DN {dn!r}: " + "; ".join(str(e) for e in self.errors))


class ChangeType(enum.Enum):
    ADD = MODIFY_ADD
    REPLACE = MODIFY_REPLACE
    DELETE = MODIFY_DELETE


@dataclasses.dataclass(frozen=True)
class Change:
    """One modification of a Modify request; empty values on Delete remove the attribute."""

    operation: ChangeType
    name: str
    values: Tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class AddOperation:
    dn: str
    attributes: Dict[str, List[str]]


@dataclasses.dataclass(frozen=True)
class ModifyOperation:
    dn: str
    changes: Tuple[Change, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.changes


@dataclasses.dataclass(frozen=True)
class DeleteOperation:
    dn: str


def derive_cn_from_dn(dn: str) -> str:
    """
    Extract the common name from a DN of the form ``cn=name,ou=...``.

    Raises:
        MalformedInputError: If the leading RDN component is not a cn
    """
    name, value = leading_rdn(dn)
    if name.lower() != 'cn':
        raise MalformedInputError(f"CN not found in DN {dn!r}")
    return value


def validate_required_attributes(object_classes: Iterable[str], desired: DirectoryObject) -> List[ValidationError]:
    """
    Check that every recognized object class has its mandatory attributes.

    Args:
        object_classes: Object class names of the object
        desired: Desired state

    Returns:
        All violations found; an empty list means the state is valid
    """
    errors = []
    for object_class in sorted(object_classes):
        for field, _ in REQUIRED_ATTRIBUTES.get(object_class.lower(), ()):
            if getattr(desired, field) is None:
                errors.append(ValidationError(
                    f"missing required attribute '{field}' for objectClass '{object_class}'",
                    attribute=field,
                    object_class=object_class,
                ))
    return errors


def validate_attribute_values(desired: DirectoryObject, invalid_values: Iterable[str]) -> List[ValidationError]:
    """Reject generic attribute values matching a configured invalid value, ignoring case."""
    invalid = {value.lower() for value in invalid_values}
    if not invalid:
        return []
    return [
        ValidationError(f"attribute {entry.name!r} has invalid value '{entry.value}'", attribute=entry.name)
        for entry in desired.attributes
        if entry.value.lower() in invalid
    ]


def validate(desired: DirectoryObject, invalid_values: Iterable[str] = ()) -> List[ValidationError]:
    return (validate_required_attributes(desired.object_classes, desired)
            + validate_attribute_values(desired, invalid_values))


def managed_attributes(obj: DirectoryObject) -> GenericAttributeBag:
    """
    Generic bag of an object as it compares against a normalized read.

    Applies the same filter as reading: reserved names and the single-valued
    RDN attribute are dropped.
    """
    return decode_attributes(encode_attributes(obj.attributes).items(), obj.dn)


def build_create_operation(desired: DirectoryObject, require_cn: bool = True) -> AddOperation:
    """
    Render the Add request creating an object.

    Attributes are emitted in this order: objectClass, the naming attribute
    taken from the DN, description, gidNumber, the membership attributes and
    finally the generic bag grouped by name.

    Args:
        desired: Desired state
        require_cn: Fail unless the DN is named by a cn

    Returns:
        AddOperation for the object

    Raises:
        MalformedInputError: If the DN cannot provide the naming attribute
    """
    attributes: Dict[str, List[str]] = {'objectClass': sorted(desired.object_classes)}

    rdn_name, rdn_value = leading_rdn(desired.dn)
    if require_cn:
        attributes['cn'] = [derive_cn_from_dn(desired.dn)]
    elif rdn_name.lower() == 'cn':
        attributes['cn'] = [rdn_value]

    for name, value in desired.scalar_attributes().items():
        if value is not None:
            attributes[name] = [value]
    for name, values in desired.set_attributes().items():
        if values:
            attributes[name] = encode_values(values)

    generic = encode_attributes(desired.attributes.without_reserved())
    if 'cn' not in attributes:
        # the naming attribute must be present on the new entry
        key = next((name for name in generic if name.lower() == rdn_name.lower()), rdn_name)
        values = generic.setdefault(key, [])
        if rdn_value not in values:
            values.insert(0, rdn_value)
    attributes.update(generic)

    for name, values in attributes.items():
        logger.debug(f"Attribute being added to LDAP request for {desired.dn}: {name}: {values}")
    return AddOperation(dn=desired.dn, attributes=attributes)


def _render_set_delta(name: str, delta: SetDelta) -> List[Change]:
    changes = []
    if delta.to_remove:
        changes.append(Change(ChangeType.DELETE, name, delta.to_remove))
    if delta.to_add:
        changes.append(Change(ChangeType.ADD, name, delta.to_add))
    return changes


def _group_by_name(entries) -> Dict[str, Tuple[str, ...]]:
    grouped: Dict[str, List[str]] = {}
    for entry in entries:
        grouped.setdefault(entry.name, []).append(entry.value)
    return {name: tuple(values) for name, values in grouped.items()}


def build_update_operation(dn: str, bag_delta: Delta, set_deltas: Mapping[str, SetDelta],
                           scalar_changes: Mapping[str, Optional[str]],
                           desired_attributes: GenericAttributeBag) -> ModifyOperation:
    """
    Render the Modify request for a computed delta.

    Scalar attributes are replaced as a whole. Membership attributes and the
    generic bag get value-level Delete and Add changes, removals first. A
    generic attribute losing all of its values is deleted as a whole.

    Args:
        dn: DN of the object
        bag_delta: Delta of the generic bag
        set_deltas: Wire name => SetDelta, in the order to render them
        scalar_changes: Wire name => new value, None clears the attribute
        desired_attributes: Desired generic bag

    Returns:
        ModifyOperation, possibly without changes
    """
    changes: List[Change] = []

    for name, value in scalar_changes.items():
        changes.append(Change(ChangeType.REPLACE, name, (value,) if value is not None else ()))

    for name, delta in set_deltas.items():
        changes.extend(_render_set_delta(name, delta))

    if bag_delta.changed:
        for name, values in _group_by_name(bag_delta.changed).items():
            changes.append(Change(ChangeType.REPLACE, name, values))

    remaining = set(desired_attributes.names())
    for name, values in _group_by_name(bag_delta.removed).items():
        if name in remaining:
            changes.append(Change(ChangeType.DELETE, name, values))
        else:
            changes.append(Change(ChangeType.DELETE, name))
    for name, values in _group_by_name(bag_delta.added).items():
        changes.append(Change(ChangeType.ADD, name, values))

    for change in changes:
        logger.debug(f"ModifyRequest Change - Operation: {change.operation.name}, "
                     f"Type: {change.name}, Values: {list(change.values)}")
    return ModifyOperation(dn=dn, changes=tuple(changes))


def _object_class_delta(previous: Iterable[str], declared: Iterable[str]) -> SetDelta:
    # object classes are added, never removed; names compare case-insensitively
    present = {value.lower() for value in previous}
    missing = {value.lower(): value for value in sorted(declared) if value.lower() not in present}
    return SetDelta(to_add=missing.values())


def plan_update(previous: DirectoryObject, desired: DirectoryObject) -> ModifyOperation:
    """
    Compute the Modify request moving an object from its previous to its desired state.

    Raises:
        MalformedInputError: If the DNs differ; a DN change needs delete and create
    """
    if previous.dn != desired.dn:
        raise MalformedInputError(
            f"DN cannot be changed from {previous.dn!r} to {desired.dn!r}; delete and recreate the object"
        )

    scalar_changes = compute_scalar_changes(previous.scalar_attributes(), desired.scalar_attributes())

    set_deltas = {'objectClass': _object_class_delta(previous.object_classes, desired.declared_object_classes)}
    previous_sets = previous.set_attributes()
    desired_sets = desired.set_attributes()
    for name in WELL_KNOWN_SET_ATTRIBUTES:
        set_deltas[name] = compute_set_delta(previous_sets[name], desired_sets[name])

    desired_attributes = align_attribute_names(managed_attributes(desired), previous.attributes)
    bag_delta = compute_bag_delta(previous.attributes, desired_attributes)
    logger.debug(f"Generic attributes of {desired.dn}: {len(bag_delta.added)} added, "
                 f"{len(bag_delta.removed)} removed")

    return build_update_operation(desired.dn, bag_delta, set_deltas, scalar_changes, desired_attributes)
