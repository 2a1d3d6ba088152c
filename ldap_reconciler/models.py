"""
Declarative model of a directory object.

A DirectoryObject is built either from a declaration (configuration) or from
a search result, and is discarded once the operations for a run have been
produced. The directory entry itself is the source of truth.
"""

from typing import Any, Dict, FrozenSet, Iterable, Optional

from ldap_reconciler.attributes import (
    GenericAttributeBag,
    MalformedInputError,
    WireAttributes,
    decode_attributes,
    decode_values,
)

DEFAULT_OBJECT_CLASSES = ('posixGroup',)

# declarative field => wire attribute name
SET_FIELDS = {
    'member': 'member',
    'member_uid': 'memberUid',
    'unique_member': 'uniqueMember',
    'member_url': 'memberURL',
}


def _string_set(values: Optional[Iterable[Any]], field: str) -> FrozenSet[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        raise MalformedInputError(f"Field {field!r} must be a list of strings, got a string")
    result = set()
    for value in values:
        if not isinstance(value, str):
            raise MalformedInputError(f"Field {field!r} holds a non-string value: {value!r}")
        result.add(value)
    return frozenset(result)


def _parse_gid_number(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise MalformedInputError(f"gid_number must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"gid_number must be an integer, got {value!r}")


class DirectoryObject:
    """
    Desired or normalized state of a single directory entry.

    The DN is the identity of the object and never changes; moving an object
    means deleting it and creating a new one.
    """

    def __init__(self, dn: str, object_classes: Optional[Iterable[str]] = None,
                 description: Optional[str] = None, gid_number: Optional[int] = None,
                 member: Optional[Iterable[str]] = None, member_uid: Optional[Iterable[str]] = None,
                 unique_member: Optional[Iterable[str]] = None, member_url: Optional[Iterable[str]] = None,
                 attributes: Optional[GenericAttributeBag] = None):
        if not isinstance(dn, str) or not dn.strip():
            raise MalformedInputError("A directory object requires a non-empty DN")
        self.dn = dn
        # object classes named by the caller; empty when the default applies
        self.declared_object_classes = _string_set(object_classes, 'object_classes')
        self.object_classes = self.declared_object_classes or frozenset(DEFAULT_OBJECT_CLASSES)
        self.description = description or None
        self.gid_number = _parse_gid_number(gid_number)
        self.member = _string_set(member, 'member')
        self.member_uid = _string_set(member_uid, 'member_uid')
        self.unique_member = _string_set(unique_member, 'unique_member')
        self.member_url = _string_set(member_url, 'member_url')
        self.attributes = attributes if attributes is not None else GenericAttributeBag()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DirectoryObject':
        """
        Build the desired state from a declaration.

        Args:
            data: Mapping with ``dn`` and optional ``object_classes``, ``description``,
                ``gid_number``, ``member``, ``member_uid``, ``unique_member``,
                ``member_url`` and ``attributes`` (a list of single-key mappings)

        Returns:
            DirectoryObject holding the declared state

        Raises:
            MalformedInputError: If the declaration cannot be interpreted
        """
        if not isinstance(data, dict):
            raise MalformedInputError(f"Object declaration must be a mapping, got {type(data).__name__}")
        if not data.get('dn'):
            raise MalformedInputError("Object declaration is missing 'dn'")

        return cls(
            dn=data['dn'],
            object_classes=data.get('object_classes'),
            description=data.get('description'),
            gid_number=data.get('gid_number'),
            member=data.get('member'),
            member_uid=data.get('member_uid'),
            unique_member=data.get('unique_member'),
            member_url=data.get('member_url'),
            attributes=GenericAttributeBag.from_records(data.get('attributes')),
        )

    @classmethod
    def from_entry(cls, dn: str, wire: WireAttributes) -> 'DirectoryObject':
        """
        Normalize a search result entry.

        Args:
            dn: DN the entry was searched by
            wire: (name, values) pairs of the entry

        Returns:
            DirectoryObject holding the normalized state
        """
        wire = [(name, list(values)) for name, values in wire]
        descriptions = decode_values(wire, 'description')
        gid_numbers = decode_values(wire, 'gidNumber')

        return cls(
            dn=dn,
            object_classes=decode_values(wire, 'objectClass'),
            description=descriptions[0] if descriptions else None,
            gid_number=gid_numbers[0] if gid_numbers else None,
            member=decode_values(wire, 'member'),
            member_uid=decode_values(wire, 'memberUid'),
            unique_member=decode_values(wire, 'uniqueMember'),
            member_url=decode_values(wire, 'memberURL'),
            attributes=decode_attributes(wire, dn),
        )

    def scalar_attributes(self) -> Dict[str, Optional[str]]:
        """Wire name => value of the single-valued well-known attributes."""
        return {
            'description': self.description,
            'gidNumber': str(self.gid_number) if self.gid_number is not None else None,
        }

    def set_attributes(self) -> Dict[str, FrozenSet[str]]:
        """Wire name => values of the multi-valued well-known attributes."""
        return {wire_name: getattr(self, field) for field, wire_name in SET_FIELDS.items()}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'dn': self.dn,
            'object_classes': sorted(self.object_classes),
        }
        if self.description is not None:
            data['description'] = self.description
        if self.gid_number is not None:
            data['gid_number'] = self.gid_number
        for field in SET_FIELDS:
            values = getattr(self, field)
            if values:
                data[field] = sorted(values)
        if len(self.attributes):
            data['attributes'] = self.attributes.to_records()
        return data

    def __eq__(self, other) -> bool:
        if not isinstance(other, DirectoryObject):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"<DirectoryObject {self.dn}>"
