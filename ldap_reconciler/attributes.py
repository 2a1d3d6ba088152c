"""
Attribute encoding for directory entries.

This module converts between the wire representation of LDAP attributes
(a name with an ordered list of string values) and the declarative model used
for comparison: a set of singleton name => value entries for generic
attributes, and plain string lists for the well-known membership attributes.
"""

import hashlib
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

# Well-known attributes with dedicated handling, by wire name
WELL_KNOWN_SCALAR_ATTRIBUTES = ('description', 'gidNumber')
WELL_KNOWN_SET_ATTRIBUTES = ('member', 'memberUid', 'uniqueMember', 'memberURL')

# Attributes never treated as part of the generic bag
RESERVED_ATTRIBUTES = frozenset(
    name.lower() for name in
    ('objectClass', 'cn') + WELL_KNOWN_SCALAR_ATTRIBUTES + WELL_KNOWN_SET_ATTRIBUTES
)

WireAttributes = Iterable[Tuple[str, Sequence[str]]]


class MalformedInputError(Exception):
    """Raised when a DN or declared attribute cannot be interpreted."""
    pass


def attribute_hash(name: str, value: str) -> int:
    """
    Compute a stable structural hash for a singleton attribute entry.

    Args:
        name: Attribute name
        value: Attribute value

    Returns:
        64-bit integer derived from the (name, value) pair
    """
    digest = hashlib.sha256(f"{name}\x00{value}".encode('utf-8')).digest()
    return int.from_bytes(digest[:8], 'big')


def is_reserved_attribute(name: str) -> bool:
    """Return True for attributes handled outside the generic bag."""
    return name.lower() in RESERVED_ATTRIBUTES


class AttributeEntry:
    """A single name => value pair of the generic attribute bag."""

    __slots__ = ('name', 'value', '_hash')

    def __init__(self, name: str, value: str):
        if not isinstance(name, str) or not name:
            raise MalformedInputError(f"Attribute name must be a non-empty string, got {name!r}")
        if not isinstance(value, str):
            raise MalformedInputError(f"Value of attribute {name!r} must be a string, got {type(value).__name__}")
        object.__setattr__(self, 'name', name)
        object.__setattr__(self, 'value', value)
        object.__setattr__(self, '_hash', attribute_hash(name, value))

    def __setattr__(self, key, value):
        raise AttributeError("AttributeEntry is immutable")

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other) -> bool:
        if not isinstance(other, AttributeEntry):
            return NotImplemented
        return self.name == other.name and self.value == other.value

    def __lt__(self, other: 'AttributeEntry') -> bool:
        return self.sort_key() < other.sort_key()

    def sort_key(self) -> Tuple[str, str]:
        return self.name, self.value

    def to_record(self) -> Dict[str, str]:
        return {self.name: self.value}

    def __repr__(self) -> str:
        return f"AttributeEntry({self.name!r}, {self.value!r})"


class GenericAttributeBag:
    """
    Set of singleton attribute entries.

    A name may appear several times with different values, which is how
    multi-valued attributes are expressed; structurally identical entries
    collapse into one. Iteration is ordered by name, then value.
    """

    def __init__(self, entries: Iterable[AttributeEntry] = ()):
        self._entries = frozenset(entries)

    @classmethod
    def from_records(cls, records: Optional[Iterable[Mapping[str, str]]]) -> 'GenericAttributeBag':
        """
        Build a bag from declarative single-key records.

        Args:
            records: Iterable of ``{name: value}`` mappings, each with exactly one key

        Returns:
            New attribute bag

        Raises:
            MalformedInputError: If a record does not hold exactly one entry
        """
        entries = []
        for index, record in enumerate(records or []):
            if not isinstance(record, Mapping) or len(record) != 1:
                raise MalformedInputError(
                    f"Attribute record #{index} must map exactly one name to one value, got {record!r}"
                )
            for name, value in record.items():
                entries.append(AttributeEntry(name, value))
        return cls(entries)

    def names(self) -> List[str]:
        return sorted({entry.name for entry in self._entries})

    def values(self, name: str) -> List[str]:
        return sorted(entry.value for entry in self._entries if entry.name == name)

    def without_reserved(self) -> 'GenericAttributeBag':
        return GenericAttributeBag(e for e in self._entries if not is_reserved_attribute(e.name))

    def to_records(self) -> List[Dict[str, str]]:
        return [entry.to_record() for entry in self]

    def __iter__(self) -> Iterator[AttributeEntry]:
        return iter(sorted(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry) -> bool:
        return entry in self._entries

    def __eq__(self, other) -> bool:
        if not isinstance(other, GenericAttributeBag):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def __sub__(self, other: 'GenericAttributeBag') -> 'GenericAttributeBag':
        return GenericAttributeBag(self._entries - other._entries)

    def __or__(self, other: 'GenericAttributeBag') -> 'GenericAttributeBag':
        return GenericAttributeBag(self._entries | other._entries)

    def __repr__(self) -> str:
        return f"GenericAttributeBag({list(self)!r})"


def leading_rdn(dn: str) -> Tuple[str, str]:
    """
    Return the leading RDN component of a DN as a (name, value) pair.

    Args:
        dn: Distinguished name

    Returns:
        Attribute type and value of the first RDN component

    Raises:
        MalformedInputError: If the DN is empty or cannot be parsed
    """
    if not dn or not dn.strip():
        raise MalformedInputError("DN is empty")
    try:
        components = parse_dn(dn, strip=True)
    except (LDAPInvalidDnError, ValueError) as e:
        raise MalformedInputError(f"Invalid DN {dn!r}: {e}")
    if not components:
        raise MalformedInputError(f"DN {dn!r} has no RDN component")
    name, value, _ = components[0]
    if not name:
        raise MalformedInputError(f"DN {dn!r} has no attribute type in its first component")
    return name, value


def _is_rdn_attribute(name: str, values: Sequence[str], rdn: Optional[Tuple[str, str]]) -> bool:
    # the RDN is implicit in the DN, never a separately managed attribute
    if rdn is None or len(values) != 1:
        return False
    return name.lower() == rdn[0].lower() and values[0] == rdn[1]


def decode_attributes(wire: WireAttributes, dn: str) -> GenericAttributeBag:
    """
    Decode wire attributes into the generic attribute bag.

    Reserved attributes (objectClass, cn and the well-known ones) and the
    single-valued attribute naming the entry's RDN are skipped; every other
    value becomes its own entry.

    Args:
        wire: Iterable of (name, values) pairs as returned by a search
        dn: Distinguished name of the entry

    Returns:
        Generic attribute bag
    """
    try:
        rdn = leading_rdn(dn)
    except MalformedInputError:
        rdn = None

    entries = []
    for name, values in wire:
        if is_reserved_attribute(name) or _is_rdn_attribute(name, values, rdn):
            continue
        entries.extend(AttributeEntry(name, value) for value in values)
    return GenericAttributeBag(entries)


def encode_attributes(bag: GenericAttributeBag) -> Dict[str, List[str]]:
    """
    Group bag entries by name for an Add request.

    Args:
        bag: Generic attribute bag

    Returns:
        Mapping of attribute name to its values
    """
    attributes: Dict[str, List[str]] = {}
    for entry in bag:
        attributes.setdefault(entry.name, []).append(entry.value)
    return attributes


def decode_values(wire: WireAttributes, name: str) -> List[str]:
    """Collect the values of one attribute from a wire attribute list."""
    values: List[str] = []
    for wire_name, wire_values in wire:
        if wire_name.lower() == name.lower():
            values.extend(wire_values)
    return sorted(set(values))


def encode_values(values: Iterable[str]) -> List[str]:
    return sorted(values)


def align_attribute_names(bag: GenericAttributeBag, reference: GenericAttributeBag) -> GenericAttributeBag:
    """
    Respell the names of a bag the way a reference bag spells them.

    Attribute names are case-insensitive. A name the reference holds takes the
    reference's spelling; any other name takes the first of its spellings in
    sorted order, so the entries of one attribute always share one name.
    """
    spelling: Dict[str, str] = {}
    for name in reference.names() + bag.names():
        spelling.setdefault(name.lower(), name)
    return GenericAttributeBag(AttributeEntry(spelling[entry.name.lower()], entry.value) for entry in bag)
