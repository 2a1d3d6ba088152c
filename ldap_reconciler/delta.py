"""
Delta computation between a previous and a desired attribute state.

Generic bags are compared as sets of singleton entries, so a changed value
shows up as one removed and one added entry sharing a name. Well-known
membership attributes are compared as plain string sets.
"""

from typing import Dict, Iterable, Optional, Tuple

from ldap_reconciler.attributes import AttributeEntry, GenericAttributeBag


class Delta:
    """Added, changed and removed entries of a generic attribute bag."""

    def __init__(self, added: Iterable[AttributeEntry] = (), removed: Iterable[AttributeEntry] = (),
                 changed: Iterable[AttributeEntry] = ()):
        self.added: Tuple[AttributeEntry, ...] = tuple(sorted(added))
        self.removed: Tuple[AttributeEntry, ...] = tuple(sorted(removed))
        # whole-key replaces; entry-level set comparison never fills this
        self.changed: Tuple[AttributeEntry, ...] = tuple(sorted(changed))

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Delta):
            return NotImplemented
        return (self.added, self.removed, self.changed) == (other.added, other.removed, other.changed)

    def __repr__(self) -> str:
        return f"Delta(added={list(self.added)!r}, removed={list(self.removed)!r}, changed={list(self.changed)!r})"


class SetDelta:
    """Values to add to and remove from a multi-valued attribute."""

    def __init__(self, to_add: Iterable[str] = (), to_remove: Iterable[str] = ()):
        self.to_add: Tuple[str, ...] = tuple(sorted(to_add))
        self.to_remove: Tuple[str, ...] = tuple(sorted(to_remove))

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_remove)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SetDelta):
            return NotImplemented
        return (self.to_add, self.to_remove) == (other.to_add, other.to_remove)

    def __repr__(self) -> str:
        return f"SetDelta(to_add={list(self.to_add)!r}, to_remove={list(self.to_remove)!r})"


def compute_bag_delta(previous: GenericAttributeBag, desired: GenericAttributeBag) -> Delta:
    """
    Compute the delta between two generic attribute bags.

    Args:
        previous: Bag read from the directory
        desired: Declared bag

    Returns:
        Delta with ``added = desired - previous`` and ``removed = previous - desired``
    """
    return Delta(added=desired - previous, removed=previous - desired)


def compute_set_delta(previous: Iterable[str], desired: Iterable[str]) -> SetDelta:
    """
    Compute the set difference of a multi-valued attribute in both directions.

    Values present on both sides are left untouched.
    """
    previous_set = set(previous or ())
    desired_set = set(desired or ())
    return SetDelta(to_add=desired_set - previous_set, to_remove=previous_set - desired_set)


def compute_scalar_changes(previous: Dict[str, Optional[str]],
                           desired: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """
    Find scalar attributes whose value differs.

    Args:
        previous: Wire name => value (None when absent) read from the directory
        desired: Wire name => declared value (None when not declared)

    Returns:
        Wire name => new value for each changed attribute; None clears it
    """
    changes = {}
    for name in sorted(set(previous) | set(desired)):
        old_value = previous.get(name) or None
        new_value = desired.get(name) or None
        if old_value != new_value:
            changes[name] = new_value
    return changes


def apply_bag_delta(bag: GenericAttributeBag, delta: Delta) -> GenericAttributeBag:
    """Return ``(bag | added) - removed``."""
    return (bag | GenericAttributeBag(delta.added)) - GenericAttributeBag(delta.removed)


def apply_set_delta(values: Iterable[str], delta: SetDelta) -> set:
    return (set(values) | set(delta.to_add)) - set(delta.to_remove)
