"""Property bag diffing.

Compares the canonical JSON form of a desired property bag with the one
recorded in the snapshot. Both sides come from the same encoder, so the
comparison is a strict deep equality: `1` and `1.0`, or `true` and `"true"`,
are different values.

Keys explicitly marked as provider-generated are left out of the
comparison on both sides.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

ADD = "add"
CHANGE = "change"
REMOVE = "remove"


@dataclass(frozen=True)
class PropertyChange:
    """A single top-level property change.

    Attributes:
        key: Property key.
        before: Value recorded in the snapshot (None if the key is new).
        after: Desired value (None if the key is removed).
        action: One of add, change, remove.
    """

    key: str
    before: Any
    after: Any
    action: str = CHANGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "action": self.action,
            "before": self.before,
            "after": self.after,
        }


def deep_equal(a: Any, b: Any) -> bool:
    """Deep equality check for nested JSON-like structures."""
    if type(a) is not type(b):
        return False

    if isinstance(a, dict):
        if set(a.keys()) != set(b.keys()):
            return False
        return all(deep_equal(a[k], b[k]) for k in a)

    if isinstance(a, list | tuple):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b, strict=True))

    return a == b


def compute_diff(
    desired: Mapping[str, Any],
    current: Mapping[str, Any],
    ignore: Iterable[str] = (),
) -> list[PropertyChange]:
    """Compute top-level property changes from `current` to `desired`.

    Args:
        desired: Canonical desired property bag.
        current: Canonical property bag from the snapshot.
        ignore: Provider-generated keys to leave out of the comparison.

    Returns:
        Changes ordered by desired key order, then removed keys.
    """
    ignored = set(ignore)
    changes: list[PropertyChange] = []

    for key, value in desired.items():
        if key in ignored:
            continue
        if key not in current:
            changes.append(PropertyChange(key=key, before=None, after=value, action=ADD))
        elif not deep_equal(value, current[key]):
            changes.append(PropertyChange(key=key, before=current[key], after=value))

    for key, value in current.items():
        if key in ignored or key in desired:
            continue
        changes.append(PropertyChange(key=key, before=value, after=None, action=REMOVE))

    return changes
