"""Field-level before/after diffing for the activity trail.

Comparison is strict: two values are equal only when they have the same type
and compare equal, so ``None``, ``""`` and ``0`` are all distinct and
``"10"`` never equals ``10``. Only keys present on both sides are compared.
Collections are matched element by element on a natural key; elements
present on one side only produce no entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

ADDRESS_LABEL_PREFIX = {1: "Billing", 2: "Shipping"}


@dataclass(frozen=True)
class FieldChange:
    """One changed field between two snapshots."""

    field_name: str
    old_value: Any
    new_value: Any
    label: str
    line_item_id: int | None = None


def strictly_equal(left: Any, right: Any) -> bool:
    return type(left) is type(right) and left == right


def title_label(field_name: str, prefix: str | None = None) -> str:
    """``due_date`` -> ``Due Date``; with prefix ``Billing City``."""
    words = [w.capitalize() for w in field_name.split("_") if w]
    if prefix:
        words.insert(0, prefix)
    return " ".join(words)


class ActivityDiffRecorder:
    """Computes ordered field changes between two snapshots."""

    def __init__(self, ignored_fields: Iterable[str] = ()):
        self.ignored_fields = frozenset(ignored_fields)

    def diff(
        self,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        label_prefix: str | None = None,
        line_item_id: int | None = None,
    ) -> list[FieldChange]:
        """Diff two flat field maps, in ``before`` key order."""
        changes: list[FieldChange] = []
        for key, old_value in before.items():
            if key in self.ignored_fields or key not in after:
                continue
            new_value = after[key]
            if strictly_equal(old_value, new_value):
                continue
            changes.append(
                FieldChange(
                    field_name=key,
                    old_value=old_value,
                    new_value=new_value,
                    label=title_label(key, label_prefix),
                    line_item_id=line_item_id,
                )
            )
        return changes

    def diff_collection(
        self,
        before: Sequence[Mapping[str, Any]],
        after: Sequence[Mapping[str, Any]],
        key: str,
    ) -> list[FieldChange]:
        """Diff two collections element-wise, matched on ``key``."""
        after_by_key = {item[key]: item for item in after if key in item}
        changes: list[FieldChange] = []
        for old_item in before:
            natural_key = old_item.get(key)
            new_item = after_by_key.get(natural_key)
            if natural_key is None or new_item is None:
                continue
            if key == "address_type":
                changes.extend(
                    self.diff(old_item, new_item, ADDRESS_LABEL_PREFIX.get(natural_key))
                )
            else:
                changes.extend(self.diff(old_item, new_item, line_item_id=natural_key))
        return changes

    def diff_snapshots(
        self,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
    ) -> list[FieldChange]:
        """Diff two ledger snapshots: header, then line items, then addresses."""
        changes = self.diff(before.get("header", {}), after.get("header", {}))
        changes.extend(
            self.diff_collection(
                before.get("line_items", []), after.get("line_items", []), "line_item_id"
            )
        )
        changes.extend(
            self.diff_collection(
                before.get("addresses", []), after.get("addresses", []), "address_type"
            )
        )
        return changes
