"""Diff utilities for comparing unit snapshots."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .models import CanonicalUnit, DiffResult, UnitChange

TRACKED_FIELDS = ("price", "available_on", "floor_plan_id", "unit_number")


def _unit_map(units: Optional[Iterable[CanonicalUnit]]) -> Dict[str, CanonicalUnit]:
    mapping: Dict[str, CanonicalUnit] = {}
    for unit in units or ():
        mapping.setdefault(unit.unit_key, unit)
    return mapping


def diff_keys(previous_keys: Iterable[str], current_keys: Iterable[str]) -> DiffResult:
    """Compute appeared, disappeared, and unchanged keys."""
    previous = set(previous_keys)
    current = set(current_keys)
    return DiffResult(
        appeared=sorted(current - previous),
        disappeared=sorted(previous - current),
        unchanged=sorted(current & previous),
    )


def diff_units(
    previous_units: Optional[Iterable[CanonicalUnit]],
    current_units: Optional[Iterable[CanonicalUnit]],
) -> DiffResult:
    """Compare two snapshots' units by ``unit_key``."""
    return diff_keys(
        (unit.unit_key for unit in previous_units or ()),
        (unit.unit_key for unit in current_units or ()),
    )


def detect_changes(
    previous_units: Optional[Iterable[CanonicalUnit]],
    current_units: Optional[Iterable[CanonicalUnit]],
) -> List[UnitChange]:
    """Report tracked-field changes for units present in both snapshots."""
    previous = _unit_map(previous_units)
    current = _unit_map(current_units)

    changes: List[UnitChange] = []
    for unit_key in sorted(previous.keys() & current.keys()):
        before_unit = previous[unit_key]
        after_unit = current[unit_key]
        fields = [
            name for name in TRACKED_FIELDS
            if getattr(before_unit, name) != getattr(after_unit, name)
        ]
        if not fields:
            continue
        changes.append(
            UnitChange(
                unit_key=unit_key,
                unit_number=after_unit.unit_number or before_unit.unit_number,
                fields=tuple(fields),
                before={name: getattr(before_unit, name) for name in fields},
                after={name: getattr(after_unit, name) for name in fields},
            )
        )
    return changes
