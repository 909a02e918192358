"""Canonical unit identity and record building."""

from __future__ import annotations

import logging
import math
import re
from typing import Iterable, List, Optional, Set

from .models import BuildResult, CanonicalUnit, NormalizedKey, RawUnitRecord

logger = logging.getLogger(__name__)

UNIT_PREFIX = "unit:"
ID_PREFIX = "id:"

_PRICE_NOISE = re.compile(r"[^\d.]")


def _clean(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_unit_key(raw: RawUnitRecord) -> Optional[NormalizedKey]:
    """Derive the canonical key for a raw record, or ``None`` when unkeyable.

    Precedence: an explicit key carried by the source (kept verbatim), then
    the trimmed unit number, then the source id. Unit numbers keep their case.
    """
    unit_number = _clean(raw.unit_number)
    unit_id = _clean(raw.unit_id)

    explicit = None
    if _clean(raw.unit_key):
        explicit = str(raw.unit_key)
    elif raw.unit_id is not None and str(raw.unit_id).startswith(UNIT_PREFIX):
        explicit = str(raw.unit_id)
    if explicit:
        return NormalizedKey(
            unit_key=explicit,
            unit_number=unit_number or unit_number_from_key(explicit),
        )

    if unit_number:
        return NormalizedKey(unit_key=UNIT_PREFIX + unit_number, unit_number=unit_number)

    if unit_id:
        return NormalizedKey(unit_key=ID_PREFIX + unit_id, unit_number=None)

    return None


def unit_number_from_key(unit_key: Optional[str]) -> Optional[str]:
    """Recover the display number from a ``unit:<number>`` key."""
    if not unit_key or not unit_key.startswith(UNIT_PREFIX):
        return None
    return unit_key[len(UNIT_PREFIX):] or None


def parse_price(value: object) -> Optional[float]:
    """Parse a price from text or a number; never raises."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = _PRICE_NOISE.sub("", str(value))
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def build_canonical_unit(raw: RawUnitRecord) -> Optional[CanonicalUnit]:
    """Map a raw record to a CanonicalUnit, or ``None`` when it has no identity."""
    key = normalize_unit_key(raw)
    if key is None:
        return None

    floor_plan_id = _clean(raw.floor_plan_id) or None
    return CanonicalUnit(
        unit_key=key.unit_key,
        unit_number=key.unit_number,
        available_on=raw.available_on,
        price=parse_price(raw.price),
        floor_plan_id=floor_plan_id,
        meta=dict(raw.meta),
    )


def build_canonical_units(raws: Iterable[RawUnitRecord]) -> BuildResult:
    """Canonicalize a run's records, dropping unkeyable rows and later duplicates."""
    units: List[CanonicalUnit] = []
    seen: Set[str] = set()
    dropped = 0
    duplicates = 0

    for raw in raws:
        unit = build_canonical_unit(raw)
        if unit is None:
            dropped += 1
            continue
        if unit.unit_key in seen:
            duplicates += 1
            continue
        seen.add(unit.unit_key)
        units.append(unit)

    if dropped or duplicates:
        logger.debug(
            "Canonicalized %d units (dropped %d unkeyable, %d duplicates)",
            len(units),
            dropped,
            duplicates,
        )
    return BuildResult(units=units, dropped_count=dropped, duplicate_count=duplicates)
