"""
Dispensation rules shared by the terminal and the store.

A prescription's dispensation status after a sale is derived from the
prescribed items and the units linked to each of them:

- dispensed:      every prescribed item is covered by equal or more units
- incomplete:     not every item is covered, but some units were linked
- not_dispensed:  nothing was linked

Items whose quantity cannot be read as a positive integer are ignored.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

DISPENSED = "dispensed"
INCOMPLETE = "incomplete"
NOT_DISPENSED = "not_dispensed"

DISPENSATION_STATUSES = (DISPENSED, INCOMPLETE, NOT_DISPENSED)

_LEADING_INT = re.compile(r"^\s*\+?(\d+)")


def required_quantity(raw: Any) -> int | None:
    """
    Units a prescribed item asks for, or None when unreadable.

    Prescriptions carry free text ("30", "30 tablets"); the leading integer
    is the quantity. Zero and negative values are treated as unreadable.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        match = _LEADING_INT.match(raw)
        if not match:
            return None
        value = int(match.group(1))
    else:
        return None
    return value if value > 0 else None


def compute_status(prescribed_items: Iterable[Mapping[str, Any]], dispensed: Mapping[str, int]) -> str:
    """
    prescribed_items: dicts with "name" and "quantity_to_dispense"
    dispensed: units linked per prescribed item name
    """
    requirements = []
    for item in prescribed_items:
        needed = required_quantity(item.get("quantity_to_dispense"))
        if needed is not None:
            requirements.append((item.get("name"), needed))

    linked_units = sum(q for q in dispensed.values() if q > 0)

    if requirements and all(dispensed.get(name, 0) >= needed for name, needed in requirements):
        return DISPENSED
    if linked_units > 0:
        return INCOMPLETE
    return NOT_DISPENSED
