"""
Rank raw slot records into the candidates worth racing for.

Отбор и сортировка свободных слотов.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from .models import DateWindow, Slot


def eligible(slots: Iterable[Slot], window: Optional[DateWindow] = None) -> List[Slot]:
    """UNBOOKED slots, optionally re-checked against the preferred window."""
    return [
        slot
        for slot in slots
        if slot.is_unbooked and (window is None or window.contains(slot.slot_date))
    ]


def select(
    slots: Iterable[Slot],
    max_count: int,
    window: Optional[DateWindow] = None,
) -> List[Slot]:
    """
    Earliest `max_count` eligible slots, ordered by date then start time.

    The sort is stable, so slots at the same instant keep their input order.
    """
    if max_count <= 0:
        return []
    ranked = sorted(eligible(slots, window), key=lambda slot: slot.starts_at)
    return ranked[:max_count]


__all__ = ["eligible", "select"]
