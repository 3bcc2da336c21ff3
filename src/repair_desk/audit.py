"""Append-only order history.

History is the only durable, ordered record of what happened to an order.
Events are written once with the time they happened and are never edited,
back-dated, or deleted; this module intentionally exposes no such operation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import HistoryEventType
from .errors import ValidationError


def record(
    workbook: Workbook,
    order_id: str,
    actor: str,
    event_type: HistoryEventType,
    description: str,
    *,
    timestamp: datetime,
) -> data_manager.HistoryRow:
    """Append a single history event for ``order_id``.

    Raises:
        ValidationError: If the actor or description is blank, the event type
            is unknown, or ``timestamp`` is naive.
    """

    if not actor or not actor.strip():
        raise ValidationError("History events require an actor")
    if not description or not description.strip():
        raise ValidationError("History events require a description")
    if timestamp.utcoffset() is None:
        raise ValidationError("History timestamps must be timezone-aware")
    try:
        kind = HistoryEventType(event_type)
    except ValueError as exc:
        raise ValidationError(f"Unsupported history event type: {event_type}") from exc

    event = data_manager.HistoryRow(
        event_id=data_manager.generate_record_id("H", timestamp),
        order_id=order_id,
        actor=actor.strip(),
        event_type=kind.value,
        description=description.strip(),
        timestamp=timestamp,
    )
    data_manager.append_history(workbook, event)
    log.info("Recorded %s event '%s' on order '%s'", kind.value, event.event_id, order_id)
    return event


def order_history(events: Iterable[data_manager.HistoryRow], order_id: str) -> List[data_manager.HistoryRow]:
    """Return the events of ``order_id`` newest first.

    Events sharing a timestamp keep their reverse insertion order.
    """

    selected = [event for event in events if event.order_id == order_id]
    indexed = list(enumerate(selected))
    indexed.sort(key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
    return [event for _, event in indexed]
