"""Unit tests for the append-only order history."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from repair_desk import audit, data_manager
from repair_desk.constants import HistoryEventType
from repair_desk.errors import ValidationError

MOMENT = datetime(2025, 2, 1, 12, 0, tzinfo=UTC)


def test_record_appends_one_history_row(monkeypatch):
    """record should build a HistoryRow and hand it to the DAL once."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_history", append)
    workbook = Mock(name="workbook")

    event = audit.record(workbook, "A010", " tech ", HistoryEventType.COMMENT, "Called client", timestamp=MOMENT)

    append.assert_called_once_with(workbook, event)
    assert event.actor == "tech"
    assert event.event_type == "comment"
    assert event.timestamp == MOMENT
    assert event.event_id.startswith("H20250201120000")


@pytest.mark.parametrize(
    "actor, event_type, description",
    [
        ("", HistoryEventType.COMMENT, "text"),
        ("tech", HistoryEventType.COMMENT, "   "),
        ("tech", "renamed", "text"),
    ],
)
def test_record_rejects_incomplete_events(monkeypatch, actor, event_type, description):
    """Events without actor, description, or a known type are never written."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_history", append)

    with pytest.raises(ValidationError):
        audit.record(Mock(), "A010", actor, event_type, description, timestamp=MOMENT)

    append.assert_not_called()


def test_order_history_is_newest_first_and_filtered():
    """Only the requested order's events come back, latest first."""

    def _event(event_id, order_id, hour):
        return data_manager.HistoryRow(event_id, order_id, "tech", "comment", event_id, datetime(2025, 2, 1, hour, tzinfo=UTC))

    events = [
        _event("H1", "A010", 9),
        _event("H2", "A011", 10),
        _event("H3", "A010", 11),
        _event("H4", "A010", 11),
    ]

    history = audit.order_history(events, "A010")

    assert [event.event_id for event in history] == ["H4", "H3", "H1"]


def test_audit_module_exposes_no_mutation_of_existing_events():
    """History is insert-only: there is no update or delete helper."""

    assert not hasattr(audit, "update")
    assert not hasattr(audit, "delete")
    assert not hasattr(data_manager, "update_history")
    assert not hasattr(data_manager, "delete_history")


def test_record_rejects_naive_timestamps(monkeypatch):
    """Events without a UTC offset would not sort against the rest of the history."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_history", append)

    with pytest.raises(ValidationError, match="timezone-aware"):
        audit.record(Mock(), "A010", "tech", HistoryEventType.COMMENT, "Called client", timestamp=MOMENT.replace(tzinfo=None))

    append.assert_not_called()
