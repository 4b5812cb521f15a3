"""Persist operation log fields."""

from __future__ import annotations

from datetime import datetime

from constants import NEVER_EXPIRES
from core.logging import log_persist_operation


class RecordingLogger:
    def __init__(self) -> None:
        self.events = []

    def debug(self, event: str, **kwargs) -> None:
        self.events.append((event, kwargs))


def test_operation_carries_database_and_key() -> None:
    logger = RecordingLogger()
    log_persist_operation(logger, "get", "session", "default", hit=False)

    assert logger.events == [("Persist operation", {
        "operation": "get",
        "persist_key": "session",
        "database_id": "default",
        "persist_hit": False,
    })]


def test_expiration_is_logged_as_iso_or_none() -> None:
    logger = RecordingLogger()
    log_persist_operation(logger, "set", "a", "default", expires=datetime(2030, 1, 2, 3, 4, 5))
    log_persist_operation(logger, "set", "b", "secondary", expires=NEVER_EXPIRES, updated=True)

    first, second = (fields for _, fields in logger.events)
    assert first["persist_expires"] == "2030-01-02T03:04:05"
    assert second["persist_expires"] is None
    assert second["database_id"] == "secondary"
    assert second["updated"] is True
