"""Shared pytest fixtures and configuration."""
import os
from typing import Any, Dict, List, Optional

import pytest

from flux_monitor import EventRecord, MonitorSettings

# Keep developer environment overrides out of the settings under test
for key in list(os.environ):
    if key.startswith("FLUX_MONITOR_"):
        del os.environ[key]

# Pytest markers are defined in pytest.ini


class FakeCluster:
    """In-memory event source and status accessor."""

    def __init__(
        self,
        events: Optional[List[EventRecord]] = None,
        documents: Optional[List[Any]] = None,
    ):
        self.events = list(events or [])
        self.documents = list(documents or [{}])
        self.event_error: Optional[Exception] = None
        self.status_errors: List[Exception] = []
        self.event_calls: List[tuple] = []
        self.status_calls: List[tuple] = []

    def list_recent_events(self, namespace: str, name: str, limit: int) -> List[EventRecord]:
        self.event_calls.append((namespace, name, limit))
        if self.event_error is not None:
            raise self.event_error
        return list(self.events)

    def get_resource_status(
        self, group: str, version: str, plural: str, namespace: str, name: str
    ) -> Dict[str, Any]:
        self.status_calls.append((group, version, plural, namespace, name))
        if self.status_errors:
            raise self.status_errors.pop(0)
        # Serve documents in order, repeating the last one
        if len(self.documents) > 1:
            return self.documents.pop(0)
        return self.documents[0]


def ready_document(status: str = "True") -> Dict[str, Any]:
    return {"status": {"conditions": [{"type": "Ready", "status": status}]}}


@pytest.fixture
def fast_settings() -> MonitorSettings:
    return MonitorSettings(
        event_poll_interval=0.01,
        ready_poll_interval=0.01,
        request_timeout=1.0,
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
