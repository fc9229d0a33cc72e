"""Shared fixtures for issue grouping service tests."""

import os
from datetime import UTC, datetime, timedelta

import pytest


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "smoke: mark test as smoke test (fast, critical path - included in CI)"
    )


# Set test environment variables before importing modules
os.environ.setdefault("STORAGE_BACKEND", "memory")

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def mock_env_vars(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("POSTGREST_URL", raising=False)
    monkeypatch.delenv("POSTGREST_SERVICE_KEY", raising=False)
    monkeypatch.delenv("FINGERPRINT_FRAME_DEPTH", raising=False)
    monkeypatch.delenv("PAGINATION_DEFAULT_LIMIT", raising=False)


@pytest.fixture
def base_time():
    """Fixed reference time for occurrences and lifecycle events."""
    return BASE_TIME


@pytest.fixture
def settings(mock_env_vars):
    from src.config import Settings

    return Settings()


@pytest.fixture
def repository():
    """Empty in-memory repository."""
    from src.storage.memory import InMemoryIssueRepository

    return InMemoryIssueRepository()


@pytest.fixture
def service(repository, settings):
    from src.core.service import IssueService

    return IssueService(repository, settings)


@pytest.fixture
def make_occurrence():
    """Factory for occurrences with sensible defaults.

    ``minutes`` offsets the timestamp from BASE_TIME; ``frames`` is a list
    of (class, method) or (class, method, file) tuples.
    """
    from src.core.models import AppAttributes, IssueKind, Occurrence, StackFrame

    counter = {"n": 0}

    def _make(
        occurrence_id=None,
        app_id="app-1",
        session_id="session-1",
        minutes=0,
        kind=IssueKind.CRASH,
        frames=(("com.example.App", "onCreate", "App.kt"),),
        exception_type="java.lang.IllegalStateException",
        handled=False,
        **attributes,
    ):
        counter["n"] += 1
        stack = []
        for frame in frames:
            class_name, method_name, *rest = frame
            stack.append(StackFrame(
                class_name=class_name,
                method_name=method_name,
                file_name=rest[0] if rest else None,
                line_number=counter["n"],
            ))
        return Occurrence(
            id=occurrence_id or f"occ-{counter['n']}",
            app_id=app_id,
            session_id=session_id,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            kind=kind,
            frames=tuple(stack),
            exception_type=exception_type,
            handled=handled,
            attributes=AppAttributes(**attributes),
        )

    return _make


@pytest.fixture
def make_activity():
    """Factory for activity lifecycle events."""
    from src.core.models import ActivityLifecycleEvent, LifecycleActivityType

    counter = {"n": 0}

    def _make(class_name, session_id="session-1", minutes=0, type=LifecycleActivityType.CREATED, **kwargs):
        counter["n"] += 1
        return ActivityLifecycleEvent(
            id=kwargs.pop("event_id", f"lc-{counter['n']}"),
            session_id=session_id,
            timestamp=BASE_TIME + timedelta(minutes=minutes),
            type=type,
            class_name=class_name,
            **kwargs,
        )

    return _make


@pytest.fixture
def sample_payload():
    """Raw SDK exception payload."""
    return {
        "id": "evt-1",
        "session_id": "session-1",
        "timestamp": "2024-03-01T12:00:00Z",
        "type": "exception",
        "exception": {
            "handled": False,
            "foreground": True,
            "exceptions": [
                {
                    "type": "java.lang.NullPointerException",
                    "message": "Attempt to invoke virtual method",
                    "frames": [
                        {
                            "class_name": "com.example.App",
                            "method_name": "onCreate",
                            "file_name": "App.kt",
                            "line_num": 42,
                        },
                        {
                            "class_name": "android.app.Activity",
                            "method_name": "performCreate",
                            "file_name": "Activity.java",
                            "line_num": 8000,
                        },
                    ],
                }
            ],
        },
        "thread_name": "main",
        "attribute": {
            "app_version": "1.0.0",
            "app_build": "100",
            "os_name": "android",
            "device_manufacturer": "Google",
            "country_code": "IN",
        },
    }
