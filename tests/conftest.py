"""Shared test fixtures and configuration for testpartner tests."""

import random
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from testpartner.capture.collector import Collector
from testpartner.capture.policy import get_policy
from testpartner.models.session import EventRecord, EventType
from testpartner.session.manager import SessionManager
from testpartner.store.memory import InMemorySharedStore


@pytest.fixture
async def store():
    """In-memory shared store, closed after the test."""
    shared = InMemorySharedStore()
    yield shared
    await shared.close()


@pytest.fixture
def session_manager(store):
    """Session state machine of the background context."""
    return SessionManager(store, context_name="background", origin_url="https://example.com")


@pytest.fixture
def page_manager(store):
    """Session state machine of a page context sharing the same store."""
    return SessionManager(store, context_name="page", origin_url="https://example.com/app")


@pytest.fixture
def mock_session_manager():
    """Session manager double recording flushed batches."""
    manager = MagicMock()
    manager.add_events = AsyncMock(side_effect=lambda events: len(list(events)))
    manager.add_flag = AsyncMock(return_value="flag_1_abc")
    return manager


@pytest.fixture
def make_collector(mock_session_manager):
    """Factory for collectors over the mocked session manager."""
    def _make(policy="full", hooks=None, seed=1234, **overrides):
        return Collector(
            mock_session_manager,
            policy=get_policy(policy, **overrides),
            hooks=hooks,
            page_url="https://example.com/page",
            rng=random.Random(seed),
        )
    return _make


@pytest.fixture
def click_event():
    """Click event on a submit button."""
    return EventRecord(
        type=EventType.CLICK,
        data={
            'x': 120,
            'y': 48,
            'target': {'tagName': 'BUTTON', 'id': 'submit', 'selector': '#submit'},
        },
    )


@pytest.fixture
def button_target():
    return {
        'tagName': 'BUTTON',
        'id': 'save',
        'className': 'btn btn-primary',
        'textContent': 'Save changes',
    }


@pytest.fixture
def plain_target():
    return {
        'tagName': 'DIV',
        'className': 'card',
        'textContent': 'Some static text',
    }


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
