"""Shared fixtures for the unit tests."""

import pytest

from tests.unit.helpers import FakeTradeStore


@pytest.fixture
def fake_store():
    return FakeTradeStore()
