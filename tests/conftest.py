"""
tests/conftest.py

Shared fixtures. Unit tests never touch a real PostgreSQL or RabbitMQ; tests
that need one are marked ``integration`` and skipped unless RAILYARD_DB_URL
is set.
"""

from __future__ import annotations

import os

import pytest

from railyard.config import reset_settings
from tests.helpers import InMemoryRailStore, build_pipeline


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store() -> InMemoryRailStore:
    return InMemoryRailStore()


@pytest.fixture
def pipeline_bundle(store: InMemoryRailStore):
    return build_pipeline(store)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if os.environ.get("RAILYARD_DB_URL"):
        return
    skip = pytest.mark.skip(reason="integration: RAILYARD_DB_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)
