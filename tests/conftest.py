"""Shared fixtures for the tracetap test suite."""

from __future__ import annotations

import pytest

from tracetap.core.pricing import PricingTable
from tracetap.core.storage import TelemetryStore


@pytest.fixture
def store(tmp_path):
    db = TelemetryStore(str(tmp_path / "tracetap.db"))
    yield db
    db.close()


@pytest.fixture
def pricing():
    return PricingTable()
