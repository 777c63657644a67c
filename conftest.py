"""Pytest configuration making the top-level scanner modules importable."""
import os
import sys
from datetime import datetime, timezone

import pytest

ROOT = os.path.dirname(__file__)
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from alert_config import AlertCriteria  # noqa: E402
from alert_state import StateStore  # noqa: E402
from detection import ScanContext  # noqa: E402

FIXED_NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def state_store(tmp_path):
    return StateStore(tmp_path / "state" / "previous_alerts.json")


@pytest.fixture
def make_context(state_store):
    def _factory(criteria=None, now=FIXED_NOW, state=None):
        return ScanContext(
            criteria=criteria or AlertCriteria(),
            state=state or state_store,
            now=now,
        )

    return _factory
