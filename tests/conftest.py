from __future__ import annotations

import pytest

from helpers import UPGRADE_REQUEST


@pytest.fixture
def upgrade_request() -> bytes:
    return UPGRADE_REQUEST
