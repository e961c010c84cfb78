from __future__ import annotations

from pathlib import Path

import pytest

from ralph.runtime.domain.models import Plan
from ralph.runtime.storage.container import Container


@pytest.fixture
def container(tmp_path: Path) -> Container:
    return Container(tmp_path)


@pytest.fixture
def plan(container: Container) -> Plan:
    return container.plans.upsert(Plan(title="Add CSV export", content="# Add CSV export\n\nWrite rows to a file."))
