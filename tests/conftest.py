from __future__ import annotations

import sys
from typing import Any
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that require real vendor form credentials",
    )


@pytest.fixture()
def store(tmp_path: Path):
    from timesheet_form_sync.state import StateStore

    s = StateStore(str(tmp_path / "timesheet.db"))
    try:
        yield s
    finally:
        s.close()
