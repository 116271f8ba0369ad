from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hairstyle_lab.db.repo.sqlite import SQLiteStore

from fakes import make_png


@pytest.fixture()
def store(tmp_path: Path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "lab.sqlite")


@pytest.fixture(scope="session")
def png_bytes() -> bytes:
    return make_png()
