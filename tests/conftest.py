import os
import sys
import tempfile
from pathlib import Path

import pytest

# Application paths are resolved at import time; keep them out of the real home directory.
os.environ.setdefault("KEYVAULT_HOME", tempfile.mkdtemp(prefix="keyvault-tests-"))

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import db  # noqa: E402
from vaultsync import conflicts  # noqa: E402


@pytest.fixture
def local_db(tmp_path: Path) -> Path:
    db_path = tmp_path / "vault.db"
    db.set_database_path(db_path)
    db.initialize_database()
    return db_path


@pytest.fixture(autouse=True)
def _reset_conflicts():
    conflicts.clear()
    yield
    conflicts.clear()
