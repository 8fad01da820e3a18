import random
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

CATALOG_PATH = ROOT / "data" / "catalog.json"

# Wednesday, so a whole ISO week is available on either side.
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db._initialised.clear()
    db.init()
    return str(db_path)


@pytest.fixture(scope="session")
def catalog():
    from catalog import load_catalog

    return load_catalog(CATALOG_PATH)


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def now():
    return NOW
