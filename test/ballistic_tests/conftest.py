"""
Shared fixtures for the Ballistic test suite.

Each test gets its own temporary SQLite database (WAL mode, so the -wal and
-shm side files are cleaned up too), three users and a pinned "today" so
recurrence and scope filtering are deterministic.
"""

import os
import sys
import tempfile
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic.database import BallisticDatabase
from ballistic.notifications import NotificationService
from ballistic.services import ItemService

TODAY = date(2025, 1, 27)  # a Monday


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp_file:
        path = tmp_file.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        Path(path + suffix).unlink(missing_ok=True)


@pytest.fixture
def db(db_path):
    database = BallisticDatabase(db_path)
    yield database
    database.close()


@pytest.fixture
def owner(db):
    return db.create_user("Olivia Owner", "owner@example.com")


@pytest.fixture
def assignee(db):
    return db.create_user("Alex Assignee", "assignee@example.com")


@pytest.fixture
def stranger(db):
    return db.create_user("Sam Stranger", "stranger@example.com")


@pytest.fixture
def connected(db, owner, assignee):
    """Accepted connection between owner and assignee."""
    return db.create_connection(owner["id"], assignee["id"], "accepted")


@pytest.fixture
def notifications(db):
    return NotificationService(db)


@pytest.fixture
def items(db, notifications):
    return ItemService(db, notifications, today=lambda: TODAY)


@pytest.fixture
def assigned_item(items, owner, assignee, connected):
    """Item owned by owner and assigned to assignee."""
    outcome = items.create_item(owner["id"], {"title": "Write report", "assignee_id": assignee["id"]})
    return outcome.item
