import os
import tempfile

import pytest

from database_ops import DatabaseManager
from encrypted_database import EncryptedDatabaseService
from encryption_utils import EncryptionService, KeyCache
from financial_app import create_app
from key_store import KeyStore


@pytest.fixture
def test_database():
    """Create a temporary SQLite database file for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        temp_db = f.name

    try:
        yield f"sqlite:///{temp_db}"
    finally:
        if os.path.exists(temp_db):
            try:
                os.unlink(temp_db)
            except PermissionError:
                pass


@pytest.fixture
def db_manager(test_database):
    manager = DatabaseManager(test_database)
    manager.create_tables()
    try:
        yield manager
    finally:
        manager.close()


@pytest.fixture
def key_store(db_manager):
    return KeyStore(db_manager)


@pytest.fixture
def encryption(key_store):
    return EncryptionService(key_store, KeyCache(max_size=16, ttl_seconds=None))


@pytest.fixture
def encrypted_db(db_manager, encryption):
    return EncryptedDatabaseService(db_manager, encryption)


@pytest.fixture
def app(test_database):
    finance_app = create_app({}, connection_string=test_database)
    try:
        yield finance_app
    finally:
        finance_app.close()
