"""Fixtures for command-line script tests (shared with the database tests)."""
from tests.database.conftest import temp_db, temp_dir, test_config  # noqa: F401
