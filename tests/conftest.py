from unittest.mock import MagicMock

import pytest

from tests.helpers import build_reply


@pytest.fixture
def reply_factory():
    return build_reply


@pytest.fixture
def db():
    """A psycopg2-like connection double and the cursor its context manager yields."""
    connection = MagicMock()
    cursor = connection.cursor.return_value.__enter__.return_value
    return connection, cursor
