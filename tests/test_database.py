"""
Unit tests for the database client unit-of-work helpers
"""

import pytest
from sqlalchemy import select

from issue_sync.core.database import DatabaseClient
from issue_sync.models import unified_models as models


class TestDatabaseClient:
    """Test commit/rollback behavior and disconnect"""

    def test_session_context_commits(self, db_client):
        with db_client.session_context() as session:
            session.add(models.Project(name="Checkout"))

        with db_client.session_context() as session:
            names = session.scalars(select(models.Project.name)).all()

        assert names == ["Checkout"]

    def test_session_context_rolls_back_on_error(self, db_client):
        with pytest.raises(RuntimeError):
            with db_client.session_context() as session:
                session.add(models.Project(name="Discarded"))
                session.flush()
                raise RuntimeError("abort")

        with db_client.session_context() as session:
            assert session.scalars(select(models.Project)).all() == []

    def test_disconnect_is_idempotent(self):
        client = DatabaseClient("sqlite://")

        client.disconnect()
        client.disconnect()

        assert client.connected is False
