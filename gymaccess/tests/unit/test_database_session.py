"""
Unit tests for database session helpers.
"""

import pytest
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from gymaccess.database.session import (
    database_url_from_env,
    get_engine,
    normalize_database_url,
    reset_engine,
    run_with_retry,
)


def _disconnect():
    return OperationalError("SELECT 1", {}, Exception("server closed the connection"))


class TestDatabaseUrl:

    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@db:5432/gym", "postgresql+psycopg://u:p@db:5432/gym"),
        ("postgresql://u:p@db:5432/gym", "postgresql+psycopg://u:p@db:5432/gym"),
        ("postgresql+psycopg://u:p@db/gym", "postgresql+psycopg://u:p@db/gym"),
        ("sqlite:///gym.db", "sqlite:///gym.db"),
    ])
    def test_normalize(self, url, expected):
        assert normalize_database_url(url) == expected

    def test_missing_env(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(ValueError):
            database_url_from_env()

    def test_engine_singleton(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite://")
        reset_engine()
        try:
            assert get_engine() is get_engine()
            assert get_engine().dialect.name == "sqlite"
        finally:
            reset_engine()


class TestRunWithRetry:

    def test_retries_once_after_disconnect(self):
        session = MagicMock()
        operation = MagicMock(side_effect=[_disconnect(), "ok"])

        assert run_with_retry(session, operation) == "ok"
        assert operation.call_count == 2
        session.rollback.assert_called_once()

    def test_gives_up_after_second_failure(self):
        session = MagicMock()
        operation = MagicMock(side_effect=[_disconnect(), _disconnect()])

        with pytest.raises(OperationalError):
            run_with_retry(session, operation)
        assert operation.call_count == 2

    def test_other_errors_are_not_retried(self):
        session = MagicMock()
        operation = MagicMock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            run_with_retry(session, operation)
        operation.assert_called_once()
        session.rollback.assert_not_called()
