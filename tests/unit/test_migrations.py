"""Tests for database migration helpers."""
import pytest
from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from contentsync.db import migrations
from contentsync.db.migrations import _add_column_if_missing, run_migrations


def column_names(engine, table):
    with engine.connect() as conn:
        return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="older_engine")
def older_engine_fixture():
    """A database whose syncrecord table predates a later column."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE syncrecord (source_id VARCHAR PRIMARY KEY, status VARCHAR, "
            "synced_count INTEGER)"
        ))
        conn.execute(text(
            "INSERT INTO syncrecord (source_id, status, synced_count) VALUES ('s1', 'COMPLETED', 10)"
        ))
    yield engine


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)

    def test_fresh_schema_needs_no_pending_columns(self, migration_engine):
        before = column_names(migration_engine, "syncrecord")
        run_migrations(migration_engine)
        assert column_names(migration_engine, "syncrecord") == before

    def test_listed_columns_are_applied(self, older_engine, monkeypatch):
        monkeypatch.setattr(
            migrations, "_COLUMNS", [("syncrecord", "next_retry_at", "DATETIME")]
        )
        run_migrations(older_engine)
        assert "next_retry_at" in column_names(older_engine, "syncrecord")

    def test_non_sqlite_is_skipped(self):
        class FakeDialect:
            name = "postgresql"

        class FakeEngine:
            dialect = FakeDialect()

            def connect(self):
                raise AssertionError("should not connect")

        run_migrations(FakeEngine())


class TestAddColumnIfMissing:
    def test_adds_column_and_existing_rows_get_default(self, older_engine):
        with older_engine.connect() as conn:
            _add_column_if_missing(conn, "syncrecord", "attempts", "INTEGER NOT NULL DEFAULT 0")
            conn.commit()
        assert "attempts" in column_names(older_engine, "syncrecord")
        with older_engine.connect() as conn:
            attempts = conn.execute(
                text("SELECT attempts FROM syncrecord WHERE source_id = 's1'")
            ).scalar()
        assert attempts == 0

    def test_existing_column_is_left_alone(self, older_engine):
        with older_engine.connect() as conn:
            _add_column_if_missing(conn, "syncrecord", "synced_count", "INTEGER")
            _add_column_if_missing(conn, "syncrecord", "synced_count", "INTEGER")
            conn.commit()
        assert column_names(older_engine, "syncrecord") == {"source_id", "status", "synced_count"}

    def test_missing_table_is_left_alone(self, older_engine):
        """create_all makes tables; migrations only extend existing ones."""
        with older_engine.connect() as conn:
            _add_column_if_missing(conn, "quotausage", "error_message", "TEXT")
            conn.commit()
        assert column_names(older_engine, "quotausage") == set()
