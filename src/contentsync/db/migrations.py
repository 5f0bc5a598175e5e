"""
Database migrations for contentsync.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text

# (table, column, SQLite type + default), appended as the schema evolves.
# Columns present in the first released schema come from create_all().
_COLUMNS = []


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; it checks column existence before altering.
    Only SQLite is migrated this way (uses PRAGMA table_info); other
    backends are left to create_all().

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return
    with engine.connect() as conn:
        for table, column, col_type in _COLUMNS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "DATETIME", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if existing_columns and column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
