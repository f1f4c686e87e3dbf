"""
Database migrations for the sync engine.

Additive ALTER TABLE ADD COLUMN steps for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and databases created by older releases are handled
without manual steps. Column discovery goes through SQLAlchemy's
inspector, so the same code runs against SQLite and Postgres.
"""
from sqlalchemy import inspect, text

# (table, column, SQL type), appended in release order
MIGRATIONS = [
    # SyncLog: who started the run and how many records were left untouched
    ("sync_logs", "triggered_by", "VARCHAR"),
    ("sync_logs", "records_skipped", "INTEGER DEFAULT 0"),
    # OAuthToken: usage tracking
    ("oauth_tokens", "last_used_at", "TIMESTAMP"),
    # Exchange: coordinator linkage and 1031 deadlines
    ("exchanges", "coordinator_id", "INTEGER"),
    ("exchanges", "pp_coordinator_user_id", "VARCHAR"),
    ("exchanges", "identification_deadline", "TIMESTAMP"),
    ("exchanges", "completion_deadline", "TIMESTAMP"),
    # Task: assignee linkage
    ("tasks", "assigned_to_user_id", "INTEGER"),
    ("tasks", "pp_assigned_user_id", "VARCHAR"),
]


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; it checks column existence before altering.
    Tables that do not exist yet are skipped (create_all builds them whole).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table, column, col_type in MIGRATIONS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name.
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "VARCHAR", "TIMESTAMP".
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
