"""
SQLite persistence for Aegis.

- **db_connection.py**: Single long-lived aiosqlite connection with WAL mode
  and serialised, auto-rollback write transactions.
- **db_schema.py**: Table creation and schema version tracking.
"""
