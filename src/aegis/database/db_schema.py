"""
Database schema initialization.

Each durable moderation collection is stored as one JSON document row so a
collection can be replaced atomically and a corrupt collection never
prevents the others from loading.
"""

import aiosqlite
from aegis.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 1


class SchemaManager:
    """Creates the moderation tables and records the schema version."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        """
        Create all required tables if they do not exist yet.

        Args:
            db: Open database connection
        """
        await SchemaManager._create_tables(db)
        await SchemaManager._update_schema_version(db)
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized")

    @staticmethod
    async def _create_tables(db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS moderation_collections (
                name TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    @staticmethod
    async def _update_schema_version(db: aiosqlite.Connection) -> None:
        await db.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
