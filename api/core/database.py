"""
SQLite database management for certificates and renewal history.

Provides async database operations using aiosqlite for storing
certificates, their revisions, ACME accounts, the domain registry
mirror and renewal sweep logs.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager
import json

import aiosqlite

from config import settings
from models.certificate import utcnow

logger = logging.getLogger(__name__)

# Database schema
SCHEMA = """
-- Domain registry mirror (owned by the storefront platform)
CREATE TABLE IF NOT EXISTS domains (
    id TEXT PRIMARY KEY,
    full_name TEXT NOT NULL UNIQUE,
    verification_status TEXT NOT NULL DEFAULT 'unverified',
    store_id TEXT,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_domains_store_id ON domains(store_id);

-- Certificates table: one row per certificate name
CREATE TABLE IF NOT EXISTS certificates (
    id TEXT PRIMARY KEY,
    domain_name TEXT NOT NULL UNIQUE,
    domain_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    provider TEXT,

    certificate_pem TEXT,
    private_key_pem TEXT,
    chain_pem TEXT,

    issuer TEXT,
    serial_number TEXT,
    fingerprint_sha256 TEXT,
    issued_at TIMESTAMP,
    expires_at TIMESTAMP,
    renewed_at TIMESTAMP,

    auto_renew BOOLEAN DEFAULT TRUE,
    last_renewal_attempt TIMESTAMP,
    last_renewal_error TEXT,
    renewal_attempts INTEGER DEFAULT 0,

    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_certificates_domain_id ON certificates(domain_id);
CREATE INDEX IF NOT EXISTS idx_certificates_status ON certificates(status);
CREATE INDEX IF NOT EXISTS idx_certificates_expires_at ON certificates(expires_at);

-- Archived material replaced by renewals (append-only)
CREATE TABLE IF NOT EXISTS certificate_revisions (
    id TEXT PRIMARY KEY,
    certificate_id TEXT NOT NULL,
    domain_name TEXT NOT NULL,
    provider TEXT,
    certificate_pem TEXT,
    chain_pem TEXT,
    serial_number TEXT,
    issued_at TIMESTAMP,
    expires_at TIMESTAMP,
    archived_at TIMESTAMP NOT NULL,

    FOREIGN KEY (certificate_id) REFERENCES certificates(id)
);

CREATE INDEX IF NOT EXISTS idx_revisions_certificate_id ON certificate_revisions(certificate_id);

-- Renewal sweep logs
CREATE TABLE IF NOT EXISTS renewal_logs (
    id TEXT PRIMARY KEY,
    executed_at TIMESTAMP NOT NULL,
    certificates_processed INTEGER NOT NULL DEFAULT 0,
    successful_renewals INTEGER NOT NULL DEFAULT 0,
    failed_renewals INTEGER NOT NULL DEFAULT 0,
    details_json TEXT,
    error TEXT,
    duration_ms INTEGER
);

CREATE INDEX IF NOT EXISTS idx_renewal_logs_executed_at ON renewal_logs(executed_at);

-- ACME accounts table (for Let's Encrypt account persistence)
CREATE TABLE IF NOT EXISTS acme_accounts (
    id TEXT PRIMARY KEY,
    email TEXT,
    directory_url TEXT NOT NULL,
    account_url TEXT,
    private_key_pem TEXT NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    terms_accepted BOOLEAN DEFAULT TRUE
);

CREATE INDEX IF NOT EXISTS idx_acme_accounts_directory_url ON acme_accounts(directory_url);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.database_path

    async def initialize(self) -> None:
        """Initialize database and create tables if needed."""
        # Ensure parent directory exists
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        async with self.connection() as db:
            await db.executescript(SCHEMA)
            await db.commit()

        logger.info(f"Database initialized at {self.db_path}")

    @asynccontextmanager
    async def connection(self):
        """Get a database connection context manager."""
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    async def execute(
        self,
        query: str,
        params: tuple = ()
    ) -> int:
        """Execute a write query and return the affected row count."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self,
        query: str,
        params: tuple = ()
    ) -> Optional[Dict[str, Any]]:
        """Execute a query and fetch one result."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(
        self,
        query: str,
        params: tuple = ()
    ) -> List[Dict[str, Any]]:
        """Execute a query and fetch all results."""
        async with self.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def insert(
        self,
        table: str,
        data: Dict[str, Any]
    ) -> str:
        """Insert a row and return the id."""
        columns = list(data.keys())
        placeholders = ", ".join(["?" for _ in columns])
        columns_str = ", ".join(columns)

        query = f"INSERT INTO {table} ({columns_str}) VALUES ({placeholders})"
        values = tuple(data.values())

        async with self.connection() as db:
            await db.execute(query, values)
            await db.commit()

        return data.get("id", "")

    async def update(
        self,
        table: str,
        id_value: str,
        data: Dict[str, Any],
        id_column: str = "id"
    ) -> bool:
        """Update a row by id."""
        set_clause = ", ".join([f"{k} = ?" for k in data.keys()])
        query = f"UPDATE {table} SET {set_clause} WHERE {id_column} = ?"
        values = tuple(data.values()) + (id_value,)

        async with self.connection() as db:
            cursor = await db.execute(query, values)
            await db.commit()
            return cursor.rowcount > 0

    async def replace_material(
        self,
        archive: Dict[str, Any],
        certificate_id: str,
        data: Dict[str, Any],
    ) -> bool:
        """
        Archive a revision and update the certificate in one transaction.

        Either both writes land or neither does, so material is never
        lost between the archive and the update.
        """
        columns = list(archive.keys())
        insert_query = (
            f"INSERT INTO certificate_revisions ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        set_clause = ", ".join([f"{k} = ?" for k in data.keys()])
        update_query = f"UPDATE certificates SET {set_clause} WHERE id = ?"

        async with self.connection() as db:
            try:
                await db.execute(insert_query, tuple(archive.values()))
                cursor = await db.execute(update_query, tuple(data.values()) + (certificate_id,))
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            return cursor.rowcount > 0

    async def count(
        self,
        table: str,
        where_clause: str = "",
        params: tuple = ()
    ) -> int:
        """Count rows in a table."""
        query = f"SELECT COUNT(*) as count FROM {table}"
        if where_clause:
            query += f" WHERE {where_clause}"

        result = await self.fetch_one(query, params)
        return result["count"] if result else 0

    async def delete_older_than(
        self,
        table: str,
        timestamp_column: str,
        days: int
    ) -> int:
        """Delete rows older than specified days. Returns count deleted."""
        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        query = f"DELETE FROM {table} WHERE {timestamp_column} < ?"

        async with self.connection() as db:
            cursor = await db.execute(query, (cutoff,))
            await db.commit()
            return cursor.rowcount


def serialize_json(data: Optional[Any]) -> Optional[str]:
    """Serialize a dict or list to JSON string for storage."""
    if data is None:
        return None
    return json.dumps(data, default=str)


def deserialize_json(data: Optional[str]) -> Optional[Any]:
    """Deserialize a JSON string from storage."""
    if data is None:
        return None
    return json.loads(data)


# Singleton database instance
_db_instance: Optional[Database] = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


async def initialize_database() -> Database:
    """Initialize and return the database instance."""
    db = get_database()
    await db.initialize()
    return db
