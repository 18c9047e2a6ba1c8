"""
Renewal log store.

Persists one RenewalLog per sweep run in the ``renewal_logs`` table so
operators can audit what the scheduler renewed and what failed.
"""

import logging
from datetime import datetime
from typing import Optional

from core.database import Database, deserialize_json, get_database, serialize_json
from models.renewal import RenewalLog, RenewalLogEntry

logger = logging.getLogger(__name__)


class RenewalLogStore:
    """Append-only storage for renewal sweep logs."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    async def record(self, log: RenewalLog) -> RenewalLog:
        """Persist a sweep log."""
        data = {
            "id": log.id,
            "executed_at": log.executed_at.isoformat(),
            "certificates_processed": log.certificates_processed,
            "successful_renewals": log.successful_renewals,
            "failed_renewals": log.failed_renewals,
            "details_json": serialize_json([entry.model_dump(mode="json") for entry in log.details]),
            "error": log.error,
            "duration_ms": log.duration_ms,
        }
        await self.db.insert("renewal_logs", data)
        logger.debug(f"Recorded renewal log {log.id}")
        return log

    def _row_to_log(self, row: dict) -> RenewalLog:
        details = deserialize_json(row.get("details_json")) or []
        return RenewalLog(
            id=row["id"],
            executed_at=datetime.fromisoformat(row["executed_at"]),
            certificates_processed=row["certificates_processed"],
            successful_renewals=row["successful_renewals"],
            failed_renewals=row["failed_renewals"],
            details=[RenewalLogEntry(**entry) for entry in details],
            error=row.get("error"),
            duration_ms=row.get("duration_ms"),
        )

    async def list_logs(self, limit: int = 10, offset: int = 0) -> tuple[list[RenewalLog], int]:
        """Most recent logs first, with the total count."""
        total = await self.db.count("renewal_logs")
        rows = await self.db.fetch_all(
            "SELECT * FROM renewal_logs ORDER BY executed_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_log(row) for row in rows], total

    async def get_latest(self) -> Optional[RenewalLog]:
        row = await self.db.fetch_one("SELECT * FROM renewal_logs ORDER BY executed_at DESC LIMIT 1")
        return self._row_to_log(row) if row else None

    async def cleanup_old_logs(self, days_to_keep: int) -> int:
        """Delete logs older than ``days_to_keep`` days. Returns count deleted."""
        deleted = await self.db.delete_older_than("renewal_logs", "executed_at", days_to_keep)
        if deleted:
            logger.info(f"Deleted {deleted} renewal logs older than {days_to_keep} days")
        return deleted


# Singleton instance
_renewal_log_store: Optional[RenewalLogStore] = None


def get_renewal_log_store() -> RenewalLogStore:
    """Get the global renewal log store instance."""
    global _renewal_log_store
    if _renewal_log_store is None:
        _renewal_log_store = RenewalLogStore()
    return _renewal_log_store
