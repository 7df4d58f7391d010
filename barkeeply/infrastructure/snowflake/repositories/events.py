"""
Snowflake repository for analytics events.

The repository:
1. Translates between event records and database rows
2. Encapsulates all SQL
3. Writes each batch in a single transaction

The queue never writes SQL directly; it hands a batch of records to the
sink, which hands them to this repository.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "BARKEEPLY"
    schema: str = "TELEMETRY"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


class EventIngestionError(Exception):
    """Raised when a batch of events can't be written."""
    pass


class AnalyticsEventRepository:
    """
    Repository for the analytics_events table.

    Batches are all-or-nothing: either every row commits or the
    transaction is rolled back and EventIngestionError is raised.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def insert_events(self, records: list[dict[str, Any]]) -> int:
        """
        Insert a batch of event records.

        Returns the number of rows written.
        """
        if not records:
            return 0

        cursor = self._conn.cursor()

        try:
            # Autocommit is on by default; wrap the batch explicitly
            cursor.execute("BEGIN")

            cursor.executemany("""
                INSERT INTO analytics_events (
                    user_id, session_id, event_name, event_category,
                    properties, device_info
                )
                SELECT %s, %s, %s, %s, PARSE_JSON(%s), PARSE_JSON(%s)
            """, [self._to_row(record) for record in records])

            self._conn.commit()

        except Exception as e:
            logger.error(
                "Failed to insert analytics events",
                extra={"count": len(records), "error": str(e)}
            )
            try:
                self._conn.rollback()
            except Exception as rollback_error:
                logger.warning(
                    "Rollback failed",
                    extra={"error": str(rollback_error)}
                )
            raise EventIngestionError(f"Event insert failed: {e}")

        finally:
            cursor.close()

        logger.debug("Inserted analytics events", extra={"count": len(records)})

        return len(records)

    @staticmethod
    def _to_row(record: dict[str, Any]) -> tuple:
        return (
            record.get("user_id"),
            record["session_id"],
            record["event_name"],
            record["event_category"],
            json.dumps(record.get("properties") or {}),
            json.dumps(record.get("device_info") or {}),
        )

    def health_check(self) -> bool:
        """Run a trivial query to confirm the connection works."""
        cursor = self._conn.cursor()

        try:
            cursor.execute("SELECT 1")
            row = cursor.fetchone()
            return bool(row) and row[0] == 1

        finally:
            cursor.close()
