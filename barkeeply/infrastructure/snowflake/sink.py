"""
Analytics event sink backed by Snowflake.

Implements the EventSink protocol the analytics queue sends batches to.
Each batch opens a connection, writes in one transaction and closes it;
flushes are infrequent enough that pooling isn't worth it.
"""

import asyncio
import logging
from typing import Optional

from .client import MockSnowflakeConnection, create_snowflake_connection
from .repositories.events import AnalyticsEventRepository, SnowflakeConfig

logger = logging.getLogger(__name__)


class SnowflakeEventSink:
    """
    Write event batches to the analytics_events table.

    snowflake-connector is synchronous, so connecting and writing run in a
    worker thread and the event loop keeps serving requests meanwhile.
    """

    def __init__(
        self,
        config: Optional[SnowflakeConfig] = None,
        mock_connection: Optional[MockSnowflakeConnection] = None,
    ) -> None:
        if config is None and mock_connection is None:
            raise ValueError("Either config or mock_connection is required")

        self._config = config
        self._mock_connection = mock_connection

    async def insert_events(self, records: list[dict]) -> None:
        await asyncio.to_thread(self._insert_events, records)

    async def health_check(self) -> bool:
        return await asyncio.to_thread(self._health_check)

    def _insert_events(self, records: list[dict]) -> int:
        with create_snowflake_connection(
            config=self._config,
            mock_connection=self._mock_connection,
        ) as conn:
            return AnalyticsEventRepository(conn).insert_events(records)

    def _health_check(self) -> bool:
        with create_snowflake_connection(
            config=self._config,
            mock_connection=self._mock_connection,
        ) as conn:
            return AnalyticsEventRepository(conn).health_check()
