"""
Snowflake integration for analytics event ingestion.

Includes a mock connection for local development without credentials.
"""

from .client import (
    MockSnowflakeConnection,
    SnowflakeConnectionError,
    create_snowflake_connection,
)
from .repositories.events import (
    AnalyticsEventRepository,
    EventIngestionError,
    SnowflakeConfig,
)
from .sink import SnowflakeEventSink

__all__ = [
    "AnalyticsEventRepository",
    "EventIngestionError",
    "MockSnowflakeConnection",
    "SnowflakeConfig",
    "SnowflakeConnectionError",
    "SnowflakeEventSink",
    "create_snowflake_connection",
]
