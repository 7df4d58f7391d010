"""
Repository pattern implementations for Snowflake.

Repositories translate between domain records and database representations.
"""

from .events import AnalyticsEventRepository

__all__ = ["AnalyticsEventRepository"]
