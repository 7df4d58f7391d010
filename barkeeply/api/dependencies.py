"""
Request dependencies and the service container.

The resolver cache, the analytics queue and the session registry are
process-wide state, so they are built once, kept on app.state, and
handed to routes through dependencies. Nothing here is a module-level singleton: tests build
their own Services and attach them to the app.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.analytics import (
    AnalyticsQueue,
    AnalyticsSessions,
    AnalyticsTracker,
    device_info_from_headers,
)
from ..core.media import SignedUrlResolver
from ..infrastructure.local_storage import FileKeyValueStore, MemoryKeyValueStore
from ..infrastructure.snowflake import (
    MockSnowflakeConnection,
    SnowflakeConfig,
    SnowflakeEventSink,
)
from ..infrastructure.storage import StorageClient, StorageConfig, create_storage_client

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# ---------------------------------------------------------------------------
# Service Container
# ---------------------------------------------------------------------------

@dataclass
class Services:
    """Long-lived objects shared by every request in the process."""
    storage_client: StorageClient
    url_resolver: SignedUrlResolver
    event_sink: SnowflakeEventSink
    analytics_queue: AnalyticsQueue
    analytics_sessions: AnalyticsSessions
    mock_snowflake_connection: Optional[MockSnowflakeConnection] = None


def build_services(settings: Settings) -> Services:
    """
    Construct the storage client, resolver, sink, queue and session registry.

    Mock modes swap in the in-memory storage client and Snowflake
    connection; everything else is the same in both modes.
    """
    if settings.storage_mock_mode:
        storage_client = create_storage_client(
            mock_mode=True,
            public_host=settings.storage_host,
        )
    else:
        storage_client = create_storage_client(config=StorageConfig(
            access_key_id=settings.storage_access_key_id,
            secret_access_key=settings.storage_secret_access_key,
            endpoint_url=settings.storage_endpoint_url,
            public_host=settings.storage_host,
            region=settings.storage_region,
        ))

    url_resolver = SignedUrlResolver(
        provider=storage_client,
        storage_host=settings.storage_host,
        ttl_seconds=settings.signed_url_ttl_seconds,
        safety_margin_seconds=settings.signed_url_safety_margin_seconds,
        public_buckets=settings.storage_public_buckets_list,
        public_url_provider=storage_client,
    )

    mock_connection = None
    if settings.snowflake_mock_mode:
        mock_connection = MockSnowflakeConnection()
        event_sink = SnowflakeEventSink(mock_connection=mock_connection)
    else:
        event_sink = SnowflakeEventSink(config=SnowflakeConfig(
            account=settings.snowflake_account,
            user=settings.snowflake_user,
            password=settings.snowflake_password or None,
            private_key_path=settings.snowflake_private_key_path,
            private_key_base64=settings.snowflake_private_key_base64,
            database=settings.snowflake_database,
            schema=settings.snowflake_schema,
            warehouse=settings.snowflake_warehouse,
            role=settings.snowflake_role,
        ))

    analytics_queue = AnalyticsQueue(
        sink=event_sink,
        store=FileKeyValueStore(settings.analytics_queue_path),
        batch_size=settings.analytics_batch_size,
        flush_interval_seconds=settings.analytics_flush_interval_seconds,
        max_retry_delay_seconds=settings.analytics_max_retry_delay_seconds,
        max_queue_size=settings.analytics_max_queue_size,
    )

    # Session ids only need to live as long as the process
    analytics_sessions = AnalyticsSessions(
        analytics_queue,
        session_store_factory=MemoryKeyValueStore,
        max_sessions=settings.analytics_max_sessions,
    )

    logger.info(
        "Built services",
        extra={
            "mock_mode": {
                "storage": settings.storage_mock_mode,
                "snowflake": settings.snowflake_mock_mode,
            },
            "restored_events": len(analytics_queue),
        }
    )

    return Services(
        storage_client=storage_client,
        url_resolver=url_resolver,
        event_sink=event_sink,
        analytics_queue=analytics_queue,
        analytics_sessions=analytics_sessions,
        mock_snowflake_connection=mock_connection,
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def get_app_settings(request: Request) -> Settings:
    """
    Settings the running app was created with.

    Falls back to the environment settings for apps built without any.
    """
    return getattr(request.app.state, "settings", None) or get_settings()


async def verify_api_key(
    settings: Annotated[Settings, Depends(get_app_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Check X-API-Key against the configured keys; 403 on mismatch or absence.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


# ---------------------------------------------------------------------------
# Service Dependencies
# ---------------------------------------------------------------------------

def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return services


def get_url_resolver(services: Annotated[Services, Depends(get_services)]) -> SignedUrlResolver:
    return services.url_resolver


def get_storage_client(services: Annotated[Services, Depends(get_services)]) -> StorageClient:
    return services.storage_client


def get_analytics_queue(services: Annotated[Services, Depends(get_services)]) -> AnalyticsQueue:
    return services.analytics_queue


def get_session_tracker(
    services: Annotated[Services, Depends(get_services)],
    x_session_id: Annotated[Optional[str], Header(max_length=128)] = None,
    user_agent: Annotated[Optional[str], Header()] = None,
    accept_language: Annotated[Optional[str], Header()] = None,
) -> AnalyticsTracker:
    """
    Tracker for the calling client's session.

    Clients send back the session_id from their first response as
    X-Session-Id; without it every request starts a new session. Device
    info comes from the first request of a session.
    """
    return services.analytics_sessions.tracker_for(
        x_session_id,
        lambda: device_info_from_headers(user_agent, accept_language),
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
ServicesDep = Annotated[Services, Depends(get_services)]
UrlResolverDep = Annotated[SignedUrlResolver, Depends(get_url_resolver)]
StorageClientDep = Annotated[StorageClient, Depends(get_storage_client)]
AnalyticsQueueDep = Annotated[AnalyticsQueue, Depends(get_analytics_queue)]
SessionTrackerDep = Annotated[AnalyticsTracker, Depends(get_session_tracker)]
SettingsDep = Annotated[Settings, Depends(get_app_settings)]
