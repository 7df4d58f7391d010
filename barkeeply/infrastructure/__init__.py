"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- storage: Object storage (S3-compatible)
- snowflake: Analytics event ingestion
- local_storage: Durable and session-scoped key-value stores

These wrappers implement the protocols defined in barkeeply.core.
"""
