"""
Barkeeply - media URL resolution and telemetry for the drink journal.

This package contains the complete service:
- core: Framework-agnostic signed-URL cache and analytics queue
- infrastructure: External service integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"
