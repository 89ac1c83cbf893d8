"""
Core utilities and configuration for the rate-savings analysis service.

Modules:
    config: Application configuration and environment variable management
    database: Async engine and session factory for the SQL store
    exceptions: Exception hierarchy mapped onto the orphan error taxonomy
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.exceptions import QuoteNetworkError, JobNotFoundError
    from core.logging import setup_logging
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "logging",
]
