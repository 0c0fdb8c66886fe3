"""API middleware package."""

from src.ledgersync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
