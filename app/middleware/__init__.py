"""
Middleware components for request processing.

This package contains middleware for:
- Request context (request ID, client IP address)
"""

from app.middleware.request_context import RequestContextMiddleware

__all__ = ["RequestContextMiddleware"]
