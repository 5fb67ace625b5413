"""PostgreSQL mock for convergence testing.

Usage:
    from postgres_mock import MockPostgresServer

    server = MockPostgresServer()
    converge(credential, request, connect=server.connect)
    assert server.databases == {"appdb": "appuser"}
"""

from .server import (
    CatalogUniqueViolation,
    MockConnection,
    MockCursor,
    MockPostgresServer,
    render,
)

__all__ = [
    "CatalogUniqueViolation",
    "MockConnection",
    "MockCursor",
    "MockPostgresServer",
    "render",
]
