"""Idempotent convergence of PostgreSQL state for one provisioning request.

Steps, each safe to repeat:
1. Connect as admin, retrying while the server is not yet accepting
   connections (bounded by RetryPolicy)
2. Create the login role if it does not exist
3. Create the database owned by the role if it does not exist
4. Grant all privileges on the database to the role

CONCURRENCY: Several daemon instances may converge the same request at the
same time. Existence checks followed by creation can lose a race. The loser
sees either the duplicate-object error or, when both sessions passed their
checks, a unique violation on the catalog name index. Both are recognized by
SQLSTATE class and constraint name (never by message text) and treated as
success.

SECURITY: Identifiers are quoted with psycopg2.sql.Identifier and passwords
with psycopg2.sql.Literal; existence checks use bound parameters. Crafted
label values cannot change statement structure.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from contextlib import closing
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql

from .credentials import AdminCredential
from .models import ProvisionRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_INTERVAL_SECONDS = 1.0

# Returns True when waiting was interrupted by cancellation
WaitFn = Callable[[float], bool]
ConnectFn = Callable[..., Any]

# Catalog name indexes a CREATE collides on when a concurrent session passed
# its existence check at the same time
ROLE_NAME_INDEX = "pg_authid_rolname_index"
DATABASE_NAME_INDEX = "pg_database_datname_index"

ROLE_EXISTS_QUERY = "SELECT 1 FROM pg_catalog.pg_roles WHERE rolname = %s"
DATABASE_EXISTS_QUERY = "SELECT 1 FROM pg_catalog.pg_database WHERE datname = %s"


class ProvisioningError(Exception):
    """Raised when a provisioning step fails.

    The underlying driver error is available as ``__cause__``.
    """

    def __init__(self, target: str, step: str, message: str) -> None:
        super().__init__(f"provisioning failed for target {target} at {step}: {message}")
        self.target = target
        self.step = step


class ConnectivityError(ProvisioningError):
    """Raised when the target server stays unreachable for the whole retry budget."""

    pass


class ProvisioningCancelled(Exception):
    """Raised when shutdown interrupts a connection retry wait.

    Not an error condition; callers log it and stop.
    """

    pass


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for establishing admin connections."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds cannot be negative")


def _never_cancelled(seconds: float) -> bool:
    threading.Event().wait(seconds)
    return False


def connect_with_retry(
    credential: AdminCredential,
    *,
    policy: RetryPolicy | None = None,
    connect: ConnectFn = psycopg2.connect,
    wait: WaitFn = _never_cancelled,
    sslmode: str = "disable",
    dbname: str = "postgres",
    connect_timeout: int = 5,
) -> Any:
    """Open an admin connection, retrying until the server answers.

    Each attempt connects and pings with ``SELECT 1``.

    Args:
        credential: Resolved admin credential for the target.
        policy: Attempt count and spacing.
        connect: Connection factory (psycopg2.connect in production).
        wait: Sleeps between attempts; returns True if cancelled meanwhile.
        sslmode: libpq sslmode.
        dbname: Database to open the admin session on.
        connect_timeout: Per-attempt libpq connect timeout in seconds.

    Returns:
        An open connection.

    Raises:
        ConnectivityError: If every attempt failed.
        ProvisioningCancelled: If cancelled while waiting between attempts.
    """
    policy = policy or RetryPolicy()
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            conn = connect(
                host=credential.host,
                port=credential.port,
                user=credential.admin_user,
                password=credential.admin_password,
                dbname=dbname,
                sslmode=sslmode,
                connect_timeout=connect_timeout,
            )
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
            except psycopg2.Error:
                conn.close()
                raise
            return conn
        except psycopg2.Error as e:
            last_error = e
            if attempt < policy.max_attempts:
                logger.debug(
                    "Admin connection attempt failed, retrying",
                    extra={
                        "target": credential.target,
                        "address": credential.address,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "error": str(e).strip(),
                    },
                )
                if wait(policy.interval_seconds):
                    raise ProvisioningCancelled(
                        f"connection to {credential.address} cancelled"
                    ) from e

    # SAFETY: max_attempts >= 1, so the loop ran and recorded an error
    assert last_error is not None, "Retry loop completed without setting last_error"
    raise ConnectivityError(
        credential.target,
        "connect",
        f"could not connect to postgres {credential.address}: {str(last_error).strip()}",
    ) from last_error


def _exists(cur: Any, query: str, name: str) -> bool:
    cur.execute(query, (name,))
    return cur.fetchone() is not None


def _lost_create_race(
    error: psycopg2.Error, duplicate: type[psycopg2.Error], index: str
) -> bool:
    """Whether a CREATE failed only because another session created the same object."""
    if isinstance(error, duplicate):
        return True
    return isinstance(error, pg_errors.UniqueViolation) and error.diag.constraint_name == index


def ensure_role(cur: Any, request: ProvisionRequest) -> bool:
    """Create the login role unless it exists.

    Returns:
        True if this call created the role.
    """
    if _exists(cur, ROLE_EXISTS_QUERY, request.user):
        return False
    try:
        cur.execute(
            sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD {}").format(
                sql.Identifier(request.user), sql.Literal(request.password)
            )
        )
    except (pg_errors.DuplicateObject, pg_errors.UniqueViolation) as e:
        if not _lost_create_race(e, pg_errors.DuplicateObject, ROLE_NAME_INDEX):
            raise
        # Another instance created it between our check and create
        logger.info(
            "Role created concurrently by another instance",
            extra={"target": request.target, "user": request.user},
        )
        return False
    return True


def ensure_database(cur: Any, request: ProvisionRequest) -> bool:
    """Create the database owned by the request's role unless it exists.

    Returns:
        True if this call created the database.
    """
    if _exists(cur, DATABASE_EXISTS_QUERY, request.database):
        return False
    try:
        cur.execute(
            sql.SQL("CREATE DATABASE {} OWNER {}").format(
                sql.Identifier(request.database), sql.Identifier(request.user)
            )
        )
    except (pg_errors.DuplicateDatabase, pg_errors.UniqueViolation) as e:
        if not _lost_create_race(e, pg_errors.DuplicateDatabase, DATABASE_NAME_INDEX):
            raise
        logger.info(
            "Database created concurrently by another instance",
            extra={"target": request.target, "database": request.database},
        )
        return False
    return True


def grant_privileges(cur: Any, request: ProvisionRequest) -> None:
    cur.execute(
        sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
            sql.Identifier(request.database), sql.Identifier(request.user)
        )
    )


_STEPS: tuple[tuple[str, Callable[[Any, ProvisionRequest], Any]], ...] = (
    ("create role", ensure_role),
    ("create database", ensure_database),
    ("grant privileges", grant_privileges),
)


def converge(
    credential: AdminCredential,
    request: ProvisionRequest,
    *,
    policy: RetryPolicy | None = None,
    connect: ConnectFn = psycopg2.connect,
    wait: WaitFn = _never_cancelled,
    sslmode: str = "disable",
    dbname: str = "postgres",
    connect_timeout: int = 5,
) -> None:
    """Make the target server satisfy a provisioning request.

    Safe to call any number of times, sequentially or concurrently from
    independent processes. The grant is always reapplied, even when the
    database already existed.

    Args:
        credential: Resolved admin credential for ``request.target``.
        request: Complete provisioning request.
        policy: Connection retry policy.
        connect: Connection factory.
        wait: Sleep used between connection attempts.
        sslmode: libpq sslmode.
        dbname: Database to open the admin session on.
        connect_timeout: Per-attempt connect timeout in seconds.

    Raises:
        ProvisioningError: If any step fails; remaining steps are skipped.
        ProvisioningCancelled: If cancelled while waiting to connect.
    """
    conn = connect_with_retry(
        credential,
        policy=policy,
        connect=connect,
        wait=wait,
        sslmode=sslmode,
        dbname=dbname,
        connect_timeout=connect_timeout,
    )

    with closing(conn):
        try:
            # CREATE DATABASE cannot run inside a transaction block
            conn.autocommit = True
            cur = conn.cursor()
        except psycopg2.Error as e:
            raise ProvisioningError(
                request.target, "session setup", f"session setup failed: {str(e).strip()}"
            ) from e

        with cur:
            for step, action in _STEPS:
                try:
                    created = action(cur, request)
                except psycopg2.Error as e:
                    raise ProvisioningError(
                        request.target, step, f"{step} failed: {str(e).strip()}"
                    ) from e
                if created:
                    logger.info(
                        f"Provisioning step applied: {step}",
                        extra={
                            "target": request.target,
                            "database": request.database,
                            "user": request.user,
                        },
                    )
