"""Per-container reconciliation pipeline.

For every target mentioned in a container's labels:
1. Resolve admin credentials (skip if this instance is not authorized)
2. Skip if the container already carries the provisioned marker
3. Skip if the request is incomplete
4. Converge PostgreSQL state
5. Mark the container (best-effort)

Failures are contained per target: one target failing never prevents the
others from being processed, and never propagates to the watch loop.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import psycopg2

from .config import Config
from .convergence import (
    ConnectFn,
    ConnectivityError,
    ProvisioningCancelled,
    ProvisioningError,
    converge,
)
from .credentials import CredentialResolver
from .docker_platform import DockerPlatform
from .labels import LabelScan, extract_requests, is_marked
from .marker import mark_satisfied
from .models import Workload

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """What happened to one target of one container."""

    PROVISIONED = "provisioned"
    ALREADY_PROVISIONED = "already_provisioned"
    UNAUTHORIZED = "unauthorized"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DRY_RUN = "dry_run"


@dataclass
class TargetOutcome:
    target: str
    status: OutcomeStatus
    error: Exception | None = None
    marked: bool = False


@dataclass
class WorkloadResult:
    """Result of reconciling one container."""

    workload_id: str
    outcomes: list[TargetOutcome] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def provisioned(self) -> list[str]:
        return [o.target for o in self.outcomes if o.status == OutcomeStatus.PROVISIONED]

    @property
    def failed(self) -> list[str]:
        return [o.target for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    def outcome(self, target: str) -> TargetOutcome | None:
        for o in self.outcomes:
            if o.target == target:
                return o
        return None


class Reconciler:
    """Feeds observed containers through parse, resolve, converge and mark."""

    def __init__(
        self,
        config: Config,
        credentials: CredentialResolver,
        platform: DockerPlatform,
        *,
        connect: ConnectFn | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._platform = platform
        self._connect = connect or psycopg2.connect
        # threading, not asyncio: waited on from executor threads
        self._stop = threading.Event()

    @property
    def config(self) -> Config:
        return self._config

    def shutdown(self) -> None:
        """Interrupt pending connection retries."""
        self._stop.set()

    def process_workload(self, workload: Workload) -> WorkloadResult:
        """Reconcile every target a container mentions.

        Args:
            workload: Container snapshot taken at observation time.

        Returns:
            Per-target outcomes; empty if the container mentions no target.
        """
        result = WorkloadResult(workload_id=workload.id)
        scan = extract_requests(workload.labels, self._config.label_prefix)

        for target in sorted(scan.mentioned):
            if self._stop.is_set():
                break
            outcome = self._process_target(workload, target, scan)
            result.outcomes.append(outcome)

        result.end_time = datetime.now(UTC)
        return result

    def _process_target(self, workload: Workload, target: str, scan: LabelScan) -> TargetOutcome:
        prefix = self._config.label_prefix
        log_ctx = {"container": workload.short_id, "target": target}

        credential = self._credentials.resolve(target)
        if credential is None:
            logger.info("No admin credentials for target in this instance; skipping", extra=log_ctx)
            return TargetOutcome(target, OutcomeStatus.UNAUTHORIZED)

        if is_marked(workload.labels, target, prefix):
            logger.info("Container already provisioned for target", extra=log_ctx)
            return TargetOutcome(target, OutcomeStatus.ALREADY_PROVISIONED, marked=True)

        request = scan.requests.get(target)
        if request is None:
            logger.warning(
                "Incomplete labels for target; need db, user and pass",
                extra={**log_ctx, "missing": scan.missing_fields(target)},
            )
            return TargetOutcome(target, OutcomeStatus.INCOMPLETE)

        log_ctx.update(
            {
                "host": credential.address,
                "database": request.database,
                "user": request.user,
            }
        )

        if self._config.dry_run:
            logger.info("Dry run: would provision", extra=log_ctx)
            return TargetOutcome(target, OutcomeStatus.DRY_RUN)

        logger.info("Provisioning", extra=log_ctx)
        try:
            converge(
                credential,
                request,
                policy=self._config.retry_policy,
                connect=self._connect,
                wait=self._stop.wait,
                sslmode=self._config.sslmode,
                dbname=self._config.admin_database,
                connect_timeout=self._config.connect_timeout_seconds,
            )
        except ProvisioningCancelled:
            logger.info("Provisioning cancelled by shutdown", extra=log_ctx)
            return TargetOutcome(target, OutcomeStatus.CANCELLED)
        except ConnectivityError as e:
            logger.error("Provisioning failed: server unreachable", extra={**log_ctx, "error": str(e)})
            return TargetOutcome(target, OutcomeStatus.FAILED, error=e)
        except ProvisioningError as e:
            logger.error("Provisioning failed", extra={**log_ctx, "step": e.step, "error": str(e)})
            return TargetOutcome(target, OutcomeStatus.FAILED, error=e)

        marked = mark_satisfied(self._platform, workload.id, target, prefix=prefix)
        logger.info("Provisioning done", extra={**log_ctx, "marked": marked})
        return TargetOutcome(target, OutcomeStatus.PROVISIONED, marked=marked)
