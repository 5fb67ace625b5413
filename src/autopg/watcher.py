"""Container discovery and event watch loop.

States:
    SCANNING      one-shot listing of all containers at startup
    WATCHING      reading container start events from the engine
    RECONNECTING  waiting out a backoff after a stream failure
    STOPPED       after shutdown()

The event subscription is opened before the initial scan so that a container
started while the scan runs is seen at least once. Seeing it twice is
harmless: convergence is idempotent.

Blocking SDK calls run on the default executor, one at a time, so events are
processed strictly in delivery order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from .config import Config
from .docker_platform import DockerPlatform, EventSubscription, StreamError
from .models import Workload
from .reconciler import Reconciler, WorkloadResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

NANOS_PER_SECOND = 1_000_000_000


class WatchState(str, Enum):
    SCANNING = "scanning"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class Watcher:
    """Supervised loop feeding observed containers to the reconciler."""

    def __init__(self, config: Config, platform: DockerPlatform, reconciler: Reconciler) -> None:
        self._config = config
        self._platform = platform
        self._reconciler = reconciler

        self._shutdown_event = asyncio.Event()
        self._subscription: EventSubscription | None = None
        self._state = WatchState.SCANNING

        # Resume point for resubscription: unix seconds, or "seconds.nanoseconds"
        self._since: int | str | None = None

        self._events_processed = 0
        self._reconnects = 0

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def events_processed(self) -> int:
        return self._events_processed

    @property
    def reconnects(self) -> int:
        return self._reconnects

    async def run(self) -> None:
        """Scan existing containers, then watch start events until shutdown."""
        logger.info(
            "Starting watcher",
            extra={
                "label_prefix": self._config.label_prefix,
                "reconnect_backoff_seconds": self._config.reconnect_backoff_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        self._since = int(time.time())
        self._subscription = await self._open_subscription()
        await self.scan()

        while not self._shutdown_event.is_set():
            if self._subscription is None:
                self._state = WatchState.RECONNECTING
                if await self._wait_backoff():
                    break
                self._subscription = await self._open_subscription()
                if self._subscription is not None:
                    self._reconnects += 1
                    logger.info("Event stream reconnected", extra={"since": self._since})
                continue

            self._state = WatchState.WATCHING
            try:
                await self._consume(self._subscription)
            except StreamError as e:
                if not self._shutdown_event.is_set():
                    logger.error(
                        "Event stream error, reconnecting",
                        extra={
                            "error": str(e),
                            "backoff_seconds": self._config.reconnect_backoff_seconds,
                        },
                    )
            finally:
                self._subscription.close()
                self._subscription = None

        self._state = WatchState.STOPPED
        logger.info(
            "Watcher stopped",
            extra={"events_processed": self._events_processed, "reconnects": self._reconnects},
        )

    def shutdown(self) -> None:
        """Request graceful shutdown.

        Closes the live subscription so a blocked read returns, and cancels
        pending connection retries.
        """
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._reconciler.shutdown()
        if self._subscription is not None:
            self._subscription.close()

    async def scan(self) -> list[WorkloadResult]:
        """Reconcile every existing container, running or stopped.

        Returns:
            Results for containers that mention at least one target.
        """
        self._state = WatchState.SCANNING
        try:
            workloads = await self._run_blocking(self._platform.list_workloads)
        except Exception as e:
            logger.error("Container list failed", extra={"error": str(e)})
            return []

        results: list[WorkloadResult] = []
        for workload in workloads:
            if self._shutdown_event.is_set():
                break
            result = await self._process(workload)
            if result is not None and result.outcomes:
                results.append(result)

        logger.info(
            "Initial scan complete",
            extra={"containers": len(workloads), "with_requests": len(results)},
        )
        return results

    async def _open_subscription(self) -> EventSubscription | None:
        try:
            return await self._run_blocking(self._platform.subscribe, self._since)
        except StreamError as e:
            logger.error("Could not subscribe to container events", extra={"error": str(e)})
            return None

    async def _consume(self, subscription: EventSubscription) -> None:
        while not self._shutdown_event.is_set():
            event = await self._run_blocking(subscription.next_event)
            await self._handle_event(event)

    async def _handle_event(self, event: dict[str, Any]) -> None:
        self._advance_resume_point(event)

        container_id = (event.get("Actor") or {}).get("ID") or event.get("id")
        if not container_id:
            logger.debug("Ignoring event without container ID", extra={"event": event})
            return

        self._events_processed += 1

        # Event attributes may be stale or partial; inspect for current labels
        try:
            workload = await self._run_blocking(self._platform.inspect_workload, container_id)
        except Exception as e:
            logger.warning(
                "Could not inspect started container",
                extra={"container": container_id[:12], "error": str(e)},
            )
            return

        await self._process(workload)

    def _advance_resume_point(self, event: dict[str, Any]) -> None:
        # The engine's since filter is inclusive: resume one nanosecond past
        # the event so it is not replayed. Whole seconds only as a fallback.
        time_nano = event.get("timeNano")
        if isinstance(time_nano, int):
            resume = time_nano + 1
            seconds, nanos = divmod(resume, NANOS_PER_SECOND)
            self._since = f"{seconds}.{nanos:09d}"
            return

        event_time = event.get("time")
        if isinstance(event_time, int):
            self._since = event_time

    async def _process(self, workload: Workload) -> WorkloadResult | None:
        try:
            result = await self._run_blocking(self._reconciler.process_workload, workload)
        except Exception:
            logger.exception(
                "Unexpected error reconciling container",
                extra={"container": workload.short_id},
            )
            return None

        if result.outcomes:
            logger.debug(
                "Container reconciled",
                extra={
                    "container": workload.short_id,
                    "provisioned": result.provisioned,
                    "failed": result.failed,
                    "duration_seconds": result.duration_seconds,
                },
            )
        return result

    async def _wait_backoff(self) -> bool:
        """Wait for the reconnect backoff.

        Returns:
            True if shutdown was requested while waiting.
        """
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(),
                timeout=self._config.reconnect_backoff_seconds,
            )
        except TimeoutError:
            return False
        return True

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))
