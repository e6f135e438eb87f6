import os
import json
import uuid
import enum
import time
import socket
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from changepoll.config import AppConfig
from changepoll.client.delivery import DeliveryClient, RetryPolicy
from changepoll.monitor.dispatcher import Dispatcher
from changepoll.monitor.service import (
    ChangeLog,
    CheckpointStore,
    MetricsStore,
    LeaseCoordinator,
    WebhookRegistry,
)

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TTL_MS = 180000
# Headroom of the derived lease TTL over the worst-case cycle.
LEASE_TTL_MARGIN = 1.25
# Bounded storage calls one successful cycle makes outside delivery.
CYCLE_STORAGE_CALLS = 11

class WorkerState(enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    READING = "reading"
    DELIVERING = "delivering"
    NOTIFYING = "notifying"
    COMMITTING = "committing"
    RELEASING = "releasing"
    ERROR = "error"

class CycleReport:
    """What one polling cycle did."""
    def __init__(self):
        self.acquired = False
        self.detected = 0
        self.delivered = False
        self.checkpoint: Optional[int] = None
        self.error: Optional[str] = None
        self.duration_ms = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "acquired": self.acquired,
            "detected": self.detected,
            "delivered": self.delivered,
            "checkpoint": self.checkpoint,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"

class PollingWorker:
    """
    Polls the change log on a fixed interval and forwards new changes downstream.

    Each cycle runs under a lease so that only one replica processes a given
    stretch of the log at a time. The checkpoint only moves after the primary
    API accepted the batch, which gives at-least-once delivery; webhook
    notification is advisory and never holds the checkpoint back.
    """
    def __init__(
        self,
        change_log: ChangeLog,
        checkpoints: CheckpointStore,
        metrics: MetricsStore,
        lease: LeaseCoordinator,
        registry: WebhookRegistry,
        delivery: DeliveryClient,
        dispatcher: Dispatcher,
        api_endpoint: str,
        polling_interval_ms: int = 30000,
        lease_key: str = "processing",
        lease_ttl_ms: int = DEFAULT_LEASE_TTL_MS,
        api_timeout: float = 30.0,
        storage_timeout: float = 2.0,
        max_batch_size: Optional[int] = None,
        compact_after_commit: bool = False,
        archive_file: Optional[str] = None,
        worker_id: Optional[str] = None,
    ):
        self.change_log = change_log
        self.checkpoints = checkpoints
        self.metrics = metrics
        self.lease = lease
        self.registry = registry
        self.delivery = delivery
        self.dispatcher = dispatcher
        self.api_endpoint = api_endpoint
        self.polling_interval_ms = polling_interval_ms
        self.lease_key = lease_key
        self.lease_ttl_ms = lease_ttl_ms
        self.api_timeout = api_timeout
        self.storage_timeout = storage_timeout
        self.max_batch_size = max_batch_size
        self.compact_after_commit = compact_after_commit
        self.archive_file = archive_file
        self.worker_id = worker_id or default_worker_id()

        self.state = WorkerState.IDLE
        self._running = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._cleanup: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _io(self, fn, *args):
        """Runs a blocking storage call off the event loop, bounded by storage_timeout."""
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.storage_timeout)

    async def _record(self, increments: Optional[Dict[str, int]] = None, values: Optional[Dict[str, Any]] = None):
        try:
            await self._io(self.metrics.record, increments, values)
        except Exception as e:
            logger.error(f"Failed to update metrics: {e!r}")

    async def initialize(self):
        await self._io(self.metrics.initialize)
        logger.info("Change monitor initialized successfully")

    def new_owner_token(self) -> str:
        return f"{self.worker_id}:{uuid.uuid4().hex}"

    def _release_when_settled(self, acquire: asyncio.Future, owner_token: str):
        """
        An abandoned acquire keeps running in its thread and may still take the
        lease. Once it settles, give the lease back under the same token so other
        replicas are not locked out until the TTL runs out.
        """
        async def _cleanup():
            try:
                acquired = await acquire
            except Exception:
                return
            if not acquired:
                return
            logger.warning(f"Releasing lease {self.lease_key} taken by an abandoned acquire")
            try:
                await asyncio.to_thread(self.lease.release, self.lease_key, owner_token)
            except Exception as e:
                logger.error(f"Failed to release lease {self.lease_key}: {e!r}")

        task = asyncio.get_running_loop().create_task(_cleanup())
        self._cleanup.add(task)
        task.add_done_callback(self._cleanup.discard)

    # --- Polling cycle ---

    async def run_cycle(self) -> CycleReport:
        started = time.monotonic()
        owner_token = self.new_owner_token()
        report = CycleReport()

        self.state = WorkerState.ACQUIRING
        acquire = asyncio.ensure_future(
            asyncio.to_thread(self.lease.try_acquire, self.lease_key, owner_token, self.lease_ttl_ms)
        )
        try:
            report.acquired = await asyncio.wait_for(asyncio.shield(acquire), timeout=self.storage_timeout)
        except Exception as e:
            self._release_when_settled(acquire, owner_token)
            report.error = f"lease acquisition failed: {e!r}"
            logger.error(report.error)
            await self._record(values={"last_error": report.error, "status": "error"})
            self.state = WorkerState.IDLE
            return report

        if not report.acquired:
            logger.info("Another process is currently checking for changes")
            self.state = WorkerState.IDLE
            return report

        try:
            await self._process(report)
        except Exception as e:
            self.state = WorkerState.ERROR
            report.error = f"{type(e).__name__}: {e}"
            logger.exception("Error in check for changes")
            await self._record(values={"last_error": report.error, "status": "error"})
        finally:
            report.duration_ms = int((time.monotonic() - started) * 1000)
            try:
                await self._record(
                    increments={"total_processing_time": report.duration_ms, "processed_batches": 1},
                    values={"last_processing_time": report.duration_ms},
                )
            finally:
                self.state = WorkerState.RELEASING
                try:
                    await self._io(self.lease.release, self.lease_key, owner_token)
                except Exception as e:
                    logger.error(f"Failed to release lease {self.lease_key}: {e!r}")
                self.state = WorkerState.IDLE

        logger.info(json.dumps({"event": "poll_cycle", "worker": self.worker_id, **report.as_dict()}))
        return report

    async def _process(self, report: CycleReport):
        self.state = WorkerState.READING
        checkpoint = await self._io(self.checkpoints.get)
        report.checkpoint = checkpoint
        changes = await self._io(self.change_log.read_since, checkpoint, self.max_batch_size)
        report.detected = len(changes)
        if not changes:
            return

        logger.info(f"Found {len(changes)} changes after checkpoint {checkpoint}")
        await self._record(increments={"total_changes_detected": len(changes)}, values={"status": "processing"})

        self.state = WorkerState.DELIVERING
        result = await self.delivery.send(self.api_endpoint, changes, timeout=self.api_timeout)
        if not result.ok:
            # Checkpoint stays put: the same changes are read again next cycle.
            report.error = result.error or "delivery failed"
            logger.error(f"Failed to send changes to API after {result.attempts} attempts: {report.error}")
            await self._record(values={"last_error": report.error, "status": "error"})
            return

        report.delivered = True
        await self._record(increments={"total_changes_sent": len(changes)})
        logger.info(f"Successfully sent {len(changes)} changes to API")

        self.state = WorkerState.NOTIFYING
        try:
            await self.dispatcher.notify_all(changes)
        except Exception as e:
            logger.error(f"Webhook notification failed: {e!r}")

        self.state = WorkerState.COMMITTING
        last_id = changes[-1].id
        await self._io(self.checkpoints.advance, last_id)
        report.checkpoint = last_id
        await self._record(values={"status": "idle"})

        if self.compact_after_commit:
            try:
                await self._io(self.change_log.compact, last_id, self.archive_file)
            except Exception as e:
                logger.error(f"Failed to compact change log: {e!r}")

    # --- Scheduling ---

    def start(self) -> bool:
        """Starts the polling loop on the running event loop. Returns False if already running."""
        if self._running:
            logger.warning("Monitor is already running")
            return False

        self._running = True
        self._wake.clear()
        logger.info("Starting change monitor...")
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    def stop(self) -> bool:
        """Prevents the next tick; a cycle already in flight runs to completion."""
        if not self._running:
            logger.info("Monitor is not running")
            return False

        logger.info("Stopping change monitor...")
        self._running = False
        self._wake.set()
        return True

    async def wait_closed(self):
        if self._task is not None:
            await self._task
        if self._cleanup:
            await asyncio.gather(*self._cleanup, return_exceptions=True)

    async def _run(self):
        while self._running:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Unexpected failure in polling loop")

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.polling_interval_ms / 1000.0)
            except asyncio.TimeoutError:
                pass
        logger.info("Change monitor stopped")

    # --- Read surface for the control API ---

    async def get_metrics(self) -> Dict[str, Any]:
        try:
            snapshot = await self._io(self.metrics.snapshot)
        except Exception as e:
            logger.error(f"Failed to get metrics: {e!r}")
            snapshot = self.metrics.last_known()

        batches = snapshot.get("processed_batches") or 0
        total = snapshot.get("total_processing_time") or 0
        snapshot["average_processing_time"] = round(total / batches) if batches else 0
        snapshot["is_running"] = self.is_running
        snapshot["state"] = self.state.value
        return snapshot

    async def get_webhooks(self) -> List[str]:
        try:
            return await self._io(self.registry.list)
        except Exception as e:
            logger.error(f"Failed to get webhooks: {e!r}")
            return []

    async def add_webhook(self, url: str) -> bool:
        return await self._io(self.registry.add, url)

    async def remove_webhook(self, url: str) -> bool:
        return await self._io(self.registry.remove, url)

    async def append_change(self, payload: Any) -> int:
        return await self._io(self.change_log.append, payload)

def retry_policy(config: AppConfig) -> RetryPolicy:
    return RetryPolicy(
        retries=config.retry_attempts,
        min_timeout=config.retry_min_timeout_sec,
        max_timeout=config.retry_max_timeout_sec,
        factor=config.retry_factor,
        jitter=config.retry_jitter_sec,
    )

def worst_case_cycle_ms(config: AppConfig) -> int:
    """
    Longest a cycle can hold the lease: the primary send and the webhook fan-out
    each exhaust their retries, with one bounded metric write per attempt, plus
    the cycle's own storage calls.
    """
    policy = retry_policy(config)
    storage = config.storage_timeout_sec
    seconds = (
        policy.worst_case(config.api_timeout_sec + storage)
        + policy.worst_case(config.webhook_timeout_sec + storage)
        + CYCLE_STORAGE_CALLS * storage
    )
    return int(seconds * 1000)

def lease_ttl_for(config: AppConfig) -> int:
    worst = worst_case_cycle_ms(config)
    if config.lease_ttl_ms is None:
        return int(worst * LEASE_TTL_MARGIN)
    if config.lease_ttl_ms < worst:
        logger.warning(
            f"lease_ttl_ms={config.lease_ttl_ms} is shorter than the worst-case cycle ({worst}ms); "
            f"a slow cycle may lose its lease to another replica"
        )
    return config.lease_ttl_ms

def build_worker(config: AppConfig, http_client: httpx.AsyncClient, worker_id: Optional[str] = None) -> PollingWorker:
    def base(name: str) -> str:
        return os.path.join(config.storage_dir, f"{config.storage_prefix}_{name}")

    metrics = MetricsStore(base("metrics"))
    registry = WebhookRegistry(base("webhooks"))
    delivery = DeliveryClient(
        http_client,
        policy=retry_policy(config),
        timeout=config.api_timeout_sec,
        metrics=metrics,
        storage_timeout=config.storage_timeout_sec,
    )

    return PollingWorker(
        change_log=ChangeLog(base("changes")),
        checkpoints=CheckpointStore(base("checkpoint")),
        metrics=metrics,
        lease=LeaseCoordinator(base("leases")),
        registry=registry,
        delivery=delivery,
        dispatcher=Dispatcher(
            registry,
            delivery,
            timeout=config.webhook_timeout_sec,
            storage_timeout=config.storage_timeout_sec,
        ),
        api_endpoint=config.api_endpoint,
        polling_interval_ms=config.polling_interval_ms,
        lease_key=config.lease_key,
        lease_ttl_ms=lease_ttl_for(config),
        api_timeout=config.api_timeout_sec,
        storage_timeout=config.storage_timeout_sec,
        max_batch_size=config.max_batch_size,
        compact_after_commit=config.compact_after_commit,
        archive_file=config.archive_file,
        worker_id=worker_id,
    )
