import time
import json
import logging
from typing import Any, Callable, Dict, List, Optional
from changepoll.monitor.storage import CASDocument, ConflictError
from changepoll.monitor.schemas import ChangeRecord, Lease
from changepoll.monitor.models import (
    DEFAULT_METRICS,
    AppendChangeIntent,
    CompactChangesIntent,
    AdvanceCheckpointIntent,
    InitMetricsIntent,
    RecordMetricsIntent,
    ResetMetricsIntent,
    AcquireLeaseIntent,
    ReleaseLeaseIntent,
    AddWebhookIntent,
    RemoveWebhookIntent,
)

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (OSError, ValueError, ConflictError)

class ChangeLog:
    """Append-only log of change records with monotonically increasing integer ids."""
    def __init__(self, filename_base="monitor_changes"):
        self.cas = CASDocument(filename_base)

    def append(self, payload: Any) -> int:
        change_id = self.cas.transact(AppendChangeIntent(payload, time.time()))
        logger.info(f"Appended change {change_id}")
        return change_id

    def read_since(self, checkpoint: Optional[int], limit: Optional[int] = None) -> List[ChangeRecord]:
        """
        Returns records with id strictly greater than `checkpoint` (all records
        when it is None), in ascending id order. Storage errors propagate.
        """
        data, _ = self.cas.read()
        records = [
            ChangeRecord(id=r["id"], payload=r.get("payload"))
            for r in data.get("records", [])
            if checkpoint is None or r["id"] > checkpoint
        ]
        records.sort(key=lambda r: r.id)
        if limit is not None:
            records = records[:limit]
        return records

    def compact(self, up_to: int, archive_file: Optional[str] = None) -> int:
        """
        Removes records with id <= up_to from the log.
        If archive_file is given they are appended to it as JSON lines.
        """
        removed = self.cas.transact(CompactChangesIntent(up_to))

        if removed and archive_file:
            with open(archive_file, "a") as f:
                for record in removed:
                    f.write(json.dumps(record) + "\n")
        if removed:
            logger.info(f"Compacted {len(removed)} changes up to {up_to}")
        return len(removed)

class CheckpointStore:
    def __init__(self, filename_base="monitor_checkpoint"):
        self.cas = CASDocument(filename_base)

    def get(self) -> Optional[int]:
        data, _ = self.cas.read()
        return data.get("checkpoint")

    def advance(self, change_id: int) -> bool:
        """Moves the checkpoint forward; an id at or behind the current one is ignored."""
        advanced = self.cas.transact(AdvanceCheckpointIntent(change_id))
        if not advanced:
            logger.warning(f"Checkpoint not advanced to {change_id}: already at or beyond it")
        return advanced

class MetricsStore:
    """
    Flat map of counters and scalars.
    Counters are changed only by atomic increments, scalars are overwritten.
    """
    def __init__(self, filename_base="monitor_metrics"):
        self.cas = CASDocument(filename_base)
        self._last_snapshot: Dict[str, Any] = dict(DEFAULT_METRICS)

    def initialize(self) -> bool:
        created = self.cas.transact(InitMetricsIntent())
        if created:
            logger.info("Metrics initialized with defaults")
        return created

    def record(self, increments: Optional[Dict[str, int]] = None, values: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        snapshot = self.cas.transact(RecordMetricsIntent(increments, values))
        self._last_snapshot = snapshot
        return snapshot

    def increment(self, **counters: int) -> Dict[str, Any]:
        return self.record(increments=counters)

    def reset(self) -> Dict[str, Any]:
        snapshot = self.cas.transact(ResetMetricsIntent())
        self._last_snapshot = snapshot
        return snapshot

    def last_known(self) -> Dict[str, Any]:
        return dict(self._last_snapshot)

    def snapshot(self) -> Dict[str, Any]:
        """Current metrics, or the last values read if storage is unavailable."""
        try:
            data, _ = self.cas.read()
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to read metrics, serving last known values: {e}")
            return dict(self._last_snapshot)

        snapshot = dict(DEFAULT_METRICS)
        snapshot.update(data)
        self._last_snapshot = snapshot
        return dict(snapshot)

class LeaseCoordinator:
    """
    Time-bounded mutual exclusion across replicas.

    A holder whose work outlives the TTL loses the lease while still running;
    pick a TTL comfortably above the worst-case cycle duration.
    """
    def __init__(self, filename_base="monitor_leases", clock: Callable[[], float] = time.time):
        self.cas = CASDocument(filename_base)
        self.clock = clock

    def try_acquire(self, lease_key: str, owner_token: str, ttl_ms: int) -> bool:
        return self.cas.transact(AcquireLeaseIntent(lease_key, owner_token, ttl_ms, self.clock()))

    def release(self, lease_key: str, owner_token: str) -> bool:
        released = self.cas.transact(ReleaseLeaseIntent(lease_key, owner_token))
        if not released:
            logger.warning(f"Lease {lease_key} no longer owned by {owner_token}; left in place")
        return released

    def current(self, lease_key: str) -> Optional[Lease]:
        data, _ = self.cas.read()
        lease = data.get("leases", {}).get(lease_key)
        if not lease or lease["expires_at"] <= self.clock():
            return None
        return Lease(**lease)

class WebhookRegistry:
    def __init__(self, filename_base="monitor_webhooks"):
        self.cas = CASDocument(filename_base)

    def add(self, url: str) -> bool:
        added = self.cas.transact(AddWebhookIntent(url))
        logger.info(f"Added webhook: {url}" if added else f"Webhook already registered: {url}")
        return added

    def remove(self, url: str) -> bool:
        removed = self.cas.transact(RemoveWebhookIntent(url))
        if removed:
            logger.info(f"Removed webhook: {url}")
        return removed

    def list(self) -> List[str]:
        try:
            data, _ = self.cas.read()
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to get webhooks: {e}")
            return []
        return sorted(data.get("urls", []))
