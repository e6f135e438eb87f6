from typing import Any, Dict, List, Optional

DEFAULT_METRICS: Dict[str, Any] = {
    "total_changes_detected": 0,
    "total_changes_sent": 0,
    "failed_api_calls": 0,
    "successful_api_calls": 0,
    "last_processing_time": 0,
    "total_processing_time": 0,
    "processed_batches": 0,
    "retry_attempts": 0,
    "last_error": "",
    "status": "initialized",
}

class Intent:
    """A mutation applied to one CAS document inside a single transaction."""
    def apply(self, data: dict) -> Any:
        raise NotImplementedError

    def __call__(self, data: dict) -> Any:
        return self.apply(data)

# --- Change log ---

class AppendChangeIntent(Intent):
    def __init__(self, payload: Any, created_ts: float):
        self.payload = payload
        self.created_ts = created_ts

    def apply(self, data: dict) -> int:
        change_id = data.get("next_id", 1)
        data.setdefault("records", []).append({
            "id": change_id,
            "payload": self.payload,
            "created_ts": self.created_ts,
        })
        data["next_id"] = change_id + 1
        return change_id

class CompactChangesIntent(Intent):
    def __init__(self, up_to: int):
        self.up_to = up_to

    def apply(self, data: dict) -> List[dict]:
        records = data.get("records", [])
        removed = [r for r in records if r["id"] <= self.up_to]
        if removed:
            data["records"] = [r for r in records if r["id"] > self.up_to]
        return removed

# --- Checkpoint ---

class AdvanceCheckpointIntent(Intent):
    def __init__(self, change_id: int):
        self.change_id = change_id

    def apply(self, data: dict) -> bool:
        current = data.get("checkpoint")
        if current is not None and self.change_id <= current:
            return False
        data["checkpoint"] = self.change_id
        return True

# --- Metrics ---

class InitMetricsIntent(Intent):
    def apply(self, data: dict) -> bool:
        missing = [k for k in DEFAULT_METRICS if k not in data]
        for key in missing:
            data[key] = DEFAULT_METRICS[key]
        return bool(missing)

class RecordMetricsIntent(Intent):
    def __init__(self, increments: Optional[Dict[str, int]] = None, values: Optional[Dict[str, Any]] = None):
        self.increments = increments or {}
        self.values = values or {}

    def apply(self, data: dict) -> dict:
        for key, amount in self.increments.items():
            data[key] = data.get(key, 0) + amount
        data.update(self.values)
        return dict(data)

class ResetMetricsIntent(Intent):
    def apply(self, data: dict) -> dict:
        data.clear()
        data.update(DEFAULT_METRICS)
        return dict(data)

# --- Leases ---

class AcquireLeaseIntent(Intent):
    def __init__(self, lease_key: str, owner_token: str, ttl_ms: int, now: float):
        self.lease_key = lease_key
        self.owner_token = owner_token
        self.ttl_ms = ttl_ms
        self.now = now

    def apply(self, data: dict) -> bool:
        leases = data.setdefault("leases", {})
        lease = leases.get(self.lease_key)
        if lease and lease["expires_at"] > self.now:
            return False

        leases[self.lease_key] = {
            "owner": self.owner_token,
            "acquired_at": self.now,
            "expires_at": self.now + self.ttl_ms / 1000.0,
        }
        return True

class ReleaseLeaseIntent(Intent):
    """Deletes the lease only while the caller's token is still the owner."""
    def __init__(self, lease_key: str, owner_token: str):
        self.lease_key = lease_key
        self.owner_token = owner_token

    def apply(self, data: dict) -> bool:
        lease = data.get("leases", {}).get(self.lease_key)
        if not lease or lease["owner"] != self.owner_token:
            return False
        del data["leases"][self.lease_key]
        return True

# --- Webhooks ---

class AddWebhookIntent(Intent):
    def __init__(self, url: str):
        self.url = url

    def apply(self, data: dict) -> bool:
        urls = data.setdefault("urls", [])
        if self.url in urls:
            return False
        urls.append(self.url)
        return True

class RemoveWebhookIntent(Intent):
    def __init__(self, url: str):
        self.url = url

    def apply(self, data: dict) -> bool:
        urls = data.get("urls", [])
        if self.url not in urls:
            return False
        urls.remove(self.url)
        return True
