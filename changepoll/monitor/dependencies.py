from typing import Optional
from changepoll.monitor.worker import PollingWorker

# Set by the app lifespan, cleared again on shutdown
_worker: Optional[PollingWorker] = None

def get_worker() -> PollingWorker:
    """Resolves the running worker for route handlers."""
    if _worker is None:
        raise RuntimeError("Polling worker is not initialized.")
    return _worker

def set_worker(worker: Optional[PollingWorker]):
    global _worker
    _worker = worker
