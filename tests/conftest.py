import pytest
from changepoll.monitor.service import (
    ChangeLog,
    CheckpointStore,
    MetricsStore,
    LeaseCoordinator,
    WebhookRegistry,
)

class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

@pytest.fixture
def base(tmp_path):
    """Builds per-test file bases, e.g. base("metrics") -> <tmp>/monitor_metrics."""
    def _base(name: str) -> str:
        return str(tmp_path / f"monitor_{name}")
    return _base

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def change_log(base):
    return ChangeLog(base("changes"))

@pytest.fixture
def checkpoints(base):
    return CheckpointStore(base("checkpoint"))

@pytest.fixture
def metrics(base):
    store = MetricsStore(base("metrics"))
    store.initialize()
    return store

@pytest.fixture
def lease(base, clock):
    return LeaseCoordinator(base("leases"), clock=clock)

@pytest.fixture
def registry(base):
    return WebhookRegistry(base("webhooks"))
