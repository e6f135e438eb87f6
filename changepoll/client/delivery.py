import asyncio
import enum
import random
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import httpx

from changepoll.monitor.schemas import ChangeRecord

logger = logging.getLogger(__name__)

class Decision(enum.Enum):
    SUCCESS = "success"
    RETRY = "retry"
    FAIL = "fail"

RETRYABLE_CLIENT_ERRORS = (408, 429)

def classify_response(status_code: int) -> Decision:
    """Maps an HTTP status to the retry decision for one attempt."""
    if 200 <= status_code < 300:
        return Decision.SUCCESS
    if 400 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_ERRORS:
        # The request itself is bad; sending it again cannot help.
        return Decision.FAIL
    return Decision.RETRY

def classify_error(error: Exception) -> Decision:
    if isinstance(error, httpx.TransportError):
        return Decision.RETRY
    return Decision.FAIL

class RetryPolicy:
    def __init__(self, retries: int = 3, min_timeout: float = 1.0, max_timeout: float = 5.0, factor: float = 2.0, jitter: float = 0.0):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.retries = retries
        self.min_timeout = min_timeout
        self.max_timeout = max_timeout
        self.factor = factor
        self.jitter = jitter

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = min(self.min_timeout * (self.factor ** (attempt - 1)), self.max_timeout)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    def worst_case(self, per_attempt: float) -> float:
        """Longest a full send can take when every attempt uses `per_attempt` seconds."""
        backoff = sum(
            min(self.min_timeout * (self.factor ** (attempt - 1)), self.max_timeout) + self.jitter
            for attempt in range(1, self.retries)
        )
        return self.retries * per_attempt + backoff

class DeliveryResult:
    def __init__(self, endpoint: str, ok: bool, attempts: int, status_code: Optional[int] = None, error: Optional[str] = None):
        self.endpoint = endpoint
        self.ok = ok
        self.attempts = attempts
        self.status_code = status_code
        self.error = error

    def __repr__(self):
        return f"DeliveryResult(endpoint={self.endpoint!r}, ok={self.ok}, attempts={self.attempts}, status_code={self.status_code}, error={self.error!r})"

def batch_id(batch: Sequence[ChangeRecord]) -> str:
    if not batch:
        return "empty"
    return f"{batch[0].id}-{batch[-1].id}"

def build_body(batch: Sequence[ChangeRecord]) -> dict:
    return {
        "batch_id": batch_id(batch),
        "changes": [record.model_dump() for record in batch],
    }

class DeliveryClient:
    """
    POSTs a batch of changes to one endpoint with bounded retries.

    Every attempt records exactly one metric: successful_api_calls on success,
    retry_attempts when another attempt follows, failed_api_calls on the final failure.
    """
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        metrics=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        storage_timeout: float = 2.0,
    ):
        self.http_client = http_client
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.metrics = metrics
        self.sleep = sleep
        self.storage_timeout = storage_timeout

    async def _emit(self, counter: str):
        if self.metrics is None:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.metrics.increment, **{counter: 1}),
                timeout=self.storage_timeout,
            )
        except Exception as e:
            logger.error(f"Failed to record {counter}: {e!r}")

    async def _attempt(self, endpoint: str, body: dict, timeout: float):
        """Returns (decision, status_code, error message) for a single POST."""
        try:
            response = await self.http_client.post(
                endpoint,
                json=body,
                timeout=timeout,
                headers={"Idempotency-Key": body["batch_id"]},
            )
        except Exception as e:
            return classify_error(e), None, f"{type(e).__name__}: {e}"

        decision = classify_response(response.status_code)
        error = None if decision is Decision.SUCCESS else f"HTTP {response.status_code}"
        return decision, response.status_code, error

    async def send(self, endpoint: str, batch: List[ChangeRecord], timeout: Optional[float] = None) -> DeliveryResult:
        body = build_body(batch)
        timeout = self.timeout if timeout is None else timeout
        status_code = None
        error = None

        for attempt in range(1, self.policy.retries + 1):
            decision, status_code, error = await self._attempt(endpoint, body, timeout)

            if decision is Decision.SUCCESS:
                await self._emit("successful_api_calls")
                logger.info(f"Delivered batch {body['batch_id']} ({len(batch)} changes) to {endpoint} on attempt {attempt}")
                return DeliveryResult(endpoint, True, attempt, status_code)

            if decision is Decision.FAIL:
                logger.error(f"Non-retryable failure delivering batch {body['batch_id']} to {endpoint}: {error}")
                break

            if attempt < self.policy.retries:
                await self._emit("retry_attempts")
                delay = self.policy.delay(attempt)
                logger.warning(f"Delivery to {endpoint} failed ({error}). Retrying in {delay:.2f}s (Attempt {attempt}/{self.policy.retries})")
                await self.sleep(delay)
            else:
                logger.error(f"Failed to deliver batch {body['batch_id']} to {endpoint} after {attempt} attempts: {error}")

        await self._emit("failed_api_calls")
        return DeliveryResult(endpoint, False, attempt, status_code, error)
