import json
import time

import httpx
import pytest

from changepoll.client.delivery import (
    Decision,
    DeliveryClient,
    RetryPolicy,
    classify_error,
    classify_response,
)
from changepoll.monitor.schemas import ChangeRecord

ENDPOINT = "http://api.example/changes"
BATCH = [ChangeRecord(id=1, payload={"a": 1}), ChangeRecord(id=2, payload={"b": 2})]

def make_client(handler, metrics=None, **policy):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = DeliveryClient(http_client, RetryPolicy(**policy), metrics=metrics, sleep=fake_sleep)
    return client, sleeps

def scripted(*statuses):
    """Handler answering with the given statuses in turn, repeating the last one."""
    calls = []

    def handler(request):
        calls.append(request)
        status = statuses[min(len(calls), len(statuses)) - 1]
        return httpx.Response(status)

    return handler, calls

@pytest.mark.asyncio
async def test_success_on_first_attempt(metrics):
    handler, calls = scripted(200)
    client, sleeps = make_client(handler, metrics)

    result = await client.send(ENDPOINT, BATCH)

    assert result.ok and result.attempts == 1 and result.status_code == 200
    assert sleeps == []
    body = json.loads(calls[0].content)
    assert body["batch_id"] == "1-2"
    assert [c["id"] for c in body["changes"]] == [1, 2]
    assert calls[0].headers["Idempotency-Key"] == "1-2"
    assert metrics.snapshot()["successful_api_calls"] == 1

@pytest.mark.asyncio
async def test_client_error_bails_after_one_attempt(metrics):
    handler, calls = scripted(400)
    client, sleeps = make_client(handler, metrics)

    result = await client.send(ENDPOINT, BATCH)

    assert not result.ok
    assert len(calls) == 1 and result.attempts == 1
    assert result.status_code == 400 and result.error == "HTTP 400"
    assert sleeps == []
    snapshot = metrics.snapshot()
    assert snapshot["failed_api_calls"] == 1
    assert snapshot["retry_attempts"] == 0

@pytest.mark.asyncio
async def test_server_errors_exhaust_retries_with_backoff(metrics):
    handler, calls = scripted(500)
    client, sleeps = make_client(handler, metrics)

    result = await client.send(ENDPOINT, BATCH)

    assert not result.ok
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]
    snapshot = metrics.snapshot()
    assert snapshot["retry_attempts"] == 2
    assert snapshot["failed_api_calls"] == 1
    assert snapshot["successful_api_calls"] == 0

@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    handler, calls = scripted(503, 429, 204)
    client, sleeps = make_client(handler)

    result = await client.send(ENDPOINT, BATCH)

    assert result.ok and result.attempts == 3
    assert sleeps == [1.0, 2.0]

@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if len(attempts) == 2:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200)

    client, _ = make_client(handler)
    result = await client.send(ENDPOINT, BATCH)

    assert result.ok and result.attempts == 3

@pytest.mark.asyncio
async def test_unreachable_endpoint_reports_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = make_client(handler, retries=2)
    result = await client.send(ENDPOINT, BATCH)

    assert not result.ok and result.attempts == 2
    assert result.status_code is None
    assert "ConnectError" in result.error

def test_policy_delays_are_capped():
    policy = RetryPolicy(retries=5, min_timeout=1.0, max_timeout=5.0, factor=2)
    assert [policy.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

def test_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(retries=0)

@pytest.mark.parametrize("status, decision", [
    (200, Decision.SUCCESS),
    (204, Decision.SUCCESS),
    (400, Decision.FAIL),
    (404, Decision.FAIL),
    (422, Decision.FAIL),
    (408, Decision.RETRY),
    (429, Decision.RETRY),
    (500, Decision.RETRY),
    (503, Decision.RETRY),
])
def test_classify_response(status, decision):
    assert classify_response(status) is decision

def test_classify_error():
    request = httpx.Request("POST", ENDPOINT)
    assert classify_error(httpx.ConnectTimeout("slow", request=request)) is Decision.RETRY
    assert classify_error(TypeError("not serializable")) is Decision.FAIL

@pytest.mark.asyncio
async def test_slow_metric_write_does_not_hold_up_delivery(metrics, monkeypatch):
    def slow_increment(**counters):
        time.sleep(1.0)

    monkeypatch.setattr(metrics, "increment", slow_increment)
    handler, calls = scripted(200)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = DeliveryClient(http_client, RetryPolicy(), metrics=metrics, storage_timeout=0.2)

    started = time.monotonic()
    result = await client.send(ENDPOINT, BATCH)

    assert result.ok and result.attempts == 1
    assert time.monotonic() - started < 0.8

def test_worst_case_adds_attempts_and_backoff():
    policy = RetryPolicy(retries=3, min_timeout=1.0, max_timeout=5.0, factor=2.0, jitter=0.5)
    # 3 attempts of 10s, then waits of 1+0.5 and 2+0.5 between them
    assert policy.worst_case(10.0) == pytest.approx(34.0)
    assert RetryPolicy(retries=1).worst_case(4.0) == 4.0
