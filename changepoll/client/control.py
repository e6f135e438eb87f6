import httpx
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

class ControlClientError(Exception):
    pass

class MonitorControlClient:
    """
    Synchronous client for the monitor's HTTP control surface.
    Used by operators to start/stop polling and manage webhooks, and by
    producers to append changes.
    """
    def __init__(self, base_url: str = "http://127.0.0.1:8000", timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _make_request(self, method: str, endpoint: str, json_data: Optional[dict] = None) -> Dict[str, Any]:
        try:
            resp = self.http_client.request(method, endpoint, json=json_data)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text
            logger.error(f"{method} {endpoint} failed with {e.response.status_code}: {detail}")
            raise ControlClientError(f"{method} {endpoint} returned {e.response.status_code}: {detail}") from e
        except httpx.RequestError as e:
            logger.error(f"Monitor at {self.base_url} unreachable: {e}")
            raise ControlClientError(f"Failed to reach monitor at {self.base_url}: {e}") from e

    def close(self):
        self.http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- Monitor API ---
    def start(self) -> Dict[str, Any]:
        return self._make_request("POST", "/monitor/start")

    def stop(self) -> Dict[str, Any]:
        return self._make_request("POST", "/monitor/stop")

    def status(self) -> Dict[str, Any]:
        return self._make_request("GET", "/monitor/status")

    # --- Webhook API ---
    def list_webhooks(self) -> List[str]:
        return self._make_request("GET", "/webhooks").get("webhooks", [])

    def add_webhook(self, url: str) -> Dict[str, Any]:
        return self._make_request("POST", "/webhooks", {"url": url})

    def remove_webhook(self, url: str) -> Dict[str, Any]:
        return self._make_request("DELETE", "/webhooks", {"url": url})

    # --- Producer API ---
    def append_change(self, payload: Any) -> int:
        return self._make_request("POST", "/changes", {"payload": payload})["change_id"]
