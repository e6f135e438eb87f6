import asyncio
import logging
from typing import Dict, List

from changepoll.client.delivery import DeliveryClient
from changepoll.monitor.schemas import ChangeRecord
from changepoll.monitor.service import WebhookRegistry

logger = logging.getLogger(__name__)

class Dispatcher:
    """
    Best-effort fan-out of a batch to every registered webhook.
    Sends run concurrently; one endpoint failing never affects the others
    and nothing is raised to the caller.
    """
    def __init__(self, registry: WebhookRegistry, delivery: DeliveryClient, timeout: float = 5.0, storage_timeout: float = 2.0):
        self.registry = registry
        self.delivery = delivery
        self.timeout = timeout
        self.storage_timeout = storage_timeout

    async def _notify_one(self, url: str, batch: List[ChangeRecord]) -> bool:
        result = await self.delivery.send(url, batch, timeout=self.timeout)
        if result.ok:
            logger.info(f"Successfully notified webhook: {url}")
        else:
            logger.error(f"Failed to notify webhook {url}: {result.error}")
        return result.ok

    async def notify_all(self, batch: List[ChangeRecord]) -> Dict[str, bool]:
        try:
            urls = await asyncio.wait_for(asyncio.to_thread(self.registry.list), timeout=self.storage_timeout)
        except Exception as e:
            logger.error(f"Failed to get webhooks, skipping notification: {e!r}")
            return {}
        if not urls or not batch:
            return {}

        outcomes = await asyncio.gather(
            *(self._notify_one(url, batch) for url in urls),
            return_exceptions=True,
        )

        results = {}
        for url, outcome in zip(urls, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Webhook task for {url} crashed: {outcome!r}")
                results[url] = False
            else:
                results[url] = outcome

        delivered = sum(results.values())
        logger.info(f"Notified {delivered}/{len(urls)} webhooks")
        return results
