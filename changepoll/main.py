import json
import argparse
import logging
from typing import Optional
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI

from changepoll.config import AppConfig, settings
from changepoll.monitor.dependencies import set_worker
from changepoll.monitor.router import router as monitor_router
from changepoll.monitor.worker import build_worker

LOG_FORMAT = '[%(process)d] %(asctime)s %(levelname)s %(name)s: %(message)s'

logger = logging.getLogger("changepoll")

def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, handlers=handlers)

def create_app(config: AppConfig = settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client = httpx.AsyncClient(headers={"Content-Type": "application/json"})
        worker = build_worker(config, http_client)
        await worker.initialize()

        # Inject dependency
        set_worker(worker)
        logger.info(json.dumps({"event": "monitor_startup", "worker": worker.worker_id, "api_endpoint": config.api_endpoint}))

        if config.autostart:
            worker.start()

        yield

        worker.stop()
        await worker.wait_closed()
        set_worker(None)
        await http_client.aclose()
        logger.info(json.dumps({"event": "monitor_shutdown", "worker": worker.worker_id}))

    app = FastAPI(lifespan=lifespan, title="Change Polling Monitor")
    app.include_router(monitor_router)
    return app

app = create_app()

def run():
    parser = argparse.ArgumentParser(description="Run the change polling monitor.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=settings.port)
    args = parser.parse_args()

    configure_logging(settings.log_level, settings.log_file)
    uvicorn.run(app, host=args.host, port=args.port)

if __name__ == "__main__":
    run()
