from fastapi import APIRouter, HTTPException, Depends
from changepoll.monitor.schemas import (
    WebhookRequest,
    ChangeRequest,
    StatusResponse,
    WebhookListResponse,
    ChangeAppendedResponse,
    MessageResponse,
)
from changepoll.monitor.dependencies import get_worker
from changepoll.monitor.worker import PollingWorker

router = APIRouter()

# Routes are `async def`: the worker pushes every blocking storage call
# onto a thread itself, so nothing here stalls the event loop.

@router.post("/monitor/start", response_model=MessageResponse, tags=["Monitor"])
async def start_monitor(worker: PollingWorker = Depends(get_worker)):
    try:
        await worker.initialize()
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    started = worker.start()
    return MessageResponse(message="Monitor started" if started else "Monitor already running")

@router.post("/monitor/stop", response_model=MessageResponse, tags=["Monitor"])
async def stop_monitor(worker: PollingWorker = Depends(get_worker)):
    stopped = worker.stop()
    return MessageResponse(message="Monitor stopped" if stopped else "Monitor not running")

@router.get("/monitor/status", response_model=StatusResponse, tags=["Monitor"])
async def monitor_status(worker: PollingWorker = Depends(get_worker)):
    metrics = await worker.get_metrics()
    return StatusResponse(is_running=worker.is_running, metrics=metrics)

@router.get("/webhooks", response_model=WebhookListResponse, tags=["Webhooks"])
async def list_webhooks(worker: PollingWorker = Depends(get_worker)):
    return WebhookListResponse(webhooks=await worker.get_webhooks())

@router.post("/webhooks", response_model=MessageResponse, tags=["Webhooks"])
async def add_webhook(req: WebhookRequest, worker: PollingWorker = Depends(get_worker)):
    try:
        added = await worker.add_webhook(str(req.url))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return MessageResponse(message="Webhook added" if added else "Webhook already registered")

@router.delete("/webhooks", response_model=MessageResponse, tags=["Webhooks"])
async def remove_webhook(req: WebhookRequest, worker: PollingWorker = Depends(get_worker)):
    try:
        removed = await worker.remove_webhook(str(req.url))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail="Webhook not registered")
    return MessageResponse(message="Webhook removed")

@router.post("/changes", response_model=ChangeAppendedResponse, tags=["Changes"])
async def append_change(req: ChangeRequest, worker: PollingWorker = Depends(get_worker)):
    try:
        change_id = await worker.append_change(req.payload)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return ChangeAppendedResponse(change_id=change_id)
