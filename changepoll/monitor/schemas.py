from typing import Any, Dict, List, Optional
from pydantic import BaseModel, HttpUrl

class ChangeRecord(BaseModel):
    id: int
    payload: Any = None

class Lease(BaseModel):
    owner: str
    acquired_at: float
    expires_at: float

class WebhookRequest(BaseModel):
    url: HttpUrl

class ChangeRequest(BaseModel):
    payload: Any

class StatusResponse(BaseModel):
    status: str = "ok"
    is_running: bool
    metrics: Dict[str, Any]

class WebhookListResponse(BaseModel):
    status: str = "ok"
    webhooks: List[str]

class ChangeAppendedResponse(BaseModel):
    status: str = "ok"
    change_id: int

class MessageResponse(BaseModel):
    status: str = "ok"
    message: Optional[str] = None
