from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Any, List
from datetime import datetime
from common.models import DraftStatus, FactStatus, PhotoKind, Stage
from common.steps import Choice

class MessagingSendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=200)
    body: str = ""
    media_urls: List[str] = Field(default_factory=list, alias="mediaUrls", max_length=10)

class MessagingSendResponse(BaseModel):
    message: str
    choices: Optional[List[Choice]] = None

class TelegramWebhookResponse(BaseModel):
    status: str = "ok"

class DraftFactOut(BaseModel):
    key: str
    value: Any = None
    confidence: float
    source: str
    status: FactStatus
    evidence: List[Any] = Field(default_factory=list)

class DraftPhotoOut(BaseModel):
    kind: PhotoKind
    storage_ref: str
    created_at: datetime

class DraftDetailResponse(BaseModel):
    id: str
    user_id: str
    status: DraftStatus
    stage: Stage
    pending: Optional[dict] = None
    created_at: datetime
    updated_at: datetime
    facts: List[DraftFactOut] = Field(default_factory=list)
    photos: List[DraftPhotoOut] = Field(default_factory=list)
