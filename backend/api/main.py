import uuid
import logging
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy import text

import redis.asyncio as redis

from common import store
from common.config import settings
from common.dialogue import handle_inbound
from common.errors import GENERIC_ERROR_REPLY, DraftBusyError, PersistenceError
from common.locks import user_lock
from common.parsers import TRIGGER_PHRASE
from common.steps import Reply
from common.telegram import (
    verify_telegram_secret, parse_update, extract_command, send_message, send_photo, answer_callback_query,
    build_choice_markup, first_choice_image, resolve_file_url, escape_html
)
from common.twilio import TWIML_CONTENT_TYPE, build_twiml, empty_twiml, parse_inbound_form, render_reply_text
from api.schemas import (
    MessagingSendRequest, MessagingSendResponse, TelegramWebhookResponse,
    DraftDetailResponse, DraftFactOut, DraftPhotoOut
)

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)
app = FastAPI(title="Listing Intake API")

TELEGRAM_START_COMMANDS = {"/start", "/sell"}

# DB Setup
engine = create_async_engine(settings.DATABASE_URL, echo=settings.APP_ENV == "dev")
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

# --- Middleware & Dependencies ---

@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

async def get_authenticated_user(request: Request):
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid authorization header")
    token = auth_header.split(" ")[1]
    if token not in settings.auth_tokens:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return "operator"

async def enforce_rate_limit(subject_id: str, endpoint_class: str, limit: int):
    key = f"rate_limit:{endpoint_class}:{subject_id}"
    current = await redis_client.incr(key)
    if current == 1:
        await redis_client.expire(key, settings.RATE_LIMIT_WINDOW_SECONDS)
    if current > limit:
        ttl = await redis_client.ttl(key)
        if ttl is None or ttl < 0:
            ttl = settings.RATE_LIMIT_WINDOW_SECONDS
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded for {endpoint_class}. Retry in {ttl}s.",
        )


async def _handle_locked(db: AsyncSession, sender_id: str, body: str, media_refs: List[str], request_id: str) -> Reply:
    async with user_lock(redis_client, sender_id):
        return await handle_inbound(db, sender_id, body, media_refs, request_id=request_id)

# --- Health Endpoints ---

@app.get("/health/live")
async def health_live():
    return {"status": "ok"}

@app.get("/health/ready")
async def health_ready(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        await redis_client.ping()
    except Exception:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Infrastructure unreachable")
    return {"status": "ready"}

# --- In-app messaging ---

@app.post("/v1/messaging/send", response_model=MessagingSendResponse, response_model_exclude_none=True)
async def messaging_send(payload: MessagingSendRequest, request: Request, db: AsyncSession = Depends(get_db)):
    session_id = payload.session_id.strip()
    media_urls = [u.strip() for u in payload.media_urls if u and u.strip()]
    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sessionId is required")
    if not payload.body.strip() and not media_urls:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="body or mediaUrls is required")
    await enforce_rate_limit(session_id, "messaging", settings.RATE_LIMIT_MESSAGES_PER_WINDOW)

    try:
        reply = await _handle_locked(db, f"app:{session_id}", payload.body, media_urls, request.state.request_id)
    except DraftBusyError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=GENERIC_ERROR_REPLY)
    except PersistenceError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_REPLY)
    return MessagingSendResponse(message=reply.text, choices=reply.choices)

# --- Telegram ---

def _is_telegram_sender_allowed(chat_id: str) -> bool:
    allowed_chat_ids = settings.telegram_allowed_chat_ids
    if not allowed_chat_ids:
        return True
    return chat_id in allowed_chat_ids


async def _send_telegram_reply(chat_id: str, reply: Reply) -> None:
    markup = build_choice_markup(reply.choices)
    image = first_choice_image(reply.choices)
    if image:
        await send_photo(chat_id, image, reply.text, reply_markup=markup)
        return
    await send_message(chat_id, escape_html(reply.text), reply_markup=markup)


@app.post("/v1/integrations/telegram/webhook", response_model=TelegramWebhookResponse)
async def telegram_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    # 1. Validate secret
    if not verify_telegram_secret(request.headers):
        raise HTTPException(status_code=403, detail="Unauthorized webhook source")

    # 2. Parse update
    try:
        update_json = await request.json()
    except ValueError:
        return {"status": "ignored"}
    if not isinstance(update_json, dict):
        return {"status": "ignored"}

    data = parse_update(update_json)
    if not data:
        return {"status": "ignored"}

    chat_id = data["chat_id"]
    if not _is_telegram_sender_allowed(chat_id):
        logger.warning("Ignoring telegram message from disallowed chat_id=%s", chat_id)
        return {"status": "ignored"}

    if data.get("kind") == "callback" and data.get("callback_query_id"):
        await answer_callback_query(data["callback_query_id"])

    body = data.get("text") or ""
    command, _ = extract_command(body)
    if command in TELEGRAM_START_COMMANDS:
        body = TRIGGER_PHRASE

    media: List[str] = []
    file_id: Optional[str] = data.get("photo_file_id")
    if file_id:
        file_url = await resolve_file_url(file_id)
        if file_url:
            media.append(file_url)
    if not body and not media:
        return {"status": "ignored"}

    # 3. Run the dialogue; persistence failures surface as 500 so Telegram redelivers.
    try:
        reply = await _handle_locked(db, f"telegram:{chat_id}", body, media, request.state.request_id)
    except (PersistenceError, DraftBusyError) as e:
        logger.error("Telegram message not handled for chat_id=%s: %s", chat_id, type(e).__name__)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_REPLY)
    except Exception as e:
        logger.error(f"Telegram routing failed: {e}")
        await send_message(chat_id, GENERIC_ERROR_REPLY)
        return {"status": "ok"}

    await _send_telegram_reply(chat_id, reply)
    return {"status": "ok"}

# --- Twilio SMS / WhatsApp ---

@app.post("/v1/integrations/twilio/inbound")
async def twilio_inbound(request: Request, db: AsyncSession = Depends(get_db)):
    form = await request.form()
    sender, body, media = parse_inbound_form(form)
    if not sender or (not body.strip() and not media):
        return Response(content=empty_twiml(), media_type=TWIML_CONTENT_TYPE)
    try:
        reply = await _handle_locked(db, sender, body, media, request.state.request_id)
    except (PersistenceError, DraftBusyError) as e:
        logger.error("Twilio message not handled for sender=%s: %s", sender, type(e).__name__)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=GENERIC_ERROR_REPLY)
    return Response(content=build_twiml(render_reply_text(reply)), media_type=TWIML_CONTENT_TYPE)

# --- Drafts ---

@app.get("/v1/drafts/{draft_id}", response_model=DraftDetailResponse, dependencies=[Depends(get_authenticated_user)])
async def get_draft_detail(draft_id: str, db: AsyncSession = Depends(get_db)):
    draft = await store.get_draft(db, draft_id)
    if draft is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft not found")
    facts = await store.list_facts(db, draft_id)
    photos = await store.list_photos(db, draft_id)
    return DraftDetailResponse(
        id=draft.id,
        user_id=draft.user_id,
        status=draft.status,
        stage=draft.stage,
        pending=draft.pending,
        created_at=draft.created_at,
        updated_at=draft.updated_at,
        facts=[
            DraftFactOut(
                key=f.key,
                value=f.value,
                confidence=f.confidence,
                source=f.source,
                status=f.status,
                evidence=list(f.evidence or []),
            )
            for f in facts
        ],
        photos=[DraftPhotoOut(kind=p.kind, storage_ref=p.storage_ref, created_at=p.created_at) for p in photos],
    )
