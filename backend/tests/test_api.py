"""HTTP surface: health, in-app messaging, Twilio inbound and draft inspection."""
import asyncio
from unittest.mock import AsyncMock, patch

from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from common.catalog import IdentificationResult, catalog_client
from common.dialogue import OPENING_PROMPT
from common.errors import GENERIC_ERROR_REPLY, PersistenceError
from common.models import Draft, User
from common.steps import Choice, Reply

SEND_URL = "/v1/messaging/send"
TWILIO_URL = "/v1/integrations/twilio/inbound"
AUTH = {"Authorization": "Bearer test_token"}


def _request(asgi_app, method, url, **kwargs):
    async def _call():
        transport = ASGITransport(app=asgi_app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            return await client.request(method, url, **kwargs)
    return asyncio.run(_call())


def _single_draft(session_factory, channel_identity):
    async def _load():
        async with session_factory() as db:
            user = (await db.execute(select(User).where(User.channel_identity == channel_identity))).scalar_one()
            return (await db.execute(select(Draft).where(Draft.user_id == user.id))).scalar_one()
    return asyncio.run(_load())


def test_health_live(app_no_db):
    resp = _request(app_no_db, "GET", "/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-ID"]


def test_health_ready_reports_redis_outage(app_no_db, mock_redis):
    mock_redis.ping.side_effect = ConnectionError("redis down")
    resp = _request(app_no_db, "GET", "/health/ready")
    assert resp.status_code == 503


# --- In-app messaging ---

def test_messaging_trigger_returns_opening_prompt(app_with_db, session_factory):
    resp = _request(app_with_db, "POST", SEND_URL, json={"sessionId": "sess_1", "body": "I want to sell something"})
    assert resp.status_code == 200
    assert resp.json() == {"message": OPENING_PROMPT}

    draft = _single_draft(session_factory, "app:sess_1")
    assert draft.stage.value == "awaiting_photos"


def test_messaging_rejects_empty_message(app_no_db):
    resp = _request(app_no_db, "POST", SEND_URL, json={"sessionId": "sess_1", "body": "  "})
    assert resp.status_code == 400
    resp = _request(app_no_db, "POST", SEND_URL, json={"body": "hello"})
    assert resp.status_code == 422


def test_messaging_rate_limit(app_no_db, mock_redis):
    mock_redis.incr.return_value = 31
    resp = _request(app_no_db, "POST", SEND_URL, json={"sessionId": "sess_1", "body": "hello"})
    assert resp.status_code == 429
    assert "Retry in 30s" in resp.json()["detail"]


def test_messaging_busy_sender_returns_conflict(app_no_db, mock_redis):
    mock_redis.lock.return_value.acquire = AsyncMock(return_value=False)
    with patch("api.main.handle_inbound", new_callable=AsyncMock) as handle:
        resp = _request(app_no_db, "POST", SEND_URL, json={"sessionId": "sess_1", "body": "hello"})
    assert resp.status_code == 409
    handle.assert_not_awaited()


def test_messaging_persistence_failure_returns_500(app_no_db):
    with patch("api.main.handle_inbound", new_callable=AsyncMock, side_effect=PersistenceError("down")):
        resp = _request(app_no_db, "POST", SEND_URL, json={"sessionId": "sess_1", "body": "hello"})
    assert resp.status_code == 500
    assert resp.json()["detail"] == GENERIC_ERROR_REPLY


def test_messaging_passes_media_and_serializes_choices(app_no_db, mock_redis):
    reply = Reply(text="Is this a Nike Air Force 1?", choices=[Choice(label="Yes", value="yes")])
    with patch("api.main.handle_inbound", new_callable=AsyncMock, return_value=reply) as handle:
        resp = _request(
            app_no_db,
            "POST",
            SEND_URL,
            json={"sessionId": "sess_1", "mediaUrls": [" https://cdn.example/shoe.jpg ", ""]},
        )
    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Is this a Nike Air Force 1?",
        "choices": [{"label": "Yes", "value": "yes"}],
    }
    args = handle.await_args.args
    assert args[1] == "app:sess_1"
    assert args[3] == ["https://cdn.example/shoe.jpg"]
    assert mock_redis.lock.call_args.args[0] == "listing:lock:app:sess_1"


# --- Twilio ---

def test_twilio_whatsapp_sender_shares_sms_identity(app_with_db, session_factory):
    resp = _request(
        app_with_db,
        "POST",
        TWILIO_URL,
        data={"From": "whatsapp:+15551234567", "Body": "I want to sell something", "NumMedia": "0"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert f"<Message>{OPENING_PROMPT}</Message>" in resp.text

    resp = _request(
        app_with_db,
        "POST",
        TWILIO_URL,
        data={"From": "+15551234567", "Body": "hello", "NumMedia": "0"},
    )
    assert "<Message>Please send at least one photo of the item.</Message>" in resp.text
    draft = _single_draft(session_factory, "+15551234567")
    assert draft.status.value == "active"


def test_twilio_reply_lists_choice_labels(app_no_db):
    reply = Reply(text="Quick sale or best price?", choices=[
        Choice(label="Quick sale", value="quick_sale"),
        Choice(label="Best price", value="best_price"),
    ])
    with patch("api.main.handle_inbound", new_callable=AsyncMock, return_value=reply) as handle:
        resp = _request(
            app_no_db,
            "POST",
            TWILIO_URL,
            data={
                "From": "+15551234567",
                "Body": "",
                "NumMedia": "2",
                "MediaUrl0": "https://api.twilio.com/media/1",
                "MediaUrl1": "https://api.twilio.com/media/2",
            },
        )
    assert resp.status_code == 200
    assert "<Message>Quick sale or best price?\n(Quick sale / Best price)</Message>" in resp.text
    assert handle.await_args.args[3] == ["https://api.twilio.com/media/1", "https://api.twilio.com/media/2"]


def test_twilio_empty_message_gets_empty_twiml(app_no_db):
    with patch("api.main.handle_inbound", new_callable=AsyncMock) as handle:
        resp = _request(app_no_db, "POST", TWILIO_URL, data={"From": "+15551234567", "Body": " ", "NumMedia": "0"})
    assert resp.status_code == 200
    assert "<Message>" not in resp.text
    handle.assert_not_awaited()


def test_twilio_persistence_failure_returns_500(app_no_db):
    with patch("api.main.handle_inbound", new_callable=AsyncMock, side_effect=PersistenceError("down")):
        resp = _request(app_no_db, "POST", TWILIO_URL, data={"From": "+15551234567", "Body": "hi"})
    assert resp.status_code == 500


# --- Drafts ---

def test_draft_detail_requires_auth(app_no_db):
    resp = _request(app_no_db, "GET", "/v1/drafts/drf_missing")
    assert resp.status_code == 401
    resp = _request(app_no_db, "GET", "/v1/drafts/drf_missing", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_draft_detail_not_found(app_with_db):
    resp = _request(app_with_db, "GET", "/v1/drafts/drf_missing", headers=AUTH)
    assert resp.status_code == 404


def test_draft_detail_returns_facts_and_photos(app_with_db, session_factory):
    result = IdentificationResult(primary_title="Nike Air Force 1", confidence=0.9, variant_options={"size": ["10"]})
    with patch.object(catalog_client, "identify", AsyncMock(return_value=result)):
        _request(app_with_db, "POST", SEND_URL, json={"sessionId": "sess_9", "body": "I want to sell something"})
        _request(app_with_db, "POST", SEND_URL, json={"sessionId": "sess_9", "mediaUrls": ["https://cdn.example/a.jpg"]})

    draft = _single_draft(session_factory, "app:sess_9")
    resp = _request(app_with_db, "GET", f"/v1/drafts/{draft.id}", headers=AUTH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "active"
    assert body["stage"] == "confirm_identity"
    assert body["pending"]["kind"] == "confirm_identity"
    facts = {f["key"]: f for f in body["facts"]}
    assert facts["identity"]["value"] == "Nike Air Force 1"
    assert facts["identity"]["status"] == "proposed"
    assert facts["identity"]["source"] == "catalog"
    assert [p["storage_ref"] for p in body["photos"]] == ["https://cdn.example/a.jpg"]
    assert body["photos"][0]["kind"] == "user"
