import logging
import re
import httpx
from html import escape as _html_escape
from typing import Optional, Tuple, Dict, Any, List, Sequence
from common.config import settings
from common.steps import Choice


def escape_html(text: str) -> str:
    """Escape <, >, & for Telegram HTML parse mode."""
    return _html_escape(str(text), quote=False)

logger = logging.getLogger(__name__)

TELEGRAM_TEXT_MAX_LEN = 4096
TELEGRAM_CAPTION_MAX_LEN = 1024
TELEGRAM_CALLBACK_DATA_MAX_BYTES = 64
CHOICE_CALLBACK_PREFIX = "choice:"


def verify_telegram_secret(headers: Dict[str, str]) -> bool:
    if not settings.TELEGRAM_WEBHOOK_SECRET:
        return True
    return headers.get("X-Telegram-Bot-Api-Secret-Token") == settings.TELEGRAM_WEBHOOK_SECRET


def _largest_photo_file_id(photos: Any) -> Optional[str]:
    if not isinstance(photos, list) or not photos:
        return None
    sized = [p for p in photos if isinstance(p, dict) and p.get("file_id")]
    if not sized:
        return None
    best = max(sized, key=lambda p: (p.get("file_size") or 0, p.get("width") or 0))
    return best["file_id"]


def parse_update(update_json: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract basic update info from Telegram payload.
    Supports message (text, caption, photo) and callback_query updates.
    """
    message = update_json.get("message")
    if message:
        chat = message.get("chat")
        text = message.get("text") or message.get("caption") or ""
        photo_file_id = _largest_photo_file_id(message.get("photo"))
        if chat and (text or photo_file_id):
            return {
                "kind": "message",
                "chat_id": str(chat.get("id")),
                "text": text,
                "photo_file_id": photo_file_id,
                "username": chat.get("username"),
            }

    callback = update_json.get("callback_query")
    if callback and isinstance(callback, dict):
        cb_message = callback.get("message") or {}
        cb_chat = cb_message.get("chat") or {}
        data = callback.get("data")
        if cb_chat and isinstance(data, str):
            from_user = callback.get("from") or {}
            text = data[len(CHOICE_CALLBACK_PREFIX):] if data.startswith(CHOICE_CALLBACK_PREFIX) else ""
            return {
                "kind": "callback",
                "chat_id": str(cb_chat.get("id")),
                "username": from_user.get("username") or cb_chat.get("username"),
                "callback_query_id": callback.get("id"),
                "callback_data": data,
                "text": text,
                "photo_file_id": None,
            }

    return None


def extract_command(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Parses a string for a command like /start arg1 arg2.
    Returns (command, args_string).
    """
    if not text.startswith("/"):
        return None, None

    parts = text.split(maxsplit=1)
    command = parts[0].lower().split("@")[0]  # strip @botname suffix
    args = parts[1] if len(parts) > 1 else None
    return command, args


def _callback_data(value: str, position: int) -> str:
    """``choice:<value>``, or ``choice:<1-based position>`` when the value does not fit."""
    data = f"{CHOICE_CALLBACK_PREFIX}{value}"
    if len(data.encode("utf-8")) <= TELEGRAM_CALLBACK_DATA_MAX_BYTES:
        return data
    logger.warning(
        "Choice value too long for callback data (%d bytes); sending position %d",
        len(value.encode("utf-8")),
        position,
    )
    return f"{CHOICE_CALLBACK_PREFIX}{position}"


def build_choice_markup(choices: Optional[Sequence[Choice]]) -> Optional[Dict[str, Any]]:
    if not choices:
        return None
    # Two buttons per row keeps labels readable on mobile.
    buttons = [
        {"text": c.label, "callback_data": _callback_data(c.value, i)}
        for i, c in enumerate(choices, start=1)
    ]
    return {"inline_keyboard": [buttons[i:i + 2] for i in range(0, len(buttons), 2)]}


def first_choice_image(choices: Optional[Sequence[Choice]]) -> Optional[str]:
    for choice in choices or []:
        if choice.images:
            return choice.images[0]
    return None


async def resolve_file_url(file_id: str) -> Optional[str]:
    """Turn a Telegram file_id into a downloadable URL via getFile."""
    if not settings.TELEGRAM_BOT_TOKEN:
        return None
    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/getFile"
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json={"file_id": file_id})
            resp.raise_for_status()
            payload = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Failed to resolve Telegram file: %s", type(e).__name__)
        return None
    file_path = (payload.get("result") or {}).get("file_path") if isinstance(payload, dict) else None
    if not isinstance(file_path, str) or not file_path:
        return None
    return f"{settings.TELEGRAM_API_BASE}/file/bot{settings.TELEGRAM_BOT_TOKEN}/{file_path}"


async def answer_callback_query(callback_query_id: str, text: Optional[str] = None) -> Dict[str, Any]:
    if not settings.TELEGRAM_BOT_TOKEN:
        return {"ok": False, "error": "token_missing"}
    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/answerCallbackQuery"
    payload: Dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text[:200]
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.error(
                "Failed to answer callback query (status=%s, body=%s)",
                resp.status_code,
                resp.text,
            )
            return {"ok": False, "error": "telegram_callback_failed"}
    except Exception as e:
        logger.error(f"Failed to answer callback query: {e}")
        return {"ok": False, "error": str(e)}


async def send_photo(chat_id: str, photo_url: str, caption: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}
    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/sendPhoto"
    payload: Dict[str, Any] = {
        "chat_id": chat_id,
        "photo": photo_url,
        "caption": (caption or "")[:TELEGRAM_CAPTION_MAX_LEN],
    }
    if isinstance(reply_markup, dict):
        payload["reply_markup"] = reply_markup
    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, json=payload)
            if resp.status_code < 400:
                return resp.json()
            logger.warning(
                "Telegram photo send failed (status=%s, body=%s). Falling back to text.",
                resp.status_code,
                resp.text,
            )
    except Exception as e:
        logger.error(f"Failed to send Telegram photo: {e}")
    return await send_message(chat_id, escape_html(caption), reply_markup=reply_markup)


async def send_message(chat_id: str, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Sends a message back to Telegram.
    """
    if not settings.TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN not configured.")
        return {"ok": False, "error": "token_missing"}

    url = f"{settings.TELEGRAM_API_BASE}/bot{settings.TELEGRAM_BOT_TOKEN}/sendMessage"
    chunks = split_telegram_text(text or "", TELEGRAM_TEXT_MAX_LEN)
    if not chunks:
        chunks = [""]

    try:
        async with httpx.AsyncClient(timeout=settings.TELEGRAM_COMMAND_TIMEOUT_SECONDS) as client:
            last_json: Dict[str, Any] = {"ok": True}
            total_chunks = len(chunks)
            for idx, chunk in enumerate(chunks):
                prefix = f"<i>Part {idx + 1}/{total_chunks}</i>\n\n" if total_chunks > 1 else ""
                payload: Dict[str, Any] = {
                    "chat_id": chat_id,
                    "text": prefix + chunk,
                    "parse_mode": "HTML",
                }
                # Inline choices go on the final chunk only.
                if isinstance(reply_markup, dict) and idx == total_chunks - 1:
                    payload["reply_markup"] = reply_markup
                resp = await client.post(url, json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                logger.warning(
                    "Telegram send failed with HTML mode (status=%s, body=%s). Retrying without parse_mode.",
                    resp.status_code,
                    resp.text,
                )
                payload = {
                    "chat_id": chat_id,
                    "text": re.sub(r"</?i>", "", prefix) + chunk,
                }
                if isinstance(reply_markup, dict) and idx == total_chunks - 1:
                    payload["reply_markup"] = reply_markup
                resp = await client.post(url, json=payload)
                if resp.status_code < 400:
                    last_json = resp.json()
                    continue

                logger.error(
                    "Failed to send Telegram message (status=%s, body=%s)",
                    resp.status_code,
                    resp.text,
                )
                return {"ok": False, "error": "telegram_send_failed"}
            return last_json
    except Exception as e:
        logger.error(f"Failed to send Telegram message: {e}")
        return {"ok": False, "error": str(e)}


def split_telegram_text(text: str, max_len: int = TELEGRAM_TEXT_MAX_LEN) -> List[str]:
    """Split long text into Telegram-safe chunks while preferring line boundaries."""
    if len(text) <= max_len:
        return [text]

    lines = text.splitlines(keepends=True)
    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(current)
            current = ""

    for line in lines:
        if len(line) > max_len:
            flush()
            remaining = line
            while len(remaining) > max_len:
                split_at = remaining.rfind(" ", 0, max_len)
                if split_at <= 0:
                    split_at = max_len
                chunks.append(remaining[:split_at])
                remaining = remaining[split_at:]
            if remaining:
                current = remaining
            continue

        if len(current) + len(line) > max_len:
            flush()
        current += line

    flush()
    return chunks if chunks else [text[:max_len]]
