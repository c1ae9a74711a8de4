"""Twilio SMS / WhatsApp webhook helpers."""
from html import escape as _html_escape
from typing import Any, List, Mapping, Optional, Tuple

from common.steps import Reply

WHATSAPP_PREFIX = "whatsapp:"
TWIML_CONTENT_TYPE = "application/xml"


def normalize_from(raw: Optional[str]) -> str:
    """E.164 sender identity; WhatsApp senders share it with SMS."""
    value = (raw or "").strip()
    if value.lower().startswith(WHATSAPP_PREFIX):
        value = value[len(WHATSAPP_PREFIX):]
    return value.strip()


def parse_inbound_form(form: Mapping[str, Any]) -> Tuple[str, str, List[str]]:
    sender = normalize_from(form.get("From"))
    body = str(form.get("Body") or "")
    try:
        count = int(form.get("NumMedia") or 0)
    except (TypeError, ValueError):
        count = 0
    media: List[str] = []
    for index in range(count):
        url = form.get(f"MediaUrl{index}")
        if isinstance(url, str) and url.strip():
            media.append(url.strip())
    return sender, body, media


def render_reply_text(reply: Reply) -> str:
    if not reply.choices:
        return reply.text
    labels = " / ".join(c.label for c in reply.choices)
    return f"{reply.text}\n({labels})"


def build_twiml(text: str) -> str:
    body = _html_escape(text or "", quote=False)
    return f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{body}</Message></Response>'


def empty_twiml() -> str:
    return '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
