import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from common.config import settings
from common.parsers import CONDITION_TAXONOMY, normalize_body

logger = logging.getLogger(__name__)

RESOLVE_FIELDS = {"identity", "condition", "description"}

_RESOLVE_PROMPTS = {
    "identity": (
        "Operation: resolve_identity.\n"
        "You resolve a product name for a listing. Input has user_input (what the user said), "
        "proposed (what we inferred from the photo, may be null) and conversation (recent turns).\n"
        "Output a single short canonical product name that matches the user input and fits the conversation, "
        "using common product naming (for example \"Nike Air Force 1\").\n"
        "If the product cannot be determined, return the user input cleaned up.\n"
        "Return JSON: {\"value\": \"product name\"}."
    ),
    "condition": (
        "Operation: resolve_condition.\n"
        "Map the user's description of item condition onto exactly one of: "
        + " / ".join(CONDITION_TAXONOMY)
        + ".\nReturn JSON: {\"value\": \"<one of the options>\"}, or {\"value\": null} when unclear."
    ),
    "description": (
        "Operation: resolve_description.\n"
        "Rewrite the user's listing description as one or two plain sentences. Do not invent details.\n"
        "Return JSON: {\"value\": \"description\"}."
    ),
}


class LLMAdapter:
    def _model_for(self, operation: str) -> str:
        if operation == "resolve":
            return settings.LLM_MODEL_RESOLVE
        if operation == "suggest_condition":
            return settings.LLM_MODEL_EXTRACT
        raise ValueError(f"Unsupported operation: {operation}")

    def _base_url(self) -> str:
        base = settings.LLM_API_BASE_URL.strip()
        if not base:
            raise RuntimeError("LLM_API_BASE_URL is not configured")
        return base.rstrip("/")

    @staticmethod
    def _api_key() -> str:
        if not settings.LLM_API_KEY:
            raise RuntimeError("LLM_API_KEY is not configured")
        return settings.LLM_API_KEY

    async def _post_with_retry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        retries = max(0, settings.LLM_MAX_RETRIES)
        api_key = self._api_key()
        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
                    response = await client.post(
                        f"{self._base_url()}/chat/completions",
                        headers={
                            "Authorization": f"Bearer {api_key}",
                            "Content-Type": "application/json",
                        },
                        json=payload,
                    )
                    response.raise_for_status()
                    body = response.json()
                    if not isinstance(body, dict):
                        raise ValueError("Provider response is not a JSON object")
                    return body
            except (httpx.RequestError, httpx.HTTPStatusError, httpx.TimeoutException, ValueError) as exc:
                last_error = exc
                if attempt >= retries:
                    break
                delay = max(0.0, settings.LLM_RETRY_BACKOFF_SECONDS) * (2 ** attempt)
                if delay > 0:
                    await asyncio.sleep(delay)
        assert last_error is not None
        raise last_error

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> Any:
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Provider response missing choices")
        first = choices[0]
        if not isinstance(first, dict):
            raise ValueError("Provider choice is invalid")
        message = first.get("message")
        if not isinstance(message, dict):
            raise ValueError("Provider message is invalid")
        content = message.get("content")
        if isinstance(content, list):
            parts = []
            for part in content:
                if isinstance(part, dict):
                    text_value = part.get("text")
                    if isinstance(text_value, str):
                        parts.append(text_value)
            content = "\n".join(parts).strip()
        return content

    @staticmethod
    def _parse_content_object(content: Any) -> Dict[str, Any]:
        if isinstance(content, dict):
            return content
        if not isinstance(content, str):
            raise ValueError("Provider content is not JSON")
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("Parsed provider content is not an object")
        return parsed

    def _build_payload(self, operation: str, prompt: str, user_text: str) -> Dict[str, Any]:
        return {
            "model": self._model_for(operation),
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": "Return only valid JSON. Do not include markdown fences.",
                },
                {"role": "system", "content": prompt},
                {"role": "user", "content": user_text},
            ],
        }

    async def _invoke_operation(self, operation: str, prompt: str, user_text: str) -> Dict[str, Any]:
        response = await self._post_with_retry(self._build_payload(operation, prompt, user_text))
        return self._parse_content_object(self._extract_content(response))

    async def resolve_freeform(
        self,
        text: str,
        proposed: Optional[str],
        context: str,
        field: str = "identity",
    ) -> Optional[str]:
        """Turn a free-form reply into a value for ``field``.

        Falls back to the trimmed input when the provider is unavailable, so a
        plain answer like "vintage jacket" still works offline. Returns None
        only for empty input.
        """
        if field not in RESOLVE_FIELDS:
            raise ValueError(f"Unsupported resolve field: {field}")
        trimmed = normalize_body(text)
        if not trimmed:
            return None
        try:
            payload = {"user_input": trimmed, "proposed": proposed, "conversation": context}
            raw = await self._invoke_operation("resolve", _RESOLVE_PROMPTS[field], json.dumps(payload, ensure_ascii=True))
            value = raw.get("value")
            if value is None and field == "condition":
                return trimmed
            if not isinstance(value, str) or not value.strip():
                raise ValueError("Resolve payload missing value")
            return value.strip()
        except Exception as exc:
            logger.warning("resolve_freeform fallback: %s", type(exc).__name__)
            return trimmed

    async def suggest_condition(self, title: str, comparables: Sequence[Dict[str, Any]]) -> Optional[str]:
        if not comparables:
            return None
        prompt = (
            "Operation: suggest_condition.\n"
            "Given an item title and comparable marketplace listings with their conditions, "
            "pick the most likely condition for a typical second-hand listing of this item.\n"
            "Return JSON: {\"condition\": \"<one of: " + " / ".join(CONDITION_TAXONOMY) + ">\"}."
        )
        try:
            listings: List[Dict[str, Any]] = [
                {"title": c.get("title"), "condition": c.get("condition")}
                for c in comparables[:20]
                if isinstance(c, dict)
            ]
            raw = await self._invoke_operation(
                "suggest_condition",
                prompt,
                json.dumps({"title": title, "comparables": listings}, ensure_ascii=True),
            )
            condition = raw.get("condition")
            if condition not in CONDITION_TAXONOMY:
                raise ValueError("Suggested condition outside taxonomy")
            return condition
        except Exception as exc:
            logger.warning("suggest_condition fallback: %s", type(exc).__name__)
            return None


adapter = LLMAdapter()
