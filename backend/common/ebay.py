import asyncio
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

import httpx

from common.config import settings
from common.parsers import parse_condition

logger = logging.getLogger(__name__)

EBAY_SCOPE = "https://api.ebay.com/oauth/api_scope"


class ComparablesAdapter:
    def _base_url(self) -> str:
        return settings.EBAY_API_BASE.strip().rstrip("/")

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        if not settings.EBAY_CLIENT_ID or not settings.EBAY_CLIENT_SECRET:
            raise RuntimeError("EBAY_CLIENT_ID/EBAY_CLIENT_SECRET not configured")
        resp = await client.post(
            f"{self._base_url()}/identity/v1/oauth2/token",
            auth=(settings.EBAY_CLIENT_ID, settings.EBAY_CLIENT_SECRET),
            data={"grant_type": "client_credentials", "scope": EBAY_SCOPE},
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
        if not isinstance(token, str) or not token:
            raise ValueError("eBay token response missing access_token")
        return token

    async def _search(self, query: str) -> List[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=settings.COMPARABLES_TIMEOUT_SECONDS) as client:
            token = await self._get_token(client)
            resp = await client.get(
                f"{self._base_url()}/buy/browse/v1/item_summary/search",
                headers={
                    "Authorization": f"Bearer {token}",
                    "X-EBAY-C-MARKETPLACE-ID": settings.EBAY_MARKETPLACE_ID,
                },
                params={"q": query[:100], "limit": str(settings.COMPARABLES_LIMIT)},
            )
            resp.raise_for_status()
            payload = resp.json()
        items = payload.get("itemSummaries") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return []
        out: List[Dict[str, Any]] = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("title"), str):
                continue
            out.append(
                {
                    "title": item["title"],
                    "condition": item.get("condition") if isinstance(item.get("condition"), str) else None,
                    "price": (item.get("price") or {}).get("value") if isinstance(item.get("price"), dict) else None,
                }
            )
        return out

    async def search_comparables(self, query: str) -> List[Dict[str, Any]]:
        """Comparable marketplace listings for ``query``; empty on any failure."""
        query = (query or "").strip()
        if not query:
            return []
        if not settings.EBAY_CLIENT_ID or not settings.EBAY_CLIENT_SECRET:
            logger.info("Comparables search skipped: eBay credentials not configured")
            return []
        try:
            return await asyncio.wait_for(self._search(query), timeout=settings.COMPARABLES_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("search_comparables timed out after %ss", settings.COMPARABLES_TIMEOUT_SECONDS)
            return []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("search_comparables fallback: %s", type(exc).__name__)
            return []


def majority_condition(comparables: Iterable[Dict[str, Any]]) -> Optional[str]:
    counts: Counter = Counter()
    for item in comparables:
        parsed = parse_condition(item.get("condition") if isinstance(item, dict) else None)
        if parsed:
            counts[parsed] += 1
    if not counts:
        return None
    return counts.most_common(1)[0][0]


comparables_adapter = ComparablesAdapter()
