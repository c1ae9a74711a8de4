"""Image-search identification against a Channel3-style product catalog."""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from common.config import settings
from common.steps import Candidate

logger = logging.getLogger(__name__)

COLOR_WORDS = (
    "black", "white", "red", "blue", "green", "yellow", "orange",
    "grey", "gray", "brown", "pink", "purple", "navy", "olive",
)
DEPARTMENT_BY_GENDER = {"male": "Men", "female": "Women", "unisex": "Unisex"}
DEFAULT_SCORELESS_CONFIDENCE = 0.7


class IdentificationResult(BaseModel):
    primary_title: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    variant_options: Dict[str, List[str]] = Field(default_factory=dict)
    candidates: List[Candidate] = Field(default_factory=list)

    @property
    def alternatives(self) -> List[Candidate]:
        """Image-bearing candidates other than the primary, in provider order."""
        primary = self.primary_title.casefold()
        return [c for c in self.candidates if c.images and c.title.casefold() != primary]


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def dedupe_candidates(products: List[Dict[str, Any]]) -> List[Candidate]:
    seen = set()
    out: List[Candidate] = []
    for product in products:
        title = product.get("title")
        if not isinstance(title, str) or not title.strip():
            continue
        folded = title.strip().casefold()
        if folded in seen:
            continue
        seen.add(folded)
        out.append(Candidate(title=title.strip(), images=_strings(product.get("image_urls"))))
    return out


def _infer_colors(primary: Dict[str, Any]) -> List[str]:
    texts: List[str] = []
    if isinstance(primary.get("title"), str):
        texts.append(primary["title"])
    texts.extend(_strings(primary.get("categories")))
    texts.extend(_strings(primary.get("key_features")))
    for variant in primary.get("variants") or []:
        if isinstance(variant, dict) and isinstance(variant.get("title"), str):
            texts.append(variant["title"])
    colors: List[str] = []
    for text in texts:
        lowered = text.lower()
        for word in COLOR_WORDS:
            name = word.capitalize()
            if word in lowered and name not in colors:
                colors.append(name)
    return colors


def _infer_sizes(primary: Dict[str, Any]) -> List[str]:
    sizes = _strings(primary.get("sizes"))
    for variant in primary.get("variants") or []:
        if isinstance(variant, dict):
            size = variant.get("size")
            if isinstance(size, (str, int, float)) and str(size).strip() and str(size).strip() not in sizes:
                sizes.append(str(size).strip())
    return sizes


def normalize_search_response(raw: Any, limit: int) -> Optional[IdentificationResult]:
    if not isinstance(raw, list) or not raw:
        return None
    products = [p for p in raw[: max(1, limit)] if isinstance(p, dict)]
    if not products:
        return None
    primary = products[0]
    title = primary.get("title")
    if not isinstance(title, str) or not title.strip():
        return None

    max_score = max((p["score"] for p in products if isinstance(p.get("score"), (int, float))), default=0) or 1
    score = primary.get("score")
    if isinstance(score, (int, float)):
        confidence = min(1.0, max(0.0, score / max_score))
    else:
        confidence = DEFAULT_SCORELESS_CONFIDENCE

    variant_options: Dict[str, List[str]] = {}
    sizes = _infer_sizes(primary)
    if sizes:
        variant_options["size"] = sizes
    colors = _infer_colors(primary)
    if colors:
        variant_options["color"] = colors
    department = DEPARTMENT_BY_GENDER.get(primary.get("gender"))
    if department:
        variant_options["department"] = [department]

    return IdentificationResult(
        primary_title=title.strip(),
        confidence=confidence,
        variant_options=variant_options,
        candidates=dedupe_candidates(products),
    )


class CatalogClient:
    def _base_url(self) -> str:
        return settings.CATALOG_API_BASE.strip().rstrip("/")

    def _get_headers(self) -> Dict[str, str]:
        if not settings.CATALOG_API_KEY:
            raise RuntimeError("CATALOG_API_KEY not configured")
        return {"x-api-key": settings.CATALOG_API_KEY, "Content-Type": "application/json"}

    async def _search(self, photo_ref: str, hint_text: Optional[str]) -> Any:
        payload: Dict[str, Any] = {"image_url": photo_ref, "limit": settings.CATALOG_RESULT_LIMIT}
        if hint_text:
            payload["query"] = hint_text
        async with httpx.AsyncClient(timeout=settings.IDENTIFY_TIMEOUT_SECONDS) as client:
            resp = await client.post(f"{self._base_url()}/v0/search", headers=self._get_headers(), json=payload)
            resp.raise_for_status()
            return resp.json()

    async def identify(self, photo_ref: str, hint_text: Optional[str] = None) -> Optional[IdentificationResult]:
        """Identify the item in a photo; None on timeout, provider error or no match."""
        if not settings.CATALOG_API_KEY:
            logger.info("Catalog lookup skipped: CATALOG_API_KEY not configured")
            return None
        try:
            raw = await asyncio.wait_for(
                self._search(photo_ref, (hint_text or "").strip() or None),
                timeout=settings.IDENTIFY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("identify timed out after %ss", settings.IDENTIFY_TIMEOUT_SECONDS)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("identify fallback: %s", type(exc).__name__)
            return None
        return normalize_search_response(raw, settings.CATALOG_RESULT_LIMIT)


catalog_client = CatalogClient()
