"""Listing intake dialogue.

One call of ``handle_inbound`` is one unit of work: load the sender's active
draft, work out which prompt it is waiting on, apply the reply and persist
the result. Nothing is kept in process memory between calls.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from common import store
from common.adapter import adapter
from common.catalog import catalog_client
from common.config import settings
from common.ebay import comparables_adapter, majority_condition
from common.errors import PersistenceError
from common.models import Draft, DraftStatus, FactStatus, PhotoKind, Stage
from common.parsers import (
    BROWSE_NEXT, BROWSE_NONE, BROWSE_THIS_IS_MINE, PRICE_TYPE_BEST_PRICE, PRICE_TYPE_QUICK_SALE,
    is_show_similar, is_trigger, normalize_body, parse_browse_command, parse_choice, parse_condition,
    parse_description, parse_floor_price, parse_price_type, parse_yes_no,
)
from common.steps import (
    FACT_BROWSE_INDEX, FACT_CANDIDATES, FACT_CONDITION, FACT_DESCRIPTION, FACT_FLOOR_PRICE, FACT_IDENTITY,
    FACT_PRICE_TYPE, FACT_VARIANT_OPTIONS, VARIANT_KEYS,
    AskLabelPhotoPrompt, BrowseAlternativesPrompt, ChooseConditionPrompt, ChooseVariantPrompt,
    ConfirmIdentityPrompt, FinalConfirmPrompt, PricingPrompt, Reply,
    derive_step, dump_pending, is_confirmed, load_pending, render_prompt, settle, stage_rank, variant_domains,
)

logger = logging.getLogger(__name__)

OPENING_PROMPT = "Send at least one photo of the item to get started."
NEED_PHOTO_PROMPT = "Please send at least one photo of the item."
COMPLETION_REPLY = "You're all set. We'll be in touch."
NOT_YET_REPLY = "No problem — say when you're ready to list."

MIN_IDENTITY_LENGTH = 2
SUGGESTED_CONDITION_CONFIDENCE = 0.5


@dataclass
class _Turn:
    db: AsyncSession
    draft: Draft
    user_id: str
    request_id: str
    text: str
    new_photos: List[str]


async def handle_inbound(
    db: AsyncSession,
    sender_id: str,
    text: Optional[str],
    media_refs: Optional[List[str]] = None,
    request_id: Optional[str] = None,
) -> Reply:
    """Process one inbound message and return the reply to send back.

    Raises PersistenceError when a write fails; the draft then stays at the
    stage it had before the message.
    """
    request_id = request_id or str(uuid.uuid4())
    body = normalize_body(text)
    refs = [r for r in (media_refs or []) if isinstance(r, str) and r.strip()]
    try:
        user = await store.get_or_create_user(db, sender_id)

        if is_trigger(body):
            draft = await store.start_new_draft(db, user.id, request_id)
            store.add_message(db, draft.id, "in", body, refs)
            reply = Reply(text=OPENING_PROMPT)
            store.add_message(db, draft.id, "out", reply.text)
            await store.commit(db)
            logger.info("Started draft=%s for sender=%s", draft.id, sender_id)
            return reply

        draft = await store.get_active_draft(db, user.id)
        if draft is None:
            draft = store.create_draft(db, user.id, request_id)
        new_photos = store.add_photos(db, draft.id, refs)
        store.add_message(db, draft.id, "in", body, refs)

        step = load_pending(draft.pending)
        if step is None:
            step = derive_step(draft.stage, await store.load_facts(db, draft.id))
        draft.pending = None
        draft.updated_at = store.utc_now()
        await store.commit(db)

        turn = _Turn(db=db, draft=draft, user_id=user.id, request_id=request_id, text=body, new_photos=new_photos)
        reply = await _dispatch(turn, step)

        store.add_message(db, draft.id, "out", reply.text)
        draft.updated_at = store.utc_now()
        await store.commit(db)
        return reply
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Dialogue write failed for sender=%s: %s", sender_id, type(exc).__name__)
        raise PersistenceError("Draft store write failed") from exc


async def _dispatch(turn: _Turn, step: Optional[BaseModel]) -> Reply:
    if step is None:
        return await _handle_photos(turn)
    if isinstance(step, ConfirmIdentityPrompt):
        return await _handle_confirm_identity(turn, step)
    if isinstance(step, BrowseAlternativesPrompt):
        return await _handle_browse(turn, step)
    if isinstance(step, AskLabelPhotoPrompt):
        return await _handle_label_photo(turn, step)
    if isinstance(step, ChooseVariantPrompt):
        return await _handle_variant(turn, step)
    if isinstance(step, ChooseConditionPrompt):
        return await _handle_condition(turn, step)
    if isinstance(step, PricingPrompt):
        return await _handle_pricing(turn, step)
    if isinstance(step, FinalConfirmPrompt):
        return await _handle_final_confirm(turn, step)
    raise ValueError(f"Unsupported prompt: {type(step).__name__}")


# --- Transitions ---

async def _advance(turn: _Turn, retry: bool = False) -> Reply:
    """Settle the stage forward from the current facts and cache the next prompt."""
    facts = await store.load_facts(turn.db, turn.draft.id)
    stage, step = settle(turn.draft.stage, facts)
    if stage_rank(stage) > stage_rank(turn.draft.stage):
        turn.draft.stage = stage
    turn.draft.pending = dump_pending(step)
    if step is None:
        return Reply(text=NEED_PHOTO_PROMPT)
    return render_prompt(step, retry=retry)


def _reask(turn: _Turn, step: BaseModel, retry: bool = False) -> Reply:
    logger.debug("Re-asking %s for draft=%s", getattr(step, "kind", "?"), turn.draft.id)
    turn.draft.pending = dump_pending(step)
    return render_prompt(step, retry=retry)


async def _resolve(turn: _Turn, field: str, proposed: Optional[str], text: Optional[str] = None) -> Optional[str]:
    messages = await store.recent_messages(turn.db, turn.draft.id, settings.RESOLVER_CONTEXT_MESSAGES)
    return await adapter.resolve_freeform(
        text if text is not None else turn.text,
        proposed,
        store.format_conversation(messages),
        field=field,
    )


# --- Identification ---

async def _handle_photos(turn: _Turn) -> Reply:
    draft = turn.draft
    refs = list(turn.new_photos)
    if not refs and draft.stage == Stage.researching_identity:
        refs = [p.storage_ref for p in await store.list_photos(turn.db, draft.id, PhotoKind.user)]
    if not refs:
        return Reply(text=NEED_PHOTO_PROMPT)

    draft.stage = Stage.researching_identity
    await store.commit(turn.db)

    await _identify(turn, refs[0])
    draft.stage = Stage.confirm_identity
    return await _advance(turn)


async def _identify(turn: _Turn, photo_ref: str) -> None:
    db, draft = turn.db, turn.draft
    started = time.monotonic()
    result = await catalog_client.identify(photo_ref, turn.text or None)
    store.log_event(
        db,
        turn.request_id,
        turn.user_id,
        "identification_run",
        "draft",
        draft.id,
        {
            "status": "success" if result is not None else "failed",
            "duration_ms": int((time.monotonic() - started) * 1000),
            "photo_ref": photo_ref,
            "title": result.primary_title if result else None,
            "confidence": result.confidence if result else None,
        },
    )
    if result is None:
        return
    await store.upsert_fact(
        db, draft.id, FACT_IDENTITY, result.primary_title, result.confidence, "catalog",
        evidence=[c.title for c in result.candidates[:5]],
    )
    await store.upsert_fact(
        db, draft.id, FACT_CANDIDATES, [c.model_dump() for c in result.alternatives], result.confidence, "catalog",
    )
    await store.upsert_fact(db, draft.id, FACT_VARIANT_OPTIONS, result.variant_options, result.confidence, "catalog")


async def _confirm_identity(turn: _Turn, title: str, images: Optional[List[str]] = None) -> None:
    db, draft = turn.db, turn.draft
    facts = await store.load_facts(db, draft.id)
    identity = facts.get(FACT_IDENTITY)
    primary = str(identity.value) if identity is not None and identity.value else None

    await store.confirm_fact(db, draft.id, FACT_IDENTITY, title)
    domains = variant_domains(facts)
    if primary and primary.casefold() == title.casefold():
        for key in VARIANT_KEYS:
            values = domains.get(key) or []
            if len(values) == 1 and not is_confirmed(facts, key):
                await store.confirm_fact(db, draft.id, key, values[0], source="catalog")
    elif FACT_VARIANT_OPTIONS in facts:
        await store.reject_fact(db, draft.id, FACT_VARIANT_OPTIONS)

    if images:
        store.add_photos(db, draft.id, images, PhotoKind.reference)
    store.log_event(db, turn.request_id, turn.user_id, "identity_confirmed", "draft", draft.id, {"title": title})
    await _propose_condition(turn, title)


async def _propose_condition(turn: _Turn, title: str) -> None:
    """Ground the condition default in comparable listings; never confirms."""
    db, draft = turn.db, turn.draft
    existing = await store.get_fact(db, draft.id, FACT_CONDITION)
    if existing is not None and existing.status == FactStatus.confirmed:
        return
    started = time.monotonic()
    comparables = await comparables_adapter.search_comparables(title)
    store.log_event(
        db, turn.request_id, turn.user_id, "comparables_run", "draft", draft.id,
        {
            "status": "success" if comparables else "empty",
            "duration_ms": int((time.monotonic() - started) * 1000),
            "query": title,
            "count": len(comparables),
        },
    )
    if not comparables:
        return
    source = "llm"
    suggestion = await adapter.suggest_condition(title, comparables)
    if suggestion is None:
        source = "comparables"
        suggestion = majority_condition(comparables)
    if suggestion is None:
        return
    await store.upsert_fact(
        db, draft.id, FACT_CONDITION, suggestion, SUGGESTED_CONDITION_CONFIDENCE, source,
        evidence=[c.get("title") for c in comparables[:5]],
    )


async def _handle_confirm_identity(turn: _Turn, step: ConfirmIdentityPrompt) -> Reply:
    answer = parse_yes_no(turn.text)
    if answer is True:
        await _confirm_identity(turn, step.suggested)
        return await _advance(turn)
    if answer is False or is_show_similar(turn.text):
        await store.reject_fact(turn.db, turn.draft.id, FACT_IDENTITY)
        await store.upsert_fact(turn.db, turn.draft.id, FACT_BROWSE_INDEX, 0, 1.0, "system")
        return await _advance(turn, retry=True)
    if not turn.text:
        return _reask(turn, step)
    resolved = await _resolve(turn, "identity", step.suggested)
    if resolved and len(resolved) >= MIN_IDENTITY_LENGTH:
        await _confirm_identity(turn, resolved)
        return await _advance(turn)
    return _reask(turn, step, retry=True)


async def _handle_browse(turn: _Turn, step: BrowseAlternativesPrompt) -> Reply:
    command = parse_browse_command(turn.text)
    if command == BROWSE_THIS_IS_MINE:
        candidate = step.candidates[step.index]
        await _confirm_identity(turn, candidate.title, images=candidate.images)
        return await _advance(turn)
    if command == BROWSE_NEXT:
        await store.upsert_fact(turn.db, turn.draft.id, FACT_BROWSE_INDEX, step.index + 1, 1.0, "system")
        return await _advance(turn, retry=True)
    if command == BROWSE_NONE:
        await store.reject_fact(turn.db, turn.draft.id, FACT_BROWSE_INDEX)
        return await _advance(turn, retry=True)
    return _reask(turn, step)


def _is_control_reply(text: str) -> bool:
    """Button words and bare refusals; never a product name."""
    return (
        parse_yes_no(text) is not None
        or parse_browse_command(text) is not None
        or is_show_similar(text)
    )


async def _handle_label_photo(turn: _Turn, step: AskLabelPhotoPrompt) -> Reply:
    if turn.new_photos:
        await _identify(turn, turn.new_photos[0])
        return await _advance(turn)
    if not turn.text or _is_control_reply(turn.text):
        return _reask(turn, step, retry=True)
    identity = await store.get_fact(turn.db, turn.draft.id, FACT_IDENTITY)
    proposed = str(identity.value) if identity is not None and identity.value else None
    resolved = await _resolve(turn, "identity", proposed)
    if resolved and len(resolved) >= MIN_IDENTITY_LENGTH:
        await _confirm_identity(turn, resolved)
        return await _advance(turn)
    return _reask(turn, step, retry=True)


# --- Variants, condition, pricing ---

async def _handle_variant(turn: _Turn, step: ChooseVariantPrompt) -> Reply:
    choice = parse_choice(turn.text, step.choices)
    if choice is None:
        return _reask(turn, step)
    await store.confirm_fact(turn.db, turn.draft.id, step.key, choice)
    return await _advance(turn)


async def _handle_condition(turn: _Turn, step: ChooseConditionPrompt) -> Reply:
    answer = parse_yes_no(turn.text)
    if answer is True:
        condition = step.suggested
    else:
        condition = parse_choice(turn.text, step.choices) or parse_condition(turn.text)
        if condition is None and turn.text and answer is None:
            resolved = await _resolve(turn, "condition", step.suggested)
            condition = parse_choice(resolved, step.choices) or parse_condition(resolved)
    if condition is None:
        return _reask(turn, step, retry=True)
    await store.confirm_fact(turn.db, turn.draft.id, FACT_CONDITION, condition)
    return await _advance(turn)


async def _handle_pricing(turn: _Turn, step: PricingPrompt) -> Reply:
    if step.step == "price_type":
        price_type = parse_price_type(turn.text) or parse_choice(
            turn.text, [PRICE_TYPE_QUICK_SALE, PRICE_TYPE_BEST_PRICE]
        )
        if price_type is None:
            return _reask(turn, step)
        await store.confirm_fact(turn.db, turn.draft.id, FACT_PRICE_TYPE, price_type)
        return await _advance(turn)
    floor = parse_floor_price(turn.text)
    if floor is None:
        return _reask(turn, step)
    await store.confirm_fact(turn.db, turn.draft.id, FACT_FLOOR_PRICE, floor)
    return await _advance(turn)


async def _handle_final_confirm(turn: _Turn, step: FinalConfirmPrompt) -> Reply:
    draft = turn.draft
    description = parse_description(turn.text)
    if description:
        existing = await store.get_fact(turn.db, draft.id, FACT_DESCRIPTION)
        proposed = existing.value if existing is not None and isinstance(existing.value, str) else None
        resolved = await _resolve(turn, "description", proposed, text=description) or description
        await store.confirm_fact(turn.db, draft.id, FACT_DESCRIPTION, resolved)
        return await _advance(turn)

    answer = parse_yes_no(turn.text)
    if answer is True:
        draft.status = DraftStatus.complete
        draft.stage = Stage.complete
        draft.pending = None
        store.log_event(turn.db, turn.request_id, turn.user_id, "draft_completed", "draft", draft.id)
        return Reply(text=COMPLETION_REPLY)
    if answer is False:
        draft.pending = dump_pending(step)
        return Reply(text=NOT_YET_REPLY)
    return _reask(turn, step)
