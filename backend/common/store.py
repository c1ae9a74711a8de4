import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from common.errors import PersistenceError
from common.models import Draft, DraftStatus, EventLog, Fact, FactStatus, Message, Photo, PhotoKind, Stage, User
from common.steps import FactRecord

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


async def commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Draft store commit failed: %s", type(exc).__name__)
        raise PersistenceError("Draft store write failed") from exc


def log_event(
    db: AsyncSession,
    request_id: str,
    user_id: str,
    event_type: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    db.add(
        EventLog(
            id=str(uuid.uuid4()),
            request_id=request_id,
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload_json=payload or {},
            created_at=utc_now(),
        )
    )


# --- Users & drafts ---

async def get_or_create_user(db: AsyncSession, channel_identity: str) -> User:
    stmt = select(User).where(User.channel_identity == channel_identity)
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is not None:
        return user
    user = User(id=_new_id("usr"), channel_identity=channel_identity, created_at=utc_now())
    db.add(user)
    return user


async def get_active_draft(db: AsyncSession, user_id: str) -> Optional[Draft]:
    stmt = (
        select(Draft)
        .where(Draft.user_id == user_id, Draft.status == DraftStatus.active)
        .order_by(Draft.updated_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


def create_draft(db: AsyncSession, user_id: str, request_id: str) -> Draft:
    now = utc_now()
    draft = Draft(
        id=_new_id("drf"),
        user_id=user_id,
        status=DraftStatus.active,
        stage=Stage.awaiting_photos,
        pending=None,
        created_at=now,
        updated_at=now,
    )
    db.add(draft)
    log_event(db, request_id, user_id, "draft_created", "draft", draft.id)
    return draft


async def start_new_draft(db: AsyncSession, user_id: str, request_id: str) -> Draft:
    """Abandon the active draft and open a fresh one; both land in the same commit."""
    abandon_stmt = (
        update(Draft)
        .where(Draft.user_id == user_id, Draft.status == DraftStatus.active)
        .values(status=DraftStatus.abandoned, updated_at=utc_now(), version=Draft.version + 1)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(abandon_stmt)
    if result.rowcount:
        log_event(db, request_id, user_id, "draft_abandoned", payload={"count": result.rowcount})
    return create_draft(db, user_id, request_id)


async def get_draft(db: AsyncSession, draft_id: str) -> Optional[Draft]:
    return (await db.execute(select(Draft).where(Draft.id == draft_id))).scalar_one_or_none()


# --- Facts ---

async def get_fact(db: AsyncSession, draft_id: str, key: str) -> Optional[Fact]:
    stmt = select(Fact).where(Fact.draft_id == draft_id, Fact.key == key)
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_facts(db: AsyncSession, draft_id: str) -> List[Fact]:
    stmt = select(Fact).where(Fact.draft_id == draft_id).order_by(Fact.key)
    return list((await db.execute(stmt)).scalars().all())


async def load_facts(db: AsyncSession, draft_id: str) -> Dict[str, FactRecord]:
    return {
        row.key: FactRecord(
            key=row.key,
            value=row.value,
            confidence=row.confidence,
            source=row.source,
            status=row.status,
            evidence=list(row.evidence or []),
        )
        for row in await list_facts(db, draft_id)
    }


async def upsert_fact(
    db: AsyncSession,
    draft_id: str,
    key: str,
    value: Any,
    confidence: float,
    source: str,
    status: FactStatus = FactStatus.proposed,
    evidence: Optional[Iterable[Any]] = None,
) -> Fact:
    row = await get_fact(db, draft_id, key)
    if row is None:
        row = Fact(id=_new_id("fct"), draft_id=draft_id, key=key)
        db.add(row)
    row.value = value
    row.confidence = max(0.0, min(1.0, float(confidence)))
    row.source = source
    row.status = status
    row.evidence = list(evidence or [])
    row.updated_at = utc_now()
    return row


async def confirm_fact(db: AsyncSession, draft_id: str, key: str, value: Any, source: str = "user") -> Fact:
    row = await get_fact(db, draft_id, key)
    if row is None:
        return await upsert_fact(db, draft_id, key, value, 1.0, source, FactStatus.confirmed)
    row.value = value
    row.status = FactStatus.confirmed
    row.updated_at = utc_now()
    return row


async def reject_fact(db: AsyncSession, draft_id: str, key: str) -> Optional[Fact]:
    row = await get_fact(db, draft_id, key)
    if row is None:
        return None
    row.status = FactStatus.rejected
    row.updated_at = utc_now()
    return row


# --- Messages & photos ---

def add_message(
    db: AsyncSession, draft_id: str, direction: str, body: str, media_refs: Optional[List[str]] = None
) -> None:
    db.add(
        Message(
            id=_new_id("msg"),
            draft_id=draft_id,
            direction=direction,
            body=body or "",
            media_refs=list(media_refs or []),
            created_at=utc_now(),
        )
    )


async def recent_messages(db: AsyncSession, draft_id: str, limit: int) -> List[Message]:
    stmt = (
        select(Message)
        .where(Message.draft_id == draft_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    rows = list((await db.execute(stmt)).scalars().all())
    rows.reverse()
    return rows


def format_conversation(messages: Iterable[Message]) -> str:
    return "\n".join(f"{m.direction}: {m.body}" for m in messages if m.body)


def add_photos(db: AsyncSession, draft_id: str, refs: Iterable[str], kind: PhotoKind = PhotoKind.user) -> List[str]:
    stored: List[str] = []
    for ref in refs:
        cleaned = (ref or "").strip() if isinstance(ref, str) else ""
        if not cleaned:
            continue
        db.add(Photo(id=_new_id("pho"), draft_id=draft_id, kind=kind, storage_ref=cleaned, created_at=utc_now()))
        stored.append(cleaned)
    return stored


async def list_photos(db: AsyncSession, draft_id: str, kind: Optional[PhotoKind] = None) -> List[Photo]:
    stmt = select(Photo).where(Photo.draft_id == draft_id)
    if kind is not None:
        stmt = stmt.where(Photo.kind == kind)
    stmt = stmt.order_by(Photo.created_at.asc())
    return list((await db.execute(stmt)).scalars().all())
