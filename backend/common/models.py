from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Float, ForeignKey,
    Index, UniqueConstraint, CheckConstraint, Enum, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# --- Enums ---

class DraftStatus(PyEnum):
    active = "active"
    complete = "complete"
    abandoned = "abandoned"

class Stage(PyEnum):
    awaiting_photos = "awaiting_photos"
    researching_identity = "researching_identity"
    confirm_identity = "confirm_identity"
    confirm_variants = "confirm_variants"
    confirm_condition = "confirm_condition"
    pricing = "pricing"
    final_confirm = "final_confirm"
    complete = "complete"

class FactStatus(PyEnum):
    proposed = "proposed"
    confirmed = "confirmed"
    rejected = "rejected"

class PhotoKind(PyEnum):
    user = "user"
    reference = "reference"

# --- Models ---

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    channel_identity = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    drafts = relationship("Draft", back_populates="user")

class Draft(Base):
    __tablename__ = "drafts"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(Enum(DraftStatus, name="draft_status"), nullable=False, default=DraftStatus.active)
    stage = Column(Enum(Stage, name="draft_stage"), nullable=False, default=Stage.awaiting_photos)
    pending = Column(JSONType, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="drafts")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        # At most one active draft per user.
        Index(
            "uq_drafts_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_drafts_user_updated", "user_id", updated_at.desc()),
    )

class Fact(Base):
    __tablename__ = "facts"

    id = Column(String, primary_key=True)
    draft_id = Column(String, ForeignKey("drafts.id"), nullable=False)
    key = Column(String, nullable=False)
    value = Column(JSONType, nullable=True)
    confidence = Column(Float, CheckConstraint("confidence >= 0 AND confidence <= 1"), nullable=False, default=1.0)
    source = Column(String, nullable=False)
    status = Column(Enum(FactStatus, name="fact_status"), nullable=False, default=FactStatus.proposed)
    evidence = Column(JSONType, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("draft_id", "key", name="uq_facts_draft_key"),
    )

class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    draft_id = Column(String, ForeignKey("drafts.id"), nullable=False)
    direction = Column(String, CheckConstraint("direction IN ('in', 'out')"), nullable=False)
    body = Column(Text, nullable=False, default="")
    media_refs = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_messages_draft_created", "draft_id", created_at.desc()),
    )

class Photo(Base):
    __tablename__ = "photos"

    id = Column(String, primary_key=True)
    draft_id = Column(String, ForeignKey("drafts.id"), nullable=False)
    kind = Column(Enum(PhotoKind, name="photo_kind"), nullable=False, default=PhotoKind.user)
    storage_ref = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_photos_draft_kind", "draft_id", "kind"),
    )

class EventLog(Base):
    __tablename__ = "event_log"

    id = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(String, nullable=True)
    payload_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_event_log_request", "request_id"),
        Index("idx_event_log_user_created", "user_id", created_at.desc()),
    )
