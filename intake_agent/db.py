# intake_agent/db.py
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Text, Boolean, func
)
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_URL


def make_engine(url: str = DATABASE_URL, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, future=True, **kwargs)


# Engine & Session
engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntakeSession(Base):
    """Per-session intake progress that must survive between turns (contact-form step only)."""
    __tablename__ = "intake_sessions"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, unique=True, index=True, nullable=False)
    team_id = Column(String, nullable=True)

    contact_form_shown = Column(Boolean, default=False, nullable=False)
    contact_form_shown_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), default=func.now())


class MatterRecord(Base):
    """Matters created locally when no matter service is configured."""
    __tablename__ = "matters"

    id = Column(Integer, primary_key=True, index=True)
    matter_id = Column(String, unique=True, index=True, nullable=False)

    session_id = Column(String, index=True, nullable=True)
    team_id = Column(String, index=True, nullable=True)
    status = Column(String, default="lead", nullable=False)  # "lead" | "review_requested"

    # client
    client_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    location = Column(String, nullable=True)

    # matter
    matter_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    opposing_party = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), default=func.now())


def init_db(bind=None):
    """Create tables if they don't exist."""
    Base.metadata.create_all(bind=bind or engine)


# -------------------- Helpers --------------------

def upsert_matter(db, params: Dict[str, Any], *, session_id: Optional[str], team_id: Optional[str]) -> MatterRecord:
    """
    Persist create_matter parameters. One matter per session: a retried
    create_matter for the same session updates the existing row.
    """
    row = None
    if session_id:
        row = (
            db.query(MatterRecord)
            .filter(MatterRecord.session_id == session_id)
            .one_or_none()
        )
    if row is None:
        row = MatterRecord(matter_id=uuid.uuid4().hex, session_id=session_id)
        db.add(row)

    row.team_id = team_id or row.team_id
    row.client_name = params.get("name", row.client_name)
    row.email = params.get("email", row.email)
    row.phone = params.get("phone", row.phone)
    row.location = params.get("location", row.location)
    row.matter_type = params.get("matter_type", row.matter_type)
    row.description = params.get("description", row.description)
    row.opposing_party = params.get("opposing_party", row.opposing_party)
    row.updated_at = _utcnow()
    return row


def matter_to_dict(row: MatterRecord) -> Dict[str, Any]:
    return {
        "matter_id": row.matter_id,
        "status": row.status,
        "matter_type": row.matter_type,
        "team_id": row.team_id,
        "session_id": row.session_id,
    }


class SqlSessionStore:
    """Records the contact-form step per session; backs the create_matter gate."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def mark_contact_form_shown(self, session_id: str, team_id: Optional[str] = None) -> None:
        if not session_id:
            return
        with self.session_factory() as db:
            row = (
                db.query(IntakeSession)
                .filter(IntakeSession.session_id == session_id)
                .one_or_none()
            )
            if row is None:
                row = IntakeSession(session_id=session_id)
                db.add(row)
            row.team_id = team_id or row.team_id
            row.contact_form_shown = True
            row.contact_form_shown_at = row.contact_form_shown_at or _utcnow()
            row.updated_at = _utcnow()
            db.commit()

    def contact_form_shown(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        with self.session_factory() as db:
            row = (
                db.query(IntakeSession)
                .filter(IntakeSession.session_id == session_id)
                .one_or_none()
            )
            return bool(row and row.contact_form_shown)

    def count_sessions(self) -> int:
        with self.session_factory() as db:
            return db.query(IntakeSession).count()
