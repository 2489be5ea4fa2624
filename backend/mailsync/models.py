"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

Base = declarative_base()

DEFAULT_CHECKPOINT_NAME = "gmail"


class JobApplication(Base):
    """Job applications are created by the intake flow; the sync engine only updates them."""
    __tablename__ = "job_applications"

    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String, nullable=False, index=True)
    job_title = Column(String, nullable=True)
    status = Column(String, nullable=False, default="Applied", index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    # Idempotency guard: the last mailbox message applied to this row
    last_synced_message_id = Column(String, nullable=True)


class SyncCheckpoint(Base):
    """Durable mailbox cursor. One row per named stream."""
    __tablename__ = "sync_checkpoint"

    name = Column(String(64), primary_key=True, default=DEFAULT_CHECKPOINT_NAME)
    last_processed_timestamp = Column(DateTime, nullable=False)
    last_message_id = Column(String, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncedMessage(Base):
    """Audit log: one row per handled message and outcome."""
    __tablename__ = "synced_messages"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String, nullable=False, index=True)
    outcome = Column(String(32), nullable=False, index=True)  # updated, noop, no_signal, no_match, ambiguous, ...
    application_id = Column(Integer, nullable=True)
    application_ids = Column(JSON, nullable=True)  # candidate ids for ambiguous outcomes
    proposed_status = Column(String, nullable=True)
    detail = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow)


class SyncRun(Base):
    """Most recent run summary (single row, overwritten each run)."""
    __tablename__ = "sync_run"

    id = Column(Integer, primary_key=True, default=1)
    trigger = Column(String(32), nullable=True)
    status = Column(String(32), default="idle")  # completed, rate_limited, failed
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    summary = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


Index("ix_synced_messages_outcome_processed_at", SyncedMessage.outcome, SyncedMessage.processed_at)
