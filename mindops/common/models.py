"""
SQLAlchemy ORM models for MindOps.

Vectors and chunk metadata are stored as JSON so the same schema runs on
SQLite and Postgres; similarity is computed in-process with numpy.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MindOp(Base):
    """A user's knowledge workspace."""
    __tablename__ = "mindops"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    mindop_name = Column(String(255), nullable=False)
    mindop_description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class DocumentChunk(Base):
    __tablename__ = "mindop_document_chunks"
    __table_args__ = (
        Index("ix_chunks_mindop_source", "mindop_id", "source_csv_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    mindop_id = Column(String(36), ForeignKey("mindops.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)
    # "metadata" is reserved on declarative classes
    chunk_metadata = Column("metadata", JSON, nullable=True)
    source_csv_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    mindop_id = Column(String(36), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_role = Column(String(16), nullable=False)  # user | agent
    content = Column(Text, nullable=False)
    mindop_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class FollowRequest(Base):
    """Directed follow: requester -> target workspace owner."""
    __tablename__ = "follow_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    requester_user_id = Column(String(64), nullable=False, index=True)
    target_mindop_id = Column(String(36), ForeignKey("mindops.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), default="pending", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class CollaborationTask(Base):
    __tablename__ = "mindop_collaboration_tasks"

    id = Column(String(36), primary_key=True, default=_uuid)
    requester_mindop_id = Column(String(36), nullable=False, index=True)
    target_mindop_id = Column(String(36), nullable=False, index=True)
    requester_user_id = Column(String(64), nullable=False, index=True)
    query = Column(Text, nullable=False)
    status = Column(String(16), default="pending", nullable=False, index=True)
    priority = Column(String(8), default="normal", nullable=False)
    response = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
