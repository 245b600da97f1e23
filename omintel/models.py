# omintel/models.py
from sqlalchemy import Column, Integer, String, Text, TIMESTAMP, ForeignKey, Index
from sqlalchemy.orm import declarative_base
import uuid
from sqlalchemy.sql import func

Base = declarative_base()

# document.status
STATUS_UPLOADING = "uploading"
STATUS_PROCESSING = "processing"
STATUS_READY = "ready"
STATUS_ERROR = "error"

# extraction_jobs.status
JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

ACTION_UPLOAD = "document_upload"
ACTION_SNAPSHOT = "document_snapshot"

PLAN_FREE = "free"


def _new_id() -> str:
    return str(uuid.uuid4())


class Document(Base):
    __tablename__ = "documents"
    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)   # owner
    name = Column(String, nullable=False)
    size = Column(Integer, nullable=False, default=0)           # bytes
    type = Column(String, nullable=False, default="application/pdf")
    storage_key = Column(String, nullable=False)                # "{owner}/{random}.pdf"
    storage_url = Column(String, nullable=False)
    status = Column(String, nullable=False, default=STATUS_UPLOADING)
    extracted_text = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    def to_dict(self, include_text: bool = False):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "size": self.size,
            "type": self.type,
            "storage_url": self.storage_url,
            "status": self.status,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_text:
            data["extracted_text"] = self.extracted_text
        return data


class Thread(Base):
    __tablename__ = "threads"
    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="SET NULL"), nullable=True)
    title = Column(String, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class Message(Base):
    __tablename__ = "messages"
    id = Column(String(36), primary_key=True, default=_new_id)
    thread_id = Column(String(36), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    status = Column(String, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class ExtractionJob(Base):
    __tablename__ = "extraction_jobs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=True)
    status = Column(String, nullable=False, default=JOB_PENDING)
    priority = Column(Integer, nullable=False, default=0)       # higher runs first
    error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    started_at = Column(TIMESTAMP(timezone=True), nullable=True)
    completed_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (Index("ix_extraction_jobs_pending", "status", "priority", "created_at"),)


class UsageLog(Base):
    __tablename__ = "usage_logs"
    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String, nullable=False)
    document_id = Column(String(36), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class UserProfile(Base):
    __tablename__ = "user_profiles"
    id = Column(String(64), primary_key=True)  # same as identity id
    email = Column(String, nullable=True)
    subscription_plan = Column(String, nullable=True, default=PLAN_FREE)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
