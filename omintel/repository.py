# omintel/repository.py
"""Row store: every persistence operation the services need, one short session each."""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select, func, update
from sqlalchemy.exc import SQLAlchemyError

from omintel.db import Database
from omintel.errors import PersistenceError, clip_message
from omintel.models import (
    Document,
    Thread,
    Message,
    ExtractionJob,
    UsageLog,
    UserProfile,
    STATUS_PROCESSING,
    STATUS_READY,
    STATUS_ERROR,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_COMPLETED,
    JOB_FAILED,
    PLAN_FREE,
    ROLE_ASSISTANT,
    ROLE_USER,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or _utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class RowStore:
    def __init__(self, db: Database, notifier=None):
        self.db = db
        self.notifier = notifier

    async def _notify(self, doc: Document, change: str = "UPDATE") -> None:
        if self.notifier is not None:
            await self.notifier.publish(doc.user_id, doc.to_dict(), change=change)

    # ---------- documents ----------

    async def get_document(self, document_id: str) -> Optional[Document]:
        async with self.db.session() as session:
            return await session.get(Document, document_id)

    async def create_document(self, user_id: str, name: str, size: int, content_type: str,
                              storage_key: str, storage_url: str,
                              status: str = STATUS_PROCESSING) -> Document:
        doc = Document(
            user_id=user_id,
            name=name,
            size=size,
            type=content_type,
            storage_key=storage_key,
            storage_url=storage_url,
            status=status,
        )
        try:
            async with self.db.session() as session:
                session.add(doc)
                await session.commit()
                await session.refresh(doc)
        except SQLAlchemyError as e:
            logger.exception("Failed to insert document row for %s", storage_key)
            raise PersistenceError("Failed to save document record") from e
        await self._notify(doc, change="INSERT")
        return doc

    async def _update_document(self, document_id: str, **values) -> Optional[Document]:
        async with self.db.session() as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                return None
            for key, value in values.items():
                setattr(doc, key, value)
            await session.commit()
            await session.refresh(doc)
        await self._notify(doc)
        return doc

    async def mark_document_processing(self, document_id: str) -> Optional[Document]:
        return await self._update_document(
            document_id, status=STATUS_PROCESSING, extracted_text=None, error_message=None
        )

    async def mark_document_ready(self, document_id: str, extracted_text: str) -> Optional[Document]:
        return await self._update_document(
            document_id, status=STATUS_READY, extracted_text=extracted_text, error_message=None
        )

    async def mark_document_error(self, document_id: str, message: str) -> Optional[Document]:
        """Best-effort: a failed status write is logged, never raised."""
        try:
            return await self._update_document(
                document_id, status=STATUS_ERROR, extracted_text=None, error_message=clip_message(message)
            )
        except Exception:
            logger.exception("Failed to mark document %s as error", document_id)
            return None

    async def delete_document(self, document_id: str) -> None:
        async with self.db.session() as session:
            doc = await session.get(Document, document_id)
            if doc is None:
                return
            await session.delete(doc)
            await session.commit()
        await self._notify(doc, change="DELETE")

    # ---------- threads & messages ----------

    async def create_thread(self, user_id: str, title: str, document_id: Optional[str] = None) -> Thread:
        thread = Thread(user_id=user_id, title=title, document_id=document_id)
        async with self.db.session() as session:
            session.add(thread)
            await session.commit()
            await session.refresh(thread)
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        async with self.db.session() as session:
            return await session.get(Thread, thread_id)

    async def add_turn_messages(self, thread_id: str, content: str) -> Tuple[Message, Message]:
        """User message and its empty assistant placeholder, committed together (user row first)."""
        now = _utcnow()
        user_message = Message(thread_id=thread_id, role=ROLE_USER, content=content, created_at=now)
        # placeholder sorts after its user message
        placeholder = Message(thread_id=thread_id, role=ROLE_ASSISTANT, content="",
                              created_at=now + timedelta(microseconds=1))
        async with self.db.session() as session:
            session.add(user_message)
            session.add(placeholder)
            await session.execute(
                update(Thread).where(Thread.id == thread_id).values(updated_at=func.now())
            )
            await session.commit()
            await session.refresh(user_message)
            await session.refresh(placeholder)
        return user_message, placeholder

    async def update_message_content(self, message_id: str, content: str) -> None:
        async with self.db.session() as session:
            await session.execute(
                update(Message).where(Message.id == message_id).values(content=content, updated_at=func.now())
            )
            await session.commit()

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with self.db.session() as session:
            return await session.get(Message, message_id)

    async def list_messages(self, thread_id: str) -> List[Message]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Message).where(Message.thread_id == thread_id).order_by(Message.created_at, Message.id)
            )
            return list(result.scalars())

    # ---------- usage & plans ----------

    async def get_plan(self, user_id: str) -> str:
        async with self.db.session() as session:
            profile = await session.get(UserProfile, user_id)
        if profile is None or not profile.subscription_plan:
            return PLAN_FREE
        return profile.subscription_plan

    async def count_usage_since(self, user_id: str, action: str, since: datetime) -> int:
        async with self.db.session() as session:
            result = await session.execute(
                select(func.count(UsageLog.id)).where(
                    UsageLog.user_id == user_id,
                    UsageLog.action == action,
                    UsageLog.created_at >= since,
                )
            )
            return int(result.scalar_one())

    async def log_usage(self, user_id: str, action: str, document_id: Optional[str] = None) -> None:
        async with self.db.session() as session:
            session.add(UsageLog(user_id=user_id, action=action, document_id=document_id))
            await session.commit()

    # ---------- extraction jobs ----------

    async def enqueue_job(self, document_id: str, priority: int = 0) -> ExtractionJob:
        job = ExtractionJob(document_id=document_id, priority=priority, status=JOB_PENDING)
        async with self.db.session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job

    async def pending_jobs(self, limit: int) -> List[ExtractionJob]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ExtractionJob)
                .where(ExtractionJob.status == JOB_PENDING)
                .order_by(ExtractionJob.priority.desc(), ExtractionJob.created_at.asc(), ExtractionJob.id.asc())
                .limit(limit)
            )
            return list(result.scalars())

    async def get_job(self, job_id: int) -> Optional[ExtractionJob]:
        async with self.db.session() as session:
            return await session.get(ExtractionJob, job_id)

    async def _update_job(self, job_id: int, **values) -> None:
        async with self.db.session() as session:
            await session.execute(update(ExtractionJob).where(ExtractionJob.id == job_id).values(**values))
            await session.commit()

    async def mark_job_processing(self, job_id: int) -> None:
        await self._update_job(job_id, status=JOB_PROCESSING, started_at=_utcnow())

    async def mark_job_completed(self, job_id: int) -> None:
        await self._update_job(job_id, status=JOB_COMPLETED, completed_at=_utcnow(), error=None)

    async def mark_job_failed(self, job_id: int, error: str) -> None:
        await self._update_job(job_id, status=JOB_FAILED, completed_at=_utcnow(), error=clip_message(error))
