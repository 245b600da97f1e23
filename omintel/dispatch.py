# omintel/dispatch.py
"""
Background extraction submission.

submit() never blocks on the extraction: it returns a handle and the
outcome lands on the Document row (status ready | error). The HTTP
response and the background run fail independently.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class ExtractionHandle:
    document_id: str
    task_id: Optional[str] = None
    task: Optional[asyncio.Task] = None

    def done(self) -> bool:
        if self.task is not None:
            return self.task.done()
        return False


class CeleryExtractionDispatcher:
    def __init__(self, queue: str):
        self.queue = queue

    def submit(self, document_id: str) -> ExtractionHandle:
        # lazy: importing tasks pulls in the celery app
        from omintel.tasks import extract_document_task

        result = extract_document_task.apply_async(args=[document_id], queue=self.queue)
        logger.info("Queued extraction for document_id=%s (task=%s)", document_id, result.id)
        return ExtractionHandle(document_id=document_id, task_id=result.id)


class InProcessDispatcher:
    """Runs extraction as an asyncio task in this process (development, tests)."""

    def __init__(self, extraction_service):
        self.extraction = extraction_service
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, document_id: str) -> ExtractionHandle:
        task = asyncio.get_running_loop().create_task(self._run(document_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ExtractionHandle(document_id=document_id, task=task)

    async def _run(self, document_id: str) -> None:
        try:
            await self.extraction.run(document_id)
        except Exception as e:
            # already recorded on the document row
            logger.warning("Background extraction failed for document_id=%s: %s", document_id, e)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
