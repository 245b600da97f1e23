# omintel/jobs.py
"""
Extraction job sweeper: pick up to ``batch_size`` pending jobs (priority
first, then oldest), run them with at most ``concurrency`` in flight, and
move each one pending -> processing -> completed | failed. Failed jobs stay
failed; nothing is retried automatically.
"""
import asyncio
import logging
from typing import Any, Dict, List

from omintel.documents import ExtractionService
from omintel.errors import NotFoundError, OMIntelError
from omintel.models import ExtractionJob
from omintel.repository import RowStore

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
CONCURRENCY = 3


async def process_job(store: RowStore, extraction: ExtractionService, job: ExtractionJob) -> Dict[str, Any]:
    try:
        await store.mark_job_processing(job.id)
        if not job.document_id or await store.get_document(job.document_id) is None:
            raise NotFoundError("Document not found")
        await extraction.run(job.document_id)
        await store.mark_job_completed(job.id)
        return {"jobId": job.id, "success": True}
    except Exception as e:
        message = e.message if isinstance(e, OMIntelError) else str(e)
        logger.error("Job %s failed: %s", job.id, message)
        try:
            await store.mark_job_failed(job.id, message)
        except Exception:
            logger.exception("Failed to mark job %s as failed", job.id)
        return {"jobId": job.id, "success": False, "error": message}


async def process_pending_jobs(store: RowStore, extraction: ExtractionService,
                               batch_size: int = BATCH_SIZE, concurrency: int = CONCURRENCY) -> Dict[str, Any]:
    jobs = await store.pending_jobs(batch_size)
    logger.info("Processing %d extraction jobs...", len(jobs))

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _bounded(job: ExtractionJob) -> Dict[str, Any]:
        async with semaphore:
            return await process_job(store, extraction, job)

    results: List[Dict[str, Any]] = list(await asyncio.gather(*(_bounded(job) for job in jobs)))
    return {"processed": len(results), "results": results}
