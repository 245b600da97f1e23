# omintel/tasks.py
import asyncio
import logging

from omintel.celery_app import celery_app
from omintel.config import settings
from omintel.errors import OMIntelError
from omintel.jobs import process_pending_jobs
from omintel.services import bootstrap

logger = logging.getLogger(__name__)


async def _extract_document(document_id: str) -> dict:
    async with bootstrap(settings) as services:
        return await services.extraction.run(document_id)


async def _sweep_jobs() -> dict:
    async with bootstrap(settings) as services:
        return await process_pending_jobs(
            services.store,
            services.extraction,
            batch_size=settings.job_batch_size,
            concurrency=settings.job_concurrency,
        )


@celery_app.task(bind=True, name="omintel.tasks.extract_document_task")
def extract_document_task(self, document_id: str):
    # one event loop per task run; the async engine and clients live inside it
    try:
        result = asyncio.run(_extract_document(document_id))
        return {"status": "completed", "document_id": document_id, "textLength": result["textLength"]}
    except OMIntelError as e:
        # already recorded on the document row; no automatic retry
        logger.error("extraction failed for %s: %s", document_id, e.message)
        return {"status": "failed", "document_id": document_id, "error": e.message}
    except Exception:
        logger.exception("extraction task crashed for %s", document_id)
        raise


@celery_app.task(bind=True, name="omintel.tasks.sweep_extraction_jobs_task")
def sweep_extraction_jobs_task(self):
    return asyncio.run(_sweep_jobs())
