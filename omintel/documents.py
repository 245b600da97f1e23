# omintel/documents.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from omintel.errors import (
    OMIntelError,
    ExtractionError,
    NotFoundError,
    PersistenceError,
    QuotaError,
    UpstreamError,
    ValidationError,
)
from omintel.extraction import (
    MAX_CHARS,
    MAX_PAGES,
    PdfTextExtraction,
    assess_text_quality,
    chunk_text,
    extract_text,
)
from omintel.identity import Identity
from omintel.models import ACTION_UPLOAD, PLAN_FREE, Document
from omintel.repository import RowStore, start_of_month
from omintel.sse import END_EVENT_FRAME, format_event
from omintel.storage import BlobStore, make_blob_key

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
PREVIEW_CHARS = 200


async def _run_to_completion(coro):
    """
    Await ``coro`` even while the calling task is being cancelled. Repeated
    cancellation (anyio re-delivers it until the task exits) only interrupts
    the wait, never the write itself.
    """
    task = asyncio.ensure_future(coro)
    while True:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done():
                return task.result()


async def load_owned_document(store: RowStore, document_id: str,
                              identity: Optional[Identity] = None) -> Document:
    """Fetch a document; a document owned by someone else reads as missing."""
    if not document_id:
        raise ValidationError("Document ID is required")
    doc = await store.get_document(document_id)
    if doc is None or (identity is not None and doc.user_id != identity.id):
        raise NotFoundError("Document not found")
    return doc


class ExtractionService:
    def __init__(self, store: RowStore, blobs: BlobStore,
                 max_pages: int = MAX_PAGES, max_chars: int = MAX_CHARS):
        self.store = store
        self.blobs = blobs
        self.max_pages = max_pages
        self.max_chars = max_chars

    async def _download(self, doc: Document) -> bytes:
        try:
            return await self.blobs.download(doc.storage_key)
        except Exception as e:
            raise ExtractionError(f"Failed to download PDF from storage: {e}") from e

    async def _fail(self, document_id: str, error: Exception) -> ExtractionError:
        message = error.message if isinstance(error, OMIntelError) else str(error)
        await self.store.mark_document_error(document_id, message)
        if isinstance(error, ExtractionError):
            return error
        return ExtractionError(message)

    async def run(self, document_id: str, identity: Optional[Identity] = None) -> Dict[str, Any]:
        """
        Extract a stored document's text and persist it (status ready), or
        record the failure on the row (status error) and raise ExtractionError.
        """
        doc = await load_owned_document(self.store, document_id, identity)
        await self.store.mark_document_processing(doc.id)
        logger.info("Started extraction for document_id=%s", doc.id)
        try:
            data = await self._download(doc)
            result = await asyncio.to_thread(extract_text, data, self.max_pages, self.max_chars)
            saved = await self.store.mark_document_ready(doc.id, result.text)
            if saved is None:
                raise PersistenceError("Document was deleted during extraction")
        except Exception as e:
            logger.exception("Extraction failed for document_id=%s", doc.id)
            raise await self._fail(doc.id, e) from e

        quality, reason = assess_text_quality(result.text)
        if reason:
            logger.warning("Low text quality for document_id=%s (%d%%): %s", doc.id, quality, reason)
        chunks = chunk_text(result.text)
        logger.info("Completed extraction for document_id=%s (chars=%d, chunks=%d)",
                    doc.id, len(result.text), len(chunks))
        return {
            "success": True,
            "message": f"PDF text extracted from {result.pages_processed} of {result.total_pages} pages",
            "textLength": len(result.text),
            "chunks": len(chunks),
            "quality": quality,
            "pagesProcessed": result.pages_processed,
            "totalPages": result.total_pages,
            "stopReason": result.stop_reason,
            "truncated": result.truncated,
            "preview": result.text[:PREVIEW_CHARS],
        }

    async def stream(self, doc: Document) -> AsyncIterator[str]:
        """
        Page-by-page extraction as SSE frames. ``doc`` comes from
        load_owned_document so lookup errors surface before the stream opens.
        """
        try:
            await self.store.mark_document_processing(doc.id)
            data = await self._download(doc)
            extraction = PdfTextExtraction(data, max_pages=self.max_pages, max_chars=self.max_chars)
            events = iter(extraction)
            while True:
                # pypdf is blocking; run each page step off the event loop
                event = await asyncio.to_thread(next, events, None)
                if event is None:
                    break
                yield format_event(event)

            result = extraction.result
            saved = await self.store.mark_document_ready(doc.id, result.text)
            if saved is None:
                raise PersistenceError("Document was deleted during extraction")
            yield format_event({
                "type": "complete",
                "totalChars": len(result.text),
                "sectionsFound": result.sections_found,
                "pagesProcessed": result.pages_processed,
                "truncated": result.truncated,
            })
            yield END_EVENT_FRAME
        except (asyncio.CancelledError, GeneratorExit):
            logger.warning("Extraction stream for document_id=%s closed by client", doc.id)
            await _run_to_completion(
                self.store.mark_document_error(doc.id, "Extraction cancelled: client disconnected")
            )
            raise
        except Exception as e:
            logger.exception("Streaming extraction failed for document_id=%s", doc.id)
            error = await self._fail(doc.id, e)
            yield format_event({"type": "error", "error": error.message})


@dataclass
class UploadResult:
    document: Document
    handle: Optional[Any] = None
    message: str = "File uploaded successfully! Processing in background..."


class UploadService:
    def __init__(self, store: RowStore, blobs: BlobStore, dispatcher,
                 max_upload_size: int = 10 * 1024 * 1024, free_monthly_uploads: int = 5):
        self.store = store
        self.blobs = blobs
        self.dispatcher = dispatcher
        self.max_upload_size = max_upload_size
        self.free_monthly_uploads = free_monthly_uploads

    async def check_quota(self, identity: Identity) -> None:
        plan = await self.store.get_plan(identity.id)
        if plan != PLAN_FREE:
            return
        used = await self.store.count_usage_since(identity.id, ACTION_UPLOAD, start_of_month())
        if used >= self.free_monthly_uploads:
            logger.info("Upload quota reached for user %s (%d this month)", identity.id, used)
            raise QuotaError("Upload limit reached. Upgrade to Pro for unlimited uploads.")

    def validate(self, filename: Optional[str], content_type: Optional[str], data: Optional[bytes]) -> None:
        if not filename or data is None:
            raise ValidationError("No file provided")
        if content_type != PDF_CONTENT_TYPE:
            raise ValidationError("Only PDF files are allowed")
        if len(data) == 0:
            raise ValidationError("File is empty")
        if len(data) > self.max_upload_size:
            raise ValidationError(f"File size must be less than {self.max_upload_size // (1024 * 1024)}MB")
        if b"%PDF-" not in data[:1024]:
            raise ValidationError("File is not a valid PDF")

    async def upload(self, identity: Identity, filename: Optional[str], content_type: Optional[str],
                     data: Optional[bytes]) -> UploadResult:
        await self.check_quota(identity)
        self.validate(filename, content_type, data)

        key = make_blob_key(identity.id, "pdf")
        try:
            await self.blobs.upload(key, data, PDF_CONTENT_TYPE)
        except Exception as e:
            logger.exception("Failed to upload blob %s", key)
            raise UpstreamError("Failed to upload file") from e

        try:
            doc = await self.store.create_document(
                user_id=identity.id,
                name=filename,
                size=len(data),
                content_type=PDF_CONTENT_TYPE,
                storage_key=key,
                storage_url=self.blobs.public_url(key),
            )
        except Exception:
            # compensate: no row, no blob
            try:
                await self.blobs.delete(key)
            except Exception:
                logger.exception("Failed to remove orphaned blob %s", key)
            raise
        logger.info("Stored upload %s as document_id=%s (%d bytes)", key, doc.id, len(data))

        try:
            await self.store.log_usage(identity.id, ACTION_UPLOAD, doc.id)
        except Exception:
            logger.exception("Failed to log upload usage for document_id=%s", doc.id)

        try:
            handle = self.dispatcher.submit(doc.id)
        except Exception as e:
            logger.exception("Failed to queue extraction for document_id=%s", doc.id)
            await self.store.mark_document_error(doc.id, f"Failed to queue text extraction: {e}")
            refreshed = await self.store.get_document(doc.id)
            return UploadResult(document=refreshed or doc, message="File uploaded but text extraction could not be queued")
        return UploadResult(document=doc, handle=handle)

    async def delete(self, identity: Identity, document_id: str) -> None:
        doc = await load_owned_document(self.store, document_id, identity)
        await self.store.delete_document(doc.id)
        try:
            await self.blobs.delete(doc.storage_key)
        except Exception:
            logger.exception("Failed to delete blob %s for document_id=%s", doc.storage_key, doc.id)
        logger.info("Deleted document_id=%s", doc.id)
