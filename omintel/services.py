# omintel/services.py
"""
Process bootstrap: builds every client and service once, explicitly, and
tears them down in close(). The HTTP app keeps one Services on app.state;
each Celery task run builds and closes its own.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from omintel.db import Database
from omintel.dispatch import CeleryExtractionDispatcher, InProcessDispatcher
from omintel.documents import ExtractionService, UploadService
from omintel.identity import IdentityProvider
from omintel.llm import CompletionClient
from omintel.notifications import ChangeNotifier
from omintel.ratelimit import RateLimiter
from omintel.relay import ChatRelay
from omintel.repository import RowStore
from omintel.snapshot import SnapshotService
from omintel.storage import BlobStore, create_blob_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: object
    db: Database
    store: RowStore
    blobs: BlobStore
    identity: IdentityProvider
    llm: CompletionClient
    notifier: ChangeNotifier
    rate_limiter: RateLimiter
    extraction: ExtractionService
    uploads: UploadService
    relay: ChatRelay
    snapshots: SnapshotService
    dispatcher: object

    async def close(self) -> None:
        for name, closer in (
            ("llm", self.llm.close),
            ("identity", self.identity.close),
            ("blobs", self.blobs.close),
            ("redis", self.notifier.close),
            ("db", self.db.close),
        ):
            try:
                await closer()
            except Exception:
                logger.exception("Failed to close %s on shutdown", name)


def build_services(settings, db: Optional[Database] = None, blobs: Optional[BlobStore] = None,
                   llm: Optional[CompletionClient] = None, identity: Optional[IdentityProvider] = None,
                   redis_client=None, dispatcher=None) -> Services:
    db = db or Database(settings.database_url)
    redis_client = redis_client or aioredis.from_url(settings.redis_url, decode_responses=True)
    notifier = ChangeNotifier(redis_client)
    store = RowStore(db, notifier)
    blobs = blobs or create_blob_store(settings)
    llm = llm or CompletionClient.from_settings(settings)
    identity = identity or IdentityProvider(settings.identity_url, settings.identity_api_key)

    extraction = ExtractionService(
        store, blobs, max_pages=settings.extraction_max_pages, max_chars=settings.extraction_max_chars
    )
    if dispatcher is None:
        if settings.extraction_dispatch == "inline":
            dispatcher = InProcessDispatcher(extraction)
        else:
            dispatcher = CeleryExtractionDispatcher(settings.celery_queue)

    return Services(
        settings=settings,
        db=db,
        store=store,
        blobs=blobs,
        identity=identity,
        llm=llm,
        notifier=notifier,
        rate_limiter=RateLimiter(redis_client),
        extraction=extraction,
        uploads=UploadService(
            store, blobs, dispatcher,
            max_upload_size=settings.max_upload_size,
            free_monthly_uploads=settings.free_monthly_uploads,
        ),
        relay=ChatRelay(
            store, llm,
            context_chars=settings.chat_context_chars,
            allow_anonymous=settings.allow_anonymous_chat,
        ),
        snapshots=SnapshotService(
            store, llm,
            model=settings.snapshot_model,
            fallback_model=settings.snapshot_fallback_model,
            context_chars=settings.snapshot_context_chars,
        ),
        dispatcher=dispatcher,
    )


@asynccontextmanager
async def bootstrap(settings, **overrides) -> AsyncIterator[Services]:
    services = build_services(settings, **overrides)
    try:
        yield services
    finally:
        await services.close()
