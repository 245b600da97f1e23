# omintel/celery_app.py
from celery import Celery
from omintel.config import settings

celery_app = Celery(
    "omintel",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["omintel.tasks"],   # <<-- ensure tasks module is imported on worker start
)

celery_app.conf.task_routes = {
    "omintel.tasks.extract_document_task": {"queue": settings.celery_queue},
    "omintel.tasks.sweep_extraction_jobs_task": {"queue": settings.celery_queue},
}

celery_app.conf.beat_schedule = {
    "sweep-extraction-jobs": {
        "task": "omintel.tasks.sweep_extraction_jobs_task",
        "schedule": 60.0,
    },
}

celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_soft_time_limit=60 * 10,
)
