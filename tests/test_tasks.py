from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from omintel import tasks
from omintel.celery_app import celery_app
from omintel.errors import ExtractionError


def _fake_bootstrap(extraction):
    @asynccontextmanager
    async def fake(settings):
        yield SimpleNamespace(extraction=extraction, store=AsyncMock())

    return fake


def test_tasks_are_routed_to_extraction_queue():
    routes = celery_app.conf.task_routes

    assert routes["omintel.tasks.extract_document_task"]["queue"] == "extraction_queue"
    assert celery_app.conf.beat_schedule["sweep-extraction-jobs"]["task"] == "omintel.tasks.sweep_extraction_jobs_task"


def test_extract_task_reports_completion(monkeypatch):
    extraction = AsyncMock()
    extraction.run.return_value = {"success": True, "textLength": 42}
    monkeypatch.setattr(tasks, "bootstrap", _fake_bootstrap(extraction))

    result = tasks.extract_document_task("doc-1")

    assert result == {"status": "completed", "document_id": "doc-1", "textLength": 42}
    extraction.run.assert_awaited_once_with("doc-1")


def test_extract_task_reports_recorded_failure(monkeypatch):
    extraction = AsyncMock()
    extraction.run.side_effect = ExtractionError("Failed to parse PDF content")
    monkeypatch.setattr(tasks, "bootstrap", _fake_bootstrap(extraction))

    result = tasks.extract_document_task("doc-1")

    assert result == {"status": "failed", "document_id": "doc-1", "error": "Failed to parse PDF content"}


def test_extract_task_reraises_unexpected_errors(monkeypatch):
    extraction = AsyncMock()
    extraction.run.side_effect = RuntimeError("boom")
    monkeypatch.setattr(tasks, "bootstrap", _fake_bootstrap(extraction))

    with pytest.raises(RuntimeError):
        tasks.extract_document_task("doc-1")


def test_sweep_task(monkeypatch):
    sweep = AsyncMock(return_value={"processed": 0, "results": []})
    monkeypatch.setattr(tasks, "bootstrap", _fake_bootstrap(AsyncMock()))
    monkeypatch.setattr(tasks, "process_pending_jobs", sweep)

    assert tasks.sweep_extraction_jobs_task() == {"processed": 0, "results": []}
    assert sweep.await_args.kwargs == {"batch_size": 5, "concurrency": 3}
