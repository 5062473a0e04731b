"""Tests for the background statement job tracker.

Pure unit tests: the orchestrator factory and BackgroundTasks are mocks.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import RepositoryUnavailableError
from app.core.permissions import Actor
from app.services.statements import jobs
from app.services.statements.orchestrator import (
    AuthorOutcome,
    AuthorResult,
    AuthorStage,
    BatchReport,
    BatchRequest,
)

ACTOR = Actor(user_id="u-1", role="admin")


@pytest.fixture(autouse=True)
def _clear_jobs():
    """Reset the in-memory job tracker between tests."""
    jobs._jobs.clear()
    jobs._tokens.clear()
    yield
    jobs._jobs.clear()
    jobs._tokens.clear()


def _request() -> BatchRequest:
    return BatchRequest(uuid.uuid4(), date(2025, 1, 1), date(2025, 3, 31))


def _report(request, cancelled=False) -> BatchReport:
    author_id = uuid.uuid4()
    return BatchReport(
        tenant_id=request.tenant_id,
        period_start=request.period_start,
        period_end=request.period_end,
        results=[
            AuthorResult(
                author_id=author_id,
                success=True,
                outcome=AuthorOutcome.SUCCESS,
                stage=AuthorStage.DELIVERY_SKIPPED,
                statement_id=uuid.uuid4(),
            )
        ],
        generated_at=datetime(2025, 4, 1),
        cancelled=cancelled,
    )


# ── Test: submit_statement_job ──────────────────────────────────────


class TestSubmitJob:
    def test_submit_registers_pending_job(self):
        bg = MagicMock()
        request = _request()

        job_id = jobs.submit_statement_job(MagicMock(), request, ACTOR, bg)

        job = jobs.get_job_status(job_id)
        assert len(job_id) == 36
        assert job["status"] == "pending"
        assert job["tenant_id"] == str(request.tenant_id)
        assert job["period_start"] == "2025-01-01"
        assert job["requested_by"] == "u-1"
        bg.add_task.assert_called_once()

    def test_list_jobs_in_submission_order(self):
        ids = [jobs.submit_statement_job(MagicMock(), _request(), ACTOR, MagicMock()) for _ in range(3)]
        assert [j["job_id"] for j in jobs.list_jobs()] == ids

    def test_unknown_job_returns_none(self):
        assert jobs.get_job_status("nope") is None
        assert jobs.cancel_job("nope") is None


# ── Test: _run_job ──────────────────────────────────────────────────


class TestRunJob:
    def test_completed_job_records_counts(self):
        request = _request()
        orchestrator = MagicMock()
        orchestrator.run.return_value = _report(request)
        job_id = jobs.submit_statement_job(lambda: orchestrator, request, ACTOR, MagicMock())

        jobs._run_job(job_id, lambda: orchestrator, request, ACTOR)

        job = jobs.get_job_status(job_id)
        assert job["status"] == "completed"
        assert job["total"] == 1
        assert job["succeeded"] == 1
        assert job["results"][0]["outcome"] == "success"
        _, kwargs = orchestrator.run.call_args
        assert kwargs["cancel_token"] is jobs._tokens[job_id]

    def test_failed_job_records_error(self):
        request = _request()
        orchestrator = MagicMock()
        orchestrator.run.side_effect = RepositoryUnavailableError("Data store unavailable")
        job_id = jobs.submit_statement_job(lambda: orchestrator, request, ACTOR, MagicMock())

        jobs._run_job(job_id, lambda: orchestrator, request, ACTOR)

        job = jobs.get_job_status(job_id)
        assert job["status"] == "failed"
        assert job["error"] == "Data store unavailable"

    def test_cancel_before_start_skips_run(self):
        request = _request()
        orchestrator = MagicMock()
        job_id = jobs.submit_statement_job(lambda: orchestrator, request, ACTOR, MagicMock())

        assert jobs.cancel_job(job_id)["status"] == "cancelled"
        jobs._run_job(job_id, lambda: orchestrator, request, ACTOR)

        orchestrator.run.assert_not_called()
        assert jobs.get_job_status(job_id)["status"] == "cancelled"

    def test_cancelled_report_marks_job_cancelled(self):
        request = _request()
        orchestrator = MagicMock()
        orchestrator.run.return_value = _report(request, cancelled=True)
        job_id = jobs.submit_statement_job(lambda: orchestrator, request, ACTOR, MagicMock())

        jobs._run_job(job_id, lambda: orchestrator, request, ACTOR)

        assert jobs.get_job_status(job_id)["status"] == "cancelled"
