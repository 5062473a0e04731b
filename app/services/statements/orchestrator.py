"""Batch statement generation.

Runs the per-author pipeline::

    pending -> calculated -> persisted -> artifact_generated
            -> delivered | delivery_failed | delivery_skipped

for every requested author on a thread pool.  Each author gets its own
session, and every author-level fault is captured into that author's
``AuthorResult``; nothing one author does can stop or roll back another.
The only exception that escapes a running batch is
``RepositoryUnavailableError``: with the store unreachable no result is
trustworthy, so the remaining work is cancelled and the error re-raised.

Calculation, persistence and rendering of a contract run under that
contract's lock from ``ContractLockArena``, and the insert itself is a
compare-and-swap on ``advance_recouped``, so two runs can never recoup the
same advance twice.  A draft whose document was never stored is picked up
again by the next run without being recalculated.

The calculate and artifact stages run on a stage thread bounded by
``stage_timeout``; delivery gets the same budget as its retry deadline.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ArtifactError,
    CalculationError,
    DeliveryError,
    DeliveryValidationError,
    DuplicateStatementError,
    RepositoryUnavailableError,
    RoyaltyError,
    ScheduleError,
    StageTimeoutError,
    ValidationError,
)
from app.core.logging import get_logger
from app.core.permissions import Actor, PermissionGate, require_permission
from app.models.statement import Statement
from app.repositories.royalty_repository import RoyaltyRepository
from app.services.royalties.calculator import RoyaltyCalculator
from app.services.royalties.types import Period
from app.services.statements.artifacts import ArtifactStore, statement_artifact_key
from app.services.statements.delivery import StatementDeliveryService
from app.services.statements.mailer import EmailTransport
from app.services.statements.pdf import render_statement_pdf

logger = get_logger(__name__)

GENERATE_ACTION = "statements:generate"


class AuthorStage(str, Enum):
    PENDING = "pending"
    CALCULATED = "calculated"
    PERSISTED = "persisted"
    ARTIFACT_GENERATED = "artifact_generated"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    DELIVERY_SKIPPED = "delivery_skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AuthorOutcome(str, Enum):
    SUCCESS = "success"
    SCHEDULE_FAULT = "schedule_fault"
    CALCULATION_FAULT = "calculation_fault"
    DUPLICATE = "duplicate"
    DELIVERY_FAULT = "delivery_fault"
    STAGE_FAILURE = "stage_failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


_FAULT_OUTCOMES: list[tuple[type[RoyaltyError], AuthorOutcome]] = [
    (ScheduleError, AuthorOutcome.SCHEDULE_FAULT),
    (DuplicateStatementError, AuthorOutcome.DUPLICATE),
    (CalculationError, AuthorOutcome.CALCULATION_FAULT),
    (StageTimeoutError, AuthorOutcome.TIMEOUT),
]


@dataclass
class BatchRequest:
    tenant_id: uuid.UUID
    period_start: date
    period_end: date
    author_ids: list[uuid.UUID] = field(default_factory=list)
    send_email: bool = False


@dataclass
class AuthorResult:
    author_id: uuid.UUID
    success: bool = False
    outcome: AuthorOutcome = AuthorOutcome.CANCELLED
    stage: AuthorStage = AuthorStage.PENDING
    statement_id: Optional[uuid.UUID] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_code: Optional[str] = None
    failed_stage: Optional[AuthorStage] = None
    delivered: bool = False


@dataclass
class BatchReport:
    tenant_id: uuid.UUID
    period_start: date
    period_end: date
    results: list[AuthorResult]
    generated_at: datetime
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.delivered)


class CancellationToken:
    """Cooperative cancel flag checked by workers at stage boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ContractLockArena:
    """Hands out one lock per contract id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Any, threading.Lock] = {}

    @contextmanager
    def hold(self, contract_id: Any) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(contract_id, threading.Lock())
        with lock:
            yield


class _Cancelled(Exception):
    pass


# Shared by every orchestrator in the process so concurrent batches
# serialize on the same contract.
_default_locks = ContractLockArena()


class StatementBatchOrchestrator:
    """Generates statements for many authors and reports per-author outcomes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        artifact_store: ArtifactStore,
        transport: EmailTransport,
        permission_gate: PermissionGate,
        max_workers: Optional[int] = None,
        stage_timeout: Optional[float] = None,
        locks: Optional[ContractLockArena] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.artifact_store = artifact_store
        self.transport = transport
        self.permission_gate = permission_gate
        self.max_workers = settings.batch_max_workers if max_workers is None else max_workers
        self.stage_timeout = (
            settings.author_stage_timeout_seconds if stage_timeout is None else stage_timeout
        )
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.stage_timeout <= 0:
            raise ValueError(f"stage_timeout must be positive, got {self.stage_timeout}")
        self.locks = _default_locks if locks is None else locks
        self.sleep = sleep
        self.clock = clock

    # ── Public entry point ───────────────────────────────────────────

    def run(
        self,
        request: Any,
        actor: Actor,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchReport:
        """Run the batch and return one result per author, sorted by author id.

        Raises:
            UnauthorizedError: the permission gate denied the run.
            ValidationError: bad period, duplicate author ids or unknown tenant.
            RepositoryUnavailableError: the store became unreachable.
        """
        require_permission(self.permission_gate, request.tenant_id, actor, GENERATE_ACTION)
        period = self._validate(request)
        token = cancel_token or CancellationToken()

        author_ids = self._resolve_authors(request)
        logger.info(
            "Batch start: tenant=%s period=%s..%s authors=%d send_email=%s by=%s",
            request.tenant_id,
            period.start,
            period.end,
            len(author_ids),
            request.send_email,
            actor.user_id,
        )

        results: list[AuthorResult] = []
        if author_ids:
            executor = ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(author_ids)),
                thread_name_prefix="statement-batch",
            )
            try:
                futures = {
                    executor.submit(
                        self._process_author,
                        request.tenant_id,
                        author_id,
                        period,
                        request.send_email,
                        actor,
                        token,
                    ): author_id
                    for author_id in author_ids
                }
                for future in as_completed(futures):
                    results.append(future.result())
            except RepositoryUnavailableError:
                logger.error("Batch aborted: data store unavailable; cancelling remaining authors")
                token.cancel()
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            finally:
                executor.shutdown(wait=True)

        results.sort(key=lambda r: str(r.author_id))
        report = BatchReport(
            tenant_id=request.tenant_id,
            period_start=period.start,
            period_end=period.end,
            results=results,
            generated_at=datetime.utcnow(),
            cancelled=token.cancelled,
        )
        logger.info(
            "Batch done: tenant=%s total=%d succeeded=%d failed=%d delivered=%d cancelled=%s",
            report.tenant_id,
            report.total,
            report.succeeded,
            report.failed,
            report.delivered,
            report.cancelled,
        )
        return report

    # ── Setup ────────────────────────────────────────────────────────

    def _validate(self, request: Any) -> Period:
        period = Period(request.period_start, request.period_end)
        ids = list(request.author_ids or [])
        duplicates = sorted({str(a) for a in ids if ids.count(a) > 1})
        if duplicates:
            raise ValidationError(
                f"Duplicate author ids in request: {', '.join(duplicates)}",
                author_ids=duplicates,
            )
        return period

    def _resolve_authors(self, request: Any) -> list[uuid.UUID]:
        db = self.session_factory()
        try:
            repository = RoyaltyRepository(db)
            if repository.get_tenant(request.tenant_id) is None:
                raise ValidationError(
                    f"Tenant {request.tenant_id} not found", tenant_id=str(request.tenant_id)
                )
            if request.author_ids:
                return list(request.author_ids)
            return repository.list_eligible_author_ids(request.tenant_id)
        finally:
            db.close()

    # ── Per-author pipeline ──────────────────────────────────────────

    def _process_author(
        self,
        tenant_id: uuid.UUID,
        author_id: uuid.UUID,
        period: Period,
        send_email: bool,
        actor: Actor,
        token: CancellationToken,
    ) -> AuthorResult:
        result = AuthorResult(author_id=author_id)
        if token.cancelled:
            result.stage = AuthorStage.CANCELLED
            return result

        db = self.session_factory()
        try:
            repository = RoyaltyRepository(db)
            self._generate(repository, tenant_id, author_id, period, actor, token, result)
            # The statement is complete; a cancel now only skips the email.
            self._deliver(repository, tenant_id, send_email and not token.cancelled, result)
        except _Cancelled:
            result.outcome = AuthorOutcome.CANCELLED
            result.failed_stage = result.stage
            result.stage = AuthorStage.CANCELLED
            logger.info("Author %s cancelled at stage %s", author_id, result.failed_stage.value)
        except RepositoryUnavailableError:
            raise
        except RoyaltyError as e:
            outcome = next(
                (o for cls, o in _FAULT_OUTCOMES if isinstance(e, cls)),
                AuthorOutcome.STAGE_FAILURE,
            )
            self._fail(result, outcome, e)
            if isinstance(e, DuplicateStatementError) and e.statement_id:
                result.statement_id = e.statement_id
            logger.warning("Author %s failed (%s): %s", author_id, outcome.value, e.message)
        except Exception as e:
            self._fail(result, AuthorOutcome.STAGE_FAILURE, e)
            logger.exception("Author %s failed unexpectedly at stage %s", author_id, result.failed_stage)
        finally:
            db.close()
        return result

    def _generate(
        self,
        repository: RoyaltyRepository,
        tenant_id: uuid.UUID,
        author_id: uuid.UUID,
        period: Period,
        actor: Actor,
        token: CancellationToken,
        result: AuthorResult,
    ) -> None:
        """Calculate, persist and render one author's statement.

        A draft left behind by an earlier run (its document never stored)
        is resumed at the artifact stage from its stored calculation; only
        a finalized statement is a duplicate.
        """
        contract = RoyaltyCalculator.from_repository(repository).resolve_contract(
            tenant_id, author_id
        )

        with self.locks.hold(contract.id):
            statement = repository.find_statement(tenant_id, contract.id, period.start, period.end)
            if statement is not None and statement.status == "finalized":
                raise DuplicateStatementError(
                    f"Statement {statement.id} already exists for author {author_id} "
                    f"and period {period.start}..{period.end}",
                    statement_id=statement.id,
                )

            if statement is None:
                calculation = self._run_stage(
                    "calculate", self._calculate, tenant_id, contract.id, period
                )
                result.stage = AuthorStage.CALCULATED
                self._checkpoint(token)

                statement = Statement(
                    id=uuid.uuid4(),
                    tenant_id=tenant_id,
                    author_id=author_id,
                    contract_id=contract.id,
                    period_start=period.start,
                    period_end=period.end,
                    total_royalty_earned=calculation.gross_royalty,
                    recoupment=calculation.advance_recoupment.this_periods_recoupment,
                    net_payable=calculation.net_payable,
                    calculations=calculation.to_dict(),
                    status="draft",
                    generated_by=actor.user_id,
                )
                repository.insert_statement(
                    statement,
                    expected_recouped=calculation.advance_recoupment.previously_recouped,
                    new_recouped=calculation.recouped_after,
                )
            else:
                logger.info(
                    "Resuming draft statement %s for author %s at the artifact stage",
                    statement.id,
                    author_id,
                )
            result.stage = AuthorStage.PERSISTED
            result.statement_id = statement.id
            self._checkpoint(token)

            tenant = repository.get_tenant(tenant_id)
            author = repository.get_author(tenant_id, author_id)
            title = repository.get_title(tenant_id, contract.title_id)
            key = self._run_stage(
                "artifact",
                self._render_and_store,
                statement_artifact_key(tenant_id, statement.id),
                dict(
                    publisher=tenant.name,
                    currency=tenant.currency or settings.default_currency,
                    author_name=author.name,
                    author_address=author.mailing_address,
                    title=title.title if title else "",
                    period_start=period.start,
                    period_end=period.end,
                    calculations=statement.calculations,
                    statement_date=date.today(),
                ),
            )
            repository.attach_artifact(tenant_id, statement.id, key)

        result.stage = AuthorStage.ARTIFACT_GENERATED
        result.success = True
        result.outcome = AuthorOutcome.SUCCESS

    def _calculate(self, tenant_id: uuid.UUID, contract_id: uuid.UUID, period: Period):
        # Runs on a stage thread, so it reads through a session of its own.
        db = self.session_factory()
        try:
            repository = RoyaltyRepository(db)
            contract = repository.get_contract(tenant_id, contract_id)
            return RoyaltyCalculator.from_repository(repository).calculate(
                tenant_id, contract, period
            )
        finally:
            db.close()

    def _render_and_store(self, key: str, document: dict[str, Any]) -> str:
        return self.artifact_store.put(key, render_statement_pdf(**document))

    def _deliver(
        self,
        repository: RoyaltyRepository,
        tenant_id: uuid.UUID,
        send_email: bool,
        result: AuthorResult,
    ) -> None:
        if not send_email:
            result.stage = AuthorStage.DELIVERY_SKIPPED
            return

        service = StatementDeliveryService(
            repository,
            self.artifact_store,
            self.transport,
            sleep=self.sleep,
            clock=self.clock,
        )
        try:
            service.deliver(
                tenant_id,
                result.statement_id,
                deadline=self.clock() + self.stage_timeout,
            )
        except (DeliveryError, DeliveryValidationError, ArtifactError) as e:
            result.stage = AuthorStage.DELIVERY_FAILED
            result.outcome = AuthorOutcome.DELIVERY_FAULT
            result.error = e.message
            result.error_type = type(e).__name__
            result.error_code = e.code
            logger.warning("Delivery for statement %s failed: %s", result.statement_id, e.message)
            return

        result.stage = AuthorStage.DELIVERED
        result.delivered = True

    # ── Helpers ──────────────────────────────────────────────────────

    def _run_stage(self, name: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run *fn* on its own thread and wait at most ``stage_timeout``.

        A stage that overruns is abandoned: the worker moves on and the
        stage thread is left to finish in the background.  Whatever it
        does after the deadline is never attached to the statement.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"statement-{name}")
        started = self.clock()
        try:
            future = executor.submit(fn, *args)
            try:
                return future.result(timeout=self.stage_timeout)
            except FuturesTimeoutError:
                logger.warning(
                    "Stage %s exceeded %.2fs; abandoning it", name, self.stage_timeout
                )
                raise StageTimeoutError(name, self.clock() - started, self.stage_timeout)
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _checkpoint(token: CancellationToken) -> None:
        if token.cancelled:
            raise _Cancelled()

    @staticmethod
    def _fail(result: AuthorResult, outcome: AuthorOutcome, error: Exception) -> None:
        result.success = False
        result.outcome = outcome
        result.failed_stage = result.stage
        result.stage = AuthorStage.FAILED
        result.error = getattr(error, "message", None) or str(error)
        result.error_type = type(error).__name__
        result.error_code = getattr(error, "code", None)
