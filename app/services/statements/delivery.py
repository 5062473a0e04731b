"""Statement email delivery with bounded retries.

A statement is deliverable once its PDF is stored and its author has an
email address.  Sending is retried with exponential backoff
(``base_delay * 2 ** (attempt - 1)``); once the attempt budget is spent the
failure is terminal for this delivery but the statement itself stays valid
and can be resent manually.  ``email_sent_at`` is written by a conditional
update, so it is recorded once no matter how many resends succeed.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.exceptions import DeliveryError, DeliveryValidationError
from app.core.logging import get_logger
from app.repositories.royalty_repository import RoyaltyRepository
from app.services.statements.artifacts import ArtifactStore
from app.services.statements.mailer import (
    EmailSendResult,
    EmailTransport,
    render_statement_email,
)

logger = get_logger(__name__)


@dataclass
class DeliveryOutcome:
    success: bool
    message_id: Optional[str]
    attempts: int
    recipient: str
    recorded: bool = False


class StatementDeliveryService:
    """Sends one statement's PDF to its author."""

    def __init__(
        self,
        repository: RoyaltyRepository,
        artifact_store: ArtifactStore,
        transport: EmailTransport,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.artifact_store = artifact_store
        self.transport = transport
        self.max_attempts = settings.delivery_max_attempts if max_attempts is None else max_attempts
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        self.base_delay = settings.delivery_base_delay_seconds if base_delay is None else base_delay
        self.sleep = sleep
        self.clock = clock

    def deliver(
        self,
        tenant_id: uuid.UUID,
        statement_id: uuid.UUID,
        manual: bool = False,
        deadline: Optional[float] = None,
    ) -> DeliveryOutcome:
        """Send the statement email.

        Args:
            manual: allow sending a statement that was already emailed.
            deadline: ``clock()`` value past which no backoff sleep may run.

        Raises:
            DeliveryValidationError: the statement is not deliverable; no
                send was attempted.
            DeliveryError: every attempt failed; the failure is recorded on
                the statement.
            ArtifactError: the stored PDF could not be fetched.
        """
        statement = self.repository.get_statement(tenant_id, statement_id)
        if statement is None:
            raise DeliveryValidationError(
                f"Statement {statement_id} not found in tenant {tenant_id}"
            )
        if not statement.artifact_key:
            raise DeliveryValidationError(
                f"Statement {statement_id} has no generated document yet"
            )
        if statement.email_sent_at is not None and not manual:
            raise DeliveryValidationError(
                f"Statement {statement_id} was already emailed at "
                f"{statement.email_sent_at.isoformat()}; use a manual resend"
            )

        author = self.repository.get_author(tenant_id, statement.author_id)
        if author is None:
            raise DeliveryValidationError(
                f"Author {statement.author_id} not found in tenant {tenant_id}"
            )
        if not author.email:
            raise DeliveryValidationError(f"Author {author.name} has no email address")

        tenant = self.repository.get_tenant(tenant_id)
        publisher = tenant.name if tenant else "Your publisher"
        currency = (tenant.currency if tenant else None) or settings.default_currency
        portal = ((tenant.portal_url if tenant else None) or settings.portal_url).rstrip("/")

        message = render_statement_email(
            sender=settings.email_from,
            recipient=author.email,
            author_name=author.name,
            publisher=publisher,
            currency=currency,
            period_start=statement.period_start,
            period_end=statement.period_end,
            gross_royalty=statement.total_royalty_earned,
            recoupment=statement.recoupment,
            net_payable=statement.net_payable,
            portal_link=f"{portal}/portal/statements/{statement.id}",
            pdf=self.artifact_store.get(statement.artifact_key),
        )

        try:
            result, attempts = self._send_with_retry(message, deadline)
        except DeliveryError as e:
            self.repository.record_delivery_failure(
                tenant_id, statement_id, e.message, datetime.utcnow()
            )
            raise

        recorded = self.repository.mark_email_sent(
            tenant_id, statement_id, datetime.utcnow()
        )
        logger.info(
            "Statement %s emailed to %s (message_id=%s, attempts=%d, recorded=%s)",
            statement_id,
            author.email,
            result.message_id,
            attempts,
            recorded,
        )
        return DeliveryOutcome(
            success=True,
            message_id=result.message_id,
            attempts=attempts,
            recipient=author.email,
            recorded=recorded,
        )

    def resend(self, tenant_id: uuid.UUID, statement_id: uuid.UUID) -> DeliveryOutcome:
        """Manual resend; allowed even if the statement was emailed before."""
        return self.deliver(tenant_id, statement_id, manual=True)

    def _send_with_retry(
        self, message, deadline: Optional[float]
    ) -> tuple[EmailSendResult, int]:
        last_error = "no attempt made"
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                result = self.transport.send(message)
            except (DeliveryError, ClientError, BotoCoreError) as e:
                result = EmailSendResult(ok=False, error=str(e))

            if result.ok:
                return result, attempt

            last_error = result.error or "unknown transport error"
            logger.warning(
                "Send attempt %d/%d to %s failed: %s",
                attempt,
                self.max_attempts,
                message.to,
                last_error,
            )
            if attempt >= self.max_attempts:
                break

            delay = self.base_delay * (2 ** (attempt - 1))
            if deadline is not None and self.clock() + delay > deadline:
                logger.warning("Retry budget for %s exhausted by stage deadline", message.to)
                break
            self.sleep(delay)

        raise DeliveryError(
            f"Delivery to {message.to} failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
        )
