"""Statement email composition and the SES transport.

``render_statement_email`` builds the message for one statement; the
transport only knows how to send an ``EmailMessage``.  Transport failures
come back as ``EmailSendResult(ok=False, ...)`` rather than raising, so the
delivery service owns the retry decision.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.logging import get_logger
from app.services.statements.artifacts import client_config

logger = get_logger(__name__)

_QUARTERS = {(1, 3): "Q1", (4, 6): "Q2", (7, 9): "Q3", (10, 12): "Q4"}


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass
class EmailMessage:
    sender: str
    to: str
    subject: str
    html: str
    attachments: list[EmailAttachment] = field(default_factory=list)


@dataclass
class EmailSendResult:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> EmailSendResult: ...


# ── Formatting helpers ──────────────────────────────────────────────


def format_period_label(period_start: date, period_end: date) -> str:
    """``"Q4 2025"`` for calendar quarters, else ``"January - March 2025"``."""
    quarter = _QUARTERS.get((period_start.month, period_end.month))
    if quarter and period_start.year == period_end.year:
        return f"{quarter} {period_end.year}"

    end_label = period_end.strftime("%B %Y")
    if period_start.year != period_end.year:
        return f"{period_start.strftime('%B %Y')} - {end_label}"
    return f"{period_start.strftime('%B')} - {end_label}"


def statement_pdf_filename(period_label: str, author_name: str) -> str:
    """``royalty-statement-q4-2025-jane-doe.pdf``"""
    period = re.sub(r"\s+", "-", period_label).lower()
    name = re.sub(r"[^a-zA-Z0-9]", "-", author_name).lower()
    name = re.sub(r"-+", "-", name).strip("-")
    return f"royalty-statement-{period}-{name}.pdf"


def statement_subject(period_label: str, publisher: str) -> str:
    return f"Your {period_label} Royalty Statement is Ready - {publisher}"


def format_money(amount: Any, currency: str) -> str:
    value = Decimal(str(amount))
    return f"{currency} {value:,.2f}"


def render_statement_email(
    *,
    sender: str,
    recipient: str,
    author_name: str,
    publisher: str,
    currency: str,
    period_start: date,
    period_end: date,
    gross_royalty: Any,
    recoupment: Any,
    net_payable: Any,
    portal_link: str,
    pdf: bytes,
) -> EmailMessage:
    """Build the statement email with its PDF attached."""
    period_label = format_period_label(period_start, period_end)
    html_body = f"""
    <html>
      <body style="font-family: Arial, sans-serif; line-height: 1.4;">
        <h2>Your {escape(period_label)} royalty statement is ready</h2>
        <p>Dear {escape(author_name)},</p>
        <p>{escape(publisher)} has issued your royalty statement for {escape(period_label)}.</p>
        <table cellpadding="4">
          <tr><td>Gross royalties</td><td align="right">{format_money(gross_royalty, currency)}</td></tr>
          <tr><td>Advance recoupment</td><td align="right">-{format_money(recoupment, currency)}</td></tr>
          <tr><td><b>Net payable</b></td><td align="right"><b>{format_money(net_payable, currency)}</b></td></tr>
        </table>
        <p>
          The full statement is attached as a PDF.  You can also view it in the portal:<br/>
          <a href="{escape(portal_link)}">{escape(portal_link)}</a>
        </p>
        <p style="color:#666;">Sent by {escape(publisher)}.</p>
      </body>
    </html>
    """.strip()

    return EmailMessage(
        sender=sender,
        to=recipient,
        subject=statement_subject(period_label, publisher),
        html=html_body,
        attachments=[
            EmailAttachment(
                filename=statement_pdf_filename(period_label, author_name),
                content=pdf,
            )
        ],
    )


# ── SES transport ───────────────────────────────────────────────────


def build_mime(message: EmailMessage) -> MIMEMultipart:
    mime = MIMEMultipart("mixed")
    mime["Subject"] = message.subject
    mime["From"] = message.sender
    mime["To"] = message.to
    mime.attach(MIMEText(message.html, "html", "utf-8"))

    for attachment in message.attachments:
        _, subtype = attachment.content_type.split("/", 1)
        part = MIMEApplication(attachment.content, _subtype=subtype)
        part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
        mime.attach(part)
    return mime


class SesEmailTransport:
    """Sends raw MIME email through Amazon SES."""

    def __init__(self, region: str, client: Any = None) -> None:
        self.client = client or boto3.client(
            "ses", region_name=region, config=client_config()
        )

    def send(self, message: EmailMessage) -> EmailSendResult:
        try:
            response = self.client.send_raw_email(
                Source=message.sender,
                Destinations=[message.to],
                RawMessage={"Data": build_mime(message).as_string()},
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning("SES send to %s failed: %s", message.to, e)
            return EmailSendResult(ok=False, error=str(e))
        return EmailSendResult(ok=True, message_id=response.get("MessageId"))
