"""Tests for statement email composition and the SES transport."""

from __future__ import annotations

from datetime import date
from email import message_from_string
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from app.services.statements.mailer import (
    EmailMessage,
    SesEmailTransport,
    format_period_label,
    render_statement_email,
    statement_pdf_filename,
    statement_subject,
)


class TestPeriodLabel:
    @pytest.mark.parametrize(
        "start,end,expected",
        [
            (date(2025, 1, 1), date(2025, 3, 31), "Q1 2025"),
            (date(2025, 4, 1), date(2025, 6, 30), "Q2 2025"),
            (date(2025, 7, 1), date(2025, 9, 30), "Q3 2025"),
            (date(2025, 10, 1), date(2025, 12, 31), "Q4 2025"),
            (date(2025, 1, 1), date(2025, 6, 30), "January - June 2025"),
            (date(2024, 11, 1), date(2025, 1, 31), "November 2024 - January 2025"),
        ],
    )
    def test_labels(self, start, end, expected):
        assert format_period_label(start, end) == expected


class TestNaming:
    def test_filename_is_slugged(self):
        assert (
            statement_pdf_filename("Q4 2025", "Anne-Marie O'Brien")
            == "royalty-statement-q4-2025-anne-marie-o-brien.pdf"
        )

    def test_subject(self):
        assert (
            statement_subject("Q1 2025", "Salina Press")
            == "Your Q1 2025 Royalty Statement is Ready - Salina Press"
        )


class TestRender:
    def test_render_escapes_names_and_attaches_pdf(self):
        message = render_statement_email(
            sender="statements@example.com",
            recipient="jane@example.com",
            author_name="Jane <Doe>",
            publisher="Salina & Sons",
            currency="USD",
            period_start=date(2025, 1, 1),
            period_end=date(2025, 3, 31),
            gross_royalty="1250.00",
            recoupment="250.00",
            net_payable="1000.00",
            portal_link="https://portal.example.com/portal/statements/abc",
            pdf=b"%PDF",
        )

        assert "Jane &lt;Doe&gt;" in message.html
        assert "USD 1,250.00" in message.html
        assert "USD 1,000.00" in message.html
        assert message.subject.endswith("Salina & Sons")
        assert len(message.attachments) == 1
        assert message.attachments[0].content_type == "application/pdf"


class TestSesTransport:
    def _message(self) -> EmailMessage:
        message = render_statement_email(
            sender="statements@example.com",
            recipient="jane@example.com",
            author_name="Jane Doe",
            publisher="Salina Press",
            currency="USD",
            period_start=date(2025, 1, 1),
            period_end=date(2025, 3, 31),
            gross_royalty="10",
            recoupment="0",
            net_payable="10",
            portal_link="https://portal.example.com",
            pdf=b"%PDF-1.4",
        )
        return message

    def test_send_raw_email_with_attachment(self):
        client = MagicMock()
        client.send_raw_email.return_value = {"MessageId": "ses-1"}

        result = SesEmailTransport("us-east-1", client=client).send(self._message())

        assert result.ok is True
        assert result.message_id == "ses-1"
        kwargs = client.send_raw_email.call_args.kwargs
        assert kwargs["Destinations"] == ["jane@example.com"]
        raw = message_from_string(kwargs["RawMessage"]["Data"])
        filenames = [part.get_filename() for part in raw.walk() if part.get_filename()]
        assert filenames == ["royalty-statement-q1-2025-jane-doe.pdf"]

    def test_client_error_becomes_failed_result(self):
        client = MagicMock()
        client.send_raw_email.side_effect = ClientError(
            {"Error": {"Code": "MessageRejected", "Message": "Email address is not verified"}},
            "SendRawEmail",
        )

        result = SesEmailTransport("us-east-1", client=client).send(self._message())

        assert result.ok is False
        assert "not verified" in result.error
