"""Royalty statement PDF rendering (reportlab platypus)."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from html import escape
from io import BytesIO
from typing import Any, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.core.exceptions import ArtifactError
from app.core.logging import get_logger

logger = get_logger(__name__)


def _money(value: Any, currency: str) -> str:
    return f"{currency} {Decimal(str(value)):,.2f}"


def _rate(value: Any) -> str:
    return f"{Decimal(str(value)) * 100:.2f}%"


def _band(tier: dict[str, Any]) -> str:
    upper = tier["tier_max_quantity"]
    if upper is None:
        return f"{tier['tier_min_quantity']}+"
    return f"{tier['tier_min_quantity']}-{upper - 1}"


def render_statement_pdf(
    *,
    publisher: str,
    currency: str,
    author_name: str,
    author_address: Optional[str],
    title: str,
    period_start: date,
    period_end: date,
    calculations: dict[str, Any],
    statement_date: date,
) -> bytes:
    """Render a statement from its serialized ``calculations`` tree.

    Raises:
        ArtifactError: reportlab could not build the document.
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer, pagesize=letter, topMargin=0.75 * inch, bottomMargin=0.75 * inch
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "StatementTitle", parent=styles["Heading1"], fontSize=18, spaceAfter=20, alignment=TA_CENTER
    )
    header_style = ParagraphStyle("Header", parent=styles["Normal"], fontSize=12, spaceAfter=6)

    story: list[Any] = [
        Paragraph("ROYALTY STATEMENT", title_style),
        Paragraph(escape(publisher), header_style),
        Paragraph(f"Period: {period_start.isoformat()} to {period_end.isoformat()}", header_style),
        Spacer(1, 20),
        Paragraph(f"<b>Statement For:</b> {escape(author_name)}", styles["Normal"]),
    ]
    if author_address:
        story.append(Paragraph(escape(author_address), styles["Normal"]))
    story += [
        Spacer(1, 6),
        Paragraph(f"<b>Title:</b> {escape(title)}", styles["Normal"]),
        Spacer(1, 6),
        Paragraph(f"<b>Statement Date:</b> {statement_date.strftime('%B %d, %Y')}", styles["Normal"]),
        Spacer(1, 20),
        Paragraph("<b>Sales Detail</b>", styles["Heading2"]),
        Spacer(1, 12),
    ]

    table_data = [["Format", "Units", "Returns", "Net Units", "Net Revenue", "Tier", "Rate", "Royalty"]]
    for breakdown in calculations.get("format_breakdowns", []):
        tiers = breakdown.get("tier_breakdowns") or [None]
        for index, tier in enumerate(tiers):
            first = index == 0
            table_data.append(
                [
                    breakdown["format"] if first else "",
                    breakdown["gross_quantity"] if first else "",
                    breakdown["returns_quantity"] if first else "",
                    breakdown["net_quantity"] if first else "",
                    _money(breakdown["net_revenue"], currency) if first else "",
                    f"{_band(tier)} ({tier['quantity_in_tier']})" if tier else "-",
                    _rate(tier["tier_rate"]) if tier else "-",
                    _money(tier["royalty_earned"], currency) if tier else _money(0, currency),
                ]
            )

    table = Table(
        table_data,
        colWidths=[0.9 * inch, 0.6 * inch, 0.6 * inch, 0.7 * inch, 1.1 * inch, 1.0 * inch, 0.6 * inch, 1.0 * inch],
    )
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.darkblue),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("ALIGN", (0, 0), (-1, -1), "CENTER"),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, 0), 8),
                ("BOTTOMPADDING", (0, 0), (-1, 0), 10),
                ("FONTSIZE", (0, 1), (-1, -1), 8),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
            ]
        )
    )
    story += [table, Spacer(1, 20)]

    recoupment = calculations.get("advance_recoupment", {})
    summary_data = [
        ["Gross Royalties:", _money(calculations.get("gross_royalty", 0), currency)],
        ["Returns Deducted:", _money(calculations.get("returns_deduction", 0), currency)],
        ["Advance:", _money(recoupment.get("original_advance", 0), currency)],
        ["Previously Recouped:", _money(recoupment.get("previously_recouped", 0), currency)],
        ["Recouped This Period:", _money(recoupment.get("this_periods_recoupment", 0), currency)],
        ["Remaining Advance:", _money(recoupment.get("remaining_advance", 0), currency)],
        ["Net Payable:", _money(calculations.get("net_payable", 0), currency)],
    ]
    summary_table = Table(summary_data, colWidths=[2 * inch, 1.6 * inch])
    summary_table.setStyle(
        TableStyle(
            [
                ("ALIGN", (0, 0), (0, -1), "LEFT"),
                ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                ("FONTNAME", (0, 0), (-1, -2), "Helvetica"),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("LINEABOVE", (0, -1), (-1, -1), 1, colors.black),
            ]
        )
    )
    story += [
        Paragraph("<b>Financial Summary</b>", styles["Heading2"]),
        Spacer(1, 12),
        summary_table,
    ]

    try:
        doc.build(story)
    except Exception as e:
        logger.exception("PDF render failed for %s %s..%s", author_name, period_start, period_end)
        raise ArtifactError(f"Failed to render statement PDF: {e}") from e

    return buffer.getvalue()
