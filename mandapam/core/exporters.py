"""
Export of the (filtered) registrations table to CSV, Excel and PDF.
"""
import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import List
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Font
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from mandapam.core.errors import ValidationError
from mandapam.core.models import Event, Registration

COLUMNS = [
    "Registration ID", "Name", "Phone", "Email", "Business Name", "Business Type",
    "Status", "Payment Status", "Amount Paid", "Registered At", "Attended At",
]

FORMATS = {
    "csv": ("text/csv", "csv"),
    "xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", "xlsx"),
    "pdf": ("application/pdf", "pdf"),
}


@dataclass(frozen=True)
class ExportFile:
    filename: str
    media_type: str
    content: bytes


def registration_row(r: Registration) -> List[str]:
    return [
        str(r.id or ""),
        r.name or (r.member.name if r.member else ""),
        r.phone,
        r.email or "",
        r.business_name,
        r.business_type or "",
        r.status.value,
        r.payment_status.value,
        f"{r.amount_paid:.2f}",
        r.registered_at or "",
        r.attended_at or "",
    ]


def export_csv(registrations: List[Registration]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(COLUMNS)
    for r in registrations:
        writer.writerow(registration_row(r))
    return buffer.getvalue().encode("utf-8-sig")


def export_xlsx(registrations: List[Registration], event: Event) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Registrations"
    ws.append(COLUMNS)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for r in registrations:
        ws.append(registration_row(r))
    for column in ws.columns:
        width = max(len(str(cell.value or "")) for cell in column)
        ws.column_dimensions[column[0].column_letter].width = min(max(width + 2, 10), 40)
    ws.freeze_panes = "A2"
    wb.properties.title = f"{event.title} registrations"

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


def export_pdf(registrations: List[Registration], event: Event) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(A4), leftMargin=20, rightMargin=20)
    styles = getSampleStyleSheet()
    elements = [
        Paragraph(f"<b>{escape(event.title)}</b><br/>Registrations ({len(registrations)})", styles["Title"]),
        Spacer(1, 12),
    ]

    # PDF keeps the columns that fit on a landscape page
    pdf_columns = [0, 1, 2, 4, 6, 7, 8, 10]
    data = [[COLUMNS[i] for i in pdf_columns]]
    for r in registrations:
        row = registration_row(r)
        data.append([row[i] for i in pdf_columns])

    table = Table(data, repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 8),
        ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.beige]),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.black),
    ]))
    elements.append(table)
    doc.build(elements)
    return buffer.getvalue()


def export_registrations(registrations: List[Registration], event: Event, fmt: str) -> ExportFile:
    """
    Export registrations in the requested format.

    Raises:
        ValidationError: unknown format
    """
    fmt = (fmt or "").lower()
    if fmt not in FORMATS:
        raise ValidationError({"format": "Format must be csv, xlsx or pdf"})

    media_type, extension = FORMATS[fmt]
    if fmt == "csv":
        content = export_csv(registrations)
    elif fmt == "xlsx":
        content = export_xlsx(registrations, event)
    else:
        content = export_pdf(registrations, event)

    stamp = datetime.now().strftime("%Y%m%d")
    return ExportFile(
        filename=f"event-{event.id}-registrations-{stamp}.{extension}",
        media_type=media_type,
        content=content,
    )
