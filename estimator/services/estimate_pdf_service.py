"""Estimate PDF rendering."""

from datetime import datetime, timedelta
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, Iterable

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from sqlalchemy.orm import Session

from estimator.exceptions import NotFoundError
from estimator.models import Estimate, EstimateItem

ITEM_TYPE_LABELS = {
    'labor': 'Labor',
    'vendor': 'Material',
    'subcontractor': 'Subcontractor',
    'fee': 'Fee',
    'other': 'Other',
}


def _fmt_money(value: Any) -> str:
    return f"${Decimal(str(value or 0)):,.2f}"


def _fmt_qty(value: Any) -> str:
    qty = Decimal(str(value or 0))
    return str(int(qty)) if qty % 1 == 0 else f"{qty:.2f}"


def render_estimate_pdf(estimate: Estimate, items: Iterable[EstimateItem], business_info: Dict[str, Any]) -> BytesIO:
    """
    Render an estimate as a PDF.

    Line item prices come from the stored snapshot; totals come from the
    finalized estimate row.
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=LETTER,
        rightMargin=0.75*inch,
        leftMargin=0.75*inch,
        topMargin=0.75*inch,
        bottomMargin=0.75*inch
    )

    elements = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'EstimateTitle',
        parent=styles['Heading1'],
        fontSize=24,
        textColor=colors.HexColor('#2C3E50'),
        spaceAfter=12,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )

    header_style = ParagraphStyle(
        'EstimateHeader',
        parent=styles['Normal'],
        fontSize=10,
        textColor=colors.HexColor('#7F8C8D'),
        alignment=TA_CENTER,
        spaceAfter=6
    )

    # 1. Title and business header
    elements.append(Paragraph("ESTIMATE", title_style))

    if business_info.get('name'):
        elements.append(Paragraph(f"<b>{business_info['name']}</b>", header_style))
    if business_info.get('address'):
        elements.append(Paragraph(business_info['address'], header_style))

    contact_parts = []
    if business_info.get('phone'):
        contact_parts.append(f"Tel: {business_info['phone']}")
    if business_info.get('email'):
        contact_parts.append(f"Email: {business_info['email']}")
    if contact_parts:
        elements.append(Paragraph(" | ".join(contact_parts), header_style))

    elements.append(Spacer(1, 0.3*inch))

    # 2. Estimate metadata
    issued = estimate.datecreated or datetime.now()
    valid_until = issued + timedelta(days=business_info.get('valid_days', 30))
    site = ', '.join(part for part in (
        estimate.sitelocationaddress, estimate.sitelocationcity,
        estimate.sitelocationstate, estimate.sitelocationzip
    ) if part)

    info_rows = [
        ['Estimate #:', estimate.estimateid],
        ['Date:', issued.strftime('%m/%d/%Y')],
        ['Valid Until:', valid_until.strftime('%m/%d/%Y')],
        ['Customer:', estimate.customername or estimate.customerid],
        ['Project:', estimate.projectname],
    ]
    if site:
        info_rows.append(['Site:', site])

    info_table = Table(info_rows, colWidths=[1.5*inch, 4.5*inch])
    info_table.setStyle(TableStyle([
        ('ALIGN', (0, 0), (0, -1), 'RIGHT'),
        ('ALIGN', (1, 0), (1, -1), 'LEFT'),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#34495E')),
    ]))
    elements.append(info_table)

    if estimate.job_description:
        elements.append(Spacer(1, 0.15*inch))
        elements.append(Paragraph(estimate.job_description, styles['Normal']))

    elements.append(Spacer(1, 0.3*inch))

    # 3. Line items
    table_data = [['Description', 'Type', 'Qty', 'Unit Price', 'Total']]
    for item in items:
        table_data.append([
            Paragraph(item.description, styles['Normal']),
            ITEM_TYPE_LABELS.get(item.item_type, item.item_type),
            _fmt_qty(item.quantity),
            _fmt_money(item.unit_price),
            _fmt_money(item.total_price),
        ])

    items_table = Table(table_data, colWidths=[3.0*inch, 1.0*inch, 0.6*inch, 1.0*inch, 1.1*inch])
    items_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#3498DB')),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('ALIGN', (0, 0), (-1, 0), 'CENTER'),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
        ('ALIGN', (2, 1), (2, -1), 'CENTER'),
        ('ALIGN', (3, 1), (4, -1), 'RIGHT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#BDC3C7')),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#ECF0F1')]),
    ]))
    elements.append(items_table)
    elements.append(Spacer(1, 0.2*inch))

    # 4. Totals
    totals_rows = [['Subtotal:', _fmt_money(estimate.estimateamount)]]
    if estimate.contingencyamount:
        totals_rows.append([
            f"Contingency ({Decimal(str(estimate.contingency_percentage or 0)):.2f}%):",
            _fmt_money(estimate.contingencyamount)
        ])
    totals_rows.append(['TOTAL:', _fmt_money(estimate.grandtotal)])

    totals_table = Table(totals_rows, colWidths=[5.6*inch, 1.1*inch])
    totals_table.setStyle(TableStyle([
        ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
        ('FONTNAME', (0, -1), (-1, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, -1), (-1, -1), 14),
        ('TEXTCOLOR', (0, -1), (-1, -1), colors.HexColor('#27AE60')),
        ('LINEABOVE', (0, -1), (-1, -1), 1.5, colors.HexColor('#27AE60')),
    ]))
    elements.append(totals_table)
    elements.append(Spacer(1, 0.4*inch))

    footer_style = ParagraphStyle('Footer', parent=styles['Normal'], fontSize=9, textColor=colors.HexColor('#95A5A6'), alignment=TA_CENTER)
    elements.append(Paragraph(
        f"Prices valid for {business_info.get('valid_days', 30)} days. <i>This estimate is not an invoice.</i>",
        footer_style
    ))

    doc.build(elements)
    buffer.seek(0)
    return buffer


def generate_estimate_pdf(session: Session, estimate_id: str, business_info: Dict[str, Any]) -> BytesIO:
    """Render the selected revision of a persisted estimate."""
    estimate = session.get(Estimate, estimate_id)
    if not estimate:
        raise NotFoundError(f'Estimate {estimate_id} not found')

    revision = estimate.selected_revision
    items = revision.items if revision else []
    return render_estimate_pdf(estimate, items, business_info)


def business_info_from_config(config) -> Dict[str, Any]:
    """Business header fields from the app config."""
    return {
        'name': config.get('BUSINESS_NAME'),
        'address': config.get('BUSINESS_ADDRESS'),
        'phone': config.get('BUSINESS_PHONE'),
        'email': config.get('BUSINESS_EMAIL'),
        'valid_days': config.get('ESTIMATE_VALID_DAYS', 30),
    }
