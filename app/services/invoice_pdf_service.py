"""
Billforge - Invoice PDF Service

Renders an invoice as a PDF document with ReportLab.

Layout:
- Sender header (company or owner name)
- Invoice details and bill-to block
- Line items table
- Subtotal, tax, discount, total, paid and balance due
- Notes and terms
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.config import settings
from app.models.invoice import DiscountType, Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


@dataclass
class PDFLineItem:
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal


@dataclass
class PDFInvoiceData:
    """Flat view of an invoice for rendering."""
    invoice_number: str
    invoice_date: date
    due_date: date
    status: str
    currency: str

    sender_name: str
    sender_email: str
    client_name: str
    client_email: Optional[str] = None
    client_company: Optional[str] = None
    client_address: Optional[str] = None

    line_items: List[PDFLineItem] = field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    discount_label: str = "Discount"
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    balance_due: Decimal = Decimal("0")
    paid_at: Optional[datetime] = None

    po_number: Optional[str] = None
    notes: Optional[str] = None
    terms: Optional[str] = None

    @classmethod
    def from_invoice(cls, invoice: Invoice) -> "PDFInvoiceData":
        """Build from an invoice with items, client and user loaded."""
        user = invoice.user
        client = invoice.client
        if invoice.discount_type == DiscountType.PERCENTAGE:
            discount_label = f"Discount ({invoice.discount:g}%)"
        else:
            discount_label = "Discount"
        return cls(
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            due_date=invoice.due_date,
            status=invoice.status.value,
            currency=invoice.currency,
            sender_name=user.company_name or user.full_name,
            sender_email=user.email,
            client_name=client.name,
            client_email=client.email,
            client_company=client.company,
            client_address=client.address,
            line_items=[
                PDFLineItem(
                    description=item.description,
                    quantity=item.quantity,
                    rate=item.rate,
                    amount=item.amount,
                )
                for item in invoice.items
            ],
            subtotal=invoice.subtotal,
            tax_rate=invoice.tax_rate,
            tax_amount=invoice.tax_amount,
            discount_label=discount_label,
            discount_amount=invoice.discount_amount,
            total_amount=invoice.total_amount,
            paid_amount=invoice.paid_amount,
            balance_due=invoice.balance_due,
            paid_at=invoice.paid_at,
            po_number=invoice.po_number,
            notes=invoice.notes,
            terms=invoice.terms,
        )


class InvoicePDFService:
    """Service for generating PDF invoices."""

    def __init__(self):
        self.brand_name = settings.company_name
        self.brand_color = colors.HexColor('#1a365d')

    def _format_money(self, amount: Decimal, currency: str) -> str:
        return f"{currency} {Decimal(amount):,.2f}"

    def render_invoice(self, invoice: Invoice) -> bytes:
        return self.generate_invoice_pdf(PDFInvoiceData.from_invoice(invoice))

    def generate_invoice_pdf(self, invoice: PDFInvoiceData) -> bytes:
        """
        Generate a PDF invoice from invoice data.

        Args:
            invoice: PDFInvoiceData with all invoice details

        Returns:
            PDF bytes
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=20*mm,
            bottomMargin=20*mm,
            title=f"Invoice {invoice.invoice_number}",
        )

        styles = getSampleStyleSheet()

        title_style = ParagraphStyle(
            'InvoiceTitle',
            parent=styles['Heading1'],
            fontSize=24,
            textColor=self.brand_color,
            spaceAfter=12,
        )
        heading_style = ParagraphStyle(
            'InvoiceHeading',
            parent=styles['Heading2'],
            fontSize=14,
            textColor=self.brand_color,
            spaceBefore=12,
            spaceAfter=6,
        )
        normal_style = ParagraphStyle(
            'InvoiceNormal',
            parent=styles['Normal'],
            fontSize=10,
            spaceAfter=4,
        )
        right_style = ParagraphStyle(
            'InvoiceRight',
            parent=styles['Normal'],
            fontSize=10,
            alignment=TA_RIGHT,
        )

        elements = []

        elements.append(Paragraph(f"<b>{invoice.sender_name}</b>", heading_style))
        elements.append(Paragraph(invoice.sender_email, normal_style))
        elements.append(Spacer(1, 20))

        paid = invoice.status == InvoiceStatus.PAID.value
        status_color = colors.green if paid else colors.orange
        elements.append(Paragraph("INVOICE", title_style))
        elements.append(Paragraph(
            f'<font color="{status_color.hexval()}">{invoice.status.replace("_", " ").upper()}</font>',
            right_style,
        ))
        elements.append(Spacer(1, 10))

        elements.append(self._build_info_section(invoice, normal_style))
        elements.append(Spacer(1, 20))

        elements.append(Paragraph("Items", heading_style))
        elements.append(self._build_items_table(invoice))
        elements.append(Spacer(1, 20))

        elements.append(self._build_totals_section(invoice))
        elements.append(Spacer(1, 20))

        if invoice.notes:
            elements.append(Paragraph("Notes", heading_style))
            elements.append(Paragraph(invoice.notes, normal_style))
            elements.append(Spacer(1, 10))

        if invoice.terms:
            elements.append(Paragraph("Terms & Conditions", heading_style))
            elements.append(Paragraph(invoice.terms, normal_style))

        elements.append(Spacer(1, 30))
        elements.append(Paragraph(
            f'<para align="center">Generated by {self.brand_name}</para>',
            normal_style,
        ))

        doc.build(elements)

        pdf_bytes = buffer.getvalue()
        buffer.close()
        logger.debug(f"Rendered PDF for invoice {invoice.invoice_number} ({len(pdf_bytes)} bytes)")
        return pdf_bytes

    def _build_info_section(self, invoice: PDFInvoiceData, normal_style):
        invoice_info = (
            f"<b>Invoice Number:</b> {invoice.invoice_number}<br/>"
            f"<b>Invoice Date:</b> {invoice.invoice_date.strftime('%B %d, %Y')}<br/>"
            f"<b>Due Date:</b> {invoice.due_date.strftime('%B %d, %Y')}<br/>"
        )
        if invoice.po_number:
            invoice_info += f"<b>PO Number:</b> {invoice.po_number}<br/>"
        if invoice.paid_at:
            invoice_info += f"<b>Paid On:</b> {invoice.paid_at.strftime('%B %d, %Y')}<br/>"

        customer_info = f"<b>Bill To:</b><br/>{invoice.client_name}<br/>"
        if invoice.client_company:
            customer_info += f"{invoice.client_company}<br/>"
        if invoice.client_email:
            customer_info += f"{invoice.client_email}<br/>"
        if invoice.client_address:
            customer_info += f"{invoice.client_address}<br/>"

        info_table = Table(
            [[Paragraph(invoice_info, normal_style), Paragraph(customer_info, normal_style)]],
            colWidths=[250, 250],
        )
        info_table.setStyle(TableStyle([
            ('ALIGN', (0, 0), (0, 0), 'LEFT'),
            ('ALIGN', (1, 0), (1, 0), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ]))
        return info_table

    def _build_items_table(self, invoice: PDFInvoiceData):
        data = [['Description', 'Qty', 'Rate', 'Amount']]
        for item in invoice.line_items:
            data.append([
                item.description,
                f"{item.quantity:g}",
                self._format_money(item.rate, invoice.currency),
                self._format_money(item.amount, invoice.currency),
            ])

        table = Table(data, colWidths=[250, 50, 100, 100])
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), self.brand_color),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, 0), 10),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 10),
            ('TOPPADDING', (0, 0), (-1, 0), 10),
            ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 1), (-1, -1), 9),
            ('ALIGN', (1, 0), (1, -1), 'CENTER'),
            ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
            ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#f8f9fa')]),
        ]))
        return table

    def _build_totals_section(self, invoice: PDFInvoiceData):
        money = lambda value: self._format_money(value, invoice.currency)  # noqa: E731
        rows = [['', '', 'Subtotal:', money(invoice.subtotal)]]
        if invoice.tax_amount:
            rows.append(['', '', f'Tax ({invoice.tax_rate:g}%):', money(invoice.tax_amount)])
        if invoice.discount_amount:
            rows.append(['', '', f'{invoice.discount_label}:', f"-{money(invoice.discount_amount)}"])
        rows.append(['', '', 'Total:', money(invoice.total_amount)])
        if invoice.paid_amount:
            rows.append(['', '', 'Paid:', money(invoice.paid_amount)])
        rows.append(['', '', 'Balance Due:', money(invoice.balance_due)])

        totals_table = Table(rows, colWidths=[250, 50, 100, 100])
        totals_table.setStyle(TableStyle([
            ('ALIGN', (2, 0), (-1, -1), 'RIGHT'),
            ('FONTNAME', (2, -1), (-1, -1), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('TOPPADDING', (0, 0), (-1, -1), 5),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 5),
            ('LINEABOVE', (2, -1), (-1, -1), 1, colors.black),
        ]))
        return totals_table
