import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional

from fpdf import FPDF

from app.email_service import EmailResult, generate_email_template, send_email

logger = logging.getLogger(__name__)

DEFAULT_LOGO_PATH = "static/assets/logo.png"
DEFAULT_DASHBOARD_URL = "https://www.rupietimes.com/dashboard/subscriptions"


class InvoiceEmailFailed(Exception):
    pass


@dataclass
class InvoiceLine:
    name: str
    duration: str
    price: Decimal
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class InvoiceDocument:
    order_id: str
    order_date: datetime
    payment_status: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    items: list[InvoiceLine] = field(default_factory=list)


def invoice_logo_path() -> str:
    return os.getenv("INVOICE_LOGO_PATH", DEFAULT_LOGO_PATH).strip() or DEFAULT_LOGO_PATH


def dashboard_url() -> str:
    return os.getenv("DASHBOARD_SUBSCRIPTIONS_URL", DEFAULT_DASHBOARD_URL).strip() or DEFAULT_DASHBOARD_URL


def invoice_filename(order_id: str) -> str:
    return f"Invoice_{order_id}.pdf"


def _pdf_text(value) -> str:
    # Core PDF fonts are latin-1 only.
    return str(value if value is not None else "").encode("latin-1", "replace").decode("latin-1")


def _money(value: Decimal) -> str:
    return f"INR {Decimal(value):,.2f}"


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else "-"


def render_invoice_pdf(document: InvoiceDocument, logo_path: Optional[str] = None) -> bytes:
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    logo_path = logo_path or invoice_logo_path()
    if logo_path and os.path.exists(logo_path):
        try:
            pdf.image(logo_path, x=10, y=10, w=30)
            pdf.set_y(30)
        except Exception:
            logger.warning("Could not embed invoice logo from %s", logo_path, exc_info=True)
    else:
        logger.debug("Invoice logo not found at %s; rendering without it", logo_path)

    pdf.set_font("Helvetica", "B", 18)
    pdf.cell(0, 10, "TAX INVOICE", new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.set_font("Helvetica", size=10)
    pdf.cell(0, 6, _pdf_text(f"Order #{document.order_id}"), new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.cell(0, 6, _pdf_text(f"Date: {_date(document.order_date)}"), new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.cell(0, 6, _pdf_text(f"Status: {document.payment_status.upper()}"), new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.ln(4)

    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(0, 7, "Billed To", new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", size=10)
    for line in (document.customer_name, document.customer_email, document.customer_phone):
        if line:
            pdf.cell(0, 6, _pdf_text(line), new_x="LMARGIN", new_y="NEXT")
    pdf.ln(6)

    pdf.set_font("Helvetica", "B", 10)
    pdf.cell(80, 8, "Subscription", border=1)
    pdf.cell(30, 8, "Plan", border=1)
    pdf.cell(45, 8, "Period", border=1)
    pdf.cell(35, 8, "Price", border=1, new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.set_font("Helvetica", size=10)
    for item in document.items:
        period = f"{_date(item.start_date)} - {_date(item.end_date)}"
        pdf.cell(80, 8, _pdf_text(item.name)[:45], border=1)
        pdf.cell(30, 8, _pdf_text(item.duration), border=1)
        pdf.cell(45, 8, _pdf_text(period), border=1)
        pdf.cell(35, 8, _money(item.price), border=1, new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.ln(4)

    for label, amount in (("Subtotal", document.subtotal), ("Discount", document.discount)):
        pdf.cell(155, 7, label, align="R")
        pdf.cell(35, 7, _money(amount), new_x="LMARGIN", new_y="NEXT", align="R")
    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(155, 8, "Total Paid (incl. GST)", align="R")
    pdf.cell(35, 8, _money(document.total), new_x="LMARGIN", new_y="NEXT", align="R")

    return bytes(pdf.output())


def render_invoice_html(document: InvoiceDocument) -> str:
    items_html = "".join(
        f"""
        <div style="display: flex; justify-content: space-between; margin-bottom: 10px; padding-bottom: 10px; border-bottom: 1px solid #e2e8f0;">
            <span style="flex: 1; font-size: 13px; color: #666; text-transform: uppercase;">{escape(item.name)} <span style="font-size: 11px; color: #888; text-transform: none;">({escape(item.duration)})</span></span>
            <span style="font-weight: bold; color: #000; font-size: 14px;">&#8377;{item.price}</span>
        </div>"""
        for item in document.items
    )
    content = f"""
    <h1 style="font-size: 24px; color: #1f4235; margin-bottom: 25px;">Order #{escape(document.order_id)}</h1>
    <p style="margin-bottom: 20px;">Hello <strong>{escape(document.customer_name or "Valued Customer")}</strong>,</p>
    <p style="margin-bottom: 20px;">Thank you for choosing Rupie Times! Your order has been successfully processed.</p>
    <div style="background: #fefaf0; padding: 15px; border-radius: 4px; margin: 20px 0; border: 1px solid #e5e7eb;">
        <h3 style="margin-top: 0; color: #1f4235; font-size: 16px; margin-bottom: 8px;">Invoice Attached</h3>
        <p style="margin: 0; font-size: 14px; color: #555;">Your official tax invoice <strong>{invoice_filename(escape(document.order_id))}</strong> is attached to this email.</p>
    </div>
    <div style="background: #f8fafc; padding: 20px; border-radius: 6px; margin: 20px 0; border: 1px solid #eee;">
        <h3 style="margin-top: 0; color: #1f4235; text-transform: uppercase; font-size: 14px;">Order Summary</h3>
        <div style="margin-top: 15px;">
            {items_html}
            <div style="display: flex; justify-content: space-between; margin-top: 10px; border-top: 2px solid #ddd; padding-top: 10px;">
                <span style="font-size: 13px; color: #666; text-transform: uppercase;">Status</span>
                <span style="font-weight: bold; color: #059669; font-size: 14px;">{escape(document.payment_status.upper())}</span>
            </div>
        </div>
    </div>
    <div style="background: #1f4235; color: white; padding: 15px; border-radius: 4px; margin-top: 20px;">
        <span style="font-weight: bold; font-size: 16px; text-transform: uppercase;">Total Paid</span>
        <span style="font-weight: bold; font-size: 20px; color: #c29854; float: right;">&#8377;{document.total}</span>
    </div>
    <div style="text-align: center; margin-top: 30px;">
        <a href="{escape(dashboard_url())}" style="display: inline-block; background: #1f4235; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px;">View Subscription</a>
    </div>
    """
    return generate_email_template(content, title=f"Invoice for Order #{escape(document.order_id)}")


def send_invoice_email(document: InvoiceDocument) -> EmailResult:
    """Render and email the invoice; raises ``InvoiceEmailFailed`` on any failure."""
    try:
        pdf_bytes = render_invoice_pdf(document)
    except Exception as exc:
        logger.exception("Invoice PDF generation failed order_id=%s", document.order_id)
        raise InvoiceEmailFailed("Failed to generate invoice PDF") from exc

    result = send_email(
        to=[document.customer_email],
        subject=f"Invoice for Order #{document.order_id}",
        html=render_invoice_html(document),
        attachments=[
            {
                "filename": invoice_filename(document.order_id),
                "content": pdf_bytes,
                "content_type": "application/pdf",
            }
        ],
    )
    if result.error:
        raise InvoiceEmailFailed(f"Failed to send invoice email: {result.error}")
    return result
