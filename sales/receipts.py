"""Receipt renderers. HTML, PDF and ESC/POS output are all built from ``receipt_context``."""

import textwrap
from io import BytesIO

from django.conf import settings
from django.template.loader import render_to_string
from django.utils import timezone
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from common.utils import format_currency, format_number

THERMAL_WIDTH = 32
PDF_PAGE_SIZE = (80 * mm, 200 * mm)
PDF_MARGIN = 4 * mm

ESC = "\x1b"
ESC_INIT = ESC + "@"
ESC_CENTER = ESC + "a\x01"
ESC_LEFT = ESC + "a\x00"
ESC_BOLD_ON = ESC + "E\x01"
ESC_BOLD_OFF = ESC + "E\x00"
ESC_CUT = ESC + "m"


def store_details():
    return {
        "name": settings.STORE_NAME,
        "address": settings.STORE_ADDRESS,
        "phone": settings.STORE_PHONE,
        "email": settings.STORE_EMAIL,
        "footer": settings.RECEIPT_FOOTER,
    }


def receipt_context(sale):
    sold_at = timezone.localtime(sale.sold_at)
    lines = [
        {
            "code": line.product.code,
            "name": line.product.name,
            "quantity": line.quantity,
            "unit_price": format_number(line.unit_price),
            "discount": format_currency(line.discount) if line.discount > 0 else "",
            "subtotal": format_currency(line.subtotal),
            "note": line.note,
        }
        for line in sale.lines.select_related("product")
    ]
    return {
        "store": store_details(),
        "invoice_number": sale.invoice_number,
        "sold_at": sold_at.strftime("%d/%m/%Y %H:%M"),
        "cashier": sale.cashier.display_name,
        "customer": sale.customer.name if sale.customer_id else "",
        "status": sale.status,
        "is_voided": sale.status == sale.Status.VOIDED,
        "payment_method": sale.get_payment_method_display(),
        "lines": lines,
        "gross_amount": format_currency(sale.gross_amount),
        "discount_amount": format_currency(sale.discount_amount) if sale.discount_amount > 0 else "",
        "discount_percent": sale.discount_percent,
        "tax_amount": format_currency(sale.tax_amount) if sale.tax_amount > 0 else "",
        "tax_percent": sale.tax_percent,
        "total": format_currency(sale.total),
        "amount_paid": format_currency(sale.amount_paid),
        "change": format_currency(sale.change),
        "notes": sale.notes,
    }


def render_receipt_html(sale):
    return render_to_string("sales/receipt.html", receipt_context(sale))


def _wrap(text, width=THERMAL_WIDTH):
    return [f"{part}\n" for part in textwrap.wrap(text, width)]


def _justify(left, right, width=THERMAL_WIDTH):
    """Pad ``left`` so ``right`` ends on the last column, clipping ``left`` when both do not fit."""
    left = left[: max(width - len(right) - 1, 0)]
    return left + " " * (width - len(left) - len(right)) + right


def render_receipt_escpos(sale):
    """Plain-text receipt with ESC/POS control codes for a 32-column thermal printer."""
    ctx = receipt_context(sale)
    store = ctx["store"]
    rule = "-" * THERMAL_WIDTH
    out = [ESC_INIT, ESC_CENTER, ESC_BOLD_ON, *_wrap(store["name"]), ESC_BOLD_OFF]
    for value in (store["address"], f"Tel: {store['phone']}" if store["phone"] else "", store["email"]):
        out.extend(_wrap(value))
    out.append(f"{rule}\n")

    out.append(ESC_LEFT)
    out.extend(_wrap(f"Invoice: {ctx['invoice_number']}"))
    out.extend(_wrap(f"Date: {ctx['sold_at']}"))
    out.extend(_wrap(f"Cashier: {ctx['cashier']}"))
    if ctx["customer"]:
        out.extend(_wrap(f"Customer: {ctx['customer']}"))
    if ctx["is_voided"]:
        out.append(f"{ESC_BOLD_ON}*** VOID ***{ESC_BOLD_OFF}\n")
    out.append(f"{rule}\n")

    for line in ctx["lines"]:
        out.extend([ESC_BOLD_ON, *_wrap(line["name"]), ESC_BOLD_OFF])
        out.extend(_wrap(line["code"]))
        out.append(_justify(f"{line['quantity']} x {line['unit_price']}", line["subtotal"]) + "\n")
        if line["discount"]:
            out.append(_justify("  Disc:", f"-{line['discount']}") + "\n")
        if line["note"]:
            out.extend(_wrap(f"  Note: {line['note']}"))
        out.append("\n")

    out.append(f"{rule}\n")
    out.append(_justify("Subtotal:", ctx["gross_amount"]) + "\n")
    if ctx["discount_amount"]:
        out.append(_justify("Discount:", f"-{ctx['discount_amount']}") + "\n")
    if ctx["tax_amount"]:
        out.append(_justify("Tax:", ctx["tax_amount"]) + "\n")
    out.append(ESC_BOLD_ON + _justify("TOTAL:", ctx["total"]) + ESC_BOLD_OFF + "\n")
    out.append(_justify("Paid:", ctx["amount_paid"]) + "\n")
    out.append(ESC_BOLD_ON + _justify("Change:", ctx["change"]) + ESC_BOLD_OFF + "\n")
    out.append(f"{rule}\n")

    out.append(ESC_CENTER)
    for footer_line in store["footer"].splitlines():
        out.extend(_wrap(footer_line))
    out.append("\n")
    out.append(f"{ctx['invoice_number']}\n")
    out.append("\n\n\n")
    out.append(ESC_CUT)
    return "".join(out)


def render_receipt_pdf(sale):
    """Render the receipt on a fixed 80mm x 200mm thermal page and return the PDF bytes."""
    ctx = receipt_context(sale)
    store = ctx["store"]
    width, height = PDF_PAGE_SIZE
    right = width - PDF_MARGIN
    center = width / 2

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=PDF_PAGE_SIZE)
    pdf.setTitle(f"Receipt {ctx['invoice_number']}")
    y = height - PDF_MARGIN - 8

    def text(value, *, x=PDF_MARGIN, align="left", font="Helvetica", size=7, step=9):
        nonlocal y
        pdf.setFont(font, size)
        if align == "center":
            pdf.drawCentredString(center, y, value)
        elif align == "right":
            pdf.drawRightString(right, y, value)
        else:
            pdf.drawString(x, y, value)
        y -= step

    def row(label, value, *, font="Helvetica"):
        nonlocal y
        pdf.setFont(font, 7)
        pdf.drawString(PDF_MARGIN, y, label)
        pdf.drawRightString(right, y, value)
        y -= 9

    def rule():
        nonlocal y
        pdf.setDash(1, 2)
        pdf.line(PDF_MARGIN, y + 4, right, y + 4)
        pdf.setDash()
        y -= 6

    text(store["name"], align="center", font="Helvetica-Bold", size=10, step=12)
    for value in (store["address"], f"Tel: {store['phone']}" if store["phone"] else "", store["email"]):
        if value:
            text(value, align="center", size=6, step=8)
    rule()

    row("Invoice", ctx["invoice_number"])
    row("Date", ctx["sold_at"])
    row("Cashier", ctx["cashier"])
    if ctx["customer"]:
        row("Customer", ctx["customer"])
    if ctx["is_voided"]:
        text("VOID", align="center", font="Helvetica-Bold", size=9, step=11)
    rule()

    for line in ctx["lines"]:
        text(line["name"][:40], font="Helvetica-Bold")
        row(f"{line['quantity']} x {line['unit_price']}", line["subtotal"])
        if line["discount"]:
            row("  Disc", f"-{line['discount']}")
    rule()

    row("Subtotal", ctx["gross_amount"])
    if ctx["discount_amount"]:
        row(f"Discount ({ctx['discount_percent']}%)", f"-{ctx['discount_amount']}")
    if ctx["tax_amount"]:
        row(f"Tax ({ctx['tax_percent']}%)", ctx["tax_amount"])
    row("TOTAL", ctx["total"], font="Helvetica-Bold")
    row(f"Paid ({ctx['payment_method']})", ctx["amount_paid"])
    row("Change", ctx["change"], font="Helvetica-Bold")
    rule()

    for footer_line in store["footer"].splitlines():
        text(footer_line, align="center", size=6, step=8)

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
