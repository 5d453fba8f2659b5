from collections import OrderedDict
from decimal import Decimal
from io import BytesIO

from django.conf import settings
from django.http import HttpResponse
from django.utils import timezone
from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from rest_framework.exceptions import ValidationError

from sales.reports import REPORTS, BaseReportView, csv_response, tabular

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXPORT_FORMATS = ("csv", "xlsx")
WALK_IN_CUSTOMER = "Walk-in customer"


def _cell(value):
    if isinstance(value, Decimal):
        return float(value)
    return value


def _write_sheet(sheet, title, rows, period):
    sheet.append([f"{settings.STORE_NAME} - {title}"])
    sheet["A1"].font = Font(bold=True, size=13)
    sheet.append([period])
    sheet.append([])
    if not rows:
        sheet.append(["No data for the selected period."])
        return

    headers = list(rows[0].keys())
    sheet.append([header.replace("_", " ").title() for header in headers])
    for cell in sheet[sheet.max_row]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append([_cell(row[header]) for header in headers])

    for index, header in enumerate(headers, start=1):
        width = max(len(str(row[header])) for row in rows)
        sheet.column_dimensions[get_column_letter(index)].width = min(max(width, len(header)) + 2, 50)


def build_workbook(reports, *, period):
    """Return xlsx bytes with one sheet per ``(title, rows)`` pair."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, rows in reports:
        _write_sheet(workbook.create_sheet(title=title[:31]), title, rows, period)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def history_rows(sales):
    """One row per sale, in the order the history view lists them."""
    rows = []
    for sale in sales:
        rows.append(
            OrderedDict(
                invoice_number=sale.invoice_number,
                sold_at=timezone.localtime(sale.sold_at).strftime("%d/%m/%Y %H:%M"),
                customer=sale.customer.name if sale.customer else WALK_IN_CUSTOMER,
                cashier=sale.cashier.display_name,
                item_count=sum(line.quantity for line in sale.lines.all()),
                gross_amount=sale.gross_amount,
                discount_amount=sale.discount_amount,
                tax_amount=sale.tax_amount,
                total=sale.total,
                payment_method=sale.get_payment_method_display(),
                status=sale.get_status_display(),
            )
        )
    return rows


def history_line_rows(sales):
    rows = []
    for sale in sales:
        sold_at = timezone.localtime(sale.sold_at).strftime("%d/%m/%Y %H:%M")
        for line in sale.lines.all():
            rows.append(
                OrderedDict(
                    invoice_number=sale.invoice_number,
                    sold_at=sold_at,
                    product_code=line.product.code,
                    product_name=line.product.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    discount=line.discount,
                    subtotal=line.subtotal,
                    status=sale.get_status_display(),
                )
            )
    return rows


class ReportExportView(BaseReportView):
    """Download one report (or ``report=complete`` for all of them) as CSV or an Excel workbook."""

    def get(self, request):
        report_name = request.query_params.get("report", "complete")
        export_format = request.query_params.get("format", "xlsx")
        if report_name != "complete" and report_name not in REPORTS:
            raise ValidationError({"report": f"Unknown report. Choose one of: complete, {', '.join(REPORTS)}."})
        if export_format not in EXPORT_FORMATS:
            raise ValidationError({"format": "Format must be csv or xlsx."})
        if export_format == "csv" and report_name == "complete":
            raise ValidationError({"format": "CSV export covers a single report; use xlsx for the complete export."})

        _, params = self._report_params(request)
        names = list(REPORTS) if report_name == "complete" else [report_name]
        reports = [(REPORTS[name][0], tabular(REPORTS[name][1](**params))) for name in names]

        stamp = timezone.localtime().strftime("%Y%m%d_%H%M%S")
        filename = f"sales_report_{report_name.replace('-', '_')}_{stamp}"
        if export_format == "csv":
            return csv_response(f"{filename}.csv", reports[0][1])

        if params["start"] and params["end"]:
            period = f"Period: {params['start']:%d/%m/%Y} - {params['end']:%d/%m/%Y}"
        else:
            period = "Period: all time"
        response = HttpResponse(build_workbook(reports, period=period), content_type=XLSX_CONTENT_TYPE)
        response["Content-Disposition"] = f'attachment; filename="{filename}.xlsx"'
        return response
