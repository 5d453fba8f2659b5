import csv
from calendar import monthrange
from collections import OrderedDict
from datetime import datetime, time
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.core.cache import cache
from django.db.models import Count, Max, Sum
from django.db.models.functions import Coalesce, ExtractHour, TruncDate, TruncMonth
from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.permissions import RoleCapabilityPermission
from common.utils import local_day_bounds, to_money
from sales.models import Sale, SaleLine

ZERO = Decimal("0.00")


def _average(amount, count):
    return to_money(amount / count) if count else ZERO


def _percentage(part, whole):
    return round(part / whole * Decimal("100"), 2) if whole else ZERO


def completed_sales(start=None, end=None):
    qs = Sale.objects.filter(status=Sale.Status.COMPLETED)
    if start and end:
        qs = qs.filter(sold_at__gte=start, sold_at__lte=end)
    return qs


def completed_lines(start=None, end=None):
    qs = SaleLine.objects.filter(sale__status=Sale.Status.COMPLETED)
    if start and end:
        qs = qs.filter(sale__sold_at__gte=start, sale__sold_at__lte=end)
    return qs


def sales_overview(start=None, end=None, tz=None, limit=None):
    totals = completed_sales(start, end).aggregate(revenue=Coalesce(Sum("total"), ZERO), sale_count=Count("id"))
    items_sold = completed_lines(start, end).aggregate(items=Coalesce(Sum("quantity"), 0))["items"]
    sale_count = totals["sale_count"]
    return OrderedDict(
        revenue=to_money(totals["revenue"]),
        sale_count=sale_count,
        items_sold=items_sold,
        average_sale=_average(totals["revenue"], sale_count),
        average_items_per_sale=round(Decimal(items_sold) / sale_count, 2) if sale_count else ZERO,
    )


def daily_sales(start=None, end=None, tz=None, limit=None):
    rows = (
        completed_sales(start, end)
        .annotate(day=TruncDate("sold_at", tzinfo=tz))
        .values("day")
        .annotate(sale_count=Count("id"), revenue=Coalesce(Sum("total"), ZERO))
        .order_by("day")
    )
    return [
        OrderedDict(
            day=row["day"].isoformat(),
            sale_count=row["sale_count"],
            revenue=to_money(row["revenue"]),
            average_sale=_average(row["revenue"], row["sale_count"]),
        )
        for row in rows
    ]


def hourly_sales(start=None, end=None, tz=None, limit=None):
    rows = (
        completed_sales(start, end)
        .annotate(hour=ExtractHour("sold_at", tzinfo=tz))
        .values("hour")
        .annotate(sale_count=Count("id"), revenue=Coalesce(Sum("total"), ZERO))
        .order_by("hour")
    )
    return [
        OrderedDict(
            hour=row["hour"],
            label=f"{row['hour']:02d}:00",
            sale_count=row["sale_count"],
            revenue=to_money(row["revenue"]),
        )
        for row in rows
    ]


def monthly_sales(start=None, end=None, tz=None, limit=None):
    rows = (
        completed_sales(start, end)
        .annotate(month=TruncMonth("sold_at", tzinfo=tz))
        .values("month")
        .annotate(sale_count=Count("id"), revenue=Coalesce(Sum("total"), ZERO))
        .order_by("month")
    )
    items_by_month = {
        row["month"].strftime("%Y-%m"): row["items"]
        for row in completed_lines(start, end)
        .annotate(month=TruncMonth("sale__sold_at", tzinfo=tz))
        .values("month")
        .annotate(items=Coalesce(Sum("quantity"), 0))
    }
    result = []
    for row in rows:
        month = row["month"]
        days_in_month = monthrange(month.year, month.month)[1]
        result.append(
            OrderedDict(
                month=month.strftime("%Y-%m"),
                label=month.strftime("%B %Y"),
                sale_count=row["sale_count"],
                revenue=to_money(row["revenue"]),
                items_sold=items_by_month.get(month.strftime("%Y-%m"), 0),
                average_sale=_average(row["revenue"], row["sale_count"]),
                average_daily_revenue=to_money(row["revenue"] / days_in_month),
            )
        )
    return result


def top_products(start=None, end=None, tz=None, limit=10):
    rows = (
        completed_lines(start, end)
        .values("product_id", "product__code", "product__name")
        .annotate(
            quantity_sold=Coalesce(Sum("quantity"), 0),
            revenue=Coalesce(Sum("subtotal"), ZERO),
            sale_count=Count("sale", distinct=True),
        )
        .order_by("-quantity_sold", "-revenue")[:limit]
    )
    return [
        OrderedDict(
            product_id=str(row["product_id"]),
            code=row["product__code"],
            name=row["product__name"],
            quantity_sold=row["quantity_sold"],
            revenue=to_money(row["revenue"]),
            sale_count=row["sale_count"],
        )
        for row in rows
    ]


def top_customers(start=None, end=None, tz=None, limit=10):
    rows = (
        completed_sales(start, end)
        .filter(customer__isnull=False)
        .values("customer_id", "customer__code", "customer__name", "customer__customer_type")
        .annotate(sale_count=Count("id"), total_spent=Coalesce(Sum("total"), ZERO), last_purchase=Max("sold_at"))
        .order_by("-total_spent")[:limit]
    )
    return [
        OrderedDict(
            customer_id=str(row["customer_id"]),
            code=row["customer__code"],
            name=row["customer__name"],
            customer_type=row["customer__customer_type"],
            sale_count=row["sale_count"],
            total_spent=to_money(row["total_spent"]),
            average_sale=_average(row["total_spent"], row["sale_count"]),
            last_purchase=row["last_purchase"].isoformat(),
        )
        for row in rows
    ]


def payment_methods(start=None, end=None, tz=None, limit=None):
    rows = list(
        completed_sales(start, end)
        .values("payment_method")
        .annotate(sale_count=Count("id"), amount=Coalesce(Sum("total"), ZERO))
        .order_by("-amount")
    )
    grand_total = sum((row["amount"] for row in rows), ZERO)
    labels = dict(Sale.PaymentMethod.choices)
    return [
        OrderedDict(
            payment_method=row["payment_method"],
            label=labels.get(row["payment_method"], row["payment_method"]),
            sale_count=row["sale_count"],
            amount=to_money(row["amount"]),
            average_sale=_average(row["amount"], row["sale_count"]),
            percentage=_percentage(row["amount"], grand_total),
        )
        for row in rows
    ]


def cashier_performance(start=None, end=None, tz=None, limit=None):
    rows = (
        completed_sales(start, end)
        .values("cashier_id", "cashier__username", "cashier__first_name", "cashier__last_name")
        .annotate(sale_count=Count("id"), revenue=Coalesce(Sum("total"), ZERO))
        .order_by("-revenue")
    )
    return [
        OrderedDict(
            cashier_id=str(row["cashier_id"]),
            username=row["cashier__username"],
            name=f"{row['cashier__first_name']} {row['cashier__last_name']}".strip() or row["cashier__username"],
            sale_count=row["sale_count"],
            revenue=to_money(row["revenue"]),
            average_sale=_average(row["revenue"], row["sale_count"]),
        )
        for row in rows
    ]


REPORTS = OrderedDict(
    [
        ("overview", ("Overview", sales_overview)),
        ("daily-sales", ("Daily Trend", daily_sales)),
        ("hourly-sales", ("Hourly Pattern", hourly_sales)),
        ("monthly-sales", ("Monthly Trend", monthly_sales)),
        ("top-products", ("Top Products", top_products)),
        ("top-customers", ("Top Customers", top_customers)),
        ("payment-methods", ("Payment Methods", payment_methods)),
        ("cashier-performance", ("Cashier Performance", cashier_performance)),
    ]
)


def tabular(payload):
    """Flatten a report payload into rows; the overview becomes metric/value pairs."""
    if isinstance(payload, dict):
        return [OrderedDict(metric=key, value=value) for key, value in payload.items()]
    return list(payload)


def csv_response(filename, rows):
    response = HttpResponse(content_type="text/csv")
    response["Content-Disposition"] = f'attachment; filename="{filename}"'

    if not rows:
        return response

    writer = csv.DictWriter(response, fieldnames=list(rows[0].keys()))
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return response


def daily_summary(day=None, *, cashier=None):
    """Completed-sale totals for one local day, optionally for a single cashier."""
    day = day or timezone.localdate()
    start, end = local_day_bounds(day)
    qs = completed_sales(start, end)
    lines = completed_lines(start, end)
    if cashier is not None:
        qs = qs.filter(cashier=cashier)
        lines = lines.filter(sale__cashier=cashier)
    totals = qs.aggregate(revenue=Coalesce(Sum("total"), ZERO), sale_count=Count("id"))
    return OrderedDict(
        date=day.isoformat(),
        sale_count=totals["sale_count"],
        revenue=to_money(totals["revenue"]),
        items_sold=lines.aggregate(items=Coalesce(Sum("quantity"), 0))["items"],
        average_sale=_average(totals["revenue"], totals["sale_count"]),
    )


class BaseReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "reports.view"}
    cache_timeout = 60

    def _parse_timezone(self, tz_name):
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError({"timezone": "Invalid IANA timezone."})

    def _tz_name(self, request):
        return request.query_params.get("timezone") or timezone.get_current_timezone_name()

    def _parse_limit(self, request, default=10, minimum=1, maximum=1000):
        raw_limit = request.query_params.get("limit")
        if raw_limit is None:
            return default

        try:
            limit = int(raw_limit)
        except (TypeError, ValueError):
            raise ValidationError({"limit": f"Limit must be an integer between {minimum} and {maximum}."})

        if not minimum <= limit <= maximum:
            raise ValidationError({"limit": f"Limit must be between {minimum} and {maximum}."})
        return limit

    def _date_range(self, request, tz):
        date_from = parse_date(request.query_params.get("date_from", ""))
        date_to = parse_date(request.query_params.get("date_to", ""))
        if not date_from and not date_to:
            return None, None

        if not date_from or not date_to:
            raise ValidationError({"date_range": "Both date_from and date_to are required."})
        if date_from > date_to:
            raise ValidationError({"date_range": "date_from must be before or equal to date_to."})

        start = datetime.combine(date_from, time.min).replace(tzinfo=tz)
        end = datetime.combine(date_to, time.max).replace(tzinfo=tz)
        return start, end

    def _report_params(self, request):
        tz_name = self._tz_name(request)
        tz = self._parse_timezone(tz_name)
        start, end = self._date_range(request, tz)
        return tz_name, {"start": start, "end": end, "tz": tz, "limit": self._parse_limit(request)}

    def _cached(self, request, key, callback):
        cache_key = f"reports:{key}:{request.get_full_path()}"
        payload = cache.get(cache_key)
        if payload is None:
            payload = callback()
            cache.set(cache_key, payload, self.cache_timeout)
        return payload


class SalesReportView(BaseReportView):
    report_name = None

    def get(self, request):
        tz_name, params = self._report_params(request)
        _, build = REPORTS[self.report_name]
        payload = self._cached(request, self.report_name, lambda: build(**params))

        if request.query_params.get("format") == "csv":
            return csv_response(f"{self.report_name.replace('-', '_')}.csv", tabular(payload))
        if isinstance(payload, dict):
            return Response({"timezone": tz_name, **payload})
        return Response({"timezone": tz_name, "results": payload})


class OverviewReportView(SalesReportView):
    report_name = "overview"


class DailySalesReportView(SalesReportView):
    report_name = "daily-sales"


class HourlySalesReportView(SalesReportView):
    report_name = "hourly-sales"


class MonthlySalesReportView(SalesReportView):
    report_name = "monthly-sales"


class TopProductsReportView(SalesReportView):
    report_name = "top-products"


class TopCustomersReportView(SalesReportView):
    report_name = "top-customers"


class PaymentMethodReportView(SalesReportView):
    report_name = "payment-methods"


class CashierPerformanceReportView(SalesReportView):
    report_name = "cashier-performance"
