from django.db.models import Q, Sum
from django.db.models.functions import Coalesce
from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, capabilities_for_user, user_has_capability
from common.utils import local_day_bounds
from inventory.models import Category, Product
from inventory.serializers import CategorySerializer, ProductSerializer
from inventory.services import low_stock_products
from inventory.views import filter_products
from sales.exports import EXPORT_FORMATS, XLSX_CONTENT_TYPE, build_workbook, history_line_rows, history_rows
from sales.models import Customer, ProductRecommendation, Sale
from sales.recommendations import generate_recommendations
from sales.receipts import render_receipt_escpos, render_receipt_html, render_receipt_pdf
from sales.reports import csv_response, daily_summary, top_products
from sales.serializers import (
    CheckoutSerializer,
    CustomerSerializer,
    ProductRecommendationSerializer,
    RecommendationRunSerializer,
    SaleListSerializer,
    SaleSerializer,
)
from sales.services import process_checkout, void_sale

POS_CUSTOMER_LIMIT = 100
RECENT_SALES_LIMIT = 10
HISTORY_ORDERING = ("-sold_at", "-invoice_number")


def visible_sales(user, qs=None):
    """Cashiers only see their own sales unless they may view the full history."""
    qs = Sale.objects.all() if qs is None else qs
    if user_has_capability(user, "sales.history.view_all"):
        return qs
    return qs.filter(cashier=user)


def with_item_count(qs):
    # Aggregation drops Meta.ordering, so the history order is restated here.
    return qs.annotate(item_count=Coalesce(Sum("lines__quantity"), 0)).order_by(*HISTORY_ORDERING)


def filter_sales(qs, params):
    date_from = parse_date(params.get("date_from", ""))
    date_to = parse_date(params.get("date_to", ""))
    if date_from:
        qs = qs.filter(sold_at__gte=local_day_bounds(date_from)[0])
    if date_to:
        qs = qs.filter(sold_at__lte=local_day_bounds(date_to)[1])
    if params.get("status"):
        qs = qs.filter(status=params["status"])
    if params.get("payment_method"):
        qs = qs.filter(payment_method=params["payment_method"])
    if params.get("cashier"):
        qs = qs.filter(cashier_id=params["cashier"])
    if params.get("customer"):
        qs = qs.filter(customer_id=params["customer"])
    if params.get("search"):
        qs = qs.filter(Q(invoice_number__icontains=params["search"]) | Q(customer__name__icontains=params["search"]))
    return qs


class CustomerViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.manage",
        "retrieve": "customers.manage",
        "create": "customers.manage",
        "update": "customers.manage",
        "partial_update": "customers.manage",
        "sales": "sales.history.view",
    }

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(code__icontains=search) | Q(phone__icontains=search))
        if params.get("customer_type"):
            qs = qs.filter(customer_type=params["customer_type"])
        if params.get("is_active") in ("true", "false"):
            qs = qs.filter(is_active=params["is_active"] == "true")
        return qs

    def perform_create(self, serializer):
        customer = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="customer.create",
            entity="customer",
            entity_id=customer.id,
            after_snapshot=self.get_serializer(customer).data,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        customer = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="customer.update",
            entity="customer",
            entity_id=customer.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(customer).data,
        )

    @action(detail=True, methods=["get"], url_path="sales")
    def sales(self, request, pk=None):
        customer = self.get_object()
        qs = with_item_count(visible_sales(request.user, customer.sales.select_related("customer", "cashier")))
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(SaleListSerializer(page, many=True).data)
        return Response(SaleListSerializer(qs, many=True).data)


class SaleViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Sale.objects.select_related("customer", "cashier", "voided_by")
    serializer_class = SaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sales.history.view",
        "retrieve": "sales.history.view",
        "recent": "sales.history.view",
        "today": "sales.pos.access",
        "void": "sales.void",
        "receipt": "sales.history.view",
        "receipt_pdf": "sales.history.view",
        "receipt_escpos": "sales.history.view",
        "export": "sales.history.view",
    }

    def get_serializer_class(self):
        if self.action in ("list", "recent"):
            return SaleListSerializer
        return SaleSerializer

    def get_queryset(self):
        qs = visible_sales(self.request.user, super().get_queryset())
        if self.action in ("list", "recent"):
            return with_item_count(qs)
        return qs.prefetch_related("lines__product").order_by(*HISTORY_ORDERING)

    def filter_queryset(self, queryset):
        if self.action not in ("list", "export"):
            return queryset
        return filter_sales(queryset, self.request.query_params)

    @action(detail=False, methods=["get"], url_path="recent", pagination_class=None)
    def recent(self, request):
        """Latest completed-or-voided sales for the cashier screen, fixed size so not paginated."""
        qs = self.get_queryset()[:RECENT_SALES_LIMIT]
        return Response(self.get_serializer(qs, many=True).data)

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        """Filtered transaction history as CSV (one row per sale, or per line with ``detail=lines``) or xlsx."""
        export_format = request.query_params.get("format", "xlsx")
        if export_format not in EXPORT_FORMATS:
            raise ValidationError({"format": "Format must be csv or xlsx."})

        sales = list(self.filter_queryset(self.get_queryset()).select_related("customer", "cashier"))
        stamp = timezone.localtime().strftime("%Y%m%d_%H%M%S")
        if export_format == "csv":
            rows = history_line_rows(sales) if request.query_params.get("detail") == "lines" else history_rows(sales)
            return csv_response(f"transaction_history_{stamp}.csv", rows)

        date_from = request.query_params.get("date_from") or "start"
        date_to = request.query_params.get("date_to") or "today"
        workbook = build_workbook(
            [("Transactions", history_rows(sales)), ("Line Detail", history_line_rows(sales))],
            period=f"Period: {date_from} - {date_to}",
        )
        response = HttpResponse(workbook, content_type=XLSX_CONTENT_TYPE)
        response["Content-Disposition"] = f'attachment; filename="transaction_history_{stamp}.xlsx"'
        return response

    @action(detail=False, methods=["get"], url_path="daily-summary")
    def today(self, request):
        summary = daily_summary(cashier=request.user)
        summary["cashier"] = request.user.display_name
        return Response(summary)

    @action(detail=True, methods=["post"], url_path="void")
    def void(self, request, pk=None):
        sale = self.get_object()
        before_snapshot = {"status": sale.status}
        sale = void_sale(sale.id, actor=request.user)
        create_audit_log_from_request(
            request,
            action="sale.void",
            entity="sale",
            entity_id=sale.id,
            before_snapshot=before_snapshot,
            after_snapshot={"status": sale.status, "invoice_number": sale.invoice_number},
        )
        return Response(SaleSerializer(sale).data)

    @action(detail=True, methods=["get"], url_path="receipt")
    def receipt(self, request, pk=None):
        return HttpResponse(render_receipt_html(self.get_object()), content_type="text/html; charset=utf-8")

    @action(detail=True, methods=["get"], url_path="receipt/pdf")
    def receipt_pdf(self, request, pk=None):
        sale = self.get_object()
        response = HttpResponse(render_receipt_pdf(sale), content_type="application/pdf")
        response["Content-Disposition"] = f'attachment; filename="receipt-{sale.invoice_number}.pdf"'
        return response

    @action(detail=True, methods=["get"], url_path="receipt/escpos")
    def receipt_escpos(self, request, pk=None):
        sale = self.get_object()
        response = HttpResponse(render_receipt_escpos(sale), content_type="text/plain; charset=utf-8")
        response["Content-Disposition"] = f'attachment; filename="thermal-{sale.invoice_number}.txt"'
        return response


class ProductRecommendationViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.UpdateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    """Frequently-bought-together suggestions; supervisors read them, admins curate and regenerate them."""

    queryset = ProductRecommendation.objects.select_related("product", "recommended_product")
    serializer_class = ProductRecommendationSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "reports.view",
        "retrieve": "reports.view",
        "update": "recommendations.manage",
        "partial_update": "recommendations.manage",
        "destroy": "recommendations.manage",
        "generate": "recommendations.manage",
    }

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            qs = qs.filter(
                Q(product__name__icontains=search)
                | Q(product__code__icontains=search)
                | Q(recommended_product__name__icontains=search)
                | Q(recommended_product__code__icontains=search)
            )
        if params.get("product"):
            qs = qs.filter(product_id=params["product"])
        if params.get("category"):
            qs = qs.filter(product__category_id=params["category"])
        if params.get("is_active") in ("true", "false"):
            qs = qs.filter(is_active=params["is_active"] == "true")
        return qs

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        recommendation = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="recommendation.update",
            entity="recommendation",
            entity_id=recommendation.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(recommendation).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        instance_id = instance.id
        instance.delete()
        create_audit_log_from_request(
            self.request,
            action="recommendation.delete",
            entity="recommendation",
            entity_id=instance_id,
            before_snapshot=before_snapshot,
        )

    @action(detail=False, methods=["post"], url_path="generate")
    def generate(self, request):
        serializer = RecommendationRunSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        params = serializer.validated_data
        result = generate_recommendations(actor=request.user, **params)
        create_audit_log_from_request(
            request,
            action="recommendation.generate",
            entity="recommendation",
            after_snapshot={
                "date_from": params["date_from"],
                "date_to": params["date_to"],
                "min_support": params["min_support"],
                "min_confidence": params["min_confidence"],
                "category": params["category"].id if params["category"] else None,
                **result,
            },
        )
        return Response(result, status=status.HTTP_201_CREATED)


class CheckoutView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "sales.pos.access"}

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale = process_checkout(cashier=request.user, **serializer.validated_data)
        payload = SaleSerializer(Sale.objects.select_related("customer", "cashier").get(pk=sale.pk)).data
        create_audit_log_from_request(
            request,
            action="sale.create",
            entity="sale",
            entity_id=sale.id,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)


class PosPageView(APIView):
    """Everything the cashier screen needs on load."""

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "sales.pos.access"}

    def get(self, request):
        products = filter_products(
            Product.objects.filter(is_active=True, stock__gt=0).select_related("category"),
            request.query_params,
        )
        categories = Category.objects.filter(is_active=True)
        customers = Customer.objects.filter(is_active=True).order_by("name")[:POS_CUSTOMER_LIMIT]
        return Response(
            {
                "products": ProductSerializer(products, many=True).data,
                "categories": CategorySerializer(categories, many=True).data,
                "customers": CustomerSerializer(customers, many=True).data,
                "today": daily_summary(cashier=request.user),
                "payment_methods": [{"value": value, "label": label} for value, label in Sale.PaymentMethod.choices],
                "capabilities": capabilities_for_user(request.user),
            }
        )


class DashboardView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "sales.history.view"}

    def get(self, request):
        user = request.user
        if user_has_capability(user, "reports.view"):
            start, end = local_day_bounds(timezone.localdate())
            return Response(
                {
                    "scope": "store",
                    "today": daily_summary(),
                    "top_products_today": top_products(start, end, limit=5),
                    "low_stock_products": ProductSerializer(low_stock_products()[:20], many=True).data,
                    "recent_sales": SaleListSerializer(
                        with_item_count(Sale.objects.select_related("customer", "cashier"))[:RECENT_SALES_LIMIT],
                        many=True,
                    ).data,
                    "capabilities": capabilities_for_user(user),
                }
            )

        return Response(
            {
                "scope": "cashier",
                "today": daily_summary(cashier=user),
                "recent_sales": SaleListSerializer(
                    with_item_count(Sale.objects.filter(cashier=user).select_related("customer", "cashier"))[
                        :RECENT_SALES_LIMIT
                    ],
                    many=True,
                ).data,
                "capabilities": capabilities_for_user(user),
            }
        )
