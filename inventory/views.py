from django.db.models import Count, Q
from django.db.models.deletion import ProtectedError
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.exceptions import BusinessRuleViolation
from common.permissions import RoleCapabilityPermission
from inventory.models import Category, Product, StockLedgerEntry, Supplier
from inventory.serializers import (
    CategorySerializer,
    ProductLookupSerializer,
    ProductSerializer,
    StockAdjustmentSerializer,
    StockLedgerEntrySerializer,
    SupplierSerializer,
)
from inventory.services import adjust_stock, low_stock_products

MANAGE_ACTIONS = ["list", "retrieve", "create", "update", "partial_update", "destroy"]


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        instance_id = instance.id
        try:
            instance.delete()
        except ProtectedError as exc:
            raise BusinessRuleViolation(
                f"{self.audit_entity.capitalize()} is referenced by existing records; deactivate it instead."
            ) from exc
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.delete",
            entity=self.audit_entity,
            entity_id=instance_id,
            before_snapshot=before_snapshot,
        )


def filter_products(qs, params):
    search = params.get("search") or params.get("q")
    category_id = params.get("category")
    is_active = params.get("is_active")
    if search:
        qs = qs.filter(Q(name__icontains=search) | Q(code__icontains=search) | Q(brand__icontains=search))
    if category_id:
        qs = qs.filter(category_id=category_id)
    if is_active in ("true", "false"):
        qs = qs.filter(is_active=is_active == "true")
    if params.get("in_stock") == "true":
        qs = qs.filter(stock__gt=0)
    return qs


class CategoryViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Category.objects.filter(is_active=True).annotate(product_count=Count("products", filter=Q(products__is_active=True)))
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "catalog.view", "retrieve": "catalog.view"}


class ProductViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Product.objects.filter(is_active=True).select_related("category")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "search": "catalog.view",
        "low_stock": "catalog.view",
        "stock_history": "catalog.view",
    }

    def get_queryset(self):
        return filter_products(super().get_queryset(), self.request.query_params)

    @action(detail=False, methods=["get"], url_path="search")
    def search(self, request):
        term = (request.query_params.get("q") or "").strip()
        qs = self.get_queryset().filter(stock__gt=0)
        if term:
            qs = qs.filter(Q(name__icontains=term) | Q(code__icontains=term))
        return Response(ProductLookupSerializer(qs[:10], many=True).data)

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        return Response(self.get_serializer(low_stock_products(), many=True).data)

    @action(detail=True, methods=["get"], url_path="stock-history")
    def stock_history(self, request, pk=None):
        product = self.get_object()
        entries = product.ledger_entries.select_related("actor", "sale")
        page = self.paginate_queryset(entries)
        if page is not None:
            return self.get_paginated_response(StockLedgerEntrySerializer(page, many=True).data)
        return Response(StockLedgerEntrySerializer(entries, many=True).data)


class SupplierViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Supplier.objects.filter(is_active=True)
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "catalog.view", "retrieve": "catalog.view"}


class AdminCategoryViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Category.objects.annotate(product_count=Count("products"))
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "catalog.manage" for action in MANAGE_ACTIONS}
    audit_entity = "category"


class AdminProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.select_related("category")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {**{action: "catalog.manage" for action in MANAGE_ACTIONS}, "adjust": "stock.adjust"}
    audit_entity = "product"

    def get_queryset(self):
        return filter_products(super().get_queryset(), self.request.query_params)

    @action(detail=True, methods=["post"], url_path="adjust-stock")
    def adjust(self, request, pk=None):
        product = self.get_object()
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry = adjust_stock(
            product.id,
            direction=serializer.validated_data["direction"],
            quantity=serializer.validated_data["quantity"],
            actor=request.user,
            note=serializer.validated_data["note"],
        )
        create_audit_log_from_request(
            request,
            action="stock.adjustment",
            entity="product",
            entity_id=product.id,
            before_snapshot={"stock": entry.stock_before},
            after_snapshot={"stock": entry.stock_after, "ledger_entry_id": entry.id},
        )
        return Response(StockLedgerEntrySerializer(entry).data, status=status.HTTP_201_CREATED)


class AdminSupplierViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Supplier.objects.all()
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {action: "catalog.manage" for action in MANAGE_ACTIONS}
    audit_entity = "supplier"

    def get_queryset(self):
        qs = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(code__icontains=search) | Q(city__icontains=search))
        return qs


class StockLedgerViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockLedgerEntry.objects.select_related("product", "actor", "sale")
    serializer_class = StockLedgerEntrySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "stock.adjust", "retrieve": "stock.adjust"}

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("product"):
            qs = qs.filter(product_id=params["product"])
        if params.get("direction"):
            qs = qs.filter(direction=params["direction"])
        if params.get("reason"):
            qs = qs.filter(reason=params["reason"])
        if params.get("reference"):
            qs = qs.filter(reference=params["reference"])
        return qs
