import logging

from django.db import transaction
from django.db.models import F
from rest_framework.exceptions import ValidationError

from common.exceptions import BusinessRuleViolation
from common.utils import next_daily_code
from inventory.models import Product, StockLedgerEntry, Supplier

logger = logging.getLogger(__name__)

MANUAL_ADJUSTMENT_REFERENCE = "MANUAL_ADJUSTMENT"


def next_product_code(day=None):
    return next_daily_code(Product, "code", "PRD", day=day)


def next_supplier_code(day=None):
    return next_daily_code(Supplier, "code", "SUP", day=day)


def lock_products(product_ids):
    """Lock product rows for the current transaction, in primary-key order, keyed by id."""
    products = Product.objects.select_for_update().filter(id__in=set(product_ids)).order_by("id")
    return {product.id: product for product in products}


def record_stock_movement(product, *, direction, quantity, reason, actor, sale=None, reference="", note=""):
    """Apply one stock change to an already-locked product and append its ledger entry.

    ``quantity`` is the moved amount for ``in``/``out`` and the counted
    target level for ``adjustment``.
    """
    stock_before = product.stock
    if direction == StockLedgerEntry.Direction.IN:
        stock_after = stock_before + quantity
        moved = quantity
    elif direction == StockLedgerEntry.Direction.OUT:
        if quantity > stock_before:
            raise BusinessRuleViolation(
                f"Insufficient stock for {product.name}. Available stock: {stock_before}."
            )
        stock_after = stock_before - quantity
        moved = quantity
    elif direction == StockLedgerEntry.Direction.ADJUSTMENT:
        stock_after = quantity
        moved = abs(stock_after - stock_before)
    else:
        raise ValueError(f"Unknown stock direction: {direction}")

    product.stock = stock_after
    product.save(update_fields=["stock", "updated_at"])

    return StockLedgerEntry.objects.create(
        product=product,
        direction=direction,
        quantity=moved,
        stock_before=stock_before,
        stock_after=stock_after,
        reason=reason,
        sale=sale,
        reference=reference,
        note=note,
        actor=actor,
    )


def adjust_stock(product_id, *, direction, quantity, actor, note=""):
    if quantity is None or quantity < 0:
        raise ValidationError({"quantity": "Quantity cannot be negative."})
    if direction != StockLedgerEntry.Direction.ADJUSTMENT and quantity < 1:
        raise ValidationError({"quantity": "Quantity must be at least 1."})

    with transaction.atomic():
        product = lock_products([product_id]).get(product_id)
        if product is None:
            raise ValidationError({"product": "Product was not found."})
        entry = record_stock_movement(
            product,
            direction=direction,
            quantity=quantity,
            reason=StockLedgerEntry.Reason.MANUAL,
            actor=actor,
            reference=MANUAL_ADJUSTMENT_REFERENCE,
            note=note or "Manual stock update",
        )

    logger.info(
        "stock_adjusted direction=%s quantity=%s before=%s after=%s",
        entry.direction,
        entry.quantity,
        entry.stock_before,
        entry.stock_after,
        extra={"product_id": product.id, "actor_id": actor.pk},
    )
    return entry


@transaction.atomic
def create_product_with_stock(validated_data, *, actor):
    initial_stock = validated_data.pop("stock", 0) or 0
    if not validated_data.get("code"):
        validated_data["code"] = next_product_code()
    product = Product.objects.create(stock=0, **validated_data)
    if initial_stock:
        record_stock_movement(
            product,
            direction=StockLedgerEntry.Direction.IN,
            quantity=initial_stock,
            reason=StockLedgerEntry.Reason.INITIAL,
            actor=actor,
            reference=product.code,
            note="Initial stock",
        )
    return product


def low_stock_products():
    return Product.objects.filter(is_active=True, stock__lte=F("minimum_stock")).select_related("category").order_by("stock", "name")
