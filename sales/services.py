import logging
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.exceptions import BusinessRuleViolation, PersistenceFailure
from common.permissions import user_has_capability
from common.utils import format_currency, highest_daily_serial, next_daily_code, to_money
from inventory.models import StockLedgerEntry
from inventory.services import lock_products, record_stock_movement
from sales.models import Customer, InvoiceSequence, Sale, SaleLine

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
PERCENT_QUANT = Decimal("0.01")


def next_invoice_number(day=None):
    """Allocate the next ``INV-YYYYMMDD-NNNN`` for ``day``.

    The day's counter row is locked until the surrounding transaction ends,
    so concurrent checkouts queue on it instead of reading the same serial.
    A day's counter starts from the highest invoice already stored.
    """
    day = day or timezone.localdate()
    stem = f"{settings.INVOICE_PREFIX}-{day:%Y%m%d}-"
    with transaction.atomic():
        sequence, _ = InvoiceSequence.objects.get_or_create(
            day=day, defaults={"last_serial": highest_daily_serial(Sale, "invoice_number", stem)}
        )
        sequence = InvoiceSequence.objects.select_for_update().get(pk=sequence.pk)
        sequence.last_serial += 1
        sequence.save(update_fields=["last_serial"])
    return f"{stem}{sequence.last_serial:04d}"


def next_customer_code(day=None):
    return next_daily_code(Customer, "code", "CUST", day=day)


def _percent(value, field_name):
    value = Decimal(str(value or 0))
    if value < 0 or value > HUNDRED:
        raise ValidationError({field_name: "Percentage must be between 0 and 100."})
    return value


def calculate_sale_totals(lines, discount_percent=0, discount_amount=0, tax_percent=0):
    """Price a basket without touching the database.

    ``lines`` is a sequence of mappings with ``quantity``, ``unit_price`` and
    an optional ``discount``. An explicit nominal discount wins over the
    percentage; the returned ``discount_percent`` is always the effective one.
    Money values are quantized to 0.01 with ROUND_HALF_UP.
    """
    if not lines:
        raise ValidationError({"items": "At least one item is required."})

    priced_lines = []
    gross = Decimal("0.00")
    for position, line in enumerate(lines, start=1):
        quantity = line["quantity"]
        unit_price = to_money(line["unit_price"])
        line_discount = to_money(line.get("discount") or 0)
        if quantity is None or quantity < 1:
            raise ValidationError({"items": f"Line {position}: quantity must be at least 1."})
        if unit_price < 0:
            raise ValidationError({"items": f"Line {position}: unit price cannot be negative."})
        if line_discount < 0:
            raise ValidationError({"items": f"Line {position}: discount cannot be negative."})
        line_gross = to_money(unit_price * quantity)
        if line_discount > line_gross:
            raise ValidationError({"items": f"Line {position}: discount cannot exceed quantity x price."})
        subtotal = line_gross - line_discount
        priced_lines.append({**line, "unit_price": unit_price, "discount": line_discount, "subtotal": subtotal})
        gross += subtotal

    discount_percent = _percent(discount_percent, "discount_percent")
    tax_percent = _percent(tax_percent, "tax_percent")
    discount_amount = to_money(discount_amount)
    if discount_amount < 0:
        raise ValidationError({"discount_amount": "Discount cannot be negative."})

    if discount_amount > 0:
        discount_percent = (discount_amount / gross * HUNDRED).quantize(PERCENT_QUANT, rounding=ROUND_HALF_UP) if gross else Decimal("0.00")
    else:
        discount_amount = to_money(gross * discount_percent / HUNDRED)
    if discount_amount > gross:
        raise ValidationError({"discount_amount": "Discount cannot exceed the sale amount."})

    net_amount = gross - discount_amount
    tax_amount = to_money(net_amount * tax_percent / HUNDRED)

    return {
        "lines": priced_lines,
        "gross_amount": to_money(gross),
        "discount_percent": discount_percent,
        "discount_amount": discount_amount,
        "net_amount": to_money(net_amount),
        "tax_percent": tax_percent,
        "tax_amount": tax_amount,
        "total": to_money(net_amount + tax_amount),
    }


def _check_stock(products, items):
    requested = defaultdict(int)
    for item in items:
        requested[item["product_id"]] += item["quantity"]

    for product_id, quantity in requested.items():
        product = products.get(product_id)
        if product is None:
            raise BusinessRuleViolation("One of the selected products no longer exists.")
        if not product.is_active:
            raise BusinessRuleViolation(f"{product.name} is no longer available for sale.")
        if product.stock < quantity:
            raise BusinessRuleViolation(f"Insufficient stock for {product.name}. Available stock: {product.stock}.")



def _check_prices(products, items):
    for position, item in enumerate(items, start=1):
        expected = item.get("unit_price")
        product = products[item["product_id"]]
        if expected is not None and to_money(expected) != product.sell_price:
            raise ValidationError(
                {"items": f"Line {position}: the price of {product.name} is now {format_currency(product.sell_price)}."}
            )


def process_checkout(
    *,
    cashier,
    items,
    customer=None,
    discount_percent=0,
    discount_amount=0,
    tax_percent=0,
    amount_paid,
    payment_method,
    notes="",
):
    """Record a completed sale, its lines and the stock it consumes as one atomic unit.

    Each item is a mapping with ``product_id``, ``quantity`` and optional
    ``discount``, ``note`` and ``unit_price``. Unit prices come from the
    locked product rows; a client price that no longer matches is rejected.
    """
    if not items:
        raise ValidationError({"items": "At least one item is required."})
    if payment_method not in Sale.PaymentMethod.values:
        raise ValidationError({"payment_method": f"Unsupported payment method: {payment_method}."})
    amount_paid = to_money(amount_paid)
    if amount_paid < 0:
        raise ValidationError({"amount_paid": "Amount paid cannot be negative."})

    try:
        with transaction.atomic():
            products = lock_products(item["product_id"] for item in items)
            _check_stock(products, items)
            _check_prices(products, items)

            totals = calculate_sale_totals(
                [
                    {
                        "product": products[item["product_id"]],
                        "quantity": item["quantity"],
                        "unit_price": products[item["product_id"]].sell_price,
                        "discount": item.get("discount") or 0,
                        "note": item.get("note") or "",
                    }
                    for item in items
                ],
                discount_percent=discount_percent,
                discount_amount=discount_amount,
                tax_percent=tax_percent,
            )
            if amount_paid < totals["total"]:
                raise BusinessRuleViolation(
                    f"Insufficient payment. Total payable is {format_currency(totals['total'])}."
                )

            sold_at = timezone.now()
            sale = Sale.objects.create(
                invoice_number=next_invoice_number(timezone.localdate(sold_at)),
                customer=customer,
                cashier=cashier,
                gross_amount=totals["gross_amount"],
                discount_percent=totals["discount_percent"],
                discount_amount=totals["discount_amount"],
                tax_percent=totals["tax_percent"],
                tax_amount=totals["tax_amount"],
                total=totals["total"],
                amount_paid=amount_paid,
                change=amount_paid - totals["total"],
                payment_method=payment_method,
                notes=notes or "",
                status=Sale.Status.COMPLETED,
                sold_at=sold_at,
            )
            for position, line in enumerate(totals["lines"], start=1):
                SaleLine.objects.create(
                    sale=sale,
                    product=line["product"],
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    discount=line["discount"],
                    subtotal=line["subtotal"],
                    position=position,
                    note=line["note"],
                )
                record_stock_movement(
                    line["product"],
                    direction=StockLedgerEntry.Direction.OUT,
                    quantity=line["quantity"],
                    reason=StockLedgerEntry.Reason.SALE,
                    actor=cashier,
                    sale=sale,
                    reference=sale.invoice_number,
                )
    except DatabaseError as exc:
        logger.exception("checkout_persistence_failed", extra={"actor_id": cashier.pk})
        raise PersistenceFailure() from exc

    logger.info(
        "checkout_completed total=%s lines=%s payment_method=%s",
        sale.total,
        len(items),
        sale.payment_method,
        extra={"sale_id": sale.id, "invoice_number": sale.invoice_number, "actor_id": cashier.pk},
    )
    return sale


def void_sale(sale_id, *, actor):
    """Void a completed sale and put every sold unit back into stock."""
    if not user_has_capability(actor, "sales.void"):
        raise PermissionDenied("Only administrators can void sales.")

    try:
        with transaction.atomic():
            sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
            if sale is None:
                raise NotFound("Sale was not found.")
            if sale.status != Sale.Status.COMPLETED:
                raise BusinessRuleViolation(f"Sale {sale.invoice_number} has already been voided.")

            lines = list(sale.lines.all())
            products = lock_products(line.product_id for line in lines)
            for line in lines:
                record_stock_movement(
                    products[line.product_id],
                    direction=StockLedgerEntry.Direction.IN,
                    quantity=line.quantity,
                    reason=StockLedgerEntry.Reason.VOID,
                    actor=actor,
                    sale=sale,
                    reference=sale.invoice_number,
                    note=f"Void {sale.invoice_number}",
                )

            sale.status = Sale.Status.VOIDED
            sale.voided_at = timezone.now()
            sale.voided_by = actor
            sale.save(update_fields=["status", "voided_at", "voided_by", "updated_at"])
    except DatabaseError as exc:
        logger.exception("void_persistence_failed", extra={"sale_id": sale_id, "actor_id": actor.pk})
        raise PersistenceFailure() from exc

    logger.info(
        "sale_voided lines=%s",
        len(lines),
        extra={"sale_id": sale.id, "invoice_number": sale.invoice_number, "actor_id": actor.pk},
    )
    return sale
