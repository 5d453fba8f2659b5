import uuid

from django.db import models

from core.models import User
from inventory.models import AppendOnlyError, Product


class Customer(models.Model):
    class CustomerType(models.TextChoices):
        GENERAL = "general", "General"
        MEMBER = "member", "Member"
        VIP = "vip", "VIP"

    class Gender(models.TextChoices):
        MALE = "male", "Male"
        FEMALE = "female", "Female"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    phone = models.CharField(max_length=20, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    address = models.TextField(blank=True, default="")
    birth_date = models.DateField(null=True, blank=True)
    gender = models.CharField(max_length=8, choices=Gender.choices, blank=True, default="")
    customer_type = models.CharField(max_length=16, choices=CustomerType.choices, default=CustomerType.GENERAL)
    joined_at = models.DateField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active", "name"], name="customer_active_name_idx"),
            models.Index(fields=["phone"], name="customer_phone_idx"),
        ]

    def __str__(self):
        return f"{self.code} - {self.name}"


class Sale(models.Model):
    class Status(models.TextChoices):
        COMPLETED = "completed", "Completed"
        VOIDED = "voided", "Voided"

    class PaymentMethod(models.TextChoices):
        CASH = "cash", "Cash"
        DEBIT_CARD = "debit_card", "Debit card"
        CREDIT_CARD = "credit_card", "Credit card"
        TRANSFER = "transfer", "Bank transfer"
        QRIS = "qris", "QRIS"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=50, unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, null=True, blank=True, related_name="sales")
    cashier = models.ForeignKey(User, on_delete=models.PROTECT, related_name="sales")
    gross_amount = models.DecimalField(max_digits=14, decimal_places=2)
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    tax_percent = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=14, decimal_places=2)
    amount_paid = models.DecimalField(max_digits=14, decimal_places=2)
    change = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    notes = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.COMPLETED)
    sold_at = models.DateTimeField()
    voided_at = models.DateTimeField(null=True, blank=True)
    voided_by = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="voided_sales")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-sold_at"]
        indexes = [
            models.Index(fields=["status", "sold_at"], name="sale_status_sold_idx"),
            models.Index(fields=["cashier", "sold_at"], name="sale_cashier_sold_idx"),
            models.Index(fields=["customer", "sold_at"], name="sale_customer_sold_idx"),
            models.Index(fields=["payment_method"], name="sale_payment_method_idx"),
        ]

    def __str__(self):
        return self.invoice_number


class SaleLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="lines")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="sale_lines")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    subtotal = models.DecimalField(max_digits=14, decimal_places=2)
    position = models.PositiveIntegerField(default=0)
    note = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["sale"], name="saleline_sale_idx"),
            models.Index(fields=["product"], name="saleline_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name="saleline_quantity_positive"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("Sale lines cannot be modified; void the sale instead.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Sale lines cannot be deleted; void the sale instead.")


class InvoiceSequence(models.Model):
    """Last invoice serial handed out for one local business day."""

    day = models.DateField(unique=True)
    last_serial = models.PositiveIntegerField(default=0)

    def __str__(self):
        return f"{self.day:%Y%m%d} #{self.last_serial}"


class ProductRecommendation(models.Model):
    """Customers who bought ``product`` also bought ``recommended_product``, mined from sale baskets."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="recommendations")
    recommended_product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="recommended_with")
    score = models.DecimalField(max_digits=5, decimal_places=4)
    support = models.DecimalField(max_digits=5, decimal_places=4)
    lift = models.DecimalField(max_digits=8, decimal_places=4)
    co_occurrence = models.PositiveIntegerField()
    analysed_at = models.DateTimeField()
    is_active = models.BooleanField(default=True)
    note = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-score", "-co_occurrence"]
        indexes = [
            models.Index(fields=["product", "is_active"], name="recommendation_product_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["product", "recommended_product"], name="recommendation_unique_pair"),
        ]

    def __str__(self):
        return f"{self.product_id} -> {self.recommended_product_id}"
