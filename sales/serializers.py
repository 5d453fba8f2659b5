from decimal import Decimal

from rest_framework import serializers

from inventory.models import Category
from sales.models import Customer, ProductRecommendation, Sale, SaleLine
from sales.recommendations import confidence_level
from sales.services import next_customer_code


class CustomerSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=50, required=False, allow_blank=True)

    class Meta:
        model = Customer
        fields = [
            "id",
            "code",
            "name",
            "phone",
            "email",
            "address",
            "birth_date",
            "gender",
            "customer_type",
            "joined_at",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_code(self, value):
        value = value.strip()
        if value:
            qs = Customer.objects.filter(code=value)
            if self.instance is not None:
                qs = qs.exclude(pk=self.instance.pk)
            if qs.exists():
                raise serializers.ValidationError("A customer with this code already exists.")
        return value

    def create(self, validated_data):
        if not validated_data.get("code"):
            validated_data["code"] = next_customer_code()
        return super().create(validated_data)

    def update(self, instance, validated_data):
        if not validated_data.get("code", instance.code):
            validated_data.pop("code")
        return super().update(instance, validated_data)


class SaleLineSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = SaleLine
        fields = [
            "id",
            "product",
            "product_code",
            "product_name",
            "quantity",
            "unit_price",
            "discount",
            "subtotal",
            "note",
        ]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    lines = SaleLineSerializer(many=True, read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    cashier_name = serializers.CharField(source="cashier.display_name", read_only=True)
    voided_by_name = serializers.CharField(source="voided_by.display_name", read_only=True, default=None)
    payment_method_label = serializers.CharField(source="get_payment_method_display", read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "cashier",
            "cashier_name",
            "gross_amount",
            "discount_percent",
            "discount_amount",
            "tax_percent",
            "tax_amount",
            "total",
            "amount_paid",
            "change",
            "payment_method",
            "payment_method_label",
            "notes",
            "status",
            "sold_at",
            "voided_at",
            "voided_by",
            "voided_by_name",
            "lines",
        ]
        read_only_fields = fields


class SaleListSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    cashier_name = serializers.CharField(source="cashier.display_name", read_only=True)
    item_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "cashier",
            "cashier_name",
            "total",
            "payment_method",
            "status",
            "item_count",
            "sold_at",
        ]
        read_only_fields = fields


class CheckoutLineSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, default=0)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class CheckoutSerializer(serializers.Serializer):
    items = CheckoutLineSerializer(many=True, allow_empty=False)
    customer = serializers.PrimaryKeyRelatedField(
        queryset=Customer.objects.filter(is_active=True), required=False, allow_null=True, default=None
    )
    discount_percent = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False, default=0)
    discount_amount = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=0, required=False, default=0)
    tax_percent = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=0, max_value=100, required=False, default=0)
    amount_paid = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=0)
    payment_method = serializers.ChoiceField(choices=Sale.PaymentMethod.choices)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ProductRecommendationSerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    recommended_product_code = serializers.CharField(source="recommended_product.code", read_only=True)
    recommended_product_name = serializers.CharField(source="recommended_product.name", read_only=True)
    recommended_product_price = serializers.DecimalField(
        source="recommended_product.sell_price", max_digits=12, decimal_places=2, read_only=True
    )
    recommended_product_stock = serializers.IntegerField(source="recommended_product.stock", read_only=True)
    confidence_level = serializers.SerializerMethodField()

    class Meta:
        model = ProductRecommendation
        fields = [
            "id",
            "product",
            "product_code",
            "product_name",
            "recommended_product",
            "recommended_product_code",
            "recommended_product_name",
            "recommended_product_price",
            "recommended_product_stock",
            "score",
            "confidence_level",
            "support",
            "lift",
            "co_occurrence",
            "analysed_at",
            "is_active",
            "note",
        ]
        read_only_fields = [
            "id",
            "product",
            "recommended_product",
            "score",
            "support",
            "lift",
            "co_occurrence",
            "analysed_at",
        ]

    def get_confidence_level(self, obj):
        return confidence_level(obj.score)


class RecommendationRunSerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()
    min_support = serializers.DecimalField(max_digits=4, decimal_places=3, min_value=Decimal("0.01"), max_value=1)
    min_confidence = serializers.DecimalField(max_digits=4, decimal_places=3, min_value=Decimal("0.01"), max_value=1)
    category = serializers.PrimaryKeyRelatedField(
        queryset=Category.objects.all(), required=False, allow_null=True, default=None
    )

    def validate(self, attrs):
        if attrs["date_to"] < attrs["date_from"]:
            raise serializers.ValidationError({"date_to": "End date cannot be before the start date."})
        return attrs
