from rest_framework import serializers

from inventory.models import Category, Product, StockLedgerEntry, Supplier
from inventory.services import create_product_with_stock, next_supplier_code


class CategorySerializer(serializers.ModelSerializer):
    product_count = serializers.IntegerField(read_only=True, required=False)

    class Meta:
        model = Category
        fields = ["id", "name", "description", "is_active", "product_count", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class SupplierSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=50, required=False, allow_blank=True)

    class Meta:
        model = Supplier
        fields = [
            "id",
            "code",
            "name",
            "contact_name",
            "phone",
            "email",
            "address",
            "city",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_code(self, value):
        value = value.strip()
        if value:
            qs = Supplier.objects.filter(code=value)
            if self.instance is not None:
                qs = qs.exclude(pk=self.instance.pk)
            if qs.exists():
                raise serializers.ValidationError("A supplier with this code already exists.")
        return value

    def create(self, validated_data):
        if not validated_data.get("code"):
            validated_data["code"] = next_supplier_code()
        return super().create(validated_data)

    def update(self, instance, validated_data):
        if not validated_data.get("code", instance.code):
            validated_data.pop("code")
        return super().update(instance, validated_data)


class ProductSerializer(serializers.ModelSerializer):
    """Product as exposed to the catalog and admin screens.

    ``stock`` is writable only on create, where it becomes the opening
    ledger entry. Afterwards stock moves only through sales, voids and
    manual adjustments.
    """

    code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    category_name = serializers.CharField(source="category.name", read_only=True, default=None)
    stock = serializers.IntegerField(min_value=0, required=False, default=0)
    is_low_stock = serializers.BooleanField(read_only=True)
    margin_pct = serializers.DecimalField(max_digits=8, decimal_places=2, read_only=True)

    class Meta:
        model = Product
        fields = [
            "id",
            "code",
            "name",
            "description",
            "category",
            "category_name",
            "sell_price",
            "buy_price",
            "stock",
            "minimum_stock",
            "unit",
            "brand",
            "is_active",
            "is_low_stock",
            "margin_pct",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_code(self, value):
        value = value.strip()
        if value:
            qs = Product.objects.filter(code=value)
            if self.instance is not None:
                qs = qs.exclude(pk=self.instance.pk)
            if qs.exists():
                raise serializers.ValidationError("A product with this code already exists.")
        return value

    def validate_sell_price(self, value):
        if value < 0:
            raise serializers.ValidationError("Sell price cannot be negative.")
        return value

    def validate_buy_price(self, value):
        if value is not None and value < 0:
            raise serializers.ValidationError("Buy price cannot be negative.")
        return value

    def validate(self, attrs):
        if self.instance is not None:
            stock = attrs.pop("stock", None)
            if "stock" in self.initial_data and stock != self.instance.stock:
                raise serializers.ValidationError({"stock": "Stock can only be changed through a stock adjustment."})
        # Form submissions send empty strings for optional relations and prices.
        for field_name in ("category", "buy_price"):
            if self.initial_data.get(field_name, None) == "":
                attrs[field_name] = None
        return attrs

    def create(self, validated_data):
        return create_product_with_stock(validated_data, actor=self.context["request"].user)

    def update(self, instance, validated_data):
        if not validated_data.get("code", instance.code):
            validated_data.pop("code")
        return super().update(instance, validated_data)


class ProductLookupSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = ["id", "code", "name", "sell_price", "stock", "unit"]
        read_only_fields = fields


class StockLedgerEntrySerializer(serializers.ModelSerializer):
    product_code = serializers.CharField(source="product.code", read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    actor_username = serializers.CharField(source="actor.username", read_only=True)
    invoice_number = serializers.CharField(source="sale.invoice_number", read_only=True, default=None)

    class Meta:
        model = StockLedgerEntry
        fields = [
            "id",
            "product",
            "product_code",
            "product_name",
            "direction",
            "quantity",
            "stock_before",
            "stock_after",
            "reason",
            "sale",
            "invoice_number",
            "reference",
            "note",
            "actor",
            "actor_username",
            "created_at",
        ]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    direction = serializers.ChoiceField(choices=StockLedgerEntry.Direction.choices)
    quantity = serializers.IntegerField(min_value=0)
    note = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        if attrs["direction"] != StockLedgerEntry.Direction.ADJUSTMENT and attrs["quantity"] < 1:
            raise serializers.ValidationError({"quantity": "Quantity must be at least 1."})
        return attrs
