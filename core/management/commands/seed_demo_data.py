from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Category, Product, Supplier
from inventory.services import create_product_with_stock, next_supplier_code
from sales.models import Customer, Sale
from sales.services import next_customer_code, process_checkout


class Command(BaseCommand):
    help = "Seed demo catalog, users and one sale for local development."

    def _user(self, User, username, password, role, **extra):
        user, created = User.objects.get_or_create(
            username=username,
            defaults={"email": f"{username}@example.com", "role": role, "is_active": True, **extra},
        )
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        admin_user = self._user(User, "admin", "admin1234", User.Role.ADMIN, is_staff=True, is_superuser=True)
        self._user(User, "supervisor", "supervisor1234", User.Role.SUPERVISOR)
        cashier_user = self._user(User, "cashier", "cashier1234", User.Role.CASHIER)

        beverages, _ = Category.objects.get_or_create(name="Beverages")
        snacks, _ = Category.objects.get_or_create(name="Snacks")

        if not Supplier.objects.filter(name="Local Supplier").exists():
            Supplier.objects.create(code=next_supplier_code(), name="Local Supplier", phone="021-12345678", city="Jakarta")

        catalog = [
            ("DEMO-COLA-330", "Cola 330ml", beverages, Decimal("7500"), Decimal("5000"), 120),
            ("DEMO-TEA-500", "Iced Tea 500ml", beverages, Decimal("6000"), Decimal("4000"), 80),
            ("DEMO-CHIPS-75", "Potato Chips 75g", snacks, Decimal("10000"), Decimal("7000"), 4),
        ]
        products = []
        for code, name, category, sell_price, buy_price, stock in catalog:
            product = Product.objects.filter(code=code).first()
            if product is None:
                product = create_product_with_stock(
                    {
                        "code": code,
                        "name": name,
                        "category": category,
                        "sell_price": sell_price,
                        "buy_price": buy_price,
                        "stock": stock,
                    },
                    actor=admin_user,
                )
            products.append(product)

        customer = Customer.objects.filter(phone="081200000001").first()
        if customer is None:
            customer = Customer.objects.create(
                code=next_customer_code(),
                name="Demo Customer",
                phone="081200000001",
                customer_type=Customer.CustomerType.MEMBER,
            )

        if not Sale.objects.exists():
            process_checkout(
                cashier=cashier_user,
                items=[
                    {"product_id": products[0].id, "quantity": 2},
                    {"product_id": products[2].id, "quantity": 1},
                ],
                customer=customer,
                discount_percent=Decimal("10"),
                tax_percent=Decimal("11"),
                amount_paid=Decimal("30000"),
                payment_method=Sale.PaymentMethod.CASH,
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, supervisor/supervisor1234, cashier/cashier1234")
