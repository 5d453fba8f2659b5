from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import BusinessRuleViolation
from core.models import AuditLog
from inventory.models import AppendOnlyError, Category, Product, StockLedgerEntry, Supplier
from inventory.services import adjust_stock, next_product_code, record_stock_movement


class CatalogAccessTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="catalog-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="catalog-cashier", password="pass1234", role="cashier")
        self.category = Category.objects.create(name="Beverages")
        self.active = Product.objects.create(
            code="P-ACTIVE",
            name="Cola",
            category=self.category,
            sell_price=Decimal("7500.00"),
            stock=10,
        )
        self.inactive = Product.objects.create(
            code="P-OLD",
            name="Old Cola",
            sell_price=Decimal("5000.00"),
            stock=10,
            is_active=False,
        )

    def test_cashier_lists_only_active_products(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertIn(str(self.active.id), ids)
        self.assertNotIn(str(self.inactive.id), ids)

    def test_product_search_matches_code_and_name(self):
        self.client.force_authenticate(user=self.cashier)

        by_name = self.client.get("/api/v1/products/search/?q=col")
        by_code = self.client.get("/api/v1/products/search/?q=P-ACT")

        self.assertEqual(by_name.status_code, 200)
        self.assertEqual([item["code"] for item in by_name.json()], ["P-ACTIVE"])
        self.assertEqual([item["code"] for item in by_code.json()], ["P-ACTIVE"])

    def test_cashier_cannot_create_products(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/admin/products/",
            {"name": "Forbidden", "sell_price": "1000.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_low_stock_lists_products_at_or_below_minimum(self):
        self.active.stock = 5
        self.active.save(update_fields=["stock"])
        Product.objects.create(code="P-FULL", name="Full", sell_price=Decimal("1.00"), stock=50)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/products/low-stock/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["code"] for item in response.json()], ["P-ACTIVE"])


class AdminProductTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="product-admin", password="pass1234", role="admin")
        self.client.force_authenticate(user=self.admin)

    def test_create_product_generates_code_and_records_initial_stock(self):
        response = self.client.post(
            "/api/v1/admin/products/",
            {"name": "Iced Tea", "sell_price": "6000.00", "buy_price": "4000.00", "stock": 25},
            format="json",
            HTTP_X_REQUEST_ID="req-product",
        )

        self.assertEqual(response.status_code, 201)
        product = Product.objects.get(id=response.json()["id"])
        self.assertEqual(product.code, f"PRD{timezone.localdate():%Y%m%d}001")
        self.assertEqual(product.stock, 25)
        entry = product.ledger_entries.get()
        self.assertEqual(entry.direction, StockLedgerEntry.Direction.IN)
        self.assertEqual(entry.reason, StockLedgerEntry.Reason.INITIAL)
        self.assertEqual((entry.stock_before, entry.stock_after), (0, 25))
        self.assertEqual(entry.actor, self.admin)
        self.assertTrue(AuditLog.objects.filter(action="product.create", request_id="req-product").exists())

    def test_product_code_sequence_continues_from_highest_serial(self):
        stem = f"PRD{timezone.localdate():%Y%m%d}"
        Product.objects.create(code=f"{stem}001", name="A", sell_price=Decimal("1.00"))
        Product.objects.create(code=f"{stem}007", name="B", sell_price=Decimal("1.00"))

        self.assertEqual(next_product_code(), f"{stem}008")

    def test_update_cannot_change_stock_directly(self):
        product = Product.objects.create(code="P-STOCK", name="Stocked", sell_price=Decimal("100.00"), stock=3)

        response = self.client.patch(f"/api/v1/admin/products/{product.id}/", {"stock": 99}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("stock", response.json()["errors"])
        product.refresh_from_db()
        self.assertEqual(product.stock, 3)

    def test_update_price_is_audited(self):
        product = Product.objects.create(code="P-PRICE", name="Priced", sell_price=Decimal("100.00"))

        response = self.client.patch(f"/api/v1/admin/products/{product.id}/", {"sell_price": "150.00"}, format="json")

        self.assertEqual(response.status_code, 200)
        log = AuditLog.objects.get(action="product.update", entity_id=product.id)
        self.assertEqual(log.before_snapshot["sell_price"], "100.00")
        self.assertEqual(log.after_snapshot["sell_price"], "150.00")

    def test_negative_sell_price_is_rejected(self):
        response = self.client.post(
            "/api/v1/admin/products/",
            {"name": "Broken", "sell_price": "-1.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("sell_price", response.json()["errors"])

    def test_deleting_product_with_history_is_rejected(self):
        product = Product.objects.create(code="P-HIST", name="History", sell_price=Decimal("100.00"))
        adjust_stock(product.id, direction="in", quantity=5, actor=self.admin)

        response = self.client.delete(f"/api/v1/admin/products/{product.id}/")

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "business_rule_violation")
        self.assertTrue(Product.objects.filter(id=product.id).exists())

    def test_supplier_code_is_generated(self):
        response = self.client.post("/api/v1/admin/suppliers/", {"name": "Local Supplier", "city": "Bandung"}, format="json")

        self.assertEqual(response.status_code, 201)
        supplier = Supplier.objects.get(id=response.json()["id"])
        self.assertEqual(supplier.code, f"SUP{timezone.localdate():%Y%m%d}001")


class StockAdjustmentTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="stock-admin", password="pass1234", role="admin")
        self.supervisor = self.user_model.objects.create_user(username="stock-sup", password="pass1234", role="supervisor")
        self.product = Product.objects.create(code="P-ADJ", name="Adjustable", sell_price=Decimal("1000.00"), stock=10)

    def _adjust(self, user, payload):
        self.client.force_authenticate(user=user)
        return self.client.post(f"/api/v1/admin/products/{self.product.id}/adjust-stock/", payload, format="json")

    def test_stock_in_adds_quantity(self):
        response = self._adjust(self.admin, {"direction": "in", "quantity": 5, "note": "Delivery"})

        self.assertEqual(response.status_code, 201)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 15)
        entry = StockLedgerEntry.objects.get(product=self.product)
        self.assertEqual(entry.reference, "MANUAL_ADJUSTMENT")
        self.assertEqual(entry.note, "Delivery")
        self.assertTrue(AuditLog.objects.filter(action="stock.adjustment", entity_id=self.product.id).exists())

    def test_stock_out_below_zero_is_rejected(self):
        response = self._adjust(self.admin, {"direction": "out", "quantity": 11})

        self.assertEqual(response.status_code, 422)
        self.assertIn("Insufficient stock", response.json()["message"])
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)
        self.assertFalse(StockLedgerEntry.objects.exists())

    def test_adjustment_sets_absolute_stock_and_records_difference(self):
        response = self._adjust(self.admin, {"direction": "adjustment", "quantity": 4})

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["quantity"], 6)
        self.assertEqual(payload["stock_before"], 10)
        self.assertEqual(payload["stock_after"], 4)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)

    def test_zero_quantity_in_is_validation_error(self):
        response = self._adjust(self.admin, {"direction": "in", "quantity": 0})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_supervisor_cannot_adjust_stock(self):
        response = self._adjust(self.supervisor, {"direction": "in", "quantity": 5})

        self.assertEqual(response.status_code, 403)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)

    def test_adjustment_is_logged(self):
        with self.assertLogs("inventory.services", level="INFO") as cm:
            adjust_stock(self.product.id, direction="in", quantity=2, actor=self.admin)

        self.assertTrue(any("stock_adjusted" in message for message in cm.output))

    def test_stock_history_lists_entries_newest_first(self):
        adjust_stock(self.product.id, direction="in", quantity=2, actor=self.admin)
        adjust_stock(self.product.id, direction="out", quantity=1, actor=self.admin)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get(f"/api/v1/products/{self.product.id}/stock-history/")

        self.assertEqual(response.status_code, 200)
        directions = [item["direction"] for item in response.json()["results"]]
        self.assertEqual(directions, ["out", "in"])


class StockLedgerAppendOnlyTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="ledger-admin", password="pass1234", role="admin")
        self.product = Product.objects.create(code="P-LEDGER", name="Ledger", sell_price=Decimal("1.00"), stock=1)

    def test_entries_cannot_be_modified_or_deleted(self):
        entry = record_stock_movement(
            self.product,
            direction=StockLedgerEntry.Direction.IN,
            quantity=1,
            reason=StockLedgerEntry.Reason.MANUAL,
            actor=self.user,
        )

        entry.note = "changed"
        with self.assertRaises(AppendOnlyError):
            entry.save()
        with self.assertRaises(AppendOnlyError):
            entry.delete()
        self.assertEqual(StockLedgerEntry.objects.get(pk=entry.pk).note, "")

    def test_record_stock_movement_rejects_negative_result(self):
        with self.assertRaises(BusinessRuleViolation):
            record_stock_movement(
                self.product,
                direction=StockLedgerEntry.Direction.OUT,
                quantity=2,
                reason=StockLedgerEntry.Reason.MANUAL,
                actor=self.user,
            )
        self.assertFalse(StockLedgerEntry.objects.exists())

    def test_ledger_endpoint_requires_stock_capability(self):
        client = APIClient()
        cashier = get_user_model().objects.create_user(username="ledger-cashier", password="pass1234", role="cashier")
        client.force_authenticate(user=cashier)

        response = client.get("/api/v1/stock-ledger/")

        self.assertEqual(response.status_code, 403)
