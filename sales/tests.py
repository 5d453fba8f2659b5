import datetime
import re
from decimal import Decimal
from io import BytesIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone
from openpyxl import load_workbook
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.test import APIClient

from common.exceptions import BusinessRuleViolation, PersistenceFailure
from core.models import AuditLog
from inventory.models import AppendOnlyError, Category, Product, StockLedgerEntry
from sales.exports import XLSX_CONTENT_TYPE
from sales.models import Customer, InvoiceSequence, ProductRecommendation, Sale, SaleLine
from sales.receipts import THERMAL_WIDTH
from sales.recommendations import mine_association_rules
from sales.services import calculate_sale_totals, next_invoice_number, process_checkout, void_sale


def make_product(code, *, price="10000.00", stock=10, **extra):
    return Product.objects.create(code=code, name=f"Product {code}", sell_price=Decimal(price), stock=stock, **extra)


def ledger_write_fails_on(call_number):
    """Patch ledger inserts so the given call raises a database error and the others go through."""
    real_create = StockLedgerEntry.objects.create
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        if len(calls) == call_number:
            raise DatabaseError("disk full")
        return real_create(**kwargs)

    return mock.patch.object(StockLedgerEntry.objects, "create", side_effect=create)


class CalculateSaleTotalsTests(TestCase):
    def test_percentage_discount_and_tax(self):
        totals = calculate_sale_totals(
            [{"quantity": 2, "unit_price": Decimal("10000.00")}],
            discount_percent=Decimal("10"),
            tax_percent=Decimal("5"),
        )

        self.assertEqual(totals["gross_amount"], Decimal("20000.00"))
        self.assertEqual(totals["discount_amount"], Decimal("2000.00"))
        self.assertEqual(totals["net_amount"], Decimal("18000.00"))
        self.assertEqual(totals["tax_amount"], Decimal("900.00"))
        self.assertEqual(totals["total"], Decimal("18900.00"))

    def test_nominal_discount_wins_over_percentage(self):
        totals = calculate_sale_totals(
            [{"quantity": 2, "unit_price": Decimal("10000.00")}],
            discount_percent=Decimal("10"),
            discount_amount=Decimal("5000"),
        )

        self.assertEqual(totals["discount_amount"], Decimal("5000.00"))
        self.assertEqual(totals["discount_percent"], Decimal("25.00"))
        self.assertEqual(totals["total"], Decimal("15000.00"))

    def test_line_discounts_reduce_gross(self):
        totals = calculate_sale_totals(
            [
                {"quantity": 3, "unit_price": Decimal("5000.00"), "discount": Decimal("1500")},
                {"quantity": 1, "unit_price": Decimal("2500.00")},
            ]
        )

        self.assertEqual(totals["lines"][0]["subtotal"], Decimal("13500.00"))
        self.assertEqual(totals["gross_amount"], Decimal("16000.00"))
        self.assertEqual(totals["total"], Decimal("16000.00"))

    def test_tax_rounds_half_up(self):
        totals = calculate_sale_totals([{"quantity": 1, "unit_price": Decimal("0.10")}], tax_percent=Decimal("5"))

        self.assertEqual(totals["tax_amount"], Decimal("0.01"))

    def test_invalid_inputs_raise_validation_errors(self):
        line = [{"quantity": 1, "unit_price": Decimal("1000.00")}]
        with self.assertRaises(ValidationError):
            calculate_sale_totals([])
        with self.assertRaises(ValidationError):
            calculate_sale_totals([{"quantity": 0, "unit_price": Decimal("1000.00")}])
        with self.assertRaises(ValidationError):
            calculate_sale_totals([{"quantity": 1, "unit_price": Decimal("1000.00"), "discount": Decimal("1001")}])
        with self.assertRaises(ValidationError):
            calculate_sale_totals(line, discount_amount=Decimal("1500"))
        with self.assertRaises(ValidationError):
            calculate_sale_totals(line, discount_percent=Decimal("101"))
        with self.assertRaises(ValidationError):
            calculate_sale_totals(line, tax_percent=Decimal("-1"))


class CheckoutApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="checkout-cashier", password="pass1234", role="cashier")
        self.product = make_product("P-TEA", stock=10)
        self.client.force_authenticate(user=self.cashier)

    def _checkout(self, items, **extra):
        payload = {"items": items, "amount_paid": "20000", "payment_method": "cash", **extra}
        return self.client.post("/api/v1/checkout/", payload, format="json")

    def test_checkout_records_sale_lines_and_stock_movements(self):
        response = self._checkout(
            [{"product_id": str(self.product.id), "quantity": 2}],
            discount_percent="10",
            tax_percent="5",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["invoice_number"], f"INV-{timezone.localdate():%Y%m%d}-0001")
        self.assertEqual(payload["total"], "18900.00")
        self.assertEqual(payload["change"], "1100.00")
        self.assertEqual(payload["status"], "completed")
        self.assertEqual(len(payload["lines"]), 1)
        self.assertEqual(payload["lines"][0]["unit_price"], "10000.00")

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 8)
        entry = StockLedgerEntry.objects.get(product=self.product)
        self.assertEqual(entry.direction, StockLedgerEntry.Direction.OUT)
        self.assertEqual(entry.reason, StockLedgerEntry.Reason.SALE)
        self.assertEqual((entry.stock_before, entry.stock_after), (10, 8))
        self.assertEqual(entry.reference, payload["invoice_number"])
        self.assertTrue(AuditLog.objects.filter(action="sale.create", entity_id=payload["id"]).exists())

    def test_unit_price_matching_catalog_is_accepted(self):
        response = self._checkout([{"product_id": str(self.product.id), "quantity": 1, "unit_price": "10000.00"}])

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["total"], "10000.00")

    def test_stale_unit_price_is_rejected(self):
        response = self._checkout([{"product_id": str(self.product.id), "quantity": 1, "unit_price": "1.00"}])

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["errors"]["items"], "Line 1: the price of Product P-TEA is now Rp 10.000.")
        self.assertFalse(Sale.objects.exists())
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)

    def test_insufficient_stock_rejects_whole_sale(self):
        other = make_product("P-LOW", price="1000.00", stock=3)

        response = self._checkout(
            [
                {"product_id": str(self.product.id), "quantity": 1},
                {"product_id": str(other.id), "quantity": 5},
            ]
        )

        self.assertEqual(response.status_code, 422)
        payload = response.json()
        self.assertEqual(payload["code"], "business_rule_violation")
        self.assertEqual(payload["message"], "Insufficient stock for Product P-LOW. Available stock: 3.")
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(StockLedgerEntry.objects.exists())
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)

    def test_repeated_lines_are_checked_against_combined_quantity(self):
        product = make_product("P-SPLIT", price="1000.00", stock=5)

        response = self._checkout(
            [
                {"product_id": str(product.id), "quantity": 3},
                {"product_id": str(product.id), "quantity": 3},
            ]
        )

        self.assertEqual(response.status_code, 422)
        product.refresh_from_db()
        self.assertEqual(product.stock, 5)

    def test_inactive_product_cannot_be_sold(self):
        product = make_product("P-GONE", price="1000.00", is_active=False)

        response = self._checkout([{"product_id": str(product.id), "quantity": 1}])

        self.assertEqual(response.status_code, 422)
        self.assertFalse(Sale.objects.exists())

    def test_insufficient_payment_is_rejected(self):
        response = self._checkout(
            [{"product_id": str(self.product.id), "quantity": 2}],
            amount_paid="15000",
            tax_percent="5",
            discount_percent="10",
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["message"], "Insufficient payment. Total payable is Rp 18.900.")
        self.assertFalse(Sale.objects.exists())

    def test_discount_exceeding_gross_is_validation_error(self):
        response = self._checkout(
            [{"product_id": str(self.product.id), "quantity": 1}],
            discount_amount="15000",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("discount_amount", response.json()["errors"])
        self.assertFalse(Sale.objects.exists())

    def test_empty_basket_and_unknown_payment_method_are_rejected(self):
        empty = self._checkout([])
        bad_method = self._checkout([{"product_id": str(self.product.id), "quantity": 1}], payment_method="voucher")

        self.assertEqual(empty.status_code, 400)
        self.assertIn("items", empty.json()["errors"])
        self.assertEqual(bad_method.status_code, 400)
        self.assertIn("payment_method", bad_method.json()["errors"])

    def test_checkout_with_customer(self):
        customer = Customer.objects.create(code="CUST-1", name="Budi")

        response = self._checkout([{"product_id": str(self.product.id), "quantity": 1}], customer=str(customer.id))

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["customer_name"], "Budi")

    def test_checkout_is_logged(self):
        with self.assertLogs("sales.services", level="INFO") as cm:
            response = self._checkout([{"product_id": str(self.product.id), "quantity": 1}])

        self.assertEqual(response.status_code, 201)
        self.assertTrue(any("checkout_completed" in message for message in cm.output))


class InvoiceNumberTests(TestCase):
    def setUp(self):
        self.cashier = get_user_model().objects.create_user(username="invoice-cashier", password="pass1234", role="cashier")
        self.product = make_product("P-INV", price="1000.00", stock=10)

    def _sell(self):
        return process_checkout(
            cashier=self.cashier,
            items=[{"product_id": self.product.id, "quantity": 1}],
            amount_paid=Decimal("1000"),
            payment_method=Sale.PaymentMethod.CASH,
        )

    def test_invoice_numbers_increase_within_a_day(self):
        stem = f"INV-{timezone.localdate():%Y%m%d}-"

        first = self._sell()
        second = self._sell()

        self.assertEqual(first.invoice_number, f"{stem}0001")
        self.assertEqual(second.invoice_number, f"{stem}0002")
        self.assertEqual(next_invoice_number(), f"{stem}0003")

    def test_invoice_number_restarts_for_new_day(self):
        self._sell()

        self.assertEqual(next_invoice_number(timezone.localdate() + datetime.timedelta(days=1))[-4:], "0001")

    def test_day_counter_tracks_last_serial(self):
        self._sell()
        self._sell()

        self.assertEqual(InvoiceSequence.objects.get(day=timezone.localdate()).last_serial, 2)

    def test_day_counter_continues_after_existing_invoices(self):
        stem = f"INV-{timezone.localdate():%Y%m%d}-"
        Sale.objects.create(
            invoice_number=f"{stem}0007",
            cashier=self.cashier,
            gross_amount=Decimal("1000.00"),
            total=Decimal("1000.00"),
            amount_paid=Decimal("1000.00"),
            sold_at=timezone.now(),
        )

        self.assertEqual(self._sell().invoice_number, f"{stem}0008")


class VoidSaleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="void-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="void-cashier", password="pass1234", role="cashier")
        self.product = make_product("P-VOID", price="2500.00", stock=10)
        self.sale = process_checkout(
            cashier=self.cashier,
            items=[{"product_id": self.product.id, "quantity": 4}],
            amount_paid=Decimal("10000"),
            payment_method=Sale.PaymentMethod.QRIS,
        )

    def test_admin_void_restores_stock(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/sales/{self.sale.id}/void/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "voided")
        self.assertEqual(response.json()["voided_by"], str(self.admin.id))
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)
        entry = StockLedgerEntry.objects.get(sale=self.sale, reason=StockLedgerEntry.Reason.VOID)
        self.assertEqual(entry.direction, StockLedgerEntry.Direction.IN)
        self.assertEqual((entry.stock_before, entry.stock_after), (6, 10))
        self.assertTrue(AuditLog.objects.filter(action="sale.void", entity_id=self.sale.id).exists())

    def test_second_void_is_rejected(self):
        void_sale(self.sale.id, actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/sales/{self.sale.id}/void/")

        self.assertEqual(response.status_code, 422)
        self.assertIn("already been voided", response.json()["message"])
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 10)

    def test_cashier_cannot_void(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/sales/{self.sale.id}/void/")

        self.assertEqual(response.status_code, 403)
        self.sale.refresh_from_db()
        self.assertEqual(self.sale.status, Sale.Status.COMPLETED)

    def test_void_service_checks_capability(self):
        with self.assertRaises(PermissionDenied):
            void_sale(self.sale.id, actor=self.cashier)

    def test_failed_ledger_write_keeps_sale_completed(self):
        second = make_product("P-VOID2", price="1000.00", stock=10)
        sale = process_checkout(
            cashier=self.cashier,
            items=[{"product_id": self.product.id, "quantity": 1}, {"product_id": second.id, "quantity": 2}],
            amount_paid=Decimal("5000"),
            payment_method=Sale.PaymentMethod.CASH,
        )

        with ledger_write_fails_on(2), self.assertLogs("sales.services", level="ERROR") as cm:
            with self.assertRaises(PersistenceFailure):
                void_sale(sale.id, actor=self.admin)

        self.assertTrue(any("void_persistence_failed" in message for message in cm.output))
        sale.refresh_from_db()
        self.assertEqual(sale.status, Sale.Status.COMPLETED)
        self.assertIsNone(sale.voided_at)
        self.assertFalse(StockLedgerEntry.objects.filter(reason=StockLedgerEntry.Reason.VOID).exists())
        self.product.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual((self.product.stock, second.stock), (5, 8))

    def test_voided_sales_are_excluded_from_reports(self):
        void_sale(self.sale.id, actor=self.admin)
        cache.clear()
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/overview/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["sale_count"], 0)


class SaleHistoryTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="history-a", password="pass1234", role="cashier")
        self.other_cashier = self.user_model.objects.create_user(username="history-b", password="pass1234", role="cashier")
        self.supervisor = self.user_model.objects.create_user(username="history-sup", password="pass1234", role="supervisor")
        self.product = make_product("P-HIST", price="1000.00", stock=20)
        self.own_sale = self._sell(self.cashier)
        self.other_sale = self._sell(self.other_cashier)

    def _sell(self, cashier):
        return process_checkout(
            cashier=cashier,
            items=[{"product_id": self.product.id, "quantity": 2}],
            amount_paid=Decimal("2000"),
            payment_method=Sale.PaymentMethod.CASH,
        )

    def test_cashier_sees_only_own_sales(self):
        self.client.force_authenticate(user=self.cashier)

        listing = self.client.get("/api/v1/sales/")
        detail = self.client.get(f"/api/v1/sales/{self.other_sale.id}/")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual([item["id"] for item in listing.json()["results"]], [str(self.own_sale.id)])
        self.assertEqual(listing.json()["results"][0]["item_count"], 2)
        self.assertEqual(detail.status_code, 404)

    def test_supervisor_sees_all_sales_and_can_filter(self):
        self.client.force_authenticate(user=self.supervisor)

        listing = self.client.get("/api/v1/sales/")
        filtered = self.client.get(f"/api/v1/sales/?cashier={self.other_cashier.id}")

        self.assertEqual(listing.json()["count"], 2)
        self.assertEqual([item["id"] for item in filtered.json()["results"]], [str(self.other_sale.id)])

    def test_history_lists_newest_sale_first(self):
        third = self._sell(self.cashier)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/sales/")

        self.assertEqual(
            [item["invoice_number"] for item in response.json()["results"]],
            [third.invoice_number, self.other_sale.invoice_number, self.own_sale.invoice_number],
        )

    def test_customer_history_lists_newest_sale_first(self):
        customer = Customer.objects.create(code="CUST-H", name="Hana")
        sales = [
            process_checkout(
                cashier=self.cashier,
                customer=customer,
                items=[{"product_id": self.product.id, "quantity": 1}],
                amount_paid=Decimal("1000"),
                payment_method=Sale.PaymentMethod.CASH,
            )
            for _ in range(3)
        ]
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get(f"/api/v1/customers/{customer.id}/sales/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            [item["invoice_number"] for item in response.json()["results"]],
            [sale.invoice_number for sale in reversed(sales)],
        )

    def test_history_export_workbook(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/sales/export/?format=xlsx")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], XLSX_CONTENT_TYPE)
        workbook = load_workbook(BytesIO(response.content))
        self.assertEqual(workbook.sheetnames, ["Transactions", "Line Detail"])
        transactions = workbook["Transactions"]
        self.assertEqual(transactions.cell(row=4, column=1).value, "Invoice Number")
        self.assertEqual(
            [transactions.cell(row=row, column=1).value for row in (5, 6)],
            [self.other_sale.invoice_number, self.own_sale.invoice_number],
        )
        self.assertEqual(workbook["Line Detail"].cell(row=5, column=3).value, "P-HIST")

    def test_history_export_csv_respects_visibility_and_filters(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/sales/export/?format=csv")
        line_detail = self.client.get("/api/v1/sales/export/?format=csv&detail=lines")
        searched = self.client.get(f"/api/v1/sales/export/?format=csv&search={self.other_sale.invoice_number}")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response["Content-Type"].startswith("text/csv"))
        lines = response.content.decode().splitlines()
        self.assertEqual(
            lines[0],
            "invoice_number,sold_at,customer,cashier,item_count,gross_amount,discount_amount,tax_amount,total,payment_method,status",
        )
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith(f"{self.own_sale.invoice_number},"))
        self.assertIn("Walk-in customer", lines[1])
        self.assertTrue(line_detail.content.decode().splitlines()[0].startswith("invoice_number,sold_at,product_code"))
        self.assertEqual(searched.content.decode(), "")

    def test_history_export_rejects_unknown_format(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/sales/export/?format=pdf")

        self.assertEqual(response.status_code, 400)
        self.assertIn("format", response.json()["errors"])

    def test_daily_summary_is_scoped_to_cashier(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/sales/daily-summary/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["sale_count"], 1)
        self.assertEqual(payload["items_sold"], 2)


class ReceiptTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.cashier = get_user_model().objects.create_user(username="receipt-cashier", password="pass1234", role="cashier")
        product = make_product("P-RCPT", price="10000.00", stock=5)
        self.sale = process_checkout(
            cashier=self.cashier,
            items=[{"product_id": product.id, "quantity": 2}],
            discount_percent=Decimal("10"),
            tax_percent=Decimal("5"),
            amount_paid=Decimal("20000"),
            payment_method=Sale.PaymentMethod.CASH,
        )
        self.client.force_authenticate(user=self.cashier)

    def test_html_receipt(self):
        response = self.client.get(f"/api/v1/sales/{self.sale.id}/receipt/")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response["Content-Type"].startswith("text/html"))
        content = response.content.decode()
        self.assertIn(self.sale.invoice_number, content)
        self.assertIn("Rp 18.900", content)

    def test_pdf_receipt(self):
        response = self.client.get(f"/api/v1/sales/{self.sale.id}/receipt/pdf/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "application/pdf")
        self.assertTrue(response.content.startswith(b"%PDF"))

    def test_escpos_receipt(self):
        response = self.client.get(f"/api/v1/sales/{self.sale.id}/receipt/escpos/")

        self.assertEqual(response.status_code, 200)
        text = response.content.decode()
        self.assertTrue(text.startswith("\x1b@"))
        self.assertTrue(text.endswith("\x1bm"))
        self.assertIn("Change:", text)
        self.assertIn("Rp 1.100", text)

    def test_escpos_lines_fit_the_paper_width(self):
        product = Product.objects.create(
            code="P-LONG",
            name="Organic jasmine green tea leaves premium harvest family pack",
            sell_price=Decimal("1500.00"),
            stock=5,
        )
        customer = Customer.objects.create(code="CUST-LONG", name="Koperasi Karyawan Sejahtera Bersama Makmur Abadi")
        sale = process_checkout(
            cashier=self.cashier,
            customer=customer,
            items=[{"product_id": product.id, "quantity": 2, "note": "wrap as a gift with the blue ribbon please"}],
            amount_paid=Decimal("3000"),
            payment_method=Sale.PaymentMethod.CASH,
        )

        response = self.client.get(f"/api/v1/sales/{sale.id}/receipt/escpos/")

        printable = re.sub(r"\x1b(?:[@m]|[aE].)", "", response.content.decode())
        self.assertLessEqual(max(len(line) for line in printable.splitlines()), THERMAL_WIDTH)
        self.assertIn("Organic jasmine green tea leaves", printable)
        self.assertIn("premium harvest family pack", printable)


class ReportTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user_model = get_user_model()
        self.supervisor = self.user_model.objects.create_user(username="report-sup", password="pass1234", role="supervisor")
        self.cashier = self.user_model.objects.create_user(username="report-cashier", password="pass1234", role="cashier")
        self.customer = Customer.objects.create(code="CUST-R", name="Regular")
        self.tea = make_product("P-RTEA", price="5000.00", stock=20)
        self.rice = make_product("P-RICE", price="12000.00", stock=20)
        process_checkout(
            cashier=self.cashier,
            customer=self.customer,
            items=[{"product_id": self.tea.id, "quantity": 3}, {"product_id": self.rice.id, "quantity": 1}],
            amount_paid=Decimal("30000"),
            payment_method=Sale.PaymentMethod.CASH,
        )
        process_checkout(
            cashier=self.cashier,
            items=[{"product_id": self.rice.id, "quantity": 1}],
            amount_paid=Decimal("12000"),
            payment_method=Sale.PaymentMethod.DEBIT_CARD,
        )

    def test_cashier_cannot_view_reports(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/reports/overview/")

        self.assertEqual(response.status_code, 403)

    def test_overview(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/overview/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(Decimal(str(payload["revenue"])), Decimal("39000.00"))
        self.assertEqual(payload["sale_count"], 2)
        self.assertEqual(payload["items_sold"], 5)
        self.assertEqual(Decimal(str(payload["average_sale"])), Decimal("19500.00"))

    def test_monthly_trend(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/monthly-sales/")

        self.assertEqual(response.status_code, 200)
        rows = response.json()["results"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["month"], f"{timezone.localdate():%Y-%m}")
        self.assertEqual(rows[0]["sale_count"], 2)
        self.assertEqual(rows[0]["items_sold"], 5)
        self.assertEqual(Decimal(str(rows[0]["revenue"])), Decimal("39000.00"))
        self.assertEqual(Decimal(str(rows[0]["average_sale"])), Decimal("19500.00"))

    def test_top_products_orders_by_quantity(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/top-products/?limit=1")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["code"] for row in response.json()["results"]], ["P-RTEA"])

    def test_payment_methods_share(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/payment-methods/")

        rows = {row["payment_method"]: row for row in response.json()["results"]}
        self.assertEqual(rows["cash"]["sale_count"], 1)
        self.assertEqual(Decimal(str(rows["debit_card"]["amount"])), Decimal("12000.00"))

    def test_top_customers_skip_walk_in_sales(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/top-customers/")

        self.assertEqual([row["code"] for row in response.json()["results"]], ["CUST-R"])

    def test_date_range_validation(self):
        self.client.force_authenticate(user=self.supervisor)

        missing_end = self.client.get("/api/v1/reports/daily-sales/?date_from=2026-01-02")
        reversed_range = self.client.get("/api/v1/reports/daily-sales/?date_from=2026-01-02&date_to=2026-01-01")
        bad_timezone = self.client.get("/api/v1/reports/daily-sales/?timezone=Mars/Olympus")

        self.assertEqual(missing_end.status_code, 400)
        self.assertEqual(reversed_range.status_code, 400)
        self.assertEqual(bad_timezone.status_code, 400)

    def test_daily_sales_csv(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/daily-sales/?format=csv")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response["Content-Type"].startswith("text/csv"))
        lines = response.content.decode().splitlines()
        self.assertEqual(lines[0], "day,sale_count,revenue,average_sale")
        self.assertEqual(len(lines), 2)

    def test_complete_export_as_workbook(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/export/?report=complete&format=xlsx")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], XLSX_CONTENT_TYPE)
        workbook = load_workbook(BytesIO(response.content))
        self.assertIn("Overview", workbook.sheetnames)
        self.assertIn("Top Products", workbook.sheetnames)

    def test_complete_export_rejects_csv(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/reports/export/?report=complete&format=csv")

        self.assertEqual(response.status_code, 400)
        self.assertIn("format", response.json()["errors"])


class PageTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="page-cashier", password="pass1234", role="cashier")
        self.supervisor = self.user_model.objects.create_user(username="page-sup", password="pass1234", role="supervisor")
        self.in_stock = make_product("P-ON", price="1000.00", stock=4)
        self.sold_out = make_product("P-OFF", price="1000.00", stock=0)

    def test_pos_page_lists_sellable_products(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/pages/pos/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual([item["code"] for item in payload["products"]], ["P-ON"])
        self.assertIn("cash", [method["value"] for method in payload["payment_methods"]])
        self.assertIn("sales.pos.access", payload["capabilities"])

    def test_dashboard_scope_follows_role(self):
        self.client.force_authenticate(user=self.cashier)
        cashier_view = self.client.get("/api/v1/pages/dashboard/")
        self.client.force_authenticate(user=self.supervisor)
        store_view = self.client.get("/api/v1/pages/dashboard/")

        self.assertEqual(cashier_view.json()["scope"], "cashier")
        self.assertNotIn("low_stock_products", cashier_view.json())
        self.assertEqual(store_view.json()["scope"], "store")
        self.assertIn("P-OFF", [item["code"] for item in store_view.json()["low_stock_products"]])


class CustomerTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.cashier = get_user_model().objects.create_user(username="customer-cashier", password="pass1234", role="cashier")
        self.client.force_authenticate(user=self.cashier)

    def test_customer_code_is_generated(self):
        response = self.client.post("/api/v1/customers/", {"name": "Siti", "customer_type": "member"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["code"], f"CUST{timezone.localdate():%Y%m%d}001")

    def test_duplicate_customer_code_is_rejected(self):
        Customer.objects.create(code="CUST-DUP", name="First")

        response = self.client.post("/api/v1/customers/", {"name": "Second", "code": "CUST-DUP"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("code", response.json()["errors"])

    def test_customer_search(self):
        Customer.objects.create(code="CUST-A", name="Andi", phone="0811")
        Customer.objects.create(code="CUST-B", name="Bayu", phone="0822")

        response = self.client.get("/api/v1/customers/?search=0822")

        self.assertEqual([item["code"] for item in response.json()["results"]], ["CUST-B"])


class CheckoutServiceTests(TestCase):
    def test_business_rule_violation_leaves_no_partial_sale(self):
        cashier = get_user_model().objects.create_user(username="svc-cashier", password="pass1234", role="cashier")
        product = make_product("P-SVC", price="1000.00", stock=1)

        with self.assertRaises(BusinessRuleViolation):
            process_checkout(
                cashier=cashier,
                items=[{"product_id": product.id, "quantity": 2}],
                amount_paid=Decimal("5000"),
                payment_method=Sale.PaymentMethod.CASH,
            )

        self.assertFalse(Sale.objects.exists())
        self.assertFalse(StockLedgerEntry.objects.filter(product=product).exists())

    def test_failed_ledger_write_rolls_back_the_whole_sale(self):
        cashier = get_user_model().objects.create_user(username="svc-rollback", password="pass1234", role="cashier")
        tea = make_product("P-RB1", price="1000.00", stock=5)
        rice = make_product("P-RB2", price="2000.00", stock=5)

        with ledger_write_fails_on(2), self.assertLogs("sales.services", level="ERROR") as cm:
            with self.assertRaises(PersistenceFailure):
                process_checkout(
                    cashier=cashier,
                    items=[{"product_id": tea.id, "quantity": 1}, {"product_id": rice.id, "quantity": 2}],
                    amount_paid=Decimal("5000"),
                    payment_method=Sale.PaymentMethod.CASH,
                )

        self.assertTrue(any("checkout_persistence_failed" in message for message in cm.output))
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(SaleLine.objects.exists())
        self.assertFalse(StockLedgerEntry.objects.exists())
        self.assertFalse(InvoiceSequence.objects.exists())
        tea.refresh_from_db()
        rice.refresh_from_db()
        self.assertEqual((tea.stock, rice.stock), (5, 5))


class SaleLineAppendOnlyTests(TestCase):
    def setUp(self):
        cashier = get_user_model().objects.create_user(username="line-cashier", password="pass1234", role="cashier")
        product = make_product("P-LINE", price="1000.00", stock=5)
        self.sale = process_checkout(
            cashier=cashier,
            items=[{"product_id": product.id, "quantity": 1}],
            amount_paid=Decimal("1000"),
            payment_method=Sale.PaymentMethod.CASH,
        )
        self.line = self.sale.lines.get()

    def test_sale_line_cannot_be_modified(self):
        self.line.quantity = 5

        with self.assertRaises(AppendOnlyError):
            self.line.save()

        self.line.refresh_from_db()
        self.assertEqual(self.line.quantity, 1)

    def test_sale_line_cannot_be_deleted(self):
        with self.assertRaises(AppendOnlyError):
            self.line.delete()

        self.assertEqual(self.sale.lines.count(), 1)


class AssociationRuleTests(TestCase):
    def test_rules_in_both_directions_with_confidence_and_lift(self):
        baskets = [{"tea", "sugar"}, {"tea", "sugar"}, {"tea", "milk"}, {"sugar", "bread"}]

        rules = mine_association_rules(baskets, min_support=Decimal("0.5"), min_confidence=Decimal("0.5"))

        by_pair = {(rule["antecedent"], rule["consequent"]): rule for rule in rules}
        self.assertEqual(set(by_pair), {("tea", "sugar"), ("sugar", "tea")})
        tea_to_sugar = by_pair[("tea", "sugar")]
        self.assertEqual(tea_to_sugar["count"], 2)
        self.assertEqual(tea_to_sugar["support"], Decimal("0.5000"))
        self.assertEqual(tea_to_sugar["confidence"], Decimal("0.6667"))
        self.assertEqual(tea_to_sugar["lift"], Decimal("0.8889"))

    def test_min_confidence_filters_weak_directions(self):
        baskets = [{"tea", "sugar"}, {"tea", "sugar"}, {"tea", "milk"}, {"tea", "bread"}]

        rules = mine_association_rules(baskets, min_support=Decimal("0.5"), min_confidence=Decimal("0.9"))

        self.assertEqual([(rule["antecedent"], rule["consequent"]) for rule in rules], [("sugar", "tea")])
        self.assertEqual(rules[0]["confidence"], Decimal("1.0000"))

    def test_no_baskets_means_no_rules(self):
        self.assertEqual(mine_association_rules([], min_support=Decimal("0.1"), min_confidence=Decimal("0.1")), [])


class RecommendationApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="rec-admin", password="pass1234", role="admin")
        self.supervisor = self.user_model.objects.create_user(username="rec-sup", password="pass1234", role="supervisor")
        self.cashier = self.user_model.objects.create_user(username="rec-cashier", password="pass1234", role="cashier")
        self.drinks = Category.objects.create(name="Drinks")
        self.coffee = make_product("P-COF", price="1000.00", stock=50, category=self.drinks)
        self.cream = make_product("P-CRM", price="500.00", stock=50)
        self.bread = make_product("P-BRD", price="2000.00", stock=50)
        self.today = f"{timezone.localdate():%Y-%m-%d}"

    def _sell(self, *products):
        return process_checkout(
            cashier=self.cashier,
            items=[{"product_id": product.id, "quantity": 1} for product in products],
            amount_paid=Decimal("10000"),
            payment_method=Sale.PaymentMethod.CASH,
        )

    def _generate(self, **extra):
        payload = {
            "date_from": self.today,
            "date_to": self.today,
            "min_support": "0.3",
            "min_confidence": "0.5",
            **extra,
        }
        return self.client.post("/api/v1/recommendations/generate/", payload, format="json")

    def test_generate_creates_recommendations_from_baskets(self):
        self._sell(self.coffee, self.cream)
        self._sell(self.coffee, self.cream)
        self._sell(self.coffee, self.bread)
        self.client.force_authenticate(user=self.admin)

        with self.assertLogs("sales.recommendations", level="INFO") as cm:
            response = self._generate()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["baskets"], 3)
        self.assertEqual(response.json()["created"], 3)
        self.assertTrue(any("recommendations_generated" in message for message in cm.output))
        cream_with_coffee = ProductRecommendation.objects.get(product=self.cream, recommended_product=self.coffee)
        self.assertEqual(cream_with_coffee.score, Decimal("1.0000"))
        self.assertEqual(cream_with_coffee.co_occurrence, 2)
        coffee_with_cream = ProductRecommendation.objects.get(product=self.coffee, recommended_product=self.cream)
        self.assertEqual(coffee_with_cream.score, Decimal("0.6667"))
        self.assertTrue(AuditLog.objects.filter(action="recommendation.generate").exists())

    def test_rerun_only_raises_scores(self):
        self._sell(self.coffee, self.cream)
        self._sell(self.coffee, self.cream)
        self._sell(self.coffee, self.bread)
        self.client.force_authenticate(user=self.admin)
        self._generate()
        self._sell(self.coffee, self.bread)
        self._sell(self.coffee, self.bread)

        response = self._generate()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["updated"], 0)
        coffee_with_cream = ProductRecommendation.objects.get(product=self.coffee, recommended_product=self.cream)
        self.assertEqual(coffee_with_cream.score, Decimal("0.6667"))

    def test_single_item_sales_are_rejected(self):
        self._sell(self.coffee)
        self._sell(self.cream)
        self.client.force_authenticate(user=self.admin)

        response = self._generate()

        self.assertEqual(response.status_code, 422)
        self.assertIn("at least two different products", response.json()["message"])
        self.assertFalse(ProductRecommendation.objects.exists())

    def test_empty_period_and_strict_thresholds_are_rejected(self):
        self.client.force_authenticate(user=self.admin)
        empty = self._generate()
        self._sell(self.coffee, self.cream)
        self._sell(self.bread, self.cream)
        self._sell(self.coffee, self.bread)
        strict = self._generate(min_support="0.9")

        self.assertEqual(empty.status_code, 422)
        self.assertIn("no completed sales", empty.json()["message"])
        self.assertEqual(strict.status_code, 422)
        self.assertIn("Lower the thresholds", strict.json()["message"])

    def test_category_limits_baskets(self):
        self._sell(self.coffee, self.cream)
        self._sell(self.bread, self.cream)
        self.client.force_authenticate(user=self.admin)

        response = self._generate(category=str(self.drinks.id), min_support="0.5")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["baskets"], 1)

    def test_reversed_period_is_validation_error(self):
        self.client.force_authenticate(user=self.admin)

        response = self._generate(date_from="2026-02-02", date_to="2026-02-01")

        self.assertEqual(response.status_code, 400)
        self.assertIn("date_to", response.json()["errors"])

    def test_supervisor_reads_but_cannot_curate(self):
        recommendation = ProductRecommendation.objects.create(
            product=self.coffee,
            recommended_product=self.cream,
            score=Decimal("0.8000"),
            support=Decimal("0.5000"),
            lift=Decimal("1.2000"),
            co_occurrence=4,
            analysed_at=timezone.now(),
        )
        self.client.force_authenticate(user=self.supervisor)

        listing = self.client.get(f"/api/v1/recommendations/?product={self.coffee.id}")
        generate = self._generate()
        toggle = self.client.patch(f"/api/v1/recommendations/{recommendation.id}/", {"is_active": False}, format="json")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["results"][0]["recommended_product_code"], "P-CRM")
        self.assertEqual(listing.json()["results"][0]["confidence_level"], "Very high")
        self.assertEqual(generate.status_code, 403)
        self.assertEqual(toggle.status_code, 403)

    def test_admin_deactivates_and_deletes(self):
        recommendation = ProductRecommendation.objects.create(
            product=self.coffee,
            recommended_product=self.cream,
            score=Decimal("0.3000"),
            support=Decimal("0.2000"),
            lift=Decimal("1.1000"),
            co_occurrence=2,
            analysed_at=timezone.now(),
        )
        self.client.force_authenticate(user=self.admin)

        toggle = self.client.patch(
            f"/api/v1/recommendations/{recommendation.id}/", {"is_active": False, "score": "0.99"}, format="json"
        )
        delete = self.client.delete(f"/api/v1/recommendations/{recommendation.id}/")

        self.assertEqual(toggle.status_code, 200)
        self.assertFalse(toggle.json()["is_active"])
        self.assertEqual(toggle.json()["score"], "0.3000")
        self.assertEqual(delete.status_code, 204)
        self.assertFalse(ProductRecommendation.objects.exists())
        self.assertTrue(AuditLog.objects.filter(action="recommendation.delete", entity_id=recommendation.id).exists())
