from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.exports import ReportExportView
from sales.reports import (
    CashierPerformanceReportView,
    DailySalesReportView,
    HourlySalesReportView,
    MonthlySalesReportView,
    OverviewReportView,
    PaymentMethodReportView,
    TopCustomersReportView,
    TopProductsReportView,
)
from sales.views import (
    CheckoutView,
    CustomerViewSet,
    DashboardView,
    PosPageView,
    ProductRecommendationViewSet,
    SaleViewSet,
)

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"sales", SaleViewSet, basename="sale")
router.register(r"recommendations", ProductRecommendationViewSet, basename="recommendation")

urlpatterns = router.urls + [
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("pages/pos/", PosPageView.as_view(), name="page-pos"),
    path("pages/dashboard/", DashboardView.as_view(), name="page-dashboard"),
    path("reports/overview/", OverviewReportView.as_view(), name="report-overview"),
    path("reports/daily-sales/", DailySalesReportView.as_view(), name="report-daily-sales"),
    path("reports/hourly-sales/", HourlySalesReportView.as_view(), name="report-hourly-sales"),
    path("reports/monthly-sales/", MonthlySalesReportView.as_view(), name="report-monthly-sales"),
    path("reports/top-products/", TopProductsReportView.as_view(), name="report-top-products"),
    path("reports/top-customers/", TopCustomersReportView.as_view(), name="report-top-customers"),
    path("reports/payment-methods/", PaymentMethodReportView.as_view(), name="report-payment-methods"),
    path("reports/cashier-performance/", CashierPerformanceReportView.as_view(), name="report-cashier-performance"),
    path("reports/export/", ReportExportView.as_view(), name="report-export"),
]
