from rest_framework.routers import DefaultRouter

from inventory.views import (
    AdminCategoryViewSet,
    AdminProductViewSet,
    AdminSupplierViewSet,
    CategoryViewSet,
    ProductViewSet,
    StockLedgerViewSet,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"categories", CategoryViewSet, basename="category")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"admin/categories", AdminCategoryViewSet, basename="admin-category")
router.register(r"admin/products", AdminProductViewSet, basename="admin-product")
router.register(r"admin/suppliers", AdminSupplierViewSet, basename="admin-supplier")
router.register(r"stock-ledger", StockLedgerViewSet, basename="stock-ledger")

urlpatterns = router.urls
