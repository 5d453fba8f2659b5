from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AdminUserViewSet, AuditLogViewSet, CurrentUserView

router = DefaultRouter()
router.register(r"admin/users", AdminUserViewSet, basename="admin-user")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("me/", CurrentUserView.as_view(), name="current-user"),
]
