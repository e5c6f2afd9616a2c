from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    CustomerViewSet,
    LocationViewSet,
    NotificationViewSet,
    StorageViewSet,
    SummaryReportView,
)

router = DefaultRouter()
router.register(r"locations", LocationViewSet, basename="locations")
router.register(r"customers", CustomerViewSet, basename="customers")
router.register(r"storages", StorageViewSet, basename="storages")
router.register(r"notifications", NotificationViewSet, basename="notifications")

urlpatterns = [
    *router.urls,
    path("reports/summary/", SummaryReportView.as_view(), name="reports-summary"),
]
