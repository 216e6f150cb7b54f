from django.contrib import admin
from django.urls import include, path

from payments import views as payment_views
from payments import webhook

from . import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health", views.health_view, name="health"),
    path("api/payments/", include("payments.urls")),
    path(
        "api/transactions/status/<str:custom_order_id>",
        payment_views.transaction_status_view,
        name="transaction_status",
    ),
    path("api/webhook", webhook.webhook_view, name="webhook"),
    path("api/webhook/", webhook.webhook_view),
]

handler404 = "schoolpay.views.error_404_view"
handler500 = "schoolpay.views.error_500_view"
