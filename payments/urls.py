from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("", views.payments_list_view, name="payments_list"),
    path("create-payment", views.create_payment_view, name="create_payment"),
    path("check-payment-status/<str:collect_request_id>", views.check_payment_status_view, name="check_payment_status"),
]
