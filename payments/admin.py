from django.contrib import admin
from .models import Order, OrderStatus, WebhookLog

@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("custom_order_id", "status", "amount", "school_id", "student_name", "created_at")
    search_fields = ("custom_order_id", "collect_request_id", "school_id", "student_id", "student_email")
    list_filter = ("status", "gateway_name", "created_at")
    readonly_fields = ("custom_order_id", "collect_request_id", "created_at", "updated_at")


@admin.register(OrderStatus)
class OrderStatusAdmin(admin.ModelAdmin):
    list_display = ("collect_id", "status", "order_amount", "transaction_amount", "payment_mode", "payment_time")
    search_fields = ("collect_id", "collect_request_id", "bank_reference")
    list_filter = ("status", "gateway")
    readonly_fields = ("payment_details", "created_at", "updated_at")


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
    list_display = ("order_id", "status", "processed", "error_message", "received_at", "processed_at")
    search_fields = ("order_id",)
    list_filter = ("processed", "received_at")
    readonly_fields = ("payload", "received_at", "processed_at")
