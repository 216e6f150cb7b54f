from django.db import models
from django.db.models import Q
from django.utils import timezone


class Order(models.Model):
    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("success", "Success"),
        ("failed", "Failed"),
        ("cancelled", "Cancelled"),
    ]

    school_id = models.CharField(max_length=64, db_index=True)
    trustee_id = models.CharField(max_length=64, blank=True, null=True)

    student_name = models.CharField(max_length=128)
    student_id = models.CharField(max_length=64)
    student_email = models.EmailField()

    gateway_name = models.CharField(max_length=64)
    # stable join key for OrderStatus.collect_id; never the primary key
    custom_order_id = models.CharField(max_length=64, unique=True)
    collect_request_id = models.CharField(max_length=64, blank=True, null=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    callback_url = models.URLField(max_length=512)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="pending", db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["collect_request_id"],
                condition=Q(collect_request_id__isnull=False),
                name="order_collect_request_id_sparse_unique",
            ),
        ]

    @property
    def student_info(self) -> dict:
        return {"name": self.student_name, "id": self.student_id, "email": self.student_email}

    def __str__(self):
        return f"{self.custom_order_id} ({self.status})"


class OrderStatus(models.Model):
    """Mutable payment lifecycle of an Order, joined on ``collect_id == Order.custom_order_id``."""

    collect_id = models.CharField(max_length=64, unique=True)
    collect_request_id = models.CharField(max_length=64, blank=True, null=True)

    order_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    transaction_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)

    payment_mode = models.CharField(max_length=64, blank=True, default="")
    payment_details = models.JSONField(blank=True, null=True)
    bank_reference = models.CharField(max_length=128, blank=True, default="")
    payment_message = models.TextField(blank=True, default="")
    status = models.CharField(max_length=32, default="pending", db_index=True)
    error_message = models.TextField(blank=True, default="")
    payment_time = models.DateTimeField(default=timezone.now)
    gateway = models.CharField(max_length=64, default="Edviron")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "order statuses"
        constraints = [
            models.UniqueConstraint(
                fields=["collect_request_id"],
                condition=Q(collect_request_id__isnull=False),
                name="orderstatus_collect_request_id_sparse_unique",
            ),
        ]

    def __str__(self):
        return f"{self.collect_id} ({self.status})"


class WebhookLog(models.Model):
    order_id = models.CharField(max_length=64, db_index=True, default="unknown")
    status = models.IntegerField(default=0)
    payload = models.JSONField(default=dict, blank=True)
    processed = models.BooleanField(default=False, db_index=True)
    error_message = models.TextField(blank=True, default="")
    received_at = models.DateTimeField(default=timezone.now, db_index=True)
    processed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ["-received_at"]

    def __str__(self):
        state = "processed" if self.processed else "unprocessed"
        return f"{self.order_id} {state} @ {self.received_at:%Y-%m-%d %H:%M:%S}"
