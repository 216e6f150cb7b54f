import logging
from decimal import Decimal

from django.db import DatabaseError, IntegrityError, models, transaction
from django.db.models import F, OuterRef, Subquery, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .conf import GatewayConfig, get_gateway_config
from .exceptions import DuplicateOrder, InvalidRequest, OrderNotFound, StatusNotFound
from .forms import validate_create_payment
from .gateway import GatewayClient
from .models import Order, OrderStatus
from .utils import generate_order_id

logger = logging.getLogger(__name__)


def normalize_status(value, default="pending") -> str:
    """Lower-case a gateway status for storage; blank values become ``default``."""
    s = str(value or "").strip().lower()
    return s or default


def coarse_status(value) -> str:
    """Map a gateway status to the Order's coarse enum."""
    s = normalize_status(value, default="")
    if s == "success":
        return "success"
    if s == "failed":
        return "failed"
    return "processing"


def upsert_order_status(order: Order, fields: dict) -> OrderStatus:
    """Create or replace the OrderStatus row for ``order``; last write wins.

    ``update_or_create`` locks the row when it exists and falls back to a
    lookup if a concurrent insert wins the unique ``collect_id`` race.
    """
    defaults = dict(fields)
    defaults.setdefault("collect_request_id", order.collect_request_id or None)
    defaults.setdefault("order_amount", order.amount)
    with transaction.atomic():
        status, created = OrderStatus.objects.update_or_create(
            collect_id=order.custom_order_id, defaults=defaults,
        )
    logger.info(
        "%s OrderStatus for %s -> %s",
        "Created" if created else "Updated", order.custom_order_id, status.status,
    )
    return status


def set_order_status(custom_order_id, gateway_status) -> str:
    coarse = coarse_status(gateway_status)
    with transaction.atomic():
        Order.objects.filter(custom_order_id=custom_order_id).update(status=coarse, updated_at=timezone.now())
    return coarse


def _num(value):
    return float(value) if isinstance(value, Decimal) else value


class PaymentOrchestrator:
    def __init__(self, client: GatewayClient, config: GatewayConfig):
        self.client = client
        self.config = config

    def create_payment(self, payload) -> dict:
        cleaned = validate_create_payment(payload)
        self.config.require_credentials()

        student = cleaned["student_info"]
        gateway_name = cleaned.get("gateway_name") or self.config.gateway_name
        amount = cleaned["amount"]
        custom_order_id = generate_order_id()
        logger.info("Creating payment %s for school_id=%s", custom_order_id, cleaned["school_id"])

        # Nothing is written until the gateway has accepted the request
        collect = self.client.create_collect_request(
            cleaned["school_id"], amount, cleaned["callback_url"],
        )

        try:
            with transaction.atomic():
                order = Order.objects.create(
                    school_id=cleaned["school_id"],
                    trustee_id=cleaned.get("trustee_id") or None,
                    student_name=student["name"],
                    student_id=student["id"],
                    student_email=student["email"],
                    gateway_name=gateway_name,
                    custom_order_id=custom_order_id,
                    collect_request_id=collect.collect_request_id,
                    amount=amount,
                    callback_url=cleaned["callback_url"],
                    status="processing",
                )
        except IntegrityError as e:
            logger.error("Duplicate key persisting order %s: %s", custom_order_id, e)
            raise DuplicateOrder(detail=str(e))

        try:
            with transaction.atomic():
                OrderStatus.objects.create(
                    collect_id=order.custom_order_id,
                    collect_request_id=collect.collect_request_id,
                    order_amount=amount,
                    transaction_amount=0,
                    status="processing",
                    gateway=gateway_name,
                )
        except DatabaseError:
            # Reads and the webhook fall back to the Order's own fields
            logger.exception("Failed to seed OrderStatus for %s", order.custom_order_id)

        return {
            "collect_request_id": collect.collect_request_id,
            "payment_url": collect.payment_url,
            "custom_order_id": order.custom_order_id,
            "order_id": order.pk,
            "sign": collect.sign,
            "amount": float(amount),
            "student_name": student["name"],
        }


def merge_order_status(order: Order, status: OrderStatus | None, payment_mode_fallback="N/A") -> dict:
    """Merge an Order with its (possibly missing) OrderStatus, status row first.

    Each field falls back on an empty value, not only on a missing row, so a
    seed row with a blank ``payment_mode`` still reads as the fallback.
    """
    def pick(field):
        return getattr(status, field, None) if status is not None else None

    return {
        "custom_order_id": order.custom_order_id,
        "collect_id": order.custom_order_id,
        "collect_request_id": order.collect_request_id,
        "school_id": order.school_id,
        "trustee_id": order.trustee_id,
        "student_info": order.student_info,
        "gateway": pick("gateway") or order.gateway_name,
        "order_amount": _num(pick("order_amount") or order.amount),
        "transaction_amount": _num(pick("transaction_amount") or 0),
        "status": pick("status") or order.status,
        "payment_mode": pick("payment_mode") or payment_mode_fallback,
        "payment_details": pick("payment_details"),
        "bank_reference": pick("bank_reference") or "",
        "payment_message": pick("payment_message") or "",
        "error_message": pick("error_message") or "",
        "payment_time": pick("payment_time") or order.created_at,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


# listing sort field -> (Order fallback when no status row, column type)
SORT_FIELDS = {
    "payment_time": (F("created_at"), models.DateTimeField),
    "status": (F("status"), models.CharField),
    "transaction_amount": (Value(Decimal("0")), lambda: models.DecimalField(max_digits=12, decimal_places=2)),
    "order_amount": (F("amount"), lambda: models.DecimalField(max_digits=12, decimal_places=2)),
}


def _merged_sort_key(field):
    """Sort expression matching the merged view: status row value, else the Order's."""
    fallback, output_field = SORT_FIELDS[field]
    status_value = OrderStatus.objects.filter(collect_id=OuterRef("custom_order_id")).values(field)[:1]
    return Coalesce(Subquery(status_value), fallback, output_field=output_field())


class StatusQueryService:
    def __init__(self, client: GatewayClient | None = None):
        self.client = client

    def get_status(self, custom_order_id) -> dict:
        order = Order.objects.filter(custom_order_id=custom_order_id).first()
        if order is None:
            raise OrderNotFound()
        status = OrderStatus.objects.filter(collect_id=order.custom_order_id).first()
        return merge_order_status(order, status)

    def list_payments(self, *, page=1, limit=10, status=None, school_id=None, sort=None, order="desc") -> dict:
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 100)
        if sort and sort not in SORT_FIELDS:
            raise InvalidRequest("Invalid sort field", errors={"sort": [f"Must be one of: {', '.join(SORT_FIELDS)}"]})
        if order not in ("asc", "desc"):
            raise InvalidRequest("Order must be asc or desc")

        qs = Order.objects.all()
        if status:
            qs = qs.filter(status__iexact=status)
        if school_id:
            qs = qs.filter(school_id=school_id)
        total = qs.count()

        prefix = "" if order == "asc" else "-"
        if sort:
            qs = qs.annotate(sort_key=_merged_sort_key(sort))
            ordering = (f"{prefix}sort_key", f"{prefix}created_at", f"{prefix}pk")
        else:
            ordering = (f"{prefix}created_at", f"{prefix}pk")
        start = (page - 1) * limit
        orders = list(qs.order_by(*ordering)[start:start + limit])

        by_collect_id = {
            s.collect_id: s
            for s in OrderStatus.objects.filter(collect_id__in=[o.custom_order_id for o in orders])
        }
        items = [
            merge_order_status(o, by_collect_id.get(o.custom_order_id), payment_mode_fallback="")
            for o in orders
        ]
        return {
            "items": items,
            "pagination": {
                "current_page": page,
                "per_page": limit,
                "total_pages": (total + limit - 1) // limit,
                "total_records": total,
            },
        }

    def check_gateway_status(self, custom_order_id) -> dict:
        """Poll the gateway for an order's collect request."""
        order = Order.objects.filter(custom_order_id=custom_order_id).first()
        if order is None:
            raise OrderNotFound()
        if not order.collect_request_id:
            raise StatusNotFound("Order has no gateway collect request")
        return self.client.check_status(order.school_id, order.collect_request_id)


def get_orchestrator() -> PaymentOrchestrator:
    config = get_gateway_config()
    return PaymentOrchestrator(GatewayClient(config), config)


def get_status_service() -> StatusQueryService:
    return StatusQueryService(GatewayClient(get_gateway_config()))
