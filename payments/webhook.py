import json
import logging
from dataclasses import dataclass
from datetime import timezone as dt_timezone
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings
from django.db import DatabaseError, transaction
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from .models import Order, OrderStatus, WebhookLog
from .services import normalize_status, set_order_status, upsert_order_status
from .utils import parse_amount

logger = logging.getLogger(__name__)

ORDER_ID_MAX = WebhookLog._meta.get_field("order_id").max_length
STATUS_CODE_RANGE = (-2**31, 2**31 - 1)


def _max_length(field):
    return OrderStatus._meta.get_field(field).max_length


@dataclass
class WebhookOutcome:
    success: bool
    message: str
    order_status: object = None
    error: str = ""


def _status_code(payload, default=0) -> int:
    value = payload.get("status") if isinstance(payload, dict) else None
    try:
        code = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    low, high = STATUS_CODE_RANGE
    return code if low <= code <= high else default


def _payment_time(value, order_id):
    if not value:
        return timezone.now()
    try:
        dt = parse_datetime(str(value))
    except ValueError:
        # well-formed but not a real date, e.g. 2025-02-30
        dt = None
    if dt is None:
        logger.warning("Unparseable payment_time %r for %s, using now", value, order_id)
        return timezone.now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=dt_timezone.utc)
    return dt


def _claimed_order_id(payload) -> str:
    info = payload.get("order_info") if isinstance(payload, dict) else None
    order_id = info.get("order_id") if isinstance(info, dict) else None
    return str(order_id)[:ORDER_ID_MAX] if order_id else "unknown"


def _transaction_amount(value, order_id):
    amount = parse_amount(value)
    field = OrderStatus._meta.get_field("transaction_amount")
    if abs(amount) >= Decimal(10) ** (field.max_digits - field.decimal_places):
        logger.warning("Out-of-range transaction_amount %r for %s, using 0", value, order_id)
        return Decimal("0")
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _text(value, field=None) -> str:
    s = str(value or "")
    return s[:_max_length(field)] if field else s


def status_fields(order: Order, info: dict) -> dict:
    """Full replacement field set for an order's OrderStatus from ``order_info``."""
    return {
        "collect_request_id": order.collect_request_id or None,
        "order_amount": order.amount,
        "transaction_amount": _transaction_amount(info.get("transaction_amount"), order.custom_order_id),
        "payment_mode": _text(info.get("payment_mode"), "payment_mode"),
        # the gateway has shipped both spellings of these keys
        "payment_details": info.get("payemnt_details") or info.get("payment_details") or None,
        "bank_reference": _text(info.get("bank_reference"), "bank_reference"),
        "payment_message": _text(info.get("Payment_message") or info.get("payment_message")),
        "status": normalize_status(info.get("status"))[:_max_length("status")],
        "error_message": _text(info.get("error_message")),
        "payment_time": _payment_time(info.get("payment_time"), order.custom_order_id),
        "gateway": _text(info.get("gateway") or order.gateway_name or "Edviron", "gateway"),
    }


class WebhookReconciler:
    """Apply one gateway callback delivery; never raises."""

    def process(self, payload) -> WebhookOutcome:
        log = self._open_log(payload)
        try:
            return self._reconcile(payload, log)
        except Exception as e:
            logger.exception("Webhook processing failed for %s", _claimed_order_id(payload))
            self._record_failure(log, payload, str(e))
            return WebhookOutcome(False, "Webhook received but failed internally", error=str(e))

    def _open_log(self, payload):
        try:
            with transaction.atomic():
                log = WebhookLog.objects.create(
                    order_id=_claimed_order_id(payload),
                    status=_status_code(payload),
                    payload=payload,
                )
        except Exception:
            # a lost log row must not stop processing or turn into a non-2xx
            logger.exception("Failed to log webhook for %s", _claimed_order_id(payload))
            return None
        logger.info("Webhook logged for order: %s", log.order_id)
        return log

    def _close_log(self, log, payload, *, error=""):
        if log is None:
            with transaction.atomic():
                self._write_fallback_log(
                    payload, processed=True,
                    error=error or "initial webhook log write failed",
                )
            return
        log.processed = True
        log.error_message = error
        log.processed_at = timezone.now()
        with transaction.atomic():
            log.save(update_fields=["processed", "error_message", "processed_at"])

    def _write_fallback_log(self, payload, *, processed, error):
        """Second attempt at a log row when the initial write never landed."""
        WebhookLog.objects.create(
            order_id=_claimed_order_id(payload),
            status=_status_code(payload, default=0 if processed else 500),
            payload=payload,
            processed=processed,
            error_message=error,
            processed_at=timezone.now() if processed else None,
        )

    def _record_failure(self, log, payload, error):
        try:
            with transaction.atomic():
                if log is not None:
                    log.processed = False
                    log.error_message = error
                    log.save(update_fields=["processed", "error_message"])
                else:
                    self._write_fallback_log(payload, processed=False, error=error)
        except DatabaseError:
            logger.exception("Failed to record webhook error for %s", _claimed_order_id(payload))

    def _reconcile(self, payload, log) -> WebhookOutcome:
        info = payload.get("order_info") if isinstance(payload, dict) else None
        if not isinstance(info, dict) or not info.get("order_id"):
            logger.warning("Webhook missing order_info or order_id")
            self._close_log(log, payload, error="missing order_info")
            return WebhookOutcome(False, "Missing order_info or order_id in webhook payload")

        order_id = str(info["order_id"])
        order = Order.objects.filter(custom_order_id=order_id).first()
        if order is None:
            logger.warning("Order not found: %s", order_id)
            self._close_log(log, payload, error="order not found")
            return WebhookOutcome(False, "Order not found in orders collection")

        order_status = upsert_order_status(order, status_fields(order, info))
        set_order_status(order.custom_order_id, info.get("status"))

        self._close_log(log, payload)
        logger.info("Webhook processed successfully: %s", order_id)
        return WebhookOutcome(True, "Webhook processed successfully", order_status=order_status)


def _order_status_data(status) -> dict:
    return {
        "collect_id": status.collect_id,
        "collect_request_id": status.collect_request_id,
        "order_amount": float(status.order_amount),
        "transaction_amount": float(status.transaction_amount),
        "payment_mode": status.payment_mode,
        "bank_reference": status.bank_reference,
        "payment_message": status.payment_message,
        "status": status.status,
        "error_message": status.error_message,
        "payment_time": status.payment_time,
        "gateway": status.gateway,
    }


@csrf_exempt
@require_POST
def webhook_view(request):
    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        payload = None
    if not isinstance(payload, dict):
        # null, lists and scalars are logged like undecodable bodies
        payload = {"raw": request.body.decode("utf-8", errors="replace")[:4000]}

    outcome = WebhookReconciler().process(payload)

    # Always 200: a non-2xx makes the gateway redeliver, and the log already holds the payload
    body = {"success": outcome.success, "message": outcome.message}
    if outcome.order_status is not None:
        body["data"] = _order_status_data(outcome.order_status)
    if outcome.error and settings.DEBUG:
        body["error"] = outcome.error
    return JsonResponse(body, status=200)
