import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .exceptions import InvalidRequest, PaymentError
from .gateway import get_gateway_client
from .services import get_orchestrator, get_status_service

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _ok(message, data=None, **extra):
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return JsonResponse(body, status=200)


def _error(exc: PaymentError):
    body = {"success": False, "message": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    if settings.DEBUG and exc.detail is not None:
        body["error"] = exc.detail
    return JsonResponse(body, status=exc.status_code)


@csrf_exempt
@require_POST
def create_payment_view(request):
    body = _json_body(request)
    try:
        if body is None:
            raise InvalidRequest("Invalid JSON body")
        data = get_orchestrator().create_payment(body)
    except PaymentError as e:
        logger.warning("Create payment failed (%s): %s", e.status_code, e.message)
        return _error(e)
    return _ok("Payment request created successfully", data)


@require_GET
def payments_list_view(request):
    try:
        page = int(request.GET.get("page", "1"))
        limit = int(request.GET.get("limit", "10"))
    except ValueError:
        return _error(InvalidRequest("page and limit must be integers"))

    try:
        result = get_status_service().list_payments(
            page=page,
            limit=limit,
            status=request.GET.get("status") or None,
            school_id=request.GET.get("school_id") or None,
            sort=request.GET.get("sort") or None,
            order=request.GET.get("order") or "desc",
        )
    except PaymentError as e:
        return _error(e)
    return _ok("Payments fetched", result["items"], pagination=result["pagination"])


@require_GET
def check_payment_status_view(request, collect_request_id: str):
    school_id = request.GET.get("school_id", "")
    try:
        if not school_id:
            raise InvalidRequest("School ID is required")
        data = get_gateway_client().check_status(school_id, collect_request_id)
    except PaymentError as e:
        return _error(e)
    return _ok("Payment status fetched", data)


@require_GET
def transaction_status_view(request, custom_order_id: str):
    try:
        data = get_status_service().get_status(custom_order_id)
    except PaymentError as e:
        return _error(e)
    return _ok("Transaction status fetched", data)
