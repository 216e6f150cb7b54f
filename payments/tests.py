import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

import requests
from django.conf import settings
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from .exceptions import OrderNotFound, StatusNotFound
from .models import Order, OrderStatus
from .services import StatusQueryService, coarse_status, get_status_service, normalize_status
from .test_gateway import CREATED, FakeResponse
from .utils import generate_order_id, parse_amount


def make_order(custom_order_id="ORD_1", amount="500", collect_request_id="CR_1", **kwargs):
    fields = dict(
        school_id="school-1",
        student_name="Asha Rao",
        student_id="STU-1",
        student_email="asha@example.com",
        gateway_name="Edviron",
        custom_order_id=custom_order_id,
        collect_request_id=collect_request_id,
        amount=Decimal(amount),
        callback_url="https://school.example.com/cb",
        status="processing",
    )
    fields.update(kwargs)
    return Order.objects.create(**fields)


def payment_body(**overrides):
    body = {
        "school_id": "school-1",
        "amount": 500,
        "student_info": {"name": "Asha Rao", "id": "STU-1", "email": "asha@example.com"},
        "callback_url": "https://school.example.com/cb",
    }
    body.update(overrides)
    return body


class GenerateOrderIdTests(TestCase):
    def test_format_and_uniqueness(self):
        ids = {generate_order_id() for _ in range(200)}
        self.assertEqual(len(ids), 200)
        prefix, ms, rand = next(iter(ids)).split("_")
        self.assertEqual(prefix, "ORD")
        self.assertTrue(ms.isdigit())
        self.assertEqual(len(rand), 9)
        self.assertTrue(rand.isalnum())


class StatusNormalizationTests(TestCase):
    def test_normalize_lower_cases_and_defaults(self):
        self.assertEqual(normalize_status("SUCCESS"), "success")
        self.assertEqual(normalize_status(" Failed "), "failed")
        self.assertEqual(normalize_status(None), "pending")
        self.assertEqual(normalize_status(""), "pending")

    def test_coarse_mapping(self):
        self.assertEqual(coarse_status("SUCCESS"), "success")
        self.assertEqual(coarse_status("success"), "success")
        self.assertEqual(coarse_status("FAILED"), "failed")
        self.assertEqual(coarse_status("PENDING"), "processing")
        self.assertEqual(coarse_status("USER_DROPPED"), "processing")
        self.assertEqual(coarse_status(None), "processing")

    def test_parse_amount_is_lenient(self):
        self.assertEqual(parse_amount("750.25"), Decimal("750.25"))
        self.assertEqual(parse_amount(750), Decimal("750"))
        self.assertEqual(parse_amount("abc"), Decimal("0"))
        self.assertEqual(parse_amount(None), Decimal("0"))
        self.assertEqual(parse_amount("NaN"), Decimal("0"))


class CreatePaymentViewTests(TestCase):
    url = "/api/payments/create-payment"

    def _post(self, body):
        return self.client.post(self.url, data=json.dumps(body), content_type="application/json")

    def test_creates_order_and_seed_status(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)):
            resp = self._post(payment_body(trustee_id="T-9"))

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        data = body["data"]
        self.assertEqual(data["collect_request_id"], "CR123")
        self.assertEqual(data["payment_url"], "https://pay.example.com/collect/CR123")
        self.assertEqual(data["sign"], "gateway-sign")
        self.assertEqual(data["amount"], 500.0)
        self.assertEqual(data["student_name"], "Asha Rao")

        order = Order.objects.get()
        status = OrderStatus.objects.get()
        self.assertEqual(data["custom_order_id"], order.custom_order_id)
        self.assertEqual(data["order_id"], order.pk)
        self.assertEqual(status.collect_id, order.custom_order_id)
        self.assertEqual(order.status, "processing")
        self.assertEqual(status.status, "processing")
        self.assertEqual(order.collect_request_id, "CR123")
        self.assertEqual(status.collect_request_id, "CR123")
        self.assertEqual(order.trustee_id, "T-9")
        self.assertEqual(order.gateway_name, "Edviron")
        self.assertEqual(status.order_amount, Decimal("500"))
        self.assertEqual(status.transaction_amount, Decimal("0"))

    def test_gateway_failure_persists_nothing(self):
        with patch("payments.gateway.requests.request", side_effect=requests.Timeout("slow")):
            resp = self._post(payment_body())

        self.assertEqual(resp.status_code, 504)
        self.assertFalse(resp.json()["success"])
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(OrderStatus.objects.count(), 0)

    def test_gateway_rejection_propagates_status_and_message(self):
        resp_401 = FakeResponse(401, {"message": "Invalid API key"})
        with patch("payments.gateway.requests.request", return_value=resp_401):
            resp = self._post(payment_body())

        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["message"], "Invalid API key")
        self.assertNotIn("error", resp.json())
        self.assertEqual(Order.objects.count(), 0)

    @override_settings(DEBUG=True)
    def test_debug_mode_includes_upstream_detail(self):
        resp_500 = FakeResponse(500, {"message": "boom", "trace": "x"})
        with patch("payments.gateway.requests.request", return_value=resp_500):
            resp = self._post(payment_body())

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["error"], {"message": "boom", "trace": "x"})

    def test_validation_fails_before_gateway_call(self):
        body = payment_body(
            amount=-5,
            callback_url="ftp://school.example.com/cb",
            student_info={"name": "Asha Rao", "id": "", "email": "not-an-email"},
        )
        with patch("payments.gateway.requests.request") as req:
            resp = self._post(body)

        req.assert_not_called()
        self.assertEqual(resp.status_code, 400)
        errors = resp.json()["errors"]
        self.assertIn("amount", errors)
        self.assertIn("callback_url", errors)
        self.assertIn("student_info.id", errors)
        self.assertIn("student_info.email", errors)
        self.assertEqual(Order.objects.count(), 0)

    def test_missing_student_info_is_invalid(self):
        body = payment_body()
        del body["student_info"]
        with patch("payments.gateway.requests.request") as req:
            resp = self._post(body)
        req.assert_not_called()
        self.assertEqual(resp.status_code, 400)
        self.assertIn("student_info.name", resp.json()["errors"])

    def test_invalid_json_body(self):
        resp = self.client.post(self.url, data="{not json", content_type="application/json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Invalid JSON body")

    def test_missing_signing_secret_is_server_error(self):
        gateway = {**settings.SCHOOLPAY_GATEWAY, "PG_KEY": ""}
        with self.settings(SCHOOLPAY_GATEWAY=gateway), \
                patch("payments.gateway.requests.request") as req:
            resp = self._post(payment_body())

        req.assert_not_called()
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "Payment gateway configuration missing")

    def test_second_request_without_collect_request_id_is_rejected(self):
        responses = [FakeResponse(200, CREATED), FakeResponse(200, {"Collect_request_url": "https://x"})]
        with patch("payments.gateway.requests.request", side_effect=responses):
            first = self._post(payment_body())
            second = self._post(payment_body())

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 502)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderStatus.objects.count(), 1)

    def test_duplicate_custom_order_id_is_conflict(self):
        responses = [
            FakeResponse(200, CREATED),
            FakeResponse(200, {**CREATED, "collect_request_id": "CR456"}),
        ]
        with patch("payments.gateway.requests.request", side_effect=responses), \
                patch("payments.services.generate_order_id", return_value="ORD_fixed"):
            first = self._post(payment_body())
            second = self._post(payment_body())

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderStatus.objects.count(), 1)

    def test_seed_status_failure_leaves_order_readable(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)), \
                patch.object(OrderStatus.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("payments.services", level="ERROR"):
                resp = self._post(payment_body())

        self.assertEqual(resp.status_code, 200)
        custom_order_id = resp.json()["data"]["custom_order_id"]
        self.assertEqual(OrderStatus.objects.count(), 0)

        merged = StatusQueryService().get_status(custom_order_id)
        self.assertEqual(merged["status"], "processing")
        self.assertEqual(merged["order_amount"], 500.0)

    def test_fresh_order_reads_with_payment_mode_fallback(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)):
            resp = self._post(payment_body())
        custom_order_id = resp.json()["data"]["custom_order_id"]
        self.assertEqual(OrderStatus.objects.get().payment_mode, "")

        merged = StatusQueryService().get_status(custom_order_id)

        self.assertEqual(merged["payment_mode"], "N/A")
        self.assertEqual(merged["status"], "processing")
        self.assertEqual(merged["order_amount"], 500.0)
        self.assertEqual(merged["transaction_amount"], 0)
        self.assertEqual(merged["gateway"], "Edviron")

    def test_fractional_amount_is_rounded_to_cents(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)) as req:
            resp = self._post(payment_body(amount=100.555))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"]["amount"], 100.56)
        self.assertEqual(req.call_args.kwargs["json"]["amount"], "100.56")
        self.assertEqual(Order.objects.get().amount, Decimal("100.56"))

    def test_amount_rounding_to_zero_or_too_large_is_invalid(self):
        for amount in (0.001, "1e12", "NaN"):
            with self.subTest(amount=amount):
                with patch("payments.gateway.requests.request") as req:
                    resp = self._post(payment_body(amount=amount))
                req.assert_not_called()
                self.assertEqual(resp.status_code, 400)
                self.assertIn("amount", resp.json()["errors"])


class StatusQueryTests(TestCase):
    def test_falls_back_to_order_when_status_missing(self):
        order = make_order(amount="500", status="pending")

        merged = StatusQueryService().get_status("ORD_1")

        self.assertEqual(merged["order_amount"], 500.0)
        self.assertEqual(merged["transaction_amount"], 0)
        self.assertEqual(merged["status"], "pending")
        self.assertEqual(merged["payment_mode"], "N/A")
        self.assertEqual(merged["payment_time"], order.created_at)
        self.assertEqual(merged["gateway"], "Edviron")

    def test_status_row_takes_precedence(self):
        make_order(amount="500")
        paid_at = timezone.now() - timedelta(minutes=5)
        OrderStatus.objects.create(
            collect_id="ORD_1",
            order_amount=Decimal("750"),
            transaction_amount=Decimal("750"),
            status="success",
            payment_mode="upi",
            payment_time=paid_at,
        )

        merged = StatusQueryService().get_status("ORD_1")

        self.assertEqual(merged["order_amount"], 750.0)
        self.assertEqual(merged["transaction_amount"], 750.0)
        self.assertEqual(merged["status"], "success")
        self.assertEqual(merged["payment_mode"], "upi")
        self.assertEqual(merged["payment_time"], paid_at)

    def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            StatusQueryService().get_status("ORD_missing")

    def test_status_view(self):
        make_order(amount="500")
        resp = self.client.get(reverse("transaction_status", args=["ORD_1"]))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()["data"]
        self.assertEqual(data["custom_order_id"], "ORD_1")
        self.assertEqual(data["order_amount"], 500.0)
        self.assertEqual(data["student_info"], {"name": "Asha Rao", "id": "STU-1", "email": "asha@example.com"})

    def test_status_view_not_found(self):
        resp = self.client.get(reverse("transaction_status", args=["ORD_missing"]))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"success": False, "message": "Order not found"})

    def test_gateway_poll_requires_collect_request_id(self):
        make_order(collect_request_id=None)
        with self.assertRaises(StatusNotFound):
            get_status_service().check_gateway_status("ORD_1")

    def test_orders_without_collect_request_id_do_not_collide(self):
        make_order("ORD_1", collect_request_id=None)
        make_order("ORD_2", collect_request_id=None)
        self.assertEqual(Order.objects.filter(collect_request_id__isnull=True).count(), 2)


class PaymentsListTests(TestCase):
    def setUp(self):
        self.first = make_order("ORD_1", amount="100", collect_request_id="CR_1", school_id="school-1")
        self.second = make_order("ORD_2", amount="200", collect_request_id="CR_2", school_id="school-2")
        OrderStatus.objects.create(
            collect_id="ORD_2", order_amount=Decimal("200"), transaction_amount=Decimal("200"),
            status="success", payment_mode="card",
        )

    def test_merges_and_paginates_newest_first(self):
        resp = self.client.get(reverse("payments:payments_list"), {"limit": 1})
        body = resp.json()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(body["data"]), 1)
        self.assertEqual(body["data"][0]["custom_order_id"], "ORD_2")
        self.assertEqual(body["data"][0]["status"], "success")
        self.assertEqual(body["data"][0]["payment_mode"], "card")
        self.assertEqual(
            body["pagination"],
            {"current_page": 1, "per_page": 1, "total_pages": 2, "total_records": 2},
        )

    def test_missing_status_falls_back_in_listing(self):
        resp = self.client.get(reverse("payments:payments_list"), {"school_id": "school-1"})
        item = resp.json()["data"][0]
        self.assertEqual(item["custom_order_id"], "ORD_1")
        self.assertEqual(item["status"], "processing")
        self.assertEqual(item["payment_mode"], "")
        self.assertEqual(item["transaction_amount"], 0)

    def test_bad_paging_params(self):
        resp = self.client.get(reverse("payments:payments_list"), {"page": "x"})
        self.assertEqual(resp.status_code, 400)

    def test_sorts_on_merged_amount_both_directions(self):
        make_order("ORD_3", amount="900", collect_request_id="CR_3")
        OrderStatus.objects.create(collect_id="ORD_3", order_amount=Decimal("50"), status="processing")
        url = reverse("payments:payments_list")

        asc = self.client.get(url, {"sort": "order_amount", "order": "asc"}).json()["data"]
        desc = self.client.get(url, {"sort": "order_amount"}).json()["data"]

        self.assertEqual([p["custom_order_id"] for p in asc], ["ORD_3", "ORD_1", "ORD_2"])
        self.assertEqual([p["custom_order_id"] for p in desc], ["ORD_2", "ORD_1", "ORD_3"])

    def test_sorts_on_merged_status(self):
        resp = self.client.get(reverse("payments:payments_list"), {"sort": "status", "order": "asc"})
        self.assertEqual([p["status"] for p in resp.json()["data"]], ["processing", "success"])

    def test_oldest_first_without_sort_field(self):
        resp = self.client.get(reverse("payments:payments_list"), {"order": "asc"})
        self.assertEqual([p["custom_order_id"] for p in resp.json()["data"]], ["ORD_1", "ORD_2"])

    def test_invalid_sort_or_order(self):
        url = reverse("payments:payments_list")
        resp = self.client.get(url, {"sort": "student_name"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("sort", resp.json()["errors"])
        self.assertEqual(self.client.get(url, {"order": "sideways"}).status_code, 400)


class CheckPaymentStatusViewTests(TestCase):
    def test_school_id_required(self):
        with patch("payments.gateway.requests.request") as req:
            resp = self.client.get(reverse("payments:check_payment_status", args=["CR123"]))
        req.assert_not_called()
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "School ID is required")

    def test_passes_gateway_payload_through(self):
        data = {"status": "SUCCESS", "amount": 500, "details": {}, "jwt": "t"}
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, data)):
            resp = self.client.get(
                reverse("payments:check_payment_status", args=["CR123"]), {"school_id": "school-1"}
            )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["data"], data)


class ReconcileOrdersCommandTests(TestCase):
    def setUp(self):
        self.order = make_order("ORD_1", collect_request_id="CR_1")
        make_order("ORD_2", collect_request_id="CR_2")
        Order.objects.update(updated_at=timezone.now() - timedelta(minutes=10))

    def test_applies_terminal_statuses(self):
        responses = [
            FakeResponse(200, {"status": "SUCCESS", "amount": 500, "details": {"mode": "upi"}}),
            FakeResponse(200, {"status": "PENDING", "amount": 0}),
        ]
        out = StringIO()
        with patch("payments.gateway.requests.request", side_effect=responses):
            call_command("reconcile_orders", sleep=0, stdout=out)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "success")
        status = OrderStatus.objects.get(collect_id="ORD_1")
        self.assertEqual(status.status, "success")
        self.assertEqual(status.transaction_amount, Decimal("500"))
        self.assertEqual(status.order_amount, Decimal("500"))
        self.assertEqual(Order.objects.get(custom_order_id="ORD_2").status, "processing")
        self.assertFalse(OrderStatus.objects.filter(collect_id="ORD_2").exists())
        self.assertIn("Checked 2, updated 1 orders.", out.getvalue())

    def test_gateway_errors_do_not_stop_the_run(self):
        responses = [
            requests.ConnectionError("refused"),
            FakeResponse(200, {"status": "FAILED", "amount": 0}),
        ]
        out = StringIO()
        with patch("payments.gateway.requests.request", side_effect=responses):
            call_command("reconcile_orders", sleep=0, stdout=out)

        statuses = dict(Order.objects.values_list("custom_order_id", "status"))
        self.assertIn("failed", statuses.values())
        self.assertIn("Checked 2, updated 1 orders.", out.getvalue())

    def test_nothing_to_do(self):
        Order.objects.update(status="success")
        out = StringIO()
        with patch("payments.gateway.requests.request") as req:
            call_command("reconcile_orders", stdout=out)
        req.assert_not_called()
        self.assertIn("No pending orders to reconcile.", out.getvalue())
