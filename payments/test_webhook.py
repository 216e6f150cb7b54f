import json
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from .models import Order, OrderStatus, WebhookLog
from .tests import make_order


def delivery(order_id="ORD_1", status="SUCCESS", **info):
    order_info = {
        "order_id": order_id,
        "order_amount": 500,
        "transaction_amount": 500,
        "gateway": "PhonePe",
        "bank_reference": "YESBNK222",
        "status": status,
        "payment_mode": "upi",
        "payemnt_details": "success@ybl",
        "Payment_message": "payment success",
        "payment_time": "2025-04-23T08:14:21.945+00:00",
        "error_message": "NA",
    }
    order_info.update(info)
    return {"status": 200, "order_info": order_info}


class WebhookTests(TestCase):
    def setUp(self):
        self.order = make_order("ORD_1", amount="500", collect_request_id="CR_1")

    def _post(self, payload):
        return self.client.post(
            reverse("webhook"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_success_delivery_updates_status_and_order(self):
        resp = self._post(delivery())

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["status"], "success")

        status = OrderStatus.objects.get(collect_id="ORD_1")
        self.assertEqual(status.collect_request_id, "CR_1")
        self.assertEqual(status.order_amount, Decimal("500"))
        self.assertEqual(status.transaction_amount, Decimal("500"))
        self.assertEqual(status.payment_mode, "upi")
        self.assertEqual(status.payment_details, "success@ybl")
        self.assertEqual(status.bank_reference, "YESBNK222")
        self.assertEqual(status.payment_message, "payment success")
        self.assertEqual(status.error_message, "NA")
        self.assertEqual(status.gateway, "PhonePe")
        self.assertEqual(
            status.payment_time, datetime(2025, 4, 23, 8, 14, 21, 945000, tzinfo=dt_timezone.utc)
        )

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "success")

        log = WebhookLog.objects.get()
        self.assertEqual(log.order_id, "ORD_1")
        self.assertEqual(log.status, 200)
        self.assertTrue(log.processed)
        self.assertEqual(log.error_message, "")
        self.assertIsNotNone(log.processed_at)
        self.assertEqual(log.payload, delivery())

    def test_same_delivery_twice_is_idempotent(self):
        self._post(delivery())
        self._post(delivery())

        self.assertEqual(OrderStatus.objects.filter(collect_id="ORD_1").count(), 1)
        self.assertEqual(WebhookLog.objects.count(), 2)
        self.assertEqual(WebhookLog.objects.filter(processed=True).count(), 2)

    def test_updates_seed_row_in_place_last_write_wins(self):
        OrderStatus.objects.create(
            collect_id="ORD_1", collect_request_id="CR_1", order_amount=Decimal("500"), status="processing",
        )

        self._post(delivery(status="FAILED", transaction_amount=0, error_message="declined"))
        self._post(delivery(status="SUCCESS", transaction_amount="499.50", bank_reference="REF2"))

        status = OrderStatus.objects.get(collect_id="ORD_1")
        self.assertEqual(OrderStatus.objects.count(), 1)
        self.assertEqual(status.status, "success")
        self.assertEqual(status.transaction_amount, Decimal("499.50"))
        self.assertEqual(status.bank_reference, "REF2")
        self.assertEqual(status.error_message, "NA")

    def test_status_mapping_to_order(self):
        cases = [("FAILED", "failed"), ("success", "success"), ("PENDING", "processing"), ("", "processing")]
        for payload_status, expected in cases:
            with self.subTest(status=payload_status):
                self._post(delivery(status=payload_status))
                self.order.refresh_from_db()
                self.assertEqual(self.order.status, expected)

    def test_status_is_stored_lower_case(self):
        self._post(delivery(status="FAILED"))
        self.assertEqual(OrderStatus.objects.get().status, "failed")

    def test_missing_fields_take_defaults(self):
        self._post({"status": 200, "order_info": {"order_id": "ORD_1", "transaction_amount": "n/a"}})

        status = OrderStatus.objects.get()
        self.assertEqual(status.transaction_amount, Decimal("0"))
        self.assertEqual(status.order_amount, Decimal("500"))
        self.assertEqual(status.status, "pending")
        self.assertEqual(status.payment_mode, "")
        self.assertEqual(status.bank_reference, "")
        self.assertEqual(status.gateway, "Edviron")
        self.assertIsNotNone(status.payment_time)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "processing")

    def test_unknown_order_is_logged_and_acknowledged(self):
        with self.assertLogs("payments.webhook", level="WARNING"):
            resp = self._post(delivery(order_id="ORD_missing"))

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        log = WebhookLog.objects.get()
        self.assertEqual(log.order_id, "ORD_missing")
        self.assertTrue(log.processed)
        self.assertEqual(log.error_message, "order not found")
        self.assertFalse(OrderStatus.objects.exists())

    def test_missing_order_info_is_logged_then_marked(self):
        resp = self._post({"status": 200})

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["success"])
        log = WebhookLog.objects.get()
        self.assertEqual(log.order_id, "unknown")
        self.assertEqual(log.payload, {"status": 200})
        self.assertTrue(log.processed)
        self.assertEqual(log.error_message, "missing order_info")

    def test_malformed_body_is_still_logged(self):
        resp = self.client.post(reverse("webhook"), data="not-json", content_type="application/json")

        self.assertEqual(resp.status_code, 200)
        log = WebhookLog.objects.get()
        self.assertEqual(log.payload, {"raw": "not-json"})
        self.assertEqual(log.error_message, "missing order_info")

    def test_processing_error_is_absorbed_and_logged_unprocessed(self):
        with patch("payments.webhook.upsert_order_status", side_effect=RuntimeError("db down")):
            with self.assertLogs("payments.webhook", level="ERROR"):
                resp = self._post(delivery())

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertNotIn("error", body)
        log = WebhookLog.objects.get()
        self.assertFalse(log.processed)
        self.assertEqual(log.error_message, "db down")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "processing")

    def test_failed_initial_log_write_still_processes(self):
        real_create = WebhookLog.objects.create
        calls = []

        def flaky_create(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise DatabaseError("log table locked")
            return real_create(**kwargs)

        with patch.object(WebhookLog.objects, "create", side_effect=flaky_create):
            with self.assertLogs("payments.webhook", level="ERROR"):
                resp = self._post(delivery())

        self.assertTrue(resp.json()["success"])
        self.assertEqual(OrderStatus.objects.get().status, "success")
        log = WebhookLog.objects.get()
        self.assertTrue(log.processed)
        self.assertEqual(log.error_message, "initial webhook log write failed")

    def test_deliveries_for_different_orders_do_not_cross(self):
        make_order("ORD_2", amount="900", collect_request_id="CR_2")

        self._post(delivery("ORD_1", status="SUCCESS", transaction_amount=500))
        self._post(delivery("ORD_2", status="FAILED", transaction_amount=0))

        first = OrderStatus.objects.get(collect_id="ORD_1")
        second = OrderStatus.objects.get(collect_id="ORD_2")
        self.assertEqual((first.status, first.order_amount), ("success", Decimal("500")))
        self.assertEqual((second.status, second.order_amount), ("failed", Decimal("900")))
        self.assertEqual(second.collect_request_id, "CR_2")
        self.assertEqual(Order.objects.get(custom_order_id="ORD_2").status, "failed")


class MalformedDeliveryTests(TestCase):
    def setUp(self):
        self.order = make_order("ORD_1", amount="500", collect_request_id="CR_1")

    def _post_raw(self, data):
        return self.client.post(reverse("webhook"), data=data, content_type="application/json")

    def _post(self, payload):
        return self._post_raw(json.dumps(payload))

    def test_out_of_range_status_code_is_logged_as_zero(self):
        payload = delivery()
        payload["status"] = 10**20

        resp = self._post(payload)

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        log = WebhookLog.objects.get()
        self.assertEqual(log.status, 0)
        self.assertTrue(log.processed)
        self.assertEqual(log.payload["status"], 10**20)
        self.assertEqual(OrderStatus.objects.get().status, "success")

    def test_impossible_calendar_date_falls_back_to_now(self):
        before = timezone.now()
        with self.assertLogs("payments.webhook", level="WARNING") as logs:
            resp = self._post(delivery(payment_time="2025-02-30T10:00:00"))

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertIn("Unparseable payment_time", "\n".join(logs.output))
        status = OrderStatus.objects.get()
        self.assertEqual(status.status, "success")
        self.assertGreaterEqual(status.payment_time, before)
        log = WebhookLog.objects.get()
        self.assertTrue(log.processed)
        self.assertEqual(log.error_message, "")

    def test_non_object_json_bodies_are_logged_raw(self):
        for body in ("null", "[1, 2]", "42", '"text"'):
            with self.subTest(body=body):
                WebhookLog.objects.all().delete()
                resp = self._post_raw(body)

                self.assertEqual(resp.status_code, 200)
                self.assertFalse(resp.json()["success"])
                log = WebhookLog.objects.get()
                self.assertEqual(log.payload, {"raw": body})
                self.assertEqual(log.order_id, "unknown")
                self.assertTrue(log.processed)
                self.assertEqual(log.error_message, "missing order_info")

    def test_over_length_strings_are_truncated(self):
        resp = self._post(delivery(
            payment_mode="m" * 500, bank_reference="b" * 500, gateway="g" * 500, status="S" * 100,
        ))

        self.assertEqual(resp.status_code, 200)
        status = OrderStatus.objects.get()
        self.assertEqual(status.payment_mode, "m" * 64)
        self.assertEqual(status.bank_reference, "b" * 128)
        self.assertEqual(status.gateway, "g" * 64)
        self.assertEqual(status.status, "s" * 32)
        self.assertTrue(WebhookLog.objects.get().processed)

    def test_over_length_order_id_is_truncated_in_log(self):
        resp = self._post(delivery(order_id="X" * 300))

        self.assertEqual(resp.status_code, 200)
        log = WebhookLog.objects.get()
        self.assertEqual(log.order_id, "X" * 64)
        self.assertEqual(log.error_message, "order not found")

    def test_out_of_range_transaction_amount_becomes_zero(self):
        with self.assertLogs("payments.webhook", level="WARNING"):
            resp = self._post(delivery(transaction_amount="1e20"))

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertEqual(OrderStatus.objects.get().transaction_amount, Decimal("0"))

    def test_unexpected_error_on_initial_log_write_still_processes(self):
        real_create = WebhookLog.objects.create
        calls = []

        def flaky_create(**kwargs):
            calls.append(kwargs)
            if len(calls) == 1:
                raise OverflowError("Python int too large to convert to SQLite INTEGER")
            return real_create(**kwargs)

        with patch.object(WebhookLog.objects, "create", side_effect=flaky_create):
            with self.assertLogs("payments.webhook", level="ERROR"):
                resp = self._post(delivery())

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertEqual(OrderStatus.objects.get().status, "success")
        self.assertTrue(WebhookLog.objects.get().processed)
