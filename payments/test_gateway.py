import json
from unittest.mock import patch

import jwt
import requests
from django.conf import settings
from django.test import SimpleTestCase

from .conf import GatewayConfig, get_gateway_config
from .exceptions import ConfigurationMissing, GatewayProtocolError, GatewayRejected, GatewayUnavailable
from .gateway import GatewayClient, amount_str


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data
        self.text = text if text is not None else json.dumps(data)

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


CREATED = {
    "collect_request_id": "CR123",
    "Collect_request_url": "https://pay.example.com/collect/CR123",
    "sign": "gateway-sign",
}


class AmountStrTests(SimpleTestCase):
    def test_whole_amounts_drop_decimals(self):
        self.assertEqual(amount_str("500"), "500")
        self.assertEqual(amount_str(500), "500")
        self.assertEqual(amount_str("500.00"), "500")

    def test_fractional_amounts_keep_significant_digits(self):
        self.assertEqual(amount_str("500.50"), "500.5")
        self.assertEqual(amount_str("0.05"), "0.05")
        self.assertEqual(amount_str("12.345"), "12.35")


class CreateCollectRequestTests(SimpleTestCase):
    def setUp(self):
        self.gateway = GatewayClient(get_gateway_config())
        self.pg_key = settings.SCHOOLPAY_GATEWAY["PG_KEY"]

    def test_signs_payload_and_posts_with_bearer_token(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)) as req:
            result = self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")

        self.assertEqual(result.collect_request_id, "CR123")
        self.assertEqual(result.payment_url, "https://pay.example.com/collect/CR123")
        self.assertEqual(result.sign, "gateway-sign")

        req.assert_called_once()
        method, url = req.call_args.args
        kwargs = req.call_args.kwargs
        self.assertEqual(method, "POST")
        self.assertEqual(url, "https://pg.example.com/erp/create-collect-request")
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer test-api-key")

        body = kwargs["json"]
        self.assertEqual(body["school_id"], "school-1")
        self.assertEqual(body["amount"], "500")
        self.assertEqual(body["callback_url"], "https://school.example.com/cb")
        claims = jwt.decode(body["sign"], self.pg_key, algorithms=["HS256"])
        self.assertEqual(
            claims,
            {"school_id": "school-1", "amount": "500", "callback_url": "https://school.example.com/cb"},
        )

    def test_defaults_school_and_callback_from_config(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, CREATED)) as req:
            self.gateway.create_collect_request("", "100", "")
        body = req.call_args.kwargs["json"]
        self.assertEqual(body["school_id"], "school-default")
        self.assertEqual(body["callback_url"], "https://frontend.example.com/payment-callback")

    def test_timeout_is_gateway_unavailable(self):
        with patch("payments.gateway.requests.request", side_effect=requests.Timeout("slow")):
            with self.assertRaises(GatewayUnavailable) as cm:
                self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")
        self.assertEqual(cm.exception.status_code, 504)

    def test_connection_error_is_gateway_unavailable(self):
        with patch("payments.gateway.requests.request", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(GatewayUnavailable) as cm:
                self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")
        self.assertEqual(cm.exception.status_code, 503)

    def test_non_2xx_is_rejected_with_upstream_status_and_message(self):
        resp = FakeResponse(401, {"message": "Invalid API key"})
        with patch("payments.gateway.requests.request", return_value=resp):
            with self.assertLogs("payments.gateway", level="ERROR"):
                with self.assertRaises(GatewayRejected) as cm:
                    self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")
        self.assertEqual(cm.exception.status_code, 401)
        self.assertEqual(cm.exception.message, "Invalid API key")
        self.assertEqual(cm.exception.detail, {"message": "Invalid API key"})

    def test_non_json_error_body_is_kept_as_raw_detail(self):
        resp = FakeResponse(500, None, text="<html>oops</html>")
        with patch("payments.gateway.requests.request", return_value=resp):
            with self.assertLogs("payments.gateway", level="ERROR"):
                with self.assertRaises(GatewayRejected) as cm:
                    self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")
        self.assertEqual(cm.exception.status_code, 500)
        self.assertEqual(cm.exception.detail, {"raw": "<html>oops</html>"})

    def test_missing_collect_request_id_is_protocol_error(self):
        resp = FakeResponse(200, {"Collect_request_url": "https://pay.example.com/x"})
        with patch("payments.gateway.requests.request", return_value=resp):
            with self.assertLogs("payments.gateway", level="ERROR"):
                with self.assertRaises(GatewayProtocolError):
                    self.gateway.create_collect_request("school-1", "500", "https://school.example.com/cb")

    def test_missing_signing_key_fails_before_any_request(self):
        config = GatewayConfig(base_url="https://pg.example.com/erp", api_key="k", pg_key="")
        with patch("payments.gateway.requests.request") as req:
            with self.assertLogs("payments.conf", level="ERROR"):
                with self.assertRaises(ConfigurationMissing):
                    GatewayClient(config).create_collect_request("school-1", "500", "https://x.example.com")
        req.assert_not_called()


class CheckStatusTests(SimpleTestCase):
    def setUp(self):
        self.gateway = GatewayClient(get_gateway_config())

    def test_signed_get_with_short_timeout(self):
        data = {"status": "SUCCESS", "amount": 500, "details": {"payment_methods": "upi"}, "jwt": "t"}
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, data)) as req:
            result = self.gateway.check_status("school-1", "CR123")

        self.assertEqual(result, data)
        method, url = req.call_args.args
        kwargs = req.call_args.kwargs
        self.assertEqual(method, "GET")
        self.assertEqual(url, "https://pg.example.com/erp/collect-request/CR123")
        self.assertEqual(kwargs["timeout"], 15)
        self.assertEqual(kwargs["params"]["school_id"], "school-1")
        claims = jwt.decode(
            kwargs["params"]["sign"], settings.SCHOOLPAY_GATEWAY["PG_KEY"], algorithms=["HS256"]
        )
        self.assertEqual(claims, {"school_id": "school-1", "collect_request_id": "CR123"})

    def test_response_without_status_is_protocol_error(self):
        with patch("payments.gateway.requests.request", return_value=FakeResponse(200, {"amount": 1})):
            with self.assertRaises(GatewayProtocolError):
                self.gateway.check_status("school-1", "CR123")


class GatewayConfigTests(SimpleTestCase):
    def test_config_follows_setting_overrides(self):
        overridden = {**settings.SCHOOLPAY_GATEWAY, "BASE_URL": "https://other.example.com/erp/"}
        with self.settings(SCHOOLPAY_GATEWAY=overridden):
            self.assertEqual(get_gateway_config().base_url, "https://other.example.com/erp")
        self.assertEqual(get_gateway_config().base_url, "https://pg.example.com/erp")

    def test_missing_api_key_is_configuration_error(self):
        config = GatewayConfig(base_url="https://pg.example.com/erp", api_key="", pg_key="secret")
        with self.assertLogs("payments.conf", level="ERROR"):
            with self.assertRaises(ConfigurationMissing) as cm:
                config.require_credentials()
        self.assertEqual(cm.exception.message, "Payment API key configuration missing")
