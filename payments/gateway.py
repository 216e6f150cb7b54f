"""Signed-request client for the Edviron collect-request API."""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

import jwt
import requests
from requests import RequestException, Timeout

from .conf import GatewayConfig, get_gateway_config
from .exceptions import GatewayProtocolError, GatewayRejected, GatewayUnavailable, InvalidRequest

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


@dataclass(frozen=True)
class CollectRequest:
    collect_request_id: str
    payment_url: str
    sign: str


def amount_str(amount) -> str:
    """Render an amount the way the gateway signs it: ``500``, ``500.5``."""
    try:
        q = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequest("Invalid amount value")
    s = format(q, "f")
    if s.endswith(".00"):
        return s[:-3]
    return s.rstrip("0") if "." in s else s


def _json_body(resp):
    """Return the decoded JSON object, or None when the body is not one."""
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _truncate(token: str) -> str:
    return token[:20] + "..." if token else ""


class GatewayClient:
    def __init__(self, config: GatewayConfig):
        self.config = config

    def sign(self, payload: dict) -> str:
        return jwt.encode(payload, self.config.pg_key, algorithm="HS256")

    def _headers(self) -> dict:
        return {**COMMON_HEADERS, "Authorization": f"Bearer {self.config.api_key}"}

    def _send(self, method, url, *, timeout, action, **kwargs):
        try:
            resp = requests.request(method, url, headers=self._headers(), timeout=timeout, **kwargs)
        except Timeout as e:
            logger.error("%s timed out after %ss: %s", action, timeout, e)
            raise GatewayUnavailable("Payment API timeout - please try again", status_code=504, detail=str(e))
        except RequestException as e:
            logger.error("%s failed, no response from gateway: %s", action, e)
            raise GatewayUnavailable(detail=str(e))

        data = _json_body(resp)
        if not 200 <= resp.status_code < 300:
            detail = data if data is not None else {"raw": resp.text[:800]}
            logger.error("%s rejected: status=%s body=%s", action, resp.status_code, str(detail)[:800])
            raise GatewayRejected(
                (data or {}).get("message") or f"{action} failed",
                status_code=resp.status_code,
                detail=detail,
            )
        if data is None:
            raise GatewayProtocolError(f"{action} returned a non-JSON body", detail={"raw": resp.text[:800]})
        return data

    def create_collect_request(self, school_id, amount, callback_url) -> CollectRequest:
        """POST a signed create-collect-request and return the gateway's identifiers."""
        self.config.require_credentials()
        school_id = school_id or self.config.school_id
        callback_url = callback_url or self.config.callback_url
        amount_s = amount_str(amount)
        sign = self.sign({"school_id": school_id, "amount": amount_s, "callback_url": callback_url})
        body = {"school_id": school_id, "amount": amount_s, "callback_url": callback_url, "sign": sign}

        logger.info(
            "Creating collect request school_id=%s amount=%s sign=%s",
            school_id, amount_s, _truncate(sign),
        )
        data = self._send(
            "POST",
            f"{self.config.base_url}/create-collect-request",
            json=body,
            timeout=self.config.create_timeout,
            action="Create collect request",
        )
        collect_request_id = data.get("collect_request_id")
        if not collect_request_id:
            logger.error("Create collect request response missing collect_request_id: %s", str(data)[:800])
            raise GatewayProtocolError(
                "Invalid response from payment API - missing collect_request_id", detail=data
            )
        return CollectRequest(
            collect_request_id=str(collect_request_id),
            payment_url=data.get("Collect_request_url") or "",
            sign=data.get("sign") or "",
        )

    def check_status(self, school_id, collect_request_id) -> dict:
        """Return the gateway's ``{status, amount, details, jwt}`` for a collect request."""
        self.config.require_credentials()
        school_id = school_id or self.config.school_id
        sign = self.sign({"school_id": school_id, "collect_request_id": collect_request_id})
        logger.info("Checking payment status collect_request_id=%s", collect_request_id)
        data = self._send(
            "GET",
            f"{self.config.base_url}/collect-request/{collect_request_id}",
            params={"school_id": school_id, "sign": sign},
            timeout=self.config.status_timeout,
            action="Payment status check",
        )
        if "status" not in data:
            raise GatewayProtocolError("Invalid response from payment API - missing status", detail=data)
        return data


def get_gateway_client() -> GatewayClient:
    return GatewayClient(get_gateway_config())
