import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Union

import httpx

logger = logging.getLogger(__name__)

MAINTENANCE_MESSAGE = "This product is temporarily unavailable. Please try again later."
DUPLICATE_MARKERS = ("duplicate", "already exists")

SUCCEEDED_STATUSES = {"succeeded", "success", "completed"}
FAILED_STATUSES = {"failed", "error"}
CANCELLED_STATUSES = {"cancelled", "canceled"}
IN_FLIGHT_STATUSES = {"processing", "pending"}


class VendorNetworkError(Exception):
    """The vendor could not be reached or did not answer in time."""


class VendorConfigurationError(Exception):
    pass


class VendorRequestError(Exception):
    def __init__(self, message: str, status_code: int, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


@dataclass(frozen=True)
class VendorSuccess:
    data: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def tracking_number(self) -> str | None:
        reference = self.data.get("invoiceId") or self.raw.get("orderId")
        return str(reference) if reference else None


@dataclass(frozen=True)
class VendorFailure:
    reason: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VendorMaintenance:
    message: str = MAINTENANCE_MESSAGE
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VendorDuplicate:
    """The vendor already holds an order with our reference."""

    message: str
    raw: dict[str, Any] = field(default_factory=dict)


VendorResult = Union[VendorSuccess, VendorFailure, VendorMaintenance, VendorDuplicate]


@dataclass(frozen=True)
class VendorOrderStatus:
    status: str  # succeeded | failed | cancelled | processing | pending | not_found | unknown
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_maintenance_response(payload: dict[str, Any], http_status: int | None = None) -> bool:
    error = payload.get("error")
    return (
        _as_int(payload.get("statusCode")) == 422
        or http_status == 422
        or (isinstance(error, str) and error.strip().lower() == "maintenance")
    )


def is_success_response(payload: dict[str, Any]) -> bool:
    """Vendor reports success as a flag, a status string, a status code or in the message."""
    status_code = _as_int(payload.get("statusCode"))
    return (
        payload.get("success") is True
        or str(payload.get("status") or "").strip().lower() == "success"
        or (status_code is not None and 200 <= status_code <= 299)
        or "successful" in str(payload.get("message") or "").lower()
    )


def is_duplicate_message(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in DUPLICATE_MARKERS)


def normalize_vendor_response(payload: Any, http_status: int | None = None) -> VendorResult:
    if not isinstance(payload, dict):
        return VendorFailure(reason="Invalid response from vendor", raw={"body": payload})

    if is_maintenance_response(payload, http_status):
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip() or message.strip().lower() == "maintenance":
            message = MAINTENANCE_MESSAGE
        return VendorMaintenance(message=message, raw=payload)

    http_ok = http_status is None or 200 <= http_status <= 299
    if http_ok and is_success_response(payload):
        data = payload.get("data")
        return VendorSuccess(data=data if isinstance(data, dict) else {}, raw=payload)

    reason = payload.get("message") or payload.get("error") or "Order creation failed"
    reason = str(reason)
    if is_duplicate_message(reason) or is_duplicate_message(str(payload.get("error") or "")):
        return VendorDuplicate(message=reason, raw=payload)
    return VendorFailure(reason=reason, raw=payload)


def normalize_order_status(payload: Any, http_status: int | None = None) -> VendorOrderStatus:
    if http_status == 404:
        return VendorOrderStatus(status="not_found", message="Order not found at vendor", raw=payload or {})
    if not isinstance(payload, dict):
        return VendorOrderStatus(status="unknown", message="Invalid response from vendor")
    if is_maintenance_response(payload, http_status):
        return VendorOrderStatus(status="unknown", message=MAINTENANCE_MESSAGE, raw=payload)

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    raw_status = str(data.get("status") or payload.get("status") or "").strip().lower()
    message = str(
        data.get("errorMessage") or payload.get("message") or payload.get("msg") or ""
    )

    if raw_status in SUCCEEDED_STATUSES:
        status = "succeeded"
    elif raw_status in FAILED_STATUSES:
        status = "failed"
    elif raw_status in CANCELLED_STATUSES:
        status = "cancelled"
    elif raw_status in IN_FLIGHT_STATUSES:
        status = raw_status
    elif "not found" in message.lower():
        status = "not_found"
    else:
        status = "unknown"
    return VendorOrderStatus(status=status, message=message, data=data, raw=payload)


class VendorClient:
    """HMAC-signed client for the game-credit vendor API."""

    def __init__(
        self,
        base_url: str,
        merchant_id: str,
        secret_key: str,
        x_merchant: str = "",
        api_key: str = "",
        connect_timeout: float = 5,
        read_timeout: float = 20,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url:
            raise VendorConfigurationError("VENDOR_URL is not set")
        if not merchant_id or not secret_key:
            raise VendorConfigurationError("VENDOR_MERCHANT_ID and VENDOR_SECRET_KEY are required")
        self.merchant_id = merchant_id
        self._secret_key = secret_key
        self._api_key = api_key
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(read_timeout, connect=connect_timeout, write=10),
            headers={"Accept": "application/json", "X-Merchant": x_merchant},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def sign(self, path: str, extra: str = "") -> str:
        message = f"{self.merchant_id}{path}{extra}"
        return hmac.new(self._secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        try:
            response = self._client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as exc:
            logger.error("Vendor %s %s failed: %s", method, path, exc)
            raise VendorNetworkError(f"Vendor request {method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": f"Invalid JSON from provider ({response.status_code})"}
        if not response.is_success:
            logger.warning("Vendor %s %s responded %s: %s", method, path, response.status_code, response.text[:500])
        return response.status_code, payload

    def _get_json(self, path: str, extra: str = "") -> dict[str, Any]:
        status_code, payload = self._request("GET", path, params={"signature": self.sign(path, extra)})
        if not 200 <= status_code <= 299:
            raise VendorRequestError(f"Vendor GET {path} returned {status_code}", status_code, payload)
        return payload

    def get_balance(self) -> dict[str, Any]:
        return self._get_json("/merchant")

    def get_products(self) -> dict[str, Any]:
        return self._get_json("/merchant-products")

    def get_product(self, product_id: str) -> dict[str, Any]:
        product_id = str(product_id)
        return self._get_json(f"/merchant-products/{product_id}", product_id)

    def get_product_items(self, product_id: str) -> dict[str, Any]:
        product_id = str(product_id)
        return self._get_json(f"/merchant-products/{product_id}/items", product_id)

    def validate_game_account(self, product_id: str, user_data: dict[str, Any]) -> VendorResult:
        path = "/validate-game-account"
        body = {"signature": self.sign(path), "productId": str(product_id), "data": user_data}
        status_code, payload = self._request("POST", path, json_body=body)
        return normalize_vendor_response(payload, status_code)

    def create_order(
        self,
        product_id: str,
        item_id: str,
        user_input: dict[str, Any],
        partner_order_id: str,
        callback_url: str,
        price: Decimal | None = None,
    ) -> VendorResult:
        product_id = str(product_id)
        path = f"/merchant-products/{product_id}/items"
        body = {
            "signature": self.sign(path, product_id),
            "productId": product_id,
            "productItemId": str(item_id),
            "data": user_input,
            "price": str(price) if price is not None else None,
            "reference": partner_order_id,
            "callbackUrl": callback_url,
        }
        status_code, payload = self._request("POST", path, json_body=body)
        return normalize_vendor_response(payload, status_code)

    def check_order_status(self, order_number: str, tracking_ref: str | None = None) -> VendorOrderStatus:
        """Look an order up by our reference; ``tracking_ref`` rides along for the vendor's audit."""
        path = f"/merchant-order/{order_number}"
        body = {
            "signature": self.sign(path, order_number),
            "api_key": self._api_key,
            "order_id": order_number,
        }
        if tracking_ref:
            body["invoice_id"] = tracking_ref
        status_code, payload = self._request("POST", path, json_body=body)
        return normalize_order_status(payload, status_code)


def get_vendor_client() -> VendorClient:
    from app.config import settings

    return VendorClient(
        base_url=settings.VENDOR_URL,
        merchant_id=settings.VENDOR_MERCHANT_ID,
        secret_key=settings.VENDOR_SECRET_KEY,
        x_merchant=settings.VENDOR_X_MERCHANT,
        api_key=settings.VENDOR_API_KEY,
        connect_timeout=settings.VENDOR_CONNECT_TIMEOUT_SECONDS,
        read_timeout=settings.VENDOR_READ_TIMEOUT_SECONDS,
    )
