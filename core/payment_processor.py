# Payment Processor for TrustWork escrow
# The orchestrator depends only on the PaymentProcessor interface; GatewayClient
# is the HTTP implementation for the hosted South-African gateway.
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from config import app_config
from core.deadline import Deadline
from core.errors import GatewayError, InvalidSignature, Timeout, ValidationFailed
from core.fees import to_money

logger = logging.getLogger(__name__)

CALLBACK_STATUSES = ("paid", "failed")
PAYOUT_STATES = ("pending", "processing", "completed", "failed")


@dataclass(frozen=True)
class CheckoutRequest:
    reference: str          # escrow payment id
    amount: Decimal         # total charged to the buyer
    item_name: str
    buyer_email: str
    return_url: str = app_config.GATEWAY_RETURN_URL
    cancel_url: str = app_config.GATEWAY_CANCEL_URL
    notify_url: str = app_config.GATEWAY_NOTIFY_URL


@dataclass(frozen=True)
class CheckoutSession:
    redirect_url: str
    gateway_ref: str


@dataclass(frozen=True)
class CallbackResult:
    reference: str
    gateway_ref: str
    status: str             # paid | failed
    gross_amount: Decimal


@dataclass(frozen=True)
class PayoutReceipt:
    payout_ref: Optional[str]
    state: str              # accepted | rejected
    error: Optional[str] = None


@dataclass(frozen=True)
class PayoutState:
    state: str              # pending | processing | completed | failed
    error: Optional[str] = None


def canonical_payload(payload: Dict[str, Any]) -> str:
    """Canonical serialization used for callback signatures: sorted keys, no whitespace."""
    body = {k: v for k, v in payload.items() if k != "signature"}
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def sign_payload(payload: Dict[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_payload(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class PaymentProcessor(ABC):
    """Contract the escrow orchestrator drives."""

    @abstractmethod
    def create_checkout(self, request: CheckoutRequest, deadline: Optional[Deadline] = None) -> CheckoutSession:
        ...

    @abstractmethod
    def verify_callback(self, payload: Dict[str, Any]) -> CallbackResult:
        ...

    @abstractmethod
    def execute_payout(self, recipient_bank: Dict[str, Any], amount: Decimal, reference: str,
                       deadline: Optional[Deadline] = None) -> PayoutReceipt:
        ...

    @abstractmethod
    def query_payout(self, payout_ref: str, deadline: Optional[Deadline] = None) -> PayoutState:
        ...

    @abstractmethod
    def refund(self, gateway_ref: str, amount: Decimal, reference: str,
               deadline: Optional[Deadline] = None) -> None:
        ...


class GatewayClient(PaymentProcessor):
    """HTTP client for the hosted payment gateway."""

    def __init__(
        self,
        base_url: str = app_config.GATEWAY_BASE_URL,
        merchant_id: str = app_config.GATEWAY_MERCHANT_ID,
        secret: str = app_config.GATEWAY_SECRET,
        timeout: float = app_config.GATEWAY_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.merchant_id = merchant_id
        self.secret = secret
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {self.secret}",
            "X-Merchant-Id": self.merchant_id,
        }

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        form: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """Make a request to the gateway, translating failures into GatewayError/Timeout."""
        deadline = deadline or Deadline.none()
        deadline.check(f"gateway {endpoint}")
        url = f"{self.base_url}{endpoint}"
        timeout = deadline.clamp(self.timeout)

        try:
            if method == "GET":
                response = requests.get(url, headers=self.headers, timeout=timeout)
            elif method == "POST" and form:
                response = requests.post(url, headers=self.headers, data=data, timeout=timeout)
            elif method == "POST":
                response = requests.post(url, headers=self.headers, json=data, timeout=timeout)
            else:
                raise ValueError(f"Unsupported method: {method}")
        except requests.exceptions.Timeout:
            if deadline.expired():
                raise Timeout(f"Deadline exceeded calling gateway {endpoint}")
            logger.warning(f"Gateway timeout on {method} {endpoint}")
            raise GatewayError(f"Gateway timed out on {endpoint}", retryable=True)
        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway API error: {e}")
            raise GatewayError(f"Payment service error: {str(e)}", retryable=True)

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(f"Gateway {endpoint} returned {response.status_code}")
            raise GatewayError(f"Gateway returned {response.status_code}", retryable=True)
        if response.status_code >= 400:
            logger.error(f"Gateway {endpoint} rejected request: {response.status_code} {response.text}")
            raise GatewayError(f"Gateway rejected request: {response.text}", retryable=False)

        try:
            return response.json()
        except ValueError:
            raise GatewayError(f"Gateway returned a non-JSON body for {endpoint}", retryable=False)

    def create_checkout(self, request: CheckoutRequest, deadline: Optional[Deadline] = None) -> CheckoutSession:
        """
        Start a hosted checkout.

        Args:
            request: reference (escrow id), amount, buyer and redirect URLs
            deadline: request deadline

        Returns:
            CheckoutSession with the redirect URL and the gateway's reference
        """
        data = {
            "merchantId": self.merchant_id,
            "amount": f"{to_money(request.amount):.2f}",
            "itemName": request.item_name[:100],
            "returnUrl": request.return_url,
            "cancelUrl": request.cancel_url,
            "notifyUrl": request.notify_url,
            "reference": request.reference,
            "buyerEmail": request.buyer_email,
        }
        logger.info(f"Creating gateway checkout for escrow {request.reference}")
        body = self._make_request("POST", "/checkout", data, form=True, deadline=deadline)

        redirect_url = body.get("redirectUrl")
        gateway_ref = body.get("gatewayRef")
        if not redirect_url or not gateway_ref:
            raise GatewayError("Gateway checkout response is missing redirectUrl or gatewayRef")
        return CheckoutSession(redirect_url=redirect_url, gateway_ref=gateway_ref)

    def verify_callback(self, payload: Dict[str, Any]) -> CallbackResult:
        """
        Verify a signed notification delivered to notifyUrl.

        Raises:
            InvalidSignature: signature missing or not matching the shared secret
            ValidationFailed: payload is missing fields or has an unknown status
        """
        signature = payload.get("signature")
        if not signature or not hmac.compare_digest(sign_payload(payload, self.secret), str(signature)):
            raise InvalidSignature("Callback signature mismatch")

        missing = {
            key: "Field is required"
            for key in ("reference", "gatewayRef", "status", "grossAmount")
            if payload.get(key) in (None, "")
        }
        if missing:
            raise ValidationFailed(missing)
        if payload["status"] not in CALLBACK_STATUSES:
            raise ValidationFailed({"status": f"Unknown callback status {payload['status']}"})

        return CallbackResult(
            reference=str(payload["reference"]),
            gateway_ref=str(payload["gatewayRef"]),
            status=payload["status"],
            gross_amount=to_money(payload["grossAmount"]),
        )

    def execute_payout(self, recipient_bank: Dict[str, Any], amount: Decimal, reference: str,
                       deadline: Optional[Deadline] = None) -> PayoutReceipt:
        """Instruct an EFT transfer of the freelancer's net amount."""
        data = {
            "recipientBank": recipient_bank,
            "amount": f"{to_money(amount):.2f}",
            "reference": reference,
        }
        logger.info(f"Requesting payout for escrow {reference}")
        body = self._make_request("POST", "/payout", data, deadline=deadline)
        return PayoutReceipt(
            payout_ref=body.get("payoutRef"),
            state=body.get("state", "rejected"),
            error=body.get("error"),
        )

    def query_payout(self, payout_ref: str, deadline: Optional[Deadline] = None) -> PayoutState:
        body = self._make_request("GET", f"/payout/{payout_ref}", deadline=deadline)
        state = body.get("state")
        if state not in PAYOUT_STATES:
            raise GatewayError(f"Unknown payout state {state!r} for {payout_ref}")
        return PayoutState(state=state, error=body.get("error"))

    def refund(self, gateway_ref: str, amount: Decimal, reference: str,
               deadline: Optional[Deadline] = None) -> None:
        data = {
            "gatewayRef": gateway_ref,
            "amount": f"{to_money(amount):.2f}",
            "reference": reference,
        }
        logger.info(f"Requesting refund for escrow {reference}")
        self._make_request("POST", "/refund", data, deadline=deadline)


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency returning the configured processor."""
    return GatewayClient()
