"""HTTP gateway client: request shapes, error mapping and callback signatures."""
from decimal import Decimal

import pytest
import requests

from core.deadline import Deadline
from core.errors import GatewayError, InvalidSignature, Timeout, ValidationFailed
from core.payment_processor import CheckoutRequest, GatewayClient, canonical_payload, sign_payload


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("No JSON")
        return self._body


@pytest.fixture
def client():
    return GatewayClient(base_url="https://gateway.test/", merchant_id="M1", secret="s3cret", timeout=5)


@pytest.fixture
def calls(monkeypatch):
    recorded = []
    responses = []

    def fake(method):
        def _call(url, **kwargs):
            recorded.append((method, url, kwargs))
            response = responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return _call

    monkeypatch.setattr(requests, "post", fake("POST"))
    monkeypatch.setattr(requests, "get", fake("GET"))
    return recorded, responses


def test_create_checkout_posts_form(client, calls):
    recorded, responses = calls
    responses.append(FakeResponse(body={"redirectUrl": "https://gateway.test/pay/abc", "gatewayRef": "abc"}))

    session = client.create_checkout(CheckoutRequest(
        reference="pay-1", amount=Decimal("1008.5"), item_name="TrustWork escrow: Site", buyer_email="a@b.co",
    ))

    assert session.gateway_ref == "abc"
    method, url, kwargs = recorded[0]
    assert (method, url) == ("POST", "https://gateway.test/checkout")
    assert kwargs["data"]["amount"] == "1008.50"
    assert kwargs["data"]["reference"] == "pay-1"
    assert kwargs["headers"]["X-Merchant-Id"] == "M1"
    assert kwargs["timeout"] == 5


def test_checkout_response_must_have_redirect(client, calls):
    _, responses = calls
    responses.append(FakeResponse(body={"gatewayRef": "abc"}))

    with pytest.raises(GatewayError):
        client.create_checkout(CheckoutRequest("pay-1", Decimal("10"), "Item", "a@b.co"))


@pytest.mark.parametrize("response, retryable", [
    (FakeResponse(status_code=503, text="unavailable"), True),
    (FakeResponse(status_code=429, text="slow down"), True),
    (FakeResponse(status_code=400, text="bad amount"), False),
    (requests.exceptions.ConnectionError("refused"), True),
    (requests.exceptions.Timeout("read timeout"), True),
])
def test_error_mapping(client, calls, response, retryable):
    _, responses = calls
    responses.append(response)

    with pytest.raises(GatewayError) as exc:
        client.refund("abc", Decimal("100"), "pay-1")
    assert exc.value.retryable is retryable


def test_expired_deadline_short_circuits(client, calls):
    recorded, _ = calls
    deadline = Deadline(0)

    with pytest.raises(Timeout):
        client.query_payout("po-1", deadline=deadline)
    assert recorded == []


def test_payout_and_query(client, calls):
    recorded, responses = calls
    responses.append(FakeResponse(body={"payoutRef": "po-1", "state": "accepted"}))
    responses.append(FakeResponse(body={"state": "completed"}))

    receipt = client.execute_payout({"accountNumber": "123456"}, Decimal("900"), "pay-1")
    state = client.query_payout("po-1")

    assert receipt.payout_ref == "po-1"
    assert receipt.state == "accepted"
    assert recorded[0][2]["json"]["amount"] == "900.00"
    assert state.state == "completed"
    assert recorded[1][1] == "https://gateway.test/payout/po-1"


def test_unknown_payout_state(client, calls):
    _, responses = calls
    responses.append(FakeResponse(body={"state": "lost"}))

    with pytest.raises(GatewayError):
        client.query_payout("po-1")


class TestCallbackVerification:
    def signed(self, **overrides):
        payload = {"reference": "pay-1", "gatewayRef": "abc", "status": "paid", "grossAmount": "1008.50"}
        payload.update(overrides)
        payload["signature"] = sign_payload(payload, "s3cret")
        return payload

    def test_valid(self, client):
        result = client.verify_callback(self.signed())
        assert result.reference == "pay-1"
        assert result.gross_amount == Decimal("1008.50")

    def test_canonical_form_ignores_key_order_and_signature(self):
        a = {"b": 1, "a": "x", "signature": "zzz"}
        assert canonical_payload(a) == '{"a":"x","b":1}'

    def test_wrong_secret(self, client):
        payload = self.signed()
        payload["signature"] = sign_payload(payload, "other")
        with pytest.raises(InvalidSignature):
            client.verify_callback(payload)

    def test_missing_signature(self, client):
        payload = self.signed()
        del payload["signature"]
        with pytest.raises(InvalidSignature):
            client.verify_callback(payload)

    def test_unknown_status(self, client):
        with pytest.raises(ValidationFailed) as exc:
            client.verify_callback(self.signed(status="chargeback"))
        assert "status" in exc.value.fields

    def test_missing_field(self, client):
        payload = self.signed()
        del payload["gatewayRef"]
        payload["signature"] = sign_payload(payload, "s3cret")
        with pytest.raises(ValidationFailed) as exc:
            client.verify_callback(payload)
        assert "gatewayRef" in exc.value.fields
