"""Tests for the shared connector operations."""

import json

import pytest

from payments_gateway.connectors.base import (
    ConnectorBase,
    HttpConnector,
    card_expiration,
    derive_idempotency_key,
    format_amount,
    parse_amount,
    scrub,
)
from payments_gateway.models import ErrorCode, ErrorKind, TransactionAction
from payments_gateway.normalizer import ProcessorProfile, WireFormat
from payments_gateway.transport import ConnectionFailedError, ResponseInterruptedError

ACME_PROFILE = ProcessorProfile(
    name="Acme",
    wire_format=WireFormat.JSON,
    success=lambda fields, action: fields.get("status") == "approved",
    message_fields=("message",),
    extract_token_fields=lambda fields, action: (
        [fields.get("id"), fields.get("last4")] if fields.get("id") else None
    ),
    response_code_field="code",
    error_codes={"05": ErrorCode.CARD_DECLINED},
    ambiguous_codes=frozenset({"91"}),
)


class AcmeConnector(HttpConnector):
    """Minimal JSON connector without a native purchase."""

    name = "acme"
    profile = ACME_PROFILE
    token_layout = ("transaction_id", "last4")
    supports_purchase = False
    test_url = "https://acme.test/v1"
    live_url = "https://acme.example/v1"
    required_parameters = {
        TransactionAction.AUTHORIZE: ("payment_method",),
        TransactionAction.CAPTURE: ("authorization",),
    }

    def validate(self, command):
        payment_method = command.param("payment_method")
        if isinstance(payment_method, dict) and not payment_method.get("number"):
            return "Card number is required"
        return None

    def build_request(self, command):
        payload = {
            "action": command.action.value,
            "amount": command.amount,
            "key": command.idempotency_key,
            "transaction_id": self.reference(command)["transaction_id"],
        }
        return "POST", self.url, json.dumps(payload), {"Content-Type": "application/json"}


def _approved(**fields):
    body = {"status": "approved", "message": "Approved"}
    body.update(fields)
    return json.dumps(body)


def _payload(transport, index):
    return json.loads(transport.requests[index]["body"])


@pytest.fixture
def acme(fake_transport):
    return AcmeConnector(transport=fake_transport)


class TestHelpers:
    """Tests for the module-level helpers."""

    def test_format_amount(self):
        assert format_amount(1000) == "10.00"
        assert format_amount(5) == "0.05"
        assert format_amount(0) == "0.00"
        assert format_amount(None) is None

    def test_parse_amount(self):
        assert parse_amount("10.00") == 1000
        assert parse_amount("1.5") == 150
        assert parse_amount("7") == 700
        assert parse_amount("") is None

    def test_card_expiration(self):
        assert card_expiration({"month": 9, "year": 2030}) == "0930"
        assert card_expiration({"expiration": "12/25"}) == "1225"

    def test_derive_idempotency_key(self):
        assert derive_idempotency_key("order-1", TransactionAction.CAPTURE) == "order-1:capture"

    def test_scrub(self):
        raw = {
            "id": "TXN123",
            "card": {"number": "4242424242424242", "cvc": "123", "last4": "4242"},
            "payment_method.card_number": "4111111111111111",
        }
        assert scrub(raw) == {"id": "TXN123", "card": {"last4": "4242"}}


class TestOperations:
    """Tests for the single-call operations."""

    def test_authorize(self, acme, fake_transport, card):
        fake_transport.queue(_approved(id="TXN123", last4="4242"))
        result = acme.authorize(1000, card, "order-1")

        assert result.success is True
        assert result.authorization == "TXN123;4242"
        assert result.amount == 1000
        assert result.test is True
        assert _payload(fake_transport, 0)["key"] == "order-1"
        assert fake_transport.requests[0]["url"] == "https://acme.test/v1"

    def test_live_url(self, fake_transport):
        connector = AcmeConnector(test=False, transport=fake_transport)
        assert connector.url == "https://acme.example/v1"

    def test_capture_decodes_token(self, acme, fake_transport):
        """Only the transaction id of the token reaches the processor."""
        fake_transport.queue(_approved())
        acme.capture(1000, "TXN123;4242", "order-1:capture")
        assert _payload(fake_transport, 0)["transaction_id"] == "TXN123"

    def test_generated_idempotency_key(self, acme, fake_transport, card):
        fake_transport.queue(_approved(), _approved())
        acme.authorize(100, card)
        acme.authorize(100, card)
        first, second = _payload(fake_transport, 0)["key"], _payload(fake_transport, 1)["key"]
        assert first and second and first != second

    def test_decline(self, acme, fake_transport, card):
        fake_transport.queue(json.dumps({"status": "declined", "code": "05", "message": "Do not honor"}))
        result = acme.authorize(1000, card, "order-1")

        assert result.success is False
        assert result.error_code == ErrorCode.CARD_DECLINED
        assert acme.error_kind(result) == ErrorKind.DECLINE


class TestValidation:
    """Commands rejected before anything is sent."""

    def test_invalid_amount(self, acme, fake_transport, card):
        result = acme.authorize(-5, card, "order-1")
        assert result.success is False
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert result.message.startswith("Invalid request:")
        assert fake_transport.requests == []

    def test_missing_required_parameter(self, acme, fake_transport):
        result = acme.capture(1000, None, "order-1")
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert result.message == "Missing required parameter: authorization"
        assert fake_transport.requests == []

    def test_connector_validation(self, acme, fake_transport):
        result = acme.authorize(1000, {"month": 9, "year": 2030}, "order-1")
        assert result.message == "Card number is required"
        assert fake_transport.requests == []

    def test_unsupported_action(self, fake_transport):
        class CaptureOnly(AcmeConnector):
            supported_actions = frozenset({TransactionAction.AUTHORIZE, TransactionAction.CAPTURE})

        result = CaptureOnly(transport=fake_transport).refund(100, "TXN123", "order-1")
        assert result.error_code == ErrorCode.UNSUPPORTED_FEATURE
        assert result.message == "refund is not supported by acme"
        assert fake_transport.requests == []


class TestPurchaseComposite:
    """Purchase built from authorize then capture."""

    def test_threads_token_and_amount(self, acme, fake_transport, card):
        fake_transport.queue(_approved(id="TXN123", last4="4242"), _approved(message="Captured"))
        result = acme.purchase(1000, card, "order-1")

        assert result.success is True
        assert result.message == "Captured"
        assert result.authorization == "TXN123;4242"
        capture = _payload(fake_transport, 1)
        assert capture["action"] == "capture"
        assert capture["transaction_id"] == "TXN123"
        assert capture["amount"] == 1000
        assert capture["key"] == "order-1:capture"

    def test_authorize_decline_stops(self, acme, fake_transport, card):
        fake_transport.queue(json.dumps({"status": "declined", "code": "05", "message": "Do not honor"}))
        result = acme.purchase(1000, card, "order-1")

        assert result.success is False
        assert result.message == "Do not honor"
        assert len(fake_transport.requests) == 1

    def test_capture_failure_is_reported(self, acme, fake_transport, card):
        fake_transport.queue(
            _approved(id="TXN123", last4="4242"),
            json.dumps({"status": "declined", "message": "Capture rejected"}),
        )
        result = acme.purchase(1000, card, "order-1")
        assert result.success is False
        assert result.message == "Capture rejected"

    def test_native_purchase(self, fake_transport, card):
        class NativeAcme(AcmeConnector):
            supports_purchase = True

        fake_transport.queue(_approved(id="TXN9"))
        result = NativeAcme(transport=fake_transport).purchase(1000, card, "order-1")
        assert result.success is True
        assert len(fake_transport.requests) == 1
        assert _payload(fake_transport, 0)["action"] == "purchase"

    def test_invalid_purchase_is_rejected(self, acme, fake_transport, card):
        result = acme.purchase("10.00", card, "order-1")
        assert result.error_code == ErrorCode.INVALID_REQUEST
        assert fake_transport.requests == []


class TestVerify:
    """Verify authorizes a small amount then voids it."""

    def test_authorize_then_void(self, acme, fake_transport, card):
        fake_transport.queue(_approved(id="TXN5", last4="4242", message="Authorized"), _approved(message="Voided"))
        result = acme.verify(card, "verify-1")

        assert result.success is True
        assert result.message == "Authorized"
        authorize, void = _payload(fake_transport, 0), _payload(fake_transport, 1)
        assert authorize["amount"] == 100
        assert void["action"] == "void"
        assert void["transaction_id"] == "TXN5"
        assert void["key"] == "verify-1:void"

    def test_failed_void_does_not_change_result(self, acme, fake_transport, card):
        fake_transport.queue(_approved(id="TXN5"), json.dumps({"status": "error", "message": "Void failed"}))
        assert acme.verify(card, "verify-1").success is True

    def test_declined_authorize_skips_void(self, acme, fake_transport, card):
        fake_transport.queue(json.dumps({"status": "declined", "code": "05"}))
        result = acme.verify(card, "verify-1")
        assert result.success is False
        assert len(fake_transport.requests) == 1


class TestReconciliation:
    """Ambiguous outcomes go through one inquiry with the same key."""

    def test_interrupted_capture_confirmed(self, acme, fake_transport):
        fake_transport.queue(ResponseInterruptedError("read timeout"), _approved(message="Already captured"))
        result = acme.capture(1000, "TXN123;4242", "order-1:capture")

        assert result.success is True
        assert result.amount == 1000
        inquiry = _payload(fake_transport, 1)
        assert inquiry["action"] == "inquiry"
        assert inquiry["key"] == "order-1:capture"

    def test_interrupted_capture_not_found_raises(self, acme, fake_transport):
        fake_transport.queue(
            ResponseInterruptedError("read timeout"),
            json.dumps({"status": "not_found", "message": "No such attempt"}),
        )
        with pytest.raises(ResponseInterruptedError):
            acme.capture(1000, "TXN123;4242", "order-1:capture")

    def test_connection_refused_is_a_failed_result(self, acme, fake_transport):
        fake_transport.queue(ConnectionFailedError("refused"))
        result = acme.capture(1000, "TXN123;4242", "order-1:capture")
        assert result.error_code == ErrorCode.CONNECTION_ERROR
        assert len(fake_transport.requests) == 1

    def test_ambiguous_code_reported_when_not_confirmed(self, acme, fake_transport):
        fake_transport.queue(
            json.dumps({"status": "error", "code": "91", "message": "Issuer unavailable"}),
            json.dumps({"status": "not_found"}),
        )
        result = acme.capture(1000, "TXN123;4242", "order-1:capture")
        assert result.message == "Issuer unavailable"
        assert acme.error_kind(result) == ErrorKind.AMBIGUOUS

    def test_no_inquiry_when_unsupported(self, fake_transport):
        class NoInquiry(AcmeConnector):
            supported_actions = frozenset(TransactionAction) - {TransactionAction.INQUIRY}

        fake_transport.queue(ResponseInterruptedError("read timeout"))
        with pytest.raises(ResponseInterruptedError):
            NoInquiry(transport=fake_transport).capture(1000, "TXN123", "order-1")
        assert len(fake_transport.requests) == 1


class TestInquiry:
    def test_inquiry_operation(self, acme, fake_transport):
        fake_transport.queue(_approved(id="TXN123"))
        result = acme.inquiry("order-1", TransactionAction.AUTHORIZE)
        assert result.success is True
        assert _payload(fake_transport, 0)["key"] == "order-1"


class TestClassDefaults:
    def test_required_parameters_default_is_read_only(self):
        with pytest.raises(TypeError):
            ConnectorBase.required_parameters[TransactionAction.VOID] = ("authorization",)
        assert dict(ConnectorBase.required_parameters) == {}
