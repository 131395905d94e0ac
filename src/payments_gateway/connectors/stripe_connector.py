"""Stripe connector built on stripe-python PaymentIntents.

Every mutating request carries the idempotency key both as Stripe's
``Idempotency-Key`` and in the object's metadata, so an inquiry can find
the attempt again with the Search API.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import stripe

from ..normalizer import ProcessorProfile, WireFormat, flatten_mapping
from ..transport import ResponseInterruptedError
from .base import (
    ConnectorBase,
    ErrorCode,
    TransactionAction,
    TransactionCommand,
    VerificationResult,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_METADATA_KEY = "idempotency_key"

# PaymentIntent states that mean the action took effect.
SUCCESS_STATES = {
    TransactionAction.AUTHORIZE: frozenset({"requires_capture"}),
    TransactionAction.PURCHASE: frozenset({"succeeded", "processing"}),
    TransactionAction.CAPTURE: frozenset({"succeeded"}),
    TransactionAction.VOID: frozenset({"canceled"}),
    TransactionAction.REFUND: frozenset({"succeeded", "pending"}),
}

_TOKEN_ACTIONS = frozenset({
    TransactionAction.AUTHORIZE,
    TransactionAction.PURCHASE,
    TransactionAction.STORE,
})

# stripe-python error classes to Stripe's error types.
_ERROR_TYPES = (
    (stripe.CardError, "card_error"),
    (stripe.AuthenticationError, "authentication_error"),
    (stripe.PermissionError, "permission_error"),
    (stripe.IdempotencyError, "idempotency_error"),
    (stripe.RateLimitError, "rate_limit_error"),
    (stripe.InvalidRequestError, "invalid_request_error"),
    (stripe.APIError, "api_error"),
)

STRIPE_CHECK_CODES = {
    "PASS": VerificationResult.MATCH,
    "FAIL": VerificationResult.NO_MATCH,
    "UNAVAILABLE": VerificationResult.UNSUPPORTED,
    "UNCHECKED": VerificationResult.NOT_CHECKED,
}

_CARD_CHECKS = "latest_charge.payment_method_details.card"


def _effective_action(fields: Dict[str, Any], action: TransactionAction) -> TransactionAction:
    if action == TransactionAction.INQUIRY and fields.get("inquiry_action"):
        return TransactionAction(fields["inquiry_action"])
    return action


def _stripe_success(fields: Dict[str, Any], action: TransactionAction) -> bool:
    if fields.get("response_code"):
        return False
    action = _effective_action(fields, action)
    if action == TransactionAction.STORE:
        return fields.get("object") == "customer" and not fields.get("deleted")
    if action == TransactionAction.UNSTORE:
        return bool(fields.get("deleted"))
    return fields.get("status") in SUCCESS_STATES.get(action, ())


def _stripe_message(fields: Dict[str, Any], success: bool) -> Optional[str]:
    if success or fields.get("error.message") or fields.get("last_payment_error.message"):
        return None
    if fields.get("status"):
        return f"Unexpected {fields.get('object', 'object')} status: {fields['status']}"
    return None


def _stripe_token(fields: Dict[str, Any], action: TransactionAction) -> Optional[List[Optional[str]]]:
    if not _stripe_success(fields, action):
        return None
    action = _effective_action(fields, action)
    if action not in _TOKEN_ACTIONS or not fields.get("id"):
        return None
    last4 = fields.get(f"{_CARD_CHECKS}.last4") or fields.get(
        "invoice_settings.default_payment_method.card.last4"
    )
    return [fields["id"], last4, action.value]


STRIPE_PROFILE = ProcessorProfile(
    name="Stripe",
    wire_format=WireFormat.JSON,
    success=_stripe_success,
    error_message_fields=("error.message", "last_payment_error.message"),
    extract_message=_stripe_message,
    extract_token_fields=_stripe_token,
    response_code_field="response_code",
    error_codes={
        "incorrect_number": ErrorCode.INCORRECT_NUMBER,
        "invalid_number": ErrorCode.INVALID_NUMBER,
        "invalid_expiry_month": ErrorCode.INVALID_EXPIRY_DATE,
        "invalid_expiry_year": ErrorCode.INVALID_EXPIRY_DATE,
        "invalid_cvc": ErrorCode.INVALID_CVC,
        "expired_card": ErrorCode.EXPIRED_CARD,
        "incorrect_cvc": ErrorCode.INCORRECT_CVC,
        "incorrect_zip": ErrorCode.INCORRECT_ZIP,
        "card_declined": ErrorCode.CARD_DECLINED,
        "processing_error": ErrorCode.PROCESSING_ERROR,
        "card_error": ErrorCode.CARD_DECLINED,
        "authentication_error": ErrorCode.CONFIG_ERROR,
        "permission_error": ErrorCode.CONFIG_ERROR,
        "idempotency_error": ErrorCode.INVALID_REQUEST,
        "invalid_request_error": ErrorCode.INVALID_REQUEST,
        "testmode_charges_only": ErrorCode.TEST_MODE_LIVE_CARD,
    },
    default_error_code=ErrorCode.PROCESSING_ERROR,
    avs_field=f"{_CARD_CHECKS}.checks.address_postal_code_check",
    cvv_field=f"{_CARD_CHECKS}.checks.cvc_check",
    avs_codes=STRIPE_CHECK_CODES,
    cvv_codes=STRIPE_CHECK_CODES,
    # Stripe documents 5xx api_error responses as possibly applied.
    ambiguous_codes=frozenset({"api_error"}),
)


class StripeConnector(ConnectorBase):
    """
    Stripe connector using stripe-python. It expects that the merchant
    frontend obtains a payment method id from Stripe.js and passes it to
    the server.

    Tokens are ``id;last4;action`` where id is a PaymentIntent id, or a
    Customer id for stored cards.
    """

    name = "stripe"
    profile = STRIPE_PROFILE
    token_layout = ("id", "last4", "action")
    required_parameters = {
        TransactionAction.AUTHORIZE: ("payment_method",),
        TransactionAction.PURCHASE: ("payment_method",),
        TransactionAction.STORE: ("payment_method",),
        TransactionAction.CAPTURE: ("authorization",),
        TransactionAction.REFUND: ("authorization",),
        TransactionAction.VOID: ("authorization",),
        TransactionAction.UNSTORE: ("authorization",),
    }

    def __init__(self, api_key: Optional[str] = None):
        """Initialize the Stripe connector.

        Args:
            api_key: Stripe API key. Falls back to STRIPE_API_KEY env var.

        Raises:
            ValueError: If no API key is provided or found.
        """
        self._api_key = api_key or os.getenv("STRIPE_API_KEY")
        if not self._api_key:
            raise ValueError(
                "STRIPE_API_KEY must be provided either as argument or environment variable"
            )
        super().__init__(test=self._api_key.startswith(("sk_test", "rk_test")))

    def _configure_stripe(self) -> None:
        """Configure the Stripe SDK with the API key."""
        stripe.api_key = self._api_key

    def validate(self, command: TransactionCommand) -> Optional[str]:
        if command.action == TransactionAction.UNSTORE:
            if self.reference(command)["action"] not in (None, TransactionAction.STORE.value):
                return "unstore needs the authorization returned by store"
        return None

    def commit(self, command: TransactionCommand):
        self._configure_stripe()
        try:
            fields = flatten_mapping(self._call(command))
            status_code = 200
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe connection error during {command.action.value}: {e}")
            raise ResponseInterruptedError(
                f"Stripe connection error: {e}", original_error=e
            ) from e
        except stripe.StripeError as e:
            logger.info(f"Stripe error during {command.action.value}: {type(e).__name__}")
            fields = self._error_fields(e)
            status_code = e.http_status or 400
        return self.normalizer.interpret(
            fields, command.action, status_code=status_code, test=self.test, amount=command.amount
        )

    def _call(self, command: TransactionCommand) -> Dict[str, Any]:
        action = command.action
        key = command.idempotency_key
        reference = self.reference(command)

        if action in (TransactionAction.AUTHORIZE, TransactionAction.PURCHASE):
            params: Dict[str, Any] = {
                "amount": command.amount,
                "currency": (command.param("currency") or "usd").lower(),
                "payment_method": self._payment_method_id(command.param("payment_method")),
                "payment_method_types": ["card"],
                "confirm": True,
                "capture_method": "manual" if action == TransactionAction.AUTHORIZE else "automatic",
                "metadata": self._metadata(command),
                "expand": ["latest_charge"],
                "idempotency_key": key,
            }
            if command.param("customer"):
                params["customer"] = command.param("customer")
            if command.param("description"):
                params["description"] = command.param("description")
            return stripe.PaymentIntent.create(**params).to_dict()

        if action == TransactionAction.CAPTURE:
            params = {"idempotency_key": key, "expand": ["latest_charge"]}
            if command.amount is not None:
                params["amount_to_capture"] = command.amount
            return stripe.PaymentIntent.capture(reference["id"], **params).to_dict()

        if action == TransactionAction.VOID:
            return stripe.PaymentIntent.cancel(reference["id"], idempotency_key=key).to_dict()

        if action == TransactionAction.REFUND:
            params = {
                "payment_intent": reference["id"],
                "metadata": self._metadata(command),
                "idempotency_key": key,
            }
            if command.amount is not None:
                params["amount"] = command.amount
            return stripe.Refund.create(**params).to_dict()

        if action == TransactionAction.STORE:
            payment_method = self._payment_method_id(command.param("payment_method"))
            return stripe.Customer.create(
                payment_method=payment_method,
                invoice_settings={"default_payment_method": payment_method},
                email=command.param("email"),
                metadata=self._metadata(command),
                expand=["invoice_settings.default_payment_method"],
                idempotency_key=key,
            ).to_dict()

        if action == TransactionAction.UNSTORE:
            return stripe.Customer.delete(reference["id"]).to_dict()

        return self._inquiry(command)

    def _inquiry(self, command: TransactionCommand) -> Dict[str, Any]:
        """Find the object a mutating attempt produced.

        Search results lag writes by up to a minute, so a very recent
        attempt can still come back as not found.
        """
        original = TransactionAction(command.param("original_action") or TransactionAction.PURCHASE)
        key = command.idempotency_key
        query = f"metadata['{IDEMPOTENCY_METADATA_KEY}']:'{key}'"
        reference = self.reference(command)

        if original in (TransactionAction.AUTHORIZE, TransactionAction.PURCHASE):
            found = stripe.PaymentIntent.search(query=query, expand=["data.latest_charge"]).data
        elif original in (TransactionAction.CAPTURE, TransactionAction.VOID):
            found = [stripe.PaymentIntent.retrieve(reference["id"], expand=["latest_charge"])]
        elif original == TransactionAction.REFUND:
            refunds = stripe.Refund.list(payment_intent=reference["id"], limit=100).data
            found = [
                refund for refund in refunds
                if (refund.metadata or {}).get(IDEMPOTENCY_METADATA_KEY) == key
            ]
        elif original == TransactionAction.STORE:
            found = stripe.Customer.search(query=query).data
        else:
            found = [stripe.Customer.retrieve(reference["id"])]

        if not found:
            data: Dict[str, Any] = {
                "response_code": "not_found",
                "error": {"message": f"No {original.value} found for idempotency key {key}"},
            }
        else:
            data = found[0].to_dict()
        data["inquiry_action"] = original.value
        return data

    def _metadata(self, command: TransactionCommand) -> Dict[str, str]:
        metadata = {str(k): str(v) for k, v in (command.param("metadata") or {}).items()}
        metadata[IDEMPOTENCY_METADATA_KEY] = command.idempotency_key
        return metadata

    @staticmethod
    def _payment_method_id(payment_method: Any) -> Optional[str]:
        if isinstance(payment_method, dict):
            return payment_method.get("token")
        return payment_method

    @staticmethod
    def _error_fields(error: stripe.StripeError) -> Dict[str, Any]:
        error_type = next(
            (name for cls, name in _ERROR_TYPES if isinstance(error, cls)), "stripe_error"
        )
        code = getattr(error, "code", None)
        fields: Dict[str, Any] = {
            "error.type": error_type,
            "error.code": code,
            "error.message": error.user_message or str(error) or error_type,
            "error.decline_code": getattr(error.error, "decline_code", None) if error.error else None,
            "error.http_status": error.http_status,
            "error.request_id": error.request_id,
        }
        # Card errors carry a precise code; other classes are judged by type.
        fields["response_code"] = code if error_type == "card_error" and code else error_type
        return fields
