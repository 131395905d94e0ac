"""Elavon Converge (Virtual Merchant) connector.

Requests are form posts of ``ssl_``-prefixed fields; responses use the
ASCII result format, one ``ssl_key=value`` pair per line.
"""

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from ..normalizer import ProcessorProfile, WireFormat
from ..transport import HttpTransport
from .base import (
    ErrorCode,
    HttpConnector,
    TransactionAction,
    TransactionCommand,
    card_expiration,
    format_amount,
)

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = {
    TransactionAction.PURCHASE: "CCSALE",
    TransactionAction.AUTHORIZE: "CCAUTHONLY",
    TransactionAction.CAPTURE: "CCCOMPLETE",
    TransactionAction.REFUND: "CCRETURN",
    TransactionAction.VOID: "CCDELETE",
    TransactionAction.STORE: "CCGETTOKEN",
    TransactionAction.UNSTORE: "CCDELETETOKEN",
}

# Actions that carry a card or a stored card token.
_PAYMENT_ACTIONS = frozenset({
    TransactionAction.PURCHASE,
    TransactionAction.AUTHORIZE,
    TransactionAction.STORE,
})


def _converge_success(fields: Dict[str, Any], action: TransactionAction) -> bool:
    if "errorCode" in fields or "errorMessage" in fields:
        return False
    if action == TransactionAction.STORE:
        return fields.get("token_response", "SUCCESS").upper() == "SUCCESS" and bool(fields.get("token"))
    return fields.get("result") == "0"


def _converge_message(fields: Dict[str, Any], success: bool) -> Optional[str]:
    if success:
        return fields.get("result_message") or fields.get("token_response")
    return (
        fields.get("errorMessage")
        or fields.get("errorName")
        or fields.get("result_message")
        or fields.get("token_response")
    )


def _converge_token(fields: Dict[str, Any], action: TransactionAction):
    if action not in _PAYMENT_ACTIONS:
        return None
    if not (fields.get("txn_id") or fields.get("token")):
        return None
    return [fields.get("txn_id"), fields.get("approval_code"), fields.get("token")]


def _converge_reshape(fields: Dict[str, Any]) -> Dict[str, Any]:
    # errorCode wins over result so configuration and validation errors
    # stay distinguishable from plain declines.
    fields = dict(fields)
    fields["response_code"] = fields.get("errorCode") or fields.get("result")
    return fields


CONVERGE_PROFILE = ProcessorProfile(
    name="Converge",
    wire_format=WireFormat.QUERY_STRING,
    separator="\n",
    key_prefix="ssl_",
    reshape=_converge_reshape,
    success=_converge_success,
    extract_message=_converge_message,
    extract_token_fields=_converge_token,
    response_code_field="response_code",
    error_codes={
        "1": ErrorCode.CARD_DECLINED,
        "4000": ErrorCode.CONFIG_ERROR,
        "4003": ErrorCode.CONFIG_ERROR,
        "4025": ErrorCode.CONFIG_ERROR,
        "5000": ErrorCode.INVALID_NUMBER,
        "5001": ErrorCode.INVALID_EXPIRY_DATE,
        "5021": ErrorCode.INVALID_CVC,
    },
    default_error_code=ErrorCode.PROCESSING_ERROR,
    avs_field="avs_response",
    cvv_field="cvv2_response",
)


class ConvergeConnector(HttpConnector):
    """
    Converge connector.

    Tokens are ``txn_id;approval_code;card_token``. Converge offers no
    lookup by idempotency key here, so ambiguous outcomes are surfaced
    unchanged for the caller to resolve.
    """

    name = "converge"
    profile = CONVERGE_PROFILE
    token_layout = ("txn_id", "approval_code", "token")
    supported_actions = frozenset(TRANSACTION_TYPES)
    test_url = "https://api.demo.convergepay.com/VirtualMerchantDemo/process.do"
    live_url = "https://api.convergepay.com/VirtualMerchant/process.do"
    required_parameters = {
        TransactionAction.PURCHASE: ("payment_method",),
        TransactionAction.AUTHORIZE: ("payment_method",),
        TransactionAction.STORE: ("payment_method",),
        TransactionAction.CAPTURE: ("authorization",),
        TransactionAction.REFUND: ("authorization",),
        TransactionAction.VOID: ("authorization",),
        TransactionAction.UNSTORE: ("authorization",),
    }

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        pin: Optional[str] = None,
        user_id: Optional[str] = None,
        test: bool = True,
        transport: Optional[HttpTransport] = None,
    ):
        """Initialize the connector.

        Args:
            merchant_id: Converge account id. Falls back to CONVERGE_MERCHANT_ID.
            pin: Terminal PIN. Falls back to CONVERGE_PIN.
            user_id: Optional user id. Falls back to CONVERGE_USER_ID.

        Raises:
            ValueError: If the merchant id or PIN is missing.
        """
        self._merchant_id = merchant_id or os.getenv("CONVERGE_MERCHANT_ID")
        self._pin = pin or os.getenv("CONVERGE_PIN")
        self._user_id = user_id or os.getenv("CONVERGE_USER_ID")
        if not self._merchant_id or not self._pin:
            raise ValueError(
                "CONVERGE_MERCHANT_ID and CONVERGE_PIN must be provided either as arguments "
                "or environment variables"
            )
        super().__init__(test=test, transport=transport)

    def validate(self, command: TransactionCommand) -> Optional[str]:
        payment_method = command.param("payment_method")
        if isinstance(payment_method, dict):
            if not payment_method.get("number"):
                return "Missing required parameter: payment_method.number"
            if not (payment_method.get("expiration") or payment_method.get("month")):
                return "Missing required parameter: payment_method.expiration"
        if command.action == TransactionAction.STORE and isinstance(payment_method, str):
            return "store needs card details, not a stored token"
        if command.action == TransactionAction.UNSTORE and not self.reference(command)["token"]:
            return "authorization does not carry a stored card token"
        return None

    def build_request(self, command: TransactionCommand):
        form = self._preamble()
        form["transaction_type"] = TRANSACTION_TYPES[command.action]
        reference = self.reference(command)

        if command.action in _PAYMENT_ACTIONS:
            self._add_payment_method(form, command.param("payment_method"))
            self._add_invoice(form, command)
            self._add_address(form, command.param("billing_address"))
            if command.action == TransactionAction.STORE:
                form["add_token"] = "Y"
                if command.param("verify"):
                    form["verify"] = "Y"
        elif command.action == TransactionAction.UNSTORE:
            form["token"] = reference["token"]
        else:
            form["txn_id"] = reference["txn_id"]
            if command.action == TransactionAction.CAPTURE and command.param("partial_shipment"):
                form["partial_shipment_flag"] = "Y"

        if command.amount is not None:
            form["amount"] = format_amount(command.amount)
        if command.param("ip"):
            form["cardholder_ip"] = command.param("ip")
        if command.param("test_mode"):
            form["test_mode"] = "TRUE"

        logger.debug(f"Converge {form['transaction_type']} for {command.idempotency_key}")
        body = urlencode({f"ssl_{key}": value for key, value in form.items() if value is not None})
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        return "POST", self.url, body, headers

    def _preamble(self) -> Dict[str, Any]:
        preamble = {
            "merchant_id": self._merchant_id,
            "pin": self._pin,
            "show_form": "false",
            "result_format": "ASCII",
        }
        if self._user_id:
            preamble["user_id"] = self._user_id
        return preamble

    @staticmethod
    def _add_payment_method(form: Dict[str, Any], payment_method: Any) -> None:
        if isinstance(payment_method, str):
            form["token"] = payment_method
            return
        form["card_number"] = payment_method["number"]
        form["exp_date"] = card_expiration(payment_method)
        if payment_method.get("cvc"):
            form["cvv2cvc2"] = payment_method["cvc"]
            form["cvv2cvc2_indicator"] = "1"
        form["first_name"] = (payment_method.get("first_name") or "")[:20] or None
        form["last_name"] = (payment_method.get("last_name") or "")[:30] or None

    @staticmethod
    def _add_invoice(form: Dict[str, Any], command: TransactionCommand) -> None:
        invoice = command.param("order_id") or command.param("invoice")
        form["invoice_number"] = str(invoice)[:10] if invoice else None
        description = command.param("description")
        form["description"] = str(description)[:255] if description else None

    @staticmethod
    def _add_address(form: Dict[str, Any], address: Optional[Dict[str, Any]]) -> None:
        if not address:
            return
        form["avs_address"] = (address.get("address1") or "")[:30] or None
        form["address2"] = (address.get("address2") or "")[:30] or None
        form["avs_zip"] = (address.get("zip") or "")[:9] or None
        form["city"] = (address.get("city") or "")[:30] or None
        form["state"] = (address.get("state") or "")[:10] or None
        form["country"] = (address.get("country") or "")[:3] or None
        form["phone"] = (address.get("phone") or "")[:20] or None
