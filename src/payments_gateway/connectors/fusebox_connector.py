"""Elavon Fusebox connector.

Fusebox speaks ProtoBase XML batches: every field is an ``API_Field``
carrying a four-digit field number and a value. A sale or authorization
that times out, or comes back with one of the gateway's retryable codes,
is resolved with an inquiry (transaction type 22) on the same unique
reference rather than being sent again.
"""

import logging
import os
import re
import secrets
import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional

from ..normalizer import ProcessorProfile, WireFormat
from ..transport import HttpTransport
from .base import (
    CanonicalResult,
    ErrorCode,
    HttpConnector,
    TransactionAction,
    TransactionCommand,
    card_expiration,
    format_amount,
    parse_amount,
)

logger = logging.getLogger(__name__)

FIELD_NUMBERS = {
    "transaction_type": "0001",
    "transaction_amount": "0002",
    "account_number": "0003",
    "expiration": "0004",
    "approval_code": "0006",
    "unique_reference": "0007",
    "transaction_id": "0036",
    "cvc": "0050",
    "customer_code": "0070",
    "tax1_indicator": "0071",
    "tax1_amount": "0072",
    "terminal_id": "0109",
    "cashier_id": "0110",
    "transaction_qualifier": "0115",
    "ecommerce_indicator": "0190",
    "ecommerce_egi": "0191",
    "billing_zip_code": "0700",
    "billing_address": "0701",
    "mail_order_indicator": "0712",
    "recurring_flag": "0723",
    "card_type": "1000",
    "card_name": "1001",
    "gateway_code": "1003",
    "host_message": "1004",
    "token_request": "1008",
    "host_code": "1009",
    "gateway_message": "1010",
    "gateway_id": "7007",
    "location_name": "8002",
    "chain_code": "8006",
}
FIELD_NAMES = {number: name for name, number in FIELD_NUMBERS.items()}

TRANSACTION_TYPES = {
    TransactionAction.AUTHORIZE: "01",
    TransactionAction.STORE: "01",
    TransactionAction.PURCHASE: "02",
    TransactionAction.REFUND: "09",
    TransactionAction.VOID: "11",
    TransactionAction.INQUIRY: "22",
}

# Gateway codes after which the request may or may not have been applied.
GATEWAY_RETRYABLE_CODES = frozenset({"0003", "0004", "0015", "0016", "0017", "0155"})

APPROVED_CODES = frozenset({"0", "0000"})

RECURRING_FIELDS = {
    None: {"mail_order_indicator": "1"},
    "first": {"mail_order_indicator": "2", "recurring_flag": "F"},
    "subsequent": {"mail_order_indicator": "2", "recurring_flag": "S"},
}

# Stored card tokens look like ID:7979582790001/0916.
_STORED_CARD = re.compile(r"^(ID:\d+)/(\d+)$")
_NOT_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9 ]")
_UNIQUE_REFERENCE = re.compile(r"^\d{8}$")

_TOKEN_ACTIONS = frozenset({
    TransactionAction.AUTHORIZE,
    TransactionAction.PURCHASE,
    TransactionAction.STORE,
    TransactionAction.INQUIRY,
})


def _fusebox_reshape(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Turn indexed API_Field entries into named fields."""
    numbered: Dict[str, Any] = {}
    if "Transaction.API_Field.Field_Number" in fields:
        numbered[fields["Transaction.API_Field.Field_Number"]] = fields.get(
            "Transaction.API_Field.Field_Value"
        )
    index = 0
    while f"Transaction.API_Field.{index}.Field_Number" in fields:
        number = fields[f"Transaction.API_Field.{index}.Field_Number"]
        numbered[number] = fields.get(f"Transaction.API_Field.{index}.Field_Value")
        index += 1
    if not numbered:
        raise ValueError("No API_Field elements in Transaction")
    return {FIELD_NAMES.get(number, number): value for number, value in numbered.items()}


def _fusebox_success(fields: Dict[str, Any], action: TransactionAction) -> bool:
    return fields.get("gateway_code") in APPROVED_CODES


def _fusebox_message(fields: Dict[str, Any], success: bool) -> str:
    if success:
        return ", ".join(
            fields.get(key) or "" for key in ("gateway_code", "gateway_message", "approval_code")
        )
    return (
        f"{fields.get('gateway_code') or ''} {fields.get('gateway_message') or ''} "
        f"(Host response {fields.get('host_code') or ''} {fields.get('host_message') or ''})"
    )


def _fusebox_token(fields: Dict[str, Any], action: TransactionAction):
    if action not in _TOKEN_ACTIONS or not _fusebox_success(fields, action):
        return None
    account = None
    if fields.get("account_number"):
        account = f"{fields['account_number']}/{fields.get('expiration') or ''}"
    return [
        fields.get("unique_reference"),
        fields.get("transaction_id"),
        fields.get("transaction_amount"),
        account,
    ]


def _account_key(account: Optional[str]) -> Optional[str]:
    """Comparable card identity: the stored card id, or the last four digits."""
    if not account:
        return None
    number = str(account).strip().split("/", 1)[0]
    if number.startswith("ID:"):
        return number
    digits = "".join(c for c in number if c.isdigit())
    return digits[-4:] or None


FUSEBOX_PROFILE = ProcessorProfile(
    name="Fusebox",
    wire_format=WireFormat.XML,
    reshape=_fusebox_reshape,
    success=_fusebox_success,
    extract_message=_fusebox_message,
    extract_token_fields=_fusebox_token,
    response_code_field="gateway_code",
    error_codes={
        "0041": ErrorCode.INCORRECT_NUMBER,
    },
    ambiguous_codes=GATEWAY_RETRYABLE_CODES,
)


class FuseboxConnector(HttpConnector):
    """
    Fusebox connector.

    Tokens are ``reference;transaction_id;amount;account`` where amount is
    in dollars and account is ``ID:<token>/<MMYY>`` for stored cards. Voids
    and refunds must repeat the original reference, amount and card.
    """

    name = "fusebox"
    profile = FUSEBOX_PROFILE
    token_layout = ("reference", "transaction_id", "amount", "account")
    supported_actions = frozenset(TRANSACTION_TYPES)
    inquiry_actions = frozenset({TransactionAction.PURCHASE, TransactionAction.AUTHORIZE})
    test_url = "https://gatewaydemomoc.elavon.net:7500"
    live_url = "https://fuseboxtrant.elavon.net:7500"
    required_parameters = {
        TransactionAction.PURCHASE: ("payment_method",),
        TransactionAction.AUTHORIZE: ("payment_method",),
        TransactionAction.STORE: ("payment_method",),
        TransactionAction.REFUND: ("authorization",),
        TransactionAction.VOID: ("authorization",),
    }

    def __init__(
        self,
        terminal_id: Optional[str] = None,
        chain_code: Optional[str] = None,
        location_name: Optional[str] = None,
        test: bool = True,
        transport: Optional[HttpTransport] = None,
    ):
        """Initialize the connector.

        Raises:
            ValueError: If the terminal id, chain code or location name is missing.
        """
        self._terminal_id = terminal_id or os.getenv("FUSEBOX_TERMINAL_ID")
        self._chain_code = chain_code or os.getenv("FUSEBOX_CHAIN_CODE")
        self._location_name = location_name or os.getenv("FUSEBOX_LOCATION_NAME")
        missing = [
            name
            for name, value in (
                ("FUSEBOX_TERMINAL_ID", self._terminal_id),
                ("FUSEBOX_CHAIN_CODE", self._chain_code),
                ("FUSEBOX_LOCATION_NAME", self._location_name),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing Fusebox configuration: {', '.join(missing)}")
        super().__init__(test=test, transport=transport)

    def new_idempotency_key(self) -> str:
        # Fusebox unique references are eight numeric digits.
        return f"{secrets.randbelow(10 ** 8):08d}"

    @staticmethod
    def unique_reference(command: TransactionCommand) -> str:
        """The attempt's reference: an explicit ``reference`` or the idempotency key."""
        return str(command.param("reference") or command.idempotency_key)

    def validate(self, command: TransactionCommand) -> Optional[str]:
        recurring = command.param("recurring")
        if recurring not in RECURRING_FIELDS:
            return f"Unknown recurring option: {recurring!r}"
        if command.action not in (TransactionAction.VOID, TransactionAction.REFUND):
            # Inquiries look the attempt up by this exact reference.
            if not _UNIQUE_REFERENCE.match(self.unique_reference(command)):
                return "Fusebox references must be eight digits; pass one as the idempotency key or reference"
        payment_method = command.param("payment_method")
        if isinstance(payment_method, str) and not _STORED_CARD.match(payment_method.strip()):
            return "Stored card tokens must look like ID:<digits>/<MMYY>"
        if isinstance(payment_method, dict):
            if not payment_method.get("number"):
                return "Missing required parameter: payment_method.number"
            if not (
                payment_method.get("expiration")
                or (payment_method.get("month") and payment_method.get("year"))
            ):
                return "Missing required parameter: payment_method.expiration"
        if command.action in (TransactionAction.VOID, TransactionAction.REFUND):
            account = self.reference(command)["account"]
            stored = bool(account and _STORED_CARD.match(account))
            if not stored and not command.param("payment_method"):
                return (
                    f"{command.action.value} needs the stored card in the authorization "
                    "or a payment_method"
                )
        return None

    def build_request(self, command: TransactionCommand):
        fields = self._fields(command)
        logger.debug(
            f"Fusebox transaction type {fields['transaction_type']} "
            f"reference {fields.get('unique_reference')}"
        )
        root = ET.Element(
            "ProtoBase_Transaction_Batch",
            {
                "xmlns:xsi": "http://www.w3.org/2001/XMLSchema-instance",
                "xsi:noNamespaceSchemaLocation": "http://www.protobase.com/XML/PBAPI1.xsd",
            },
        )
        ET.SubElement(root, "Settlement_Batch").text = "false"
        transaction = ET.SubElement(root, "Transaction")
        for name in sorted(fields, key=lambda key: FIELD_NUMBERS[key]):
            api_field = ET.SubElement(transaction, "API_Field")
            api_field.append(ET.Comment(name))
            ET.SubElement(api_field, "Field_Number").text = FIELD_NUMBERS[name]
            ET.SubElement(api_field, "Field_Value").text = str(fields[name])
        body = ET.tostring(root, encoding="unicode")
        return "POST", self.url, body, {"Content-Type": "application/xml"}

    def commit(self, command: TransactionCommand) -> CanonicalResult:
        result = super().commit(command)
        if command.action != TransactionAction.INQUIRY or not result.success:
            return result
        mismatch = self._inquiry_mismatch(command, result)
        if mismatch is None:
            return result
        logger.warning(
            f"Fusebox inquiry for reference {self.unique_reference(command)} "
            f"does not confirm the attempt: {mismatch}"
        )
        return CanonicalResult.failure(
            f"Inquiry found a different transaction: {mismatch}",
            ErrorCode.PROCESSING_ERROR,
            raw=result.raw,
            test=result.test,
        )

    def _inquiry_mismatch(self, command: TransactionCommand, result: CanonicalResult) -> Optional[str]:
        """Compare what the inquiry found with the attempt it was asked about."""
        found = self.codec.unpack(result.authorization, self.token_layout)
        original_amount = command.param("original_amount")
        if original_amount is not None and parse_amount(found["amount"]) != original_amount:
            return f"amount {found['amount']} instead of {format_amount(original_amount)}"
        payment_method = command.param("payment_method")
        if isinstance(payment_method, dict):
            payment_method = payment_method.get("number")
        expected = _account_key(payment_method)
        if expected is not None and _account_key(found["account"]) != expected:
            return "a different card"
        return None

    def _fields(self, command: TransactionCommand) -> Dict[str, Any]:
        action = command.action
        reference = self.reference(command)
        fields: Dict[str, Any] = {
            "terminal_id": self._terminal_id,
            "chain_code": self._chain_code,
            "location_name": self._location_name,
            "transaction_type": TRANSACTION_TYPES[action],
            "transaction_qualifier": "010",
            "cashier_id": command.param("cashier_id") or "0",
            "billing_zip_code": _NOT_ALPHANUMERIC.sub("", str(command.param("billing_zip_code") or ""))[:9],
            "billing_address": _NOT_ALPHANUMERIC.sub("", str(command.param("billing_address") or ""))[:20],
        }

        # Sales, refunds and the inquiry replaying a sale carry the sale fields.
        original = command.param("original_action")
        if action in (TransactionAction.PURCHASE, TransactionAction.REFUND) or (
            action == TransactionAction.INQUIRY and original == TransactionAction.PURCHASE.value
        ):
            fields.update({"tax1_indicator": "0", "tax1_amount": "0.00"})
        if action == TransactionAction.PURCHASE or (
            action == TransactionAction.INQUIRY and original == TransactionAction.PURCHASE.value
        ):
            fields.update(RECURRING_FIELDS[command.param("recurring")])

        if action in (TransactionAction.VOID, TransactionAction.REFUND):
            fields["unique_reference"] = reference["reference"]
            amount = command.amount if command.amount is not None else parse_amount(reference["amount"])
        elif action == TransactionAction.INQUIRY:
            fields["unique_reference"] = self.unique_reference(command)
            amount = command.param("original_amount")
        elif action == TransactionAction.STORE:
            fields["unique_reference"] = self.unique_reference(command)
            fields["token_request"] = "ID:"
            amount = command.amount if command.amount is not None else command.param("auth_amount", 0)
        else:
            fields["unique_reference"] = self.unique_reference(command)
            amount = command.amount

        if amount is not None:
            fields["transaction_amount"] = format_amount(amount)
        if fields.get("unique_reference"):
            fields["customer_code"] = fields["unique_reference"]
        for optional in ("tax1_indicator", "tax1_amount", "ecommerce_indicator", "ecommerce_egi"):
            if command.param(optional) is not None:
                fields[optional] = command.param(optional)

        self._add_account(fields, command, reference["account"])
        return {name: value for name, value in fields.items() if value is not None}

    @staticmethod
    def _add_account(fields: Dict[str, Any], command: TransactionCommand, account: Optional[str]) -> None:
        payment_method = command.param("payment_method")
        if payment_method is None and account and _STORED_CARD.match(account):
            payment_method = account
        if payment_method is None:
            return
        if isinstance(payment_method, str):
            match = _STORED_CARD.match(payment_method.strip())
            if match is None:
                raise ValueError("Stored card tokens must look like ID:<digits>/<MMYY>")
            fields["account_number"], fields["expiration"] = match.groups()
            return
        fields["account_number"] = payment_method["number"]
        fields["expiration"] = card_expiration(payment_method)
        if payment_method.get("cvc"):
            fields["cvc"] = payment_method["cvc"]
