"""Canonical transaction models shared by every connector."""

import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator


class TransactionAction(str, enum.Enum):
    """Actions a connector can send upstream."""
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    PURCHASE = "purchase"
    REFUND = "refund"
    VOID = "void"
    INQUIRY = "inquiry"
    STORE = "store"
    UNSTORE = "unstore"
    VERIFY = "verify"


MUTATING_ACTIONS = frozenset(
    action for action in TransactionAction if action != TransactionAction.INQUIRY
)
AMOUNT_REQUIRED_ACTIONS = frozenset({TransactionAction.AUTHORIZE, TransactionAction.PURCHASE})
AMOUNTLESS_ACTIONS = frozenset(
    {TransactionAction.VOID, TransactionAction.INQUIRY, TransactionAction.UNSTORE}
)


class VerificationResult(str, enum.Enum):
    """Shared vocabulary for AVS and CVV verdicts."""
    MATCH = "match"
    PARTIAL_MATCH = "partial_match"
    NO_MATCH = "no_match"
    UNSUPPORTED = "unsupported"
    NOT_CHECKED = "not_checked"


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes exposed on failed results."""
    INCORRECT_NUMBER = "incorrect_number"
    INVALID_NUMBER = "invalid_number"
    INVALID_EXPIRY_DATE = "invalid_expiry_date"
    INVALID_CVC = "invalid_cvc"
    EXPIRED_CARD = "expired_card"
    INCORRECT_CVC = "incorrect_cvc"
    INCORRECT_ZIP = "incorrect_zip"
    INCORRECT_ADDRESS = "incorrect_address"
    INCORRECT_PIN = "incorrect_pin"
    CARD_DECLINED = "card_declined"
    PROCESSING_ERROR = "processing_error"
    CALL_ISSUER = "call_issuer"
    PICKUP_CARD = "pick_up_card"
    CONFIG_ERROR = "config_error"
    TEST_MODE_LIVE_CARD = "test_mode_live_card"
    UNSUPPORTED_FEATURE = "unsupported_feature"
    INVALID_REQUEST = "invalid_request"
    PARSE_ERROR = "parse_error"
    CONNECTION_ERROR = "connection_error"


class ErrorKind(str, enum.Enum):
    """Vendor-independent classes of failure."""
    VALIDATION = "validation"
    DECLINE = "decline"
    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    AMBIGUOUS = "ambiguous"
    PARSE = "parse"


_ERROR_KINDS: Dict[ErrorCode, ErrorKind] = {
    ErrorCode.INVALID_REQUEST: ErrorKind.VALIDATION,
    ErrorCode.UNSUPPORTED_FEATURE: ErrorKind.VALIDATION,
    ErrorCode.CONFIG_ERROR: ErrorKind.CONFIGURATION,
    ErrorCode.TEST_MODE_LIVE_CARD: ErrorKind.CONFIGURATION,
    ErrorCode.PARSE_ERROR: ErrorKind.PARSE,
    ErrorCode.CONNECTION_ERROR: ErrorKind.TRANSPORT,
}


def error_kind(code: Optional[ErrorCode]) -> Optional[ErrorKind]:
    """Map an error code to its kind. Codes not listed are declines.

    Whether a failure is ambiguous depends on the processor's vendor code,
    so ``ErrorKind.AMBIGUOUS`` is assigned by the reconciler, not here.
    """
    if code is None:
        return None
    return _ERROR_KINDS.get(ErrorCode(code), ErrorKind.DECLINE)


class TransactionCommand(BaseModel):
    """One request to an upstream processor. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    action: TransactionAction
    amount: Optional[StrictInt] = Field(default=None, ge=0)  # minor units
    idempotency_key: str = Field(..., min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_amount_for_action(self) -> "TransactionCommand":
        if self.action in AMOUNT_REQUIRED_ACTIONS and self.amount is None:
            raise ValueError(f"amount is required for {self.action.value}")
        if self.action in AMOUNTLESS_ACTIONS and self.amount is not None:
            raise ValueError(f"amount must not be given for {self.action.value}")
        return self

    @property
    def is_mutating(self) -> bool:
        return self.action in MUTATING_ACTIONS

    def param(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def inquiry_command(self) -> "TransactionCommand":
        """Build the non-mutating lookup for this command's attempt.

        The inquiry carries the same idempotency key so the processor can
        resolve it to the same upstream state.
        """
        parameters = dict(self.parameters)
        parameters["original_action"] = self.action.value
        parameters["original_amount"] = self.amount
        return TransactionCommand(
            action=TransactionAction.INQUIRY,
            idempotency_key=self.idempotency_key,
            parameters=parameters,
        )


class CanonicalResult(BaseModel):
    """Normalized outcome of one remote call."""
    success: bool
    message: str = ""
    authorization: Optional[str] = None
    avs_result: VerificationResult = VerificationResult.NOT_CHECKED
    cvv_result: VerificationResult = VerificationResult.NOT_CHECKED
    error_code: Optional[ErrorCode] = None
    provider_response_code: Optional[str] = None
    amount: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    test: bool = False

    @model_validator(mode="after")
    def check_success_has_no_error_code(self) -> "CanonicalResult":
        if self.success and self.error_code is not None:
            raise ValueError("a successful result cannot carry an error_code")
        return self

    @classmethod
    def failure(
        cls,
        message: str,
        error_code: ErrorCode = ErrorCode.PROCESSING_ERROR,
        **kwargs: Any,
    ) -> "CanonicalResult":
        return cls(success=False, message=message, error_code=error_code, **kwargs)

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return error_kind(self.error_code)
