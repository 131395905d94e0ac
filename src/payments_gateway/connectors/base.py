import logging
import uuid
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from ..models import (
    AMOUNT_REQUIRED_ACTIONS,
    AMOUNTLESS_ACTIONS,
    MUTATING_ACTIONS,
    CanonicalResult,
    ErrorCode,
    ErrorKind,
    TransactionAction,
    TransactionCommand,
    VerificationResult,
    error_kind,
)
from ..normalizer import ProcessorProfile, ResponseNormalizer
from ..orchestration import CompositeOperation, CompositePolicy, CompositeStep
from ..reconciler import AmbiguousFailureReconciler
from ..tokens import AuthorizationTokenCodec
from ..transport import HttpTransport

logger = logging.getLogger(__name__)

# Minor units authorized (then voided) to check that a card is usable.
VERIFY_AMOUNT = 100

# Never returned to callers or written to logs.
SENSITIVE_FIELDS = frozenset([
    "card_number",
    "number",
    "cvv",
    "cvc",
    "cvv2cvc2",
    "verification_value",
    "pin",
    "password",
    "client_secret",
    "account_number",
])


def generate_idempotency_key() -> str:
    """Generate a key for one logical operation attempt."""
    return uuid.uuid4().hex


def derive_idempotency_key(key: str, action: TransactionAction) -> str:
    """Key for a dependent step of the logical operation identified by ``key``.

    Deterministic, so retrying the whole operation with the same key
    refers to the same upstream attempts.
    """
    return f"{key}:{TransactionAction(action).value}"


def format_amount(amount: Optional[int]) -> Optional[str]:
    """Minor units to a dollars string (``1000`` -> ``"10.00"``)."""
    if amount is None:
        return None
    return f"{amount // 100}.{amount % 100:02d}"


def parse_amount(value: Optional[str]) -> Optional[int]:
    """Dollars string back to minor units."""
    if value in (None, ""):
        return None
    dollars, _, cents = str(value).partition(".")
    return int(dollars or "0") * 100 + int((cents + "00")[:2])


def card_expiration(card: Mapping[str, Any]) -> str:
    """MMYY expiration from an ``expiration`` key or ``month``/``year`` keys."""
    if card.get("expiration"):
        return str(card["expiration"]).replace("/", "")
    return f"{int(card['month']):02d}{int(card['year']) % 100:02d}"


def scrub(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop sensitive fields from a raw payload, including nested and dotted keys."""
    sanitized: Dict[str, Any] = {}
    for key, value in raw.items():
        if str(key).rsplit(".", 1)[-1].lower() in SENSITIVE_FIELDS:
            continue
        if isinstance(value, dict):
            sanitized[key] = scrub(value)
        else:
            sanitized[key] = value
    return sanitized


class ConnectorBase(ABC):
    """
    Shared operations for every processor connector.

    Subclasses describe their processor (profile, token layout, supported
    actions) and implement ``commit``: exactly one remote call for one
    command. Everything callers see goes through ``execute``, which
    validates the command and reconciles ambiguous outcomes.
    """

    name: str = "base"
    profile: ProcessorProfile
    # Field order of the authorization token this connector issues.
    token_layout: Sequence[str] = ("transaction_id",)
    token_delimiter: str = ";"
    supported_actions: FrozenSet[TransactionAction] = frozenset(TransactionAction)
    supports_purchase: bool = True
    # Actions whose attempts can be looked up by idempotency key.
    # None means every mutating action.
    inquiry_actions: Optional[FrozenSet[TransactionAction]] = None
    required_parameters: Mapping[TransactionAction, Sequence[str]] = MappingProxyType({})
    verify_amount: int = VERIFY_AMOUNT

    def __init__(self, test: bool = True):
        self.test = test
        self.codec = AuthorizationTokenCodec(self.token_delimiter)
        self.normalizer = ResponseNormalizer(self.profile, self.codec)
        inquiry_actions = self.inquiry_actions
        if TransactionAction.INQUIRY not in self.supported_actions:
            inquiry_actions = frozenset()
        self.reconciler = AmbiguousFailureReconciler(
            self.commit, self.profile.ambiguous_codes, inquiry_actions, test=test
        )

    @abstractmethod
    def commit(self, command: TransactionCommand) -> CanonicalResult:
        """
        Make exactly one remote call for ``command`` and normalize the answer.

        Transport exceptions propagate; the reconciler decides what they mean.
        """
        raise NotImplementedError

    def validate(self, command: TransactionCommand) -> Optional[str]:
        """Connector-specific checks. Return an error message to reject the command."""
        return None

    def execute(self, command: TransactionCommand) -> CanonicalResult:
        rejection = self._rejection(command)
        if rejection is not None:
            return rejection
        logger.info(f"{self.name}: {command.action.value} {command.idempotency_key}")
        return self.reconciler.run(command)

    # Public operations

    def authorize(
        self,
        amount: int,
        payment_method: Any,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.AUTHORIZE, amount, idempotency_key,
            payment_method=payment_method, **options,
        )

    def purchase(
        self,
        amount: int,
        payment_method: Any,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        """Authorize and capture in one logical operation.

        Processors without a native sale get an authorize then capture
        composite; the capture threads the authorization token and amount
        of the authorize step and stops the run if the authorize fails.
        """
        if self.supports_purchase:
            return self._perform(
                TransactionAction.PURCHASE, amount, idempotency_key,
                payment_method=payment_method, **options,
            )
        if TransactionAction.CAPTURE not in self.supported_actions:
            return self._unsupported(TransactionAction.PURCHASE, amount)

        key = idempotency_key or self.new_idempotency_key()
        try:
            authorize = self._command(
                TransactionAction.AUTHORIZE, amount, key, payment_method=payment_method, **options
            )
        except ValidationError as e:
            return self._invalid(e, amount)

        steps = [
            CompositeStep(lambda _: authorize, name="authorize"),
            CompositeStep(
                lambda auth: self._command(
                    TransactionAction.CAPTURE,
                    auth.amount,
                    derive_idempotency_key(key, TransactionAction.CAPTURE),
                    authorization=auth.authorization,
                    **options,
                ),
                name="capture",
            ),
        ]
        return self.run_composite(steps, CompositePolicy.STOP_AND_REPORT)

    def capture(
        self,
        amount: Optional[int],
        authorization: str,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.CAPTURE, amount, idempotency_key,
            authorization=authorization, **options,
        )

    def refund(
        self,
        amount: Optional[int],
        authorization: str,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.REFUND, amount, idempotency_key,
            authorization=authorization, **options,
        )

    def void(
        self,
        authorization: str,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.VOID, None, idempotency_key, authorization=authorization, **options
        )

    def verify(
        self,
        payment_method: Any,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        """Check a card with a small authorization that is voided right away.

        The caller sees the authorize result; the void only releases the
        hold, so its outcome never replaces it. The void carries the card
        too, for processors that must repeat it.
        """
        key = idempotency_key or self.new_idempotency_key()
        try:
            authorize = self._command(
                TransactionAction.AUTHORIZE, self.verify_amount, key,
                payment_method=payment_method, **options,
            )
        except ValidationError as e:
            return self._invalid(e, self.verify_amount)

        steps = [CompositeStep(lambda _: authorize, name="authorize")]
        if TransactionAction.VOID in self.supported_actions:
            steps.append(
                CompositeStep(
                    lambda auth: self._command(
                        TransactionAction.VOID,
                        None,
                        derive_idempotency_key(key, TransactionAction.VOID),
                        authorization=auth.authorization,
                        payment_method=payment_method,
                        **options,
                    ),
                    ignore_result=True,
                    name="void",
                )
            )
        return self.run_composite(steps, CompositePolicy.USE_FIRST_RESPONSE)

    def store(
        self,
        payment_method: Any,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.STORE, None, idempotency_key, payment_method=payment_method, **options
        )

    def unstore(
        self,
        authorization: str,
        idempotency_key: Optional[str] = None,
        **options: Any,
    ) -> CanonicalResult:
        return self._perform(
            TransactionAction.UNSTORE, None, idempotency_key, authorization=authorization, **options
        )

    def inquiry(
        self,
        idempotency_key: str,
        original_action: Optional[TransactionAction] = None,
        **options: Any,
    ) -> CanonicalResult:
        """Ask the processor what happened to the attempt made with ``idempotency_key``."""
        if original_action is not None:
            options["original_action"] = TransactionAction(original_action).value
        return self._perform(TransactionAction.INQUIRY, None, idempotency_key, **options)

    def run_composite(
        self, steps: Sequence[CompositeStep], policy: CompositePolicy
    ) -> CanonicalResult:
        outcome = CompositeOperation(self.execute, policy).run(steps)
        logger.info(
            f"{self.name}: composite {policy.value} finished {outcome.state.value} "
            f"after {len(outcome.responses)} step(s)"
        )
        return outcome.primary

    # Helpers shared by connectors

    def reference(self, command: TransactionCommand) -> Dict[str, Optional[str]]:
        """Decode the command's authorization token by this connector's layout."""
        return self.codec.unpack(command.param("authorization"), self.token_layout)

    def error_kind(self, result: CanonicalResult) -> Optional[ErrorKind]:
        return self.reconciler.error_kind(result)

    def scrub(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        return scrub(raw)

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True}

    def new_idempotency_key(self) -> str:
        return generate_idempotency_key()

    def _command(
        self,
        action: TransactionAction,
        amount: Optional[int],
        idempotency_key: Optional[str],
        **parameters: Any,
    ) -> TransactionCommand:
        return TransactionCommand(
            action=action,
            amount=amount,
            idempotency_key=idempotency_key or self.new_idempotency_key(),
            parameters={k: v for k, v in parameters.items() if v is not None},
        )

    def _perform(
        self,
        action: TransactionAction,
        amount: Optional[int],
        idempotency_key: Optional[str],
        **parameters: Any,
    ) -> CanonicalResult:
        try:
            command = self._command(action, amount, idempotency_key, **parameters)
        except ValidationError as e:
            return self._invalid(e, amount)
        return self.execute(command)

    def _rejection(self, command: TransactionCommand) -> Optional[CanonicalResult]:
        if command.action not in self.supported_actions:
            return self._unsupported(command.action, command.amount)
        for name in self.required_parameters.get(command.action, ()):
            if command.param(name) in (None, ""):
                return self._rejected(f"Missing required parameter: {name}", command.amount)
        message = self.validate(command)
        if message:
            return self._rejected(message, command.amount)
        return None

    def _rejected(self, message: str, amount: Optional[int]) -> CanonicalResult:
        logger.info(f"{self.name}: rejected before sending: {message}")
        return CanonicalResult.failure(
            message, ErrorCode.INVALID_REQUEST, amount=amount, test=self.test
        )

    def _invalid(self, error: ValidationError, amount: Any) -> CanonicalResult:
        details = "; ".join(
            f"{'.'.join(str(part) for part in e['loc']) or 'command'}: {e['msg']}"
            for e in error.errors()
        )
        return self._rejected(
            f"Invalid request: {details}", amount if isinstance(amount, int) else None
        )

    def _unsupported(self, action: TransactionAction, amount: Optional[int]) -> CanonicalResult:
        logger.info(f"{self.name}: {action.value} is not supported")
        return CanonicalResult.failure(
            f"{action.value} is not supported by {self.name}",
            ErrorCode.UNSUPPORTED_FEATURE,
            amount=amount,
            test=self.test,
        )


class HttpConnector(ConnectorBase):
    """Connector that speaks a wire format over the HTTP transport."""

    test_url: str = ""
    live_url: str = ""

    def __init__(self, test: bool = True, transport: Optional[HttpTransport] = None):
        super().__init__(test=test)
        self.transport = transport or HttpTransport()

    @property
    def url(self) -> str:
        return self.test_url if self.test else self.live_url

    @abstractmethod
    def build_request(
        self, command: TransactionCommand
    ) -> Tuple[str, str, Optional[str], Dict[str, str]]:
        """Return ``(method, url, body, headers)`` for one command."""
        raise NotImplementedError

    def commit(self, command: TransactionCommand) -> CanonicalResult:
        method, url, body, headers = self.build_request(command)
        status_code, response_body = self.transport.send(method, url, body, headers)
        return self.normalizer.normalize(
            response_body,
            command.action,
            status_code=status_code,
            test=self.test,
            amount=command.amount,
        )


__all__ = [
    "AMOUNT_REQUIRED_ACTIONS",
    "AMOUNTLESS_ACTIONS",
    "MUTATING_ACTIONS",
    "SENSITIVE_FIELDS",
    "VERIFY_AMOUNT",
    "CanonicalResult",
    "ConnectorBase",
    "ErrorCode",
    "ErrorKind",
    "HttpConnector",
    "TransactionAction",
    "TransactionCommand",
    "VerificationResult",
    "card_expiration",
    "derive_idempotency_key",
    "error_kind",
    "format_amount",
    "generate_idempotency_key",
    "parse_amount",
    "scrub",
]
