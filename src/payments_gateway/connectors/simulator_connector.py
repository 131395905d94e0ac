"""Simulator connector for testing payment flows without real processor calls."""

import json
import logging
import random
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Optional, Tuple

from ..normalizer import ProcessorProfile, WireFormat
from ..transport import ConnectionFailedError, ResponseInterruptedError
from .base import ErrorCode, HttpConnector, TransactionAction, TransactionCommand

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined outcomes the simulated processor can produce."""
    SUCCESS = "success"
    DECLINE = "decline"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    # Connection refused: nothing reaches the processor.
    TIMEOUT_BEFORE_SEND = "timeout_before_send"
    # Applied upstream, then the response is lost.
    TIMEOUT_AFTER_APPLY = "timeout_after_apply"
    # Request lost on the way; nothing applied, but the caller cannot tell.
    TIMEOUT_NOT_APPLIED = "timeout_not_applied"
    GATEWAY_ERROR_APPLIED = "gateway_error_applied"
    GATEWAY_ERROR_NOT_APPLIED = "gateway_error_not_applied"
    MALFORMED_RESPONSE = "malformed_response"
    HTTP_ERROR = "http_error"


GATEWAY_TIMEOUT_CODE = "gateway_timeout"


@dataclass
class SimulatedTransaction:
    """In-memory representation of a simulated transaction."""
    id: str
    amount: int
    status: str
    last4: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    captured_amount: int = 0
    refunded_amount: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    success_rate: float = 1.0  # 0.0 to 1.0
    delay_ms: int = 0  # Simulated response delay in ms
    avs_result: str = "Y"
    cvv_result: str = "M"
    seed: Optional[int] = None  # Random seed for reproducibility


class SimulatorProcessor:
    """
    In-memory processor speaking JSON over the transport interface.

    Features:
    - Duplicate detection by idempotency key: a replayed key returns the
      first answer and is never applied twice
    - An inquiry endpoint that looks attempts up by idempotency key
    - Scripted scenarios per action, consumed in order
    - Special card tokens for specific scenarios
    - Per-key apply counters for tests
    """

    # Special card tokens for triggering specific behaviors
    CARD_SUCCESS = "sim_card_success"
    CARD_DECLINE = "sim_card_decline"
    CARD_INSUFFICIENT = "sim_card_insufficient"
    CARD_TIMEOUT = "sim_card_timeout"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config = config or SimulatorConfig()
        self._transactions: Dict[str, SimulatedTransaction] = {}
        self._attempts: Dict[str, Dict[str, Any]] = {}
        self._scripts: Dict[str, Deque[SimulatorScenario]] = defaultdict(deque)
        self._rng = random.Random(self.config.seed)
        self.apply_counts: Dict[str, int] = defaultdict(int)
        self.requests: list = []

    def script(self, action: TransactionAction, *scenarios: SimulatorScenario) -> None:
        """Queue scenarios for the next requests of ``action``."""
        self._scripts[TransactionAction(action).value].extend(
            SimulatorScenario(s) for s in scenarios
        )

    def send(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        if self.config.delay_ms > 0:
            time.sleep(self.config.delay_ms / 1000.0)

        request = json.loads(body or "{}")
        self.requests.append(request)
        action = request.get("action", "")
        key = request.get("idempotency_key", "")
        scenario = self._determine_scenario(action, request.get("payment_method"))

        if scenario == SimulatorScenario.TIMEOUT_BEFORE_SEND:
            raise ConnectionFailedError(f"Simulated connection refused for {url}")
        if scenario == SimulatorScenario.TIMEOUT_NOT_APPLIED:
            raise ResponseInterruptedError(f"Simulated read timeout for {url}")
        if scenario == SimulatorScenario.MALFORMED_RESPONSE:
            return 502, "<html><body>Bad Gateway</body></html>"
        if scenario == SimulatorScenario.GATEWAY_ERROR_NOT_APPLIED:
            return 200, json.dumps(self._gateway_error())
        if scenario == SimulatorScenario.HTTP_ERROR:
            return 422, json.dumps({
                "status": "error",
                "code": "invalid_request",
                "message": "Request rejected by simulator",
            })

        if action == TransactionAction.INQUIRY.value:
            return 200, json.dumps(self._inquiry(key))

        if key in self._attempts:
            logger.info(f"Simulator: duplicate request for {key}; replaying first answer")
            response = self._attempts[key]
        else:
            response = self._apply(action, request, scenario)
            self._attempts[key] = response
            self.apply_counts[key] += 1

        if scenario == SimulatorScenario.TIMEOUT_AFTER_APPLY:
            raise ResponseInterruptedError(f"Simulated read timeout for {url} after apply")
        if scenario == SimulatorScenario.GATEWAY_ERROR_APPLIED:
            return 200, json.dumps(self._gateway_error())
        return 200, json.dumps(response)

    def _determine_scenario(self, action: str, token: Any) -> SimulatorScenario:
        """Scripted scenario first, then card token, then the random config."""
        queue = self._scripts.get(action)
        if queue:
            return queue.popleft()
        card_scenarios = {
            self.CARD_SUCCESS: SimulatorScenario.SUCCESS,
            self.CARD_DECLINE: SimulatorScenario.DECLINE,
            self.CARD_INSUFFICIENT: SimulatorScenario.INSUFFICIENT_FUNDS,
            self.CARD_TIMEOUT: SimulatorScenario.TIMEOUT_AFTER_APPLY,
        }
        if isinstance(token, dict):
            token = token.get("token")
        if isinstance(token, str) and token in card_scenarios:
            return card_scenarios[token]
        if self._rng.random() >= self.config.success_rate:
            return SimulatorScenario.DECLINE
        return SimulatorScenario.SUCCESS

    def _apply(self, action: str, request: Dict[str, Any], scenario: SimulatorScenario) -> Dict[str, Any]:
        if scenario == SimulatorScenario.DECLINE:
            return self._declined(request, "card_declined", "Card declined")
        if scenario == SimulatorScenario.INSUFFICIENT_FUNDS:
            return self._declined(request, "insufficient_funds", "Insufficient funds")

        handlers = {
            TransactionAction.AUTHORIZE.value: self._authorize,
            TransactionAction.PURCHASE.value: self._authorize,
            TransactionAction.CAPTURE.value: self._capture,
            TransactionAction.REFUND.value: self._refund,
            TransactionAction.VOID.value: self._void,
            TransactionAction.STORE.value: self._store,
            TransactionAction.UNSTORE.value: self._unstore,
        }
        handler = handlers.get(action)
        if handler is None:
            return self._error("unsupported_action", f"Unsupported action: {action}")
        return handler(action, request)

    def _authorize(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn = SimulatedTransaction(
            id=self._generate_id(),
            amount=request["amount"],
            status="captured" if action == TransactionAction.PURCHASE.value else "authorized",
            last4=_last4(request.get("payment_method")),
            metadata=request.get("metadata") or {},
        )
        if txn.status == "captured":
            txn.captured_amount = txn.amount
        self._transactions[txn.id] = txn
        return self._approved(txn, "Approved", amount=txn.amount)

    def _capture(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn, error = self._find(request, "authorized", "capture")
        if error:
            return error
        amount = request.get("amount")
        amount = txn.amount if amount is None else amount
        if amount > txn.amount:
            return self._error("invalid_amount", "Capture amount exceeds authorized amount", txn.id)
        txn.captured_amount = amount
        txn.status = "captured"
        return self._approved(txn, "Captured", amount=amount)

    def _refund(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn, error = self._find(request, ("captured", "partially_refunded"), "refund")
        if error:
            return error
        remaining = txn.captured_amount - txn.refunded_amount
        amount = request.get("amount")
        amount = remaining if amount is None else amount
        if amount > remaining:
            return self._error("invalid_amount", "Refund amount exceeds captured amount", txn.id)
        txn.refunded_amount += amount
        txn.status = "refunded" if txn.refunded_amount >= txn.captured_amount else "partially_refunded"
        return self._approved(txn, "Refunded", amount=amount)

    def _void(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn, error = self._find(request, "authorized", "void")
        if error:
            return error
        txn.status = "voided"
        return self._approved(txn, "Voided")

    def _store(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn = SimulatedTransaction(
            id=f"tok_{uuid.uuid4().hex[:24]}",
            amount=0,
            status="stored",
            last4=_last4(request.get("payment_method")),
        )
        self._transactions[txn.id] = txn
        return self._approved(txn, "Stored")

    def _unstore(self, action: str, request: Dict[str, Any]) -> Dict[str, Any]:
        txn, error = self._find(request, "stored", "unstore")
        if error:
            return error
        txn.status = "unstored"
        return self._approved(txn, "Unstored")

    def _inquiry(self, key: str) -> Dict[str, Any]:
        attempt = self._attempts.get(key)
        if attempt is None:
            return self._error("not_found", f"No transaction found for idempotency key {key}")
        if attempt["status"] != "approved":
            return attempt
        response = dict(attempt)
        response["message"] = f"{attempt['message']} (already applied)"
        return response

    def _find(self, request: Dict[str, Any], states, verb: str):
        txn = self._transactions.get(request.get("transaction_id") or "")
        if txn is None:
            return None, self._error("not_found", "Transaction not found", request.get("transaction_id"))
        allowed = (states,) if isinstance(states, str) else states
        if txn.status not in allowed:
            return None, self._error("invalid_state", f"Cannot {verb} a {txn.status} transaction", txn.id)
        return txn, None

    def _approved(self, txn: SimulatedTransaction, message: str, amount: Optional[int] = None) -> Dict[str, Any]:
        return {
            "status": "approved",
            "code": "00",
            "message": message,
            "transaction_id": txn.id,
            "last4": txn.last4,
            "amount": amount,
            "avs_result": self.config.avs_result,
            "cvv_result": self.config.cvv_result,
            "simulator": True,
        }

    def _declined(self, request: Dict[str, Any], code: str, message: str) -> Dict[str, Any]:
        # Declines are logged upstream, so they still carry an id.
        txn = SimulatedTransaction(
            id=self._generate_id(),
            amount=request.get("amount") or 0,
            status="declined",
            last4=_last4(request.get("payment_method")),
        )
        self._transactions[txn.id] = txn
        return {
            "status": "declined",
            "code": code,
            "message": message,
            "transaction_id": txn.id,
            "last4": txn.last4,
            "avs_result": "N",
            "cvv_result": "N",
            "simulator": True,
        }

    @staticmethod
    def _error(code: str, message: str, transaction_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": code,
            "message": message,
            "transaction_id": transaction_id,
            "simulator": True,
        }

    def _gateway_error(self) -> Dict[str, Any]:
        return self._error(GATEWAY_TIMEOUT_CODE, "Gateway timeout; transaction may have been applied")

    def _generate_id(self) -> str:
        """Generate a unique simulator transaction ID."""
        return f"sim_{uuid.uuid4().hex[:24]}"

    def get_transaction(self, transaction_id: str) -> Optional[SimulatedTransaction]:
        """Get a transaction from in-memory storage (for testing)."""
        return self._transactions.get(transaction_id)

    def get_all_transactions(self) -> Dict[str, SimulatedTransaction]:
        """Get all transactions (for testing)."""
        return dict(self._transactions)

    def clear_transactions(self) -> None:
        """Clear all stored state (for test cleanup)."""
        self._transactions.clear()
        self._attempts.clear()
        self._scripts.clear()
        self.apply_counts.clear()
        self.requests.clear()


def _last4(payment_method: Any) -> Optional[str]:
    if isinstance(payment_method, dict):
        payment_method = payment_method.get("number")
    digits = "".join(c for c in str(payment_method or "") if c.isdigit())
    return digits[-4:] or None


_TOKEN_ACTIONS = frozenset({
    TransactionAction.AUTHORIZE,
    TransactionAction.PURCHASE,
    TransactionAction.STORE,
    TransactionAction.INQUIRY,
})


def _simulator_token(fields: Dict[str, Any], action: TransactionAction):
    if action not in _TOKEN_ACTIONS or not fields.get("transaction_id"):
        return None
    return [fields["transaction_id"], fields.get("last4")]


SIMULATOR_PROFILE = ProcessorProfile(
    name="Simulator",
    wire_format=WireFormat.JSON,
    success=lambda fields, action: fields.get("status") == "approved",
    message_fields=("message",),
    extract_token_fields=_simulator_token,
    response_code_field="code",
    error_codes={
        "card_declined": ErrorCode.CARD_DECLINED,
        "insufficient_funds": ErrorCode.CARD_DECLINED,
        "invalid_request": ErrorCode.INVALID_REQUEST,
        "invalid_amount": ErrorCode.INVALID_REQUEST,
        "unsupported_action": ErrorCode.UNSUPPORTED_FEATURE,
    },
    avs_field="avs_result",
    cvv_field="cvv_result",
    ambiguous_codes=frozenset({GATEWAY_TIMEOUT_CODE}),
)


class SimulatorConnector(HttpConnector):
    """
    Connector for the in-memory simulated processor.

    The processor has no native sale, so ``purchase`` runs the authorize
    then capture composite. Every mutating action can be looked up by
    idempotency key.
    """

    name = "simulator"
    profile = SIMULATOR_PROFILE
    token_layout = ("transaction_id", "last4")
    supports_purchase = False
    test_url = "https://simulator.invalid/v1/transactions"
    live_url = "https://simulator.invalid/v1/transactions"
    required_parameters = {
        TransactionAction.AUTHORIZE: ("payment_method",),
        TransactionAction.PURCHASE: ("payment_method",),
        TransactionAction.STORE: ("payment_method",),
        TransactionAction.CAPTURE: ("authorization",),
        TransactionAction.REFUND: ("authorization",),
        TransactionAction.VOID: ("authorization",),
        TransactionAction.UNSTORE: ("authorization",),
    }

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        processor: Optional[SimulatorProcessor] = None,
        supports_purchase: Optional[bool] = None,
    ):
        self.processor = processor or SimulatorProcessor(config)
        if supports_purchase is not None:
            self.supports_purchase = supports_purchase
        super().__init__(test=True, transport=self.processor)
        logger.info("SimulatorConnector initialized")

    @property
    def config(self) -> SimulatorConfig:
        return self.processor.config

    def build_request(self, command: TransactionCommand):
        payload: Dict[str, Any] = {
            "action": command.action.value,
            "idempotency_key": command.idempotency_key,
            "amount": command.amount,
        }
        if command.param("payment_method") is not None:
            payload["payment_method"] = command.param("payment_method")
        if command.param("authorization"):
            payload["transaction_id"] = self.reference(command)["transaction_id"]
        if command.param("metadata"):
            payload["metadata"] = command.param("metadata")
        if command.action == TransactionAction.INQUIRY:
            payload["original_action"] = command.param("original_action")
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": command.idempotency_key,
        }
        return "POST", self.url, json.dumps(payload), headers

    def get_transaction(self, transaction_id: str) -> Optional[SimulatedTransaction]:
        return self.processor.get_transaction(transaction_id)

    def get_all_transactions(self) -> Dict[str, SimulatedTransaction]:
        return self.processor.get_all_transactions()

    def clear_transactions(self) -> None:
        self.processor.clear_transactions()

    def health_check(self) -> Dict[str, Any]:
        """Return health status of the simulator."""
        return {
            "ok": True,
            "provider": self.name,
            "transaction_count": len(self.processor.get_all_transactions()),
            "config": {
                "success_rate": self.config.success_rate,
                "delay_ms": self.config.delay_ms,
            },
        }
