"""Payment processor connectors."""

from .base import (
    SENSITIVE_FIELDS,
    VERIFY_AMOUNT,
    CanonicalResult,
    ConnectorBase,
    ErrorCode,
    ErrorKind,
    HttpConnector,
    TransactionAction,
    TransactionCommand,
    VerificationResult,
    derive_idempotency_key,
    generate_idempotency_key,
    scrub,
)
from .converge_connector import ConvergeConnector
from .fusebox_connector import FuseboxConnector
from .simulator_connector import (
    SimulatedTransaction,
    SimulatorConfig,
    SimulatorConnector,
    SimulatorProcessor,
    SimulatorScenario,
)
from .stripe_connector import StripeConnector

__all__ = [
    # Base classes and models
    "ConnectorBase",
    "HttpConnector",
    "CanonicalResult",
    "TransactionCommand",
    "TransactionAction",
    "VerificationResult",
    "ErrorCode",
    "ErrorKind",
    "SENSITIVE_FIELDS",
    "VERIFY_AMOUNT",
    "derive_idempotency_key",
    "generate_idempotency_key",
    "scrub",
    # Connectors
    "ConvergeConnector",
    "FuseboxConnector",
    "StripeConnector",
    "SimulatorConnector",
    "SimulatorProcessor",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedTransaction",
]
