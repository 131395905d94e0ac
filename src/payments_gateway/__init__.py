# payments_gateway package
__version__ = "0.1.0"

from .models import (
    CanonicalResult,
    ErrorCode,
    ErrorKind,
    TransactionAction,
    TransactionCommand,
    VerificationResult,
)
from .tokens import AuthorizationTokenCodec
from .normalizer import ProcessorProfile, ResponseNormalizer, WireFormat
from .orchestration import CompositeOperation, CompositePolicy, CompositeStep
from .reconciler import AmbiguousFailureReconciler, Outcome
from .transport import (
    ConnectionFailedError,
    HttpTransport,
    ResponseInterruptedError,
    TransportError,
)
from .connectors import (
    ConnectorBase,
    ConvergeConnector,
    FuseboxConnector,
    SimulatorConnector,
    StripeConnector,
)
