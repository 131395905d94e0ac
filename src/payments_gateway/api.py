"""Reference HTTP API exposing the connectors."""

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .auth import limiter, verify_api_key
from .config import Settings, configure_logging, get_settings
from .connectors import (
    ConnectorBase,
    ConvergeConnector,
    FuseboxConnector,
    SimulatorConnector,
    StripeConnector,
)
from .models import CanonicalResult, TransactionAction
from .transport import HttpTransport, TransportError

logger = logging.getLogger(__name__)


def build_connectors(settings: Settings) -> Dict[str, ConnectorBase]:
    """Registry of connectors that have credentials configured.

    The simulator is always available.
    """
    connectors: Dict[str, ConnectorBase] = {"simulator": SimulatorConnector()}
    if settings.stripe_api_key:
        connectors["stripe"] = StripeConnector(api_key=settings.stripe_api_key)
    if settings.converge_configured:
        connectors["converge"] = ConvergeConnector(
            merchant_id=settings.converge_merchant_id,
            pin=settings.converge_pin,
            user_id=settings.converge_user_id,
            test=settings.test_mode,
            transport=HttpTransport(timeout=settings.http_timeout),
        )
    if settings.fusebox_configured:
        connectors["fusebox"] = FuseboxConnector(
            terminal_id=settings.fusebox_terminal_id,
            chain_code=settings.fusebox_chain_code,
            location_name=settings.fusebox_location_name,
            test=settings.test_mode,
            transport=HttpTransport(timeout=settings.http_timeout),
        )
    logger.info(f"Configured connectors: {', '.join(sorted(connectors))}")
    return connectors


configure_logging()

app = FastAPI(title="Payments Gateway - Reference API")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

CONNECTORS: Dict[str, ConnectorBase] = build_connectors(get_settings())


class TransactionBody(BaseModel):
    """Request body for one transaction operation."""
    amount: Optional[int] = Field(default=None, description="Amount in minor units")
    payment_method: Optional[Any] = None
    authorization: Optional[str] = None
    idempotency_key: Optional[str] = None
    original_action: Optional[TransactionAction] = None
    options: Dict[str, Any] = Field(default_factory=dict)


# Body fields the operations take as named arguments.
RESERVED_OPTIONS = frozenset(name for name in TransactionBody.model_fields if name != "options")


def get_connector(x_provider: Optional[str]) -> ConnectorBase:
    connector = CONNECTORS.get(x_provider or "")
    if not connector:
        raise HTTPException(status_code=400, detail="Provider not supported")
    return connector


def dispatch(connector: ConnectorBase, action: TransactionAction, body: TransactionBody) -> CanonicalResult:
    key = body.idempotency_key
    reserved = sorted(RESERVED_OPTIONS.intersection(body.options))
    if reserved:
        raise HTTPException(
            status_code=400,
            detail=f"Pass {', '.join(reserved)} as top-level fields, not in options",
        )
    options = dict(body.options)
    if action == TransactionAction.AUTHORIZE:
        return connector.authorize(body.amount, body.payment_method, key, **options)
    if action == TransactionAction.PURCHASE:
        return connector.purchase(body.amount, body.payment_method, key, **options)
    if action == TransactionAction.CAPTURE:
        return connector.capture(body.amount, body.authorization, key, **options)
    if action == TransactionAction.REFUND:
        return connector.refund(body.amount, body.authorization, key, **options)
    if action == TransactionAction.VOID:
        return connector.void(body.authorization, key, **options)
    if action == TransactionAction.VERIFY:
        return connector.verify(body.payment_method, key, **options)
    if action == TransactionAction.STORE:
        return connector.store(body.payment_method, key, **options)
    if action == TransactionAction.UNSTORE:
        return connector.unstore(body.authorization, key, **options)
    if not key:
        raise HTTPException(status_code=400, detail="idempotency_key is required for inquiry")
    return connector.inquiry(key, body.original_action, **options)


@app.post("/transactions/{action}")
@limiter.limit(get_settings().rate_limit)
def create_transaction(
    request: Request,
    action: TransactionAction,
    body: TransactionBody,
    x_provider: Optional[str] = Header("simulator"),
    caller: str = Depends(verify_api_key),
):
    """
    Run one operation against the provider named in the X-Provider header.

    Declines and validation failures come back as a normal result with
    ``success: false``. A 504 means the processor could not be reached or
    its answer was lost; ``may_have_applied`` tells whether the request
    could have gone through, and a retry must reuse the idempotency key.
    """
    connector = get_connector(x_provider)
    try:
        result = dispatch(connector, action, body)
    except TransportError as e:
        logger.warning(f"{connector.name} {action.value} for key {caller} failed at the transport level: {e}")
        raise HTTPException(
            status_code=504,
            detail={"message": str(e), "may_have_applied": e.may_have_applied},
        ) from e
    payload = result.model_dump(mode="json")
    payload["raw"] = connector.scrub(result.raw)
    payload["error_kind"] = connector.error_kind(result)
    return payload


@app.get("/health")
async def health():
    return {
        "ok": True,
        "providers": {name: connector.health_check() for name, connector in CONNECTORS.items()},
    }
