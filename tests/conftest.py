"""Shared test fixtures and configuration."""

import os
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("PAYMENTS_RATE_LIMIT", "1000/minute")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from payments_gateway.connectors.simulator_connector import (  # noqa: E402
    SimulatorConnector,
    SimulatorProcessor,
)


class FakeTransport:
    """Transport double returning canned bodies and recording requests."""

    def __init__(self, *responses):
        self.responses: List[Any] = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def send(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, str]:
        self.requests.append({"method": method, "url": url, "body": body, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, tuple):
            return response
        return 200, response


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def processor():
    """A fresh in-memory simulated processor."""
    return SimulatorProcessor()


@pytest.fixture
def simulator(processor):
    """Simulator connector running the authorize then capture purchase."""
    return SimulatorConnector(processor=processor)


@pytest.fixture
def card() -> Dict[str, Any]:
    return {
        "number": "4242424242424242",
        "month": 9,
        "year": 2030,
        "cvc": "123",
        "first_name": "Longbob",
        "last_name": "Longsen",
    }
