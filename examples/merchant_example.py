"""
Simple merchant usage example (server-side). Runs an order through the
in-memory simulator: purchase, a partial refund, and a capture whose
response is lost and then recovered by inquiry. Set STRIPE_API_KEY to run
the purchase against Stripe test mode as well.
"""
import os

from payments_gateway.config import configure_logging
from payments_gateway.connectors import (
    SimulatorConnector,
    SimulatorProcessor,
    SimulatorScenario,
    StripeConnector,
)
from payments_gateway.models import TransactionAction


def show(label, result):
    print(f"{label}: success={result.success} message={result.message!r} authorization={result.authorization}")


def run():
    configure_logging("WARNING")
    card = {"number": "4242424242424242", "month": 9, "year": 2030, "cvc": "123"}

    processor = SimulatorProcessor()
    simulator = SimulatorConnector(processor=processor)

    sale = simulator.purchase(1000, card, "order-1001")
    show("purchase", sale)
    show("refund", simulator.refund(400, sale.authorization, "order-1001:refund-1"))

    auth = simulator.authorize(2500, card, "order-1002")
    processor.script(TransactionAction.CAPTURE, SimulatorScenario.TIMEOUT_AFTER_APPLY)
    show("capture after lost response", simulator.capture(2500, auth.authorization, "order-1002:capture"))

    if os.getenv("STRIPE_API_KEY"):
        stripe_connector = StripeConnector()
        show("stripe purchase", stripe_connector.purchase(1000, "pm_card_visa", "order-1003"))


if __name__ == "__main__":
    run()
