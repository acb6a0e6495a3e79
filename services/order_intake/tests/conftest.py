import pytest

from services.order_intake.app.publisher import Publisher

TOPIC_ARN = "arn:aws:sns:us-east-1:000000000000:order-intake-test-order-events"


class RecordingBus:
    """In-memory MessageBus: remembers what was sent, optionally fails."""

    def __init__(self, message_id: str = "msg-1", error: Exception = None):
        self.message_id = message_id
        self.error = error
        self.sent = []
        self.timeouts = []

    def send(self, destination: str, body: str, timeout_s: float = None) -> str:
        self.sent.append((destination, body))
        self.timeouts.append(timeout_s)
        if self.error is not None:
            raise self.error
        return self.message_id


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def publisher(bus):
    return Publisher(bus, TOPIC_ARN)


@pytest.fixture
def order_payload():
    return {
        "orderId": "o1",
        "customerId": "c1",
        "items": [{"productId": "p1", "quantity": 2, "price": 29.99}],
    }


@pytest.fixture
def make_bus():
    return RecordingBus
