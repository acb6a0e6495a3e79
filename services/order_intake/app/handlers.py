import logging

from fastapi.responses import JSONResponse

from .domain import parse_order
from .errors import ErrorKind, OrderServiceError
from .events import build_order_created_event
from .publisher import Publisher

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Failed to process order"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


class OrderIngestion:
    """Turns a POST /orders body into one published OrderCreated event.

    Holds nothing per request; the publisher is shared read-only.
    """

    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def handle(self, body: bytes) -> JSONResponse:
        try:
            order = parse_order(body)
        except OrderServiceError as e:
            logger.info("rejected order: %s", e.message)
            return _error(400, e.message)

        result = self.publisher.publish(build_order_created_event(order))
        if not result.ok:
            kind = result.error.kind
            if kind is ErrorKind.SERIALIZATION:
                logger.error("order %s not published: event could not be encoded", order.order_id)
            else:
                logger.error("order %s not published: bus %s", order.order_id, result.error.reason or kind.value)
            return _error(500, GENERIC_FAILURE)

        return JSONResponse(status_code=201, content=order.to_payload())
